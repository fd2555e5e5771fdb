"""Hybrid Search Reranker.

Scores a candidate set with lexical, vector, graph, recency and optional
cross-encoder signals, fuses them and optionally diversifies the result.
All inputs are already resolved: embeddings, graph view, mention counts and
cross-encoder scores are supplied by the caller.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import networkx as nx

from src.chronograph.models import GraphNode
from src.chronograph.search.bm25 import BM25Config, BM25Index, tokenize
from src.chronograph.search.fusion import (
    cosine_similarity,
    mmr,
    rank_by,
    recency_score,
    reciprocal_rank_fusion,
    weighted_sum,
)

SIGNALS = ("text", "vector", "graph", "recency", "cross_encoder")


class FusionMode(str, Enum):
    """How per-signal scores become one score. Exactly one mode per call."""
    WEIGHTED = "weighted"          # weighted linear sum
    RRF = "rrf"                    # reciprocal rank fusion decides the order
    RRF_PRERANK = "rrf_prerank"    # RRF keeps the top N, weighted sum orders them


@dataclass
class RerankerConfig:
    """Configuration for hybrid reranking."""
    fusion_mode: FusionMode = FusionMode.WEIGHTED
    weights: dict[str, float] = field(default_factory=lambda: {
        "vector": 0.6,
        "text": 0.2,
        "graph": 0.1,
        "recency": 0.1,
        "cross_encoder": 0.5,
    })
    rrf_k: int = 60
    prerank_top_n: int = 50

    max_results: int = 10
    min_score: float = 0.1             # ignored by pure RRF, whose scores are rank based

    # Graph features
    max_path_length: int = 3
    mentions_boost: bool = True

    # Recency
    decay_rate: float = 0.1            # per day

    # Diversity
    use_mmr: bool = False
    mmr_lambda: float = 0.7

    # Cross-encoder
    use_cross_encoder: bool = False
    cross_encoder_threshold: float = 0.5
    cross_encoder_batch_size: int = 32

    bm25: BM25Config = field(default_factory=BM25Config)


@dataclass
class GraphContext:
    """Graph-derived inputs for ranking."""
    view: nx.Graph
    center_ids: list[str] = field(default_factory=list)
    mentions: dict[str, int] = field(default_factory=dict)


@dataclass
class SignalBreakdown:
    """Every feature that contributed to one candidate's score."""
    text: float = 0.0
    text_raw: float = 0.0
    vector: float = 0.0
    graph: float = 0.0
    graph_distance: int | None = None
    path_edge_types: list[str] = field(default_factory=list)
    mentions: int = 0
    recency: float = 0.0
    cross_encoder: float | None = None
    rrf: float | None = None

    def signals(self) -> dict[str, float]:
        return {
            "text": self.text,
            "vector": self.vector,
            "graph": self.graph,
            "recency": self.recency,
            "cross_encoder": self.cross_encoder or 0.0,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "text_raw": self.text_raw,
            "vector": self.vector,
            "graph": self.graph,
            "graph_distance": self.graph_distance,
            "path_edge_types": list(self.path_edge_types),
            "mentions": self.mentions,
            "recency": self.recency,
            "cross_encoder": self.cross_encoder,
            "rrf": self.rrf,
        }


@dataclass
class SearchResult:
    id: str
    score: float
    explanation: str
    features: SignalBreakdown
    node: GraphNode | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "explanation": self.explanation,
            "features": self.features.to_dict(),
            "node": self.node.to_dict() if self.node else None,
        }


class HybridReranker:
    """Ranks candidates by fused lexical, vector, graph and recency signals."""

    def __init__(self, config: RerankerConfig | None = None, logger: logging.Logger | None = None):
        self.config = config or RerankerConfig()
        self._log = logger or logging.getLogger(__name__)

    def rank(
        self,
        query: str,
        candidates: list[GraphNode],
        query_embedding: list[float] | None = None,
        graph: GraphContext | None = None,
        cross_scores: dict[str, float] | None = None,
        reference_time: float | None = None,
        config: RerankerConfig | None = None,
    ) -> list[SearchResult]:
        """Ordered results, best first, each with its feature breakdown."""
        cfg = config or self.config
        if not candidates:
            return []
        reference = time.time() if reference_time is None else reference_time
        by_id = {c.id: c for c in candidates}

        features = self.extract_features(query, candidates, query_embedding, graph, cross_scores, reference, cfg)

        # Unscored candidates come from failed batches and are kept
        if cfg.use_cross_encoder and cross_scores is not None:
            features = {
                cid: f for cid, f in features.items()
                if f.cross_encoder is None or f.cross_encoder >= cfg.cross_encoder_threshold
            }

        mode = FusionMode(cfg.fusion_mode)
        scores = self._fuse(features, cfg)
        # RRF scores stay pure rank sums
        if cfg.mentions_boost and mode is not FusionMode.RRF:
            for cid in scores:
                scores[cid] *= 1.0 + math.log(max(features[cid].mentions, 1))

        if mode is not FusionMode.RRF:
            scores = {cid: s for cid, s in scores.items() if s >= cfg.min_score}

        if cfg.use_mmr:
            order = mmr(
                scores,
                lambda a, b: _similarity(by_id[a], by_id[b]),
                lambda_=cfg.mmr_lambda,
                limit=cfg.max_results,
            )
        else:
            order = rank_by(scores)[: cfg.max_results]

        return [
            SearchResult(
                id=cid,
                score=scores[cid],
                explanation=explain(features[cid], scores[cid], cfg),
                features=features[cid],
                node=by_id[cid],
            )
            for cid in order
        ]

    def extract_features(
        self,
        query: str,
        candidates: list[GraphNode],
        query_embedding: list[float] | None,
        graph: GraphContext | None,
        cross_scores: dict[str, float] | None,
        reference: float,
        cfg: RerankerConfig,
    ) -> dict[str, SignalBreakdown]:
        index = BM25Index(cfg.bm25)
        for candidate in candidates:
            index.add_document(candidate.id, candidate.text)
        text_scores = index.score(query)
        top_text = max(text_scores.values(), default=0.0)

        distances, paths = self._graph_distances(graph, cfg.max_path_length)

        features: dict[str, SignalBreakdown] = {}
        for candidate in candidates:
            f = SignalBreakdown()
            f.text_raw = text_scores.get(candidate.id, 0.0)
            f.text = f.text_raw / top_text if top_text > 0 else 0.0
            if query_embedding is not None and candidate.embedding:
                f.vector = max(0.0, cosine_similarity(query_embedding, candidate.embedding))
            if candidate.id in distances:
                f.graph_distance = distances[candidate.id]
                f.graph = 1.0 / (1.0 + f.graph_distance)
                f.path_edge_types = paths.get(candidate.id, [])
            if graph is not None:
                f.mentions = graph.mentions.get(candidate.id, 0)
            f.recency = recency_score(
                candidate.valid_at if candidate.valid_at is not None else candidate.created_at,
                reference,
                cfg.decay_rate,
            )
            if cross_scores is not None and candidate.id in cross_scores:
                f.cross_encoder = cross_scores[candidate.id]
            features[candidate.id] = f
        return features

    def _graph_distances(
        self,
        graph: GraphContext | None,
        max_path_length: int,
    ) -> tuple[dict[str, int], dict[str, list[str]]]:
        """Distance and best-path edge types from the nearest center node."""
        distances: dict[str, int] = {}
        paths: dict[str, list[str]] = {}
        if graph is None or not graph.center_ids:
            return distances, paths
        for center in graph.center_ids:
            if center not in graph.view:
                continue
            found = nx.single_source_shortest_path(graph.view, center, cutoff=max_path_length)
            for target, node_path in found.items():
                distance = len(node_path) - 1
                if target in distances and distances[target] <= distance:
                    continue
                distances[target] = distance
                paths[target] = [
                    graph.view.edges[u, v]["type"] for u, v in zip(node_path, node_path[1:])
                ]
        return distances, paths

    def _fuse(self, features: dict[str, SignalBreakdown], cfg: RerankerConfig) -> dict[str, float]:
        if not features:
            return {}
        mode = FusionMode(cfg.fusion_mode)
        if mode is FusionMode.WEIGHTED:
            return {cid: weighted_sum(f.signals(), cfg.weights) for cid, f in features.items()}

        rrf = self._rrf(features, cfg)
        for cid, score in rrf.items():
            features[cid].rrf = score
        if mode is FusionMode.RRF:
            return {cid: rrf.get(cid, 0.0) for cid in features}

        kept = rank_by({cid: rrf.get(cid, 0.0) for cid in features})[: cfg.prerank_top_n]
        return {cid: weighted_sum(features[cid].signals(), cfg.weights) for cid in kept}

    def _rrf(self, features: dict[str, SignalBreakdown], cfg: RerankerConfig) -> dict[str, float]:
        rankings = []
        for signal in SIGNALS:
            present = {}
            for cid, f in features.items():
                value = f.signals()[signal]
                if value > 0:
                    present[cid] = value
            if present:
                rankings.append(rank_by(present))
        return reciprocal_rank_fusion(rankings, k=cfg.rrf_k)

    def cross_encoder_batches(self, candidates: list[GraphNode], cfg: RerankerConfig | None = None) -> list[list[GraphNode]]:
        """Split candidates into cross-encoder request batches."""
        size = max(1, (cfg or self.config).cross_encoder_batch_size)
        return [candidates[i:i + size] for i in range(0, len(candidates), size)]


def _similarity(a: GraphNode, b: GraphNode) -> float:
    if a.embedding and b.embedding:
        return cosine_similarity(a.embedding, b.embedding)
    tokens_a, tokens_b = set(tokenize(a.text)), set(tokenize(b.text))
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def explain(features: SignalBreakdown, score: float, cfg: RerankerConfig) -> str:
    parts = [
        f"text={features.text:.2f}",
        f"vector={features.vector:.2f}",
    ]
    if features.graph_distance is not None:
        path = "->".join(features.path_edge_types) or "center"
        parts.append(f"graph={features.graph:.2f} (distance {features.graph_distance} via {path})")
    if features.mentions:
        parts.append(f"mentions={features.mentions}")
    parts.append(f"recency={features.recency:.2f}")
    if features.cross_encoder is not None:
        parts.append(f"cross_encoder={features.cross_encoder:.2f}")
    return f"{FusionMode(cfg.fusion_mode).value} score {score:.4f}: " + ", ".join(parts)
