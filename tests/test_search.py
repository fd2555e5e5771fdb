"""Tests for lexical scoring, fusion and hybrid reranking."""

import math

import networkx as nx
import pytest

from src.chronograph.models import GraphNode
from src.chronograph.search.bm25 import BM25Index, tokenize
from src.chronograph.search.fusion import (
    cosine_similarity,
    mmr,
    recency_score,
    reciprocal_rank_fusion,
)
from src.chronograph.search.reranker import (
    FusionMode,
    GraphContext,
    HybridReranker,
    RerankerConfig,
)

T0 = 1_700_000_000.0
DAY = 86400.0


def node(node_id: str, text: str, embedding=None, created_at: float = T0) -> GraphNode:
    return GraphNode(
        id=node_id,
        type="entity",
        content={"name": text},
        embedding=embedding,
        created_at=created_at,
    )


class TestBM25:
    """Tests for the BM25 index."""

    def test_tokenize(self):
        assert tokenize("Alice's  coffee, at ACME!") == ["alice", "s", "coffee", "at", "acme"]

    def test_only_matching_documents_score(self):
        index = BM25Index()
        index.add_document("d1", "alice likes tea")
        index.add_document("d2", "bob likes coffee")
        index.add_document("d3", "carol reads books")

        scores = index.score("alice coffee")
        assert set(scores) == {"d1", "d2"}
        assert all(s > 0 for s in scores.values())

    def test_rare_terms_weigh_more(self):
        index = BM25Index()
        index.add_document("d1", "likes tea")
        index.add_document("d2", "likes coffee")
        index.add_document("d3", "likes books")
        assert index.idf("tea") > index.idf("likes") > 0

    def test_remove_document(self):
        index = BM25Index()
        index.add_document("d1", "alice")
        index.add_document("d2", "bob")
        index.remove_document("d1")
        assert len(index) == 1
        assert index.score("alice") == {}

    def test_search_orders_by_score(self):
        index = BM25Index()
        index.add_document("d1", "graph graph")
        index.add_document("d2", "graph memory")
        index.add_document("d3", "memory")
        ranked = index.search("graph", limit=2)
        assert [doc_id for doc_id, _ in ranked] == ["d1", "d2"]


class TestFusionHelpers:
    """Tests for the standalone fusion functions."""

    def test_rrf_of_two_rankings(self):
        fused = reciprocal_rank_fusion(
            [["a", "p", "q", "r", "s"], ["t", "u", "v", "w", "a"]],
            k=60,
        )
        assert fused["a"] == pytest.approx(1 / 61 + 1 / 65)
        assert fused["p"] == pytest.approx(1 / 62)

    def test_cosine(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_recency_decays_per_day(self):
        assert recency_score(T0, T0, 0.1) == 1.0
        assert recency_score(T0 - 10 * DAY, T0, 0.1) == pytest.approx(math.exp(-1.0))
        assert recency_score(T0 + DAY, T0, 0.1) == 1.0

    def test_mmr_prefers_diverse_items(self):
        relevance = {"a": 1.0, "b": 0.95, "c": 0.5}

        def similarity(x, y):
            return 1.0 if {x, y} == {"a", "b"} else 0.0

        assert mmr(relevance, similarity, lambda_=0.5) == ["a", "c", "b"]
        assert mmr(relevance, similarity, lambda_=1.0) == ["a", "b", "c"]

    def test_mmr_rejects_bad_lambda(self):
        with pytest.raises(ValueError):
            mmr({"a": 1.0}, lambda x, y: 0.0, lambda_=1.5)


class TestHybridReranker:
    """Tests for the hybrid ranking pipeline."""

    @pytest.fixture
    def candidates(self):
        return [
            node("alice", "Alice works at Acme", embedding=[1.0, 0.0]),
            node("bob", "Bob plays chess", embedding=[0.0, 1.0]),
            node("carol", "Carol joined Acme", embedding=[0.8, 0.6]),
        ]

    @pytest.fixture
    def later(self):
        return T0 + 100 * DAY

    def test_weighted_fusion_orders_and_filters(self, candidates, later):
        reranker = HybridReranker()
        results = reranker.rank(
            "alice acme",
            candidates,
            query_embedding=[1.0, 0.0],
            reference_time=later,
        )

        assert [r.id for r in results] == ["alice", "carol"]
        top = results[0]
        assert top.features.vector == pytest.approx(1.0)
        assert top.features.text == pytest.approx(1.0)
        assert top.score == pytest.approx(0.6 + 0.2 + 0.1 * math.exp(-10.0))
        assert top.explanation.startswith("weighted score")
        assert top.node.id == "alice"

    def test_empty_candidates(self):
        assert HybridReranker().rank("anything", []) == []

    def test_graph_distance_from_center(self, candidates, later):
        view = nx.Graph()
        view.add_edge("alice", "bob", edge_id="e1", type="knows", weight=1.0)
        view.add_node("carol")
        context = GraphContext(view=view, center_ids=["alice"])

        config = RerankerConfig(min_score=0.0)
        results = {r.id: r for r in HybridReranker(config).rank("chess", candidates, graph=context, reference_time=later)}

        assert results["alice"].features.graph_distance == 0
        assert results["alice"].features.graph == 1.0
        assert results["bob"].features.graph_distance == 1
        assert results["bob"].features.graph == pytest.approx(0.5)
        assert results["bob"].features.path_edge_types == ["knows"]
        assert results["carol"].features.graph_distance is None
        assert "via knows" in results["bob"].explanation

    def test_mentions_boost(self, later):
        twins = [node("x", "same words"), node("y", "same words")]
        context = GraphContext(view=nx.Graph(), mentions={"x": 3})
        config = RerankerConfig(min_score=0.0)
        results = {r.id: r for r in HybridReranker(config).rank("same", twins, graph=context, reference_time=later)}

        assert results["x"].score == pytest.approx(results["y"].score * (1 + math.log(3)))
        assert results["x"].features.mentions == 3

    def test_rrf_ignores_min_score(self, candidates, later):
        config = RerankerConfig(fusion_mode=FusionMode.RRF, min_score=0.5)
        results = HybridReranker(config).rank("alice acme", candidates, query_embedding=[1.0, 0.0], reference_time=later)

        assert [r.id for r in results][0] == "alice"
        assert len(results) == 3
        assert all(r.features.rrf == r.score for r in results)
        assert all(r.score < 0.1 for r in results)

    def test_rrf_score_is_unboosted(self, later):
        twins = [node("x", "same words"), node("y", "same words")]
        context = GraphContext(view=nx.Graph(), mentions={"y": 3})
        config = RerankerConfig(fusion_mode=FusionMode.RRF)
        results = HybridReranker(config).rank("same", twins, graph=context, reference_time=later)

        assert [r.id for r in results] == ["x", "y"]
        assert all(r.score == r.features.rrf for r in results)

    def test_rrf_prerank_limits_candidates(self, candidates, later):
        config = RerankerConfig(fusion_mode=FusionMode.RRF_PRERANK, prerank_top_n=1, min_score=0.0)
        results = HybridReranker(config).rank("alice acme", candidates, query_embedding=[1.0, 0.0], reference_time=later)

        assert [r.id for r in results] == ["alice"]
        assert results[0].score == pytest.approx(0.6 + 0.2 + 0.1 * math.exp(-10.0))

    def test_cross_encoder_threshold_filters(self, candidates, later):
        config = RerankerConfig(use_cross_encoder=True, cross_encoder_threshold=0.5, min_score=0.0)
        results = HybridReranker(config).rank(
            "acme",
            candidates,
            cross_scores={"alice": 0.9, "bob": 0.1, "carol": 0.3},
            reference_time=later,
        )

        assert [r.id for r in results] == ["alice"]
        assert results[0].features.cross_encoder == 0.9

    def test_unscored_candidates_survive_cross_encoder(self, candidates, later):
        config = RerankerConfig(use_cross_encoder=True, cross_encoder_threshold=0.5, min_score=0.0)
        results = HybridReranker(config).rank("acme", candidates, cross_scores={"alice": 0.9}, reference_time=later)

        assert {r.id for r in results} == {"alice", "bob", "carol"}
        assert {r.id: r.features.cross_encoder for r in results}["bob"] is None

    def test_cross_encoder_missing_scores_degrade(self, candidates, later):
        config = RerankerConfig(use_cross_encoder=True, min_score=0.0)
        results = HybridReranker(config).rank("acme", candidates, cross_scores=None, reference_time=later)
        assert len(results) == 3

    def test_mmr_diversifies(self, later):
        similar = [
            node("a", "acme alpha", embedding=[1.0, 0.0]),
            node("b", "acme alpha", embedding=[1.0, 0.0]),
            node("c", "acme", embedding=[0.7, 0.7]),
        ]
        config = RerankerConfig(use_mmr=True, mmr_lambda=0.3, min_score=0.0)
        results = HybridReranker(config).rank("acme alpha", similar, query_embedding=[1.0, 0.0], reference_time=later)

        assert results[0].id == "a"
        assert results[1].id == "c"

    def test_max_results(self, candidates, later):
        config = RerankerConfig(max_results=1, min_score=0.0)
        assert len(HybridReranker(config).rank("acme", candidates, reference_time=later)) == 1

    def test_cross_encoder_batches(self, candidates):
        reranker = HybridReranker(RerankerConfig(cross_encoder_batch_size=2))
        batches = reranker.cross_encoder_batches(candidates)
        assert [len(b) for b in batches] == [2, 1]
