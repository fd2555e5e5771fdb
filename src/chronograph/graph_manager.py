"""GraphManager - Main entry point for the graph memory.

Composes the bi-temporal store, temporal processor, embedding cache,
community detector and hybrid reranker behind one surface. It is the only
component that calls the reasoning and embedding collaborators.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from dotenv import load_dotenv

from src.chronograph.errors import (
    CollaboratorError,
    GraphMemoryError,
    NodeNotFoundError,
)
from src.chronograph.llm.provider import LLMConfig, LLMProvider
from src.chronograph.models import (
    Community,
    CommunityMeta,
    EdgeType,
    EpisodeContent,
    GraphEdge,
    GraphNode,
    GraphPath,
    NodeType,
    make_edge_id,
    make_episode_id,
    make_node_id,
)
from src.chronograph.observe import EventSink, observed
from src.chronograph.operators.community import CommunityConfig, CommunityDetector
from src.chronograph.operators.embedding_cache import EmbeddingCache, EmbeddingCacheConfig
from src.chronograph.operators.encoder import Encoder, EncoderConfig
from src.chronograph.operators.temporal import TemporalQueryProcessor, TimeMode
from src.chronograph.reasoning.processor import (
    CompletionClient,
    ReasoningConfig,
    ReasoningProcessor,
)
from src.chronograph.reasoning.schemas import ExtractedEntity, TemporalOutput
from src.chronograph.retry import RetryPolicy
from src.chronograph.search.bm25 import BM25Index, tokenize
from src.chronograph.search.reranker import (
    GraphContext,
    HybridReranker,
    RerankerConfig,
    SearchResult,
)
from src.chronograph.storage.base import GraphFilter, QueryResult, TraversalOptions
from src.chronograph.storage.memory_graph import GraphStoreConfig, InMemoryGraphStorage

T = TypeVar("T")


@dataclass
class GraphManagerConfig:
    """Master configuration for the graph memory."""
    store_config: GraphStoreConfig | None = None
    cache_config: EmbeddingCacheConfig | None = None
    encoder_config: EncoderConfig | None = None
    community_config: CommunityConfig | None = None
    reranker_config: RerankerConfig | None = None
    reasoning_config: ReasoningConfig | None = None
    llm_config: LLMConfig | None = None

    # Ingestion
    ingest_chunk_size: int = 16
    context_episodes: int = 4
    dedupe_candidates: int = 10
    embed_episodes: bool = True
    embed_entities: bool = True

    # Search
    search_candidate_limit: int | None = 500

    # Communities
    refresh_threshold: float = 0.5

    @classmethod
    def from_env(cls) -> GraphManagerConfig:
        """Build a config from CHRONOGRAPH_* environment variables (and .env)."""
        load_dotenv()
        timeout = float(os.getenv("CHRONOGRAPH_LLM_TIMEOUT", "60"))
        attempts = int(os.getenv("CHRONOGRAPH_MAX_RETRIES", "3"))
        retry = RetryPolicy(max_attempts=attempts, timeout=timeout)
        return cls(
            llm_config=LLMConfig(model=os.getenv("CHRONOGRAPH_LLM_MODEL", "gpt-4o-mini")),
            encoder_config=EncoderConfig(
                embedding_model=os.getenv("CHRONOGRAPH_EMBEDDING_MODEL", "bge-m3:latest"),
                ollama_host=os.getenv("OLLAMA_HOST") or None,
                retry=RetryPolicy(max_attempts=attempts, timeout=timeout),
            ),
            cache_config=EmbeddingCacheConfig(
                max_size=int(os.getenv("CHRONOGRAPH_CACHE_SIZE", "10000")),
                ttl_seconds=float(os.getenv("CHRONOGRAPH_CACHE_TTL", str(24 * 60 * 60))),
            ),
            reasoning_config=ReasoningConfig(retry=retry),
            ingest_chunk_size=int(os.getenv("CHRONOGRAPH_INGEST_CHUNK_SIZE", "16")),
        )


@dataclass
class IngestResult:
    """What one ``ingest`` call stored."""
    episodes: list[GraphNode] = field(default_factory=list)
    entities: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)
    degraded_episodes: list[str] = field(default_factory=list)  # extraction fell back to empty
    skipped: int = 0                                            # records rejected by the store

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_episodes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "episodes": [n.to_dict() for n in self.episodes],
            "entities": [n.to_dict() for n in self.entities],
            "edges": [e.to_dict() for e in self.edges],
            "degraded_episodes": list(self.degraded_episodes),
            "skipped": self.skipped,
        }


@dataclass
class PathExplanation:
    source_id: str
    target_id: str
    path: GraphPath | None
    explanation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "path": self.path.to_dict() if self.path else None,
            "explanation": self.explanation,
        }


@dataclass
class TemporalAnalysis:
    node_id: str
    history: list[GraphEdge]
    inferred: TemporalOutput

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "history": [e.to_dict() for e in self.history],
            "inferred": self.inferred.model_dump(),
        }


class GraphManager:
    """Main entry point for the graph memory.

    Provides high-level API for:
    - Node/edge CRUD and point-in-time reads
    - Ingesting conversation episodes into entities and relationships
    - Hybrid search with explained scores
    - Community detection, merge and refresh
    - Path explanation and temporal change analysis
    """

    def __init__(
        self,
        config: GraphManagerConfig | None = None,
        storage: InMemoryGraphStorage | None = None,
        llm: CompletionClient | None = None,
        encoder: Encoder | None = None,
        logger: logging.Logger | None = None,
        sink: EventSink | None = None,
    ):
        self.config = config or GraphManagerConfig()
        self._log = logger or logging.getLogger(__name__)
        self._sink = sink

        self._storage = storage or InMemoryGraphStorage(
            self.config.store_config or GraphStoreConfig(), logger=self._log
        )
        self._encoder = encoder or Encoder(
            self.config.encoder_config or EncoderConfig(),
            cache=EmbeddingCache(self.config.cache_config or EmbeddingCacheConfig()),
            logger=self._log,
        )
        self._llm = llm or LLMProvider(self.config.llm_config or LLMConfig())
        self._reasoning = ReasoningProcessor(
            self._llm, self.config.reasoning_config or ReasoningConfig(), logger=self._log
        )
        self._temporal = TemporalQueryProcessor(self._storage, logger=self._log)
        self._communities = CommunityDetector(
            self.config.community_config or CommunityConfig(),
            labeler=self._label_community,
            logger=self._log,
        )
        self._reranker = HybridReranker(self.config.reranker_config or RerankerConfig(), logger=self._log)
        self._turns: dict[str, int] = {}

    @property
    def storage(self) -> InMemoryGraphStorage:
        return self._storage

    @property
    def encoder(self) -> Encoder:
        return self._encoder

    @property
    def communities(self) -> CommunityDetector:
        return self._communities

    async def _observe(self, name: str, operation: Callable[[], Awaitable[T]], **attributes: Any) -> T:
        return await observed(name, operation, logger=self._log, sink=self._sink, **attributes)

    # ==================== CRUD ====================

    async def add_node(self, node: GraphNode) -> GraphNode:
        return await self._observe("add_node", lambda: self._storage.add_node(node))

    async def get_node(self, node_id: str) -> GraphNode | None:
        return await self._observe("get_node", lambda: self._storage.get_node(node_id))

    async def update_node(self, node_id: str, updates: dict[str, Any]) -> GraphNode:
        return await self._observe("update_node", lambda: self._storage.update_node(node_id, updates))

    async def delete_node(self, node_id: str) -> None:
        async def op() -> None:
            await self._storage.delete_node(node_id)
            self._communities.remove_node(node_id)

        await self._observe("delete_node", op)

    async def add_edge(self, edge: GraphEdge) -> GraphEdge:
        return await self._observe("add_edge", lambda: self._storage.add_edge(edge))

    async def get_edge(self, edge_id: str) -> GraphEdge | None:
        return await self._observe("get_edge", lambda: self._storage.get_edge(edge_id))

    async def update_edge(self, edge_id: str, updates: dict[str, Any]) -> GraphEdge:
        return await self._observe("update_edge", lambda: self._storage.update_edge(edge_id, updates))

    async def delete_edge(self, edge_id: str) -> None:
        await self._observe("delete_edge", lambda: self._storage.delete_edge(edge_id))

    async def invalidate_edge(self, edge_id: str, at: float | None = None) -> GraphEdge:
        return await self._observe("invalidate_edge", lambda: self._storage.invalidate_edge(edge_id, at))

    # ==================== Queries ====================

    async def query(self, graph_filter: GraphFilter | None = None) -> QueryResult:
        return await self._observe("query", lambda: self._storage.query(graph_filter or GraphFilter()))

    async def traverse(self, start_id: str, options: TraversalOptions | None = None) -> QueryResult:
        return await self._observe("traverse", lambda: self._storage.traverse(start_id, options))

    async def find_paths(
        self,
        start_id: str,
        end_id: str,
        max_length: int = 3,
        edge_types: list[str] | None = None,
        limit: int = 10,
    ) -> list[GraphPath]:
        return await self._observe(
            "find_paths",
            lambda: self._storage.find_paths(start_id, end_id, max_length, edge_types, limit),
        )

    async def find_connected_nodes(
        self,
        start_id: str,
        edge_types: list[str] | None = None,
        node_types: list[str] | None = None,
        direction: str = "any",
        limit: int | None = None,
    ) -> list[GraphNode]:
        return await self._observe(
            "find_connected_nodes",
            lambda: self._storage.find_connected_nodes(start_id, edge_types, node_types, direction, limit),
        )

    async def get_node_at(self, node_id: str, as_of: float, mode: TimeMode = TimeMode.BOTH) -> GraphNode | None:
        return await self._observe("get_node_at", lambda: self._temporal.get_node_state(node_id, mode, as_of))

    async def get_edge_at(self, edge_id: str, as_of: float, mode: TimeMode = TimeMode.BOTH) -> GraphEdge | None:
        return await self._observe("get_edge_at", lambda: self._temporal.get_edge_state(edge_id, mode, as_of))

    async def get_episode_timeline(self, start: float, end: float) -> list[GraphNode]:
        return await self._observe("get_episode_timeline", lambda: self._storage.get_episode_timeline(start, end))

    async def get_snapshot(self, at: float) -> QueryResult:
        return await self._observe("get_snapshot", lambda: self._storage.get_snapshot(at))

    # ==================== Ingestion ====================

    async def ingest(self, episodes: list[EpisodeContent]) -> IngestResult:
        """Store episodes and the entities and relationships they mention.

        Episodes are processed in order, in chunks of ``ingest_chunk_size``,
        yielding to the event loop between chunks.
        """
        async def op() -> IngestResult:
            result = IngestResult()
            size = max(1, self.config.ingest_chunk_size)
            for start in range(0, len(episodes), size):
                for episode in episodes[start:start + size]:
                    await self._ingest_episode(episode, result)
                await asyncio.sleep(0)
            self._log.info(
                "Ingested %d episodes: %d entities, %d edges, %d degraded",
                len(result.episodes), len(result.entities), len(result.edges), len(result.degraded_episodes),
            )
            return result

        return await self._observe("ingest", op, episodes=len(episodes))

    async def _ingest_episode(self, episode: EpisodeContent, result: IngestResult) -> None:
        session = episode.session_id or "default"
        turn = await self._next_turn(session)
        previous = await self._session_episodes(session)

        node = GraphNode(
            id=make_episode_id(session, turn),
            type=NodeType.EPISODE,
            content=episode,
            metadata={
                "session_id": session,
                "turn": turn,
                "source": episode.source,
                "source_description": episode.source_description,
            },
            embedding=await self._try_embed(episode.body) if self.config.embed_episodes else None,
        )
        stored = await self._storage.add_node(node)
        result.episodes.append(stored)
        if previous:
            await self._try_add_edge(
                GraphEdge(type=EdgeType.FOLLOWS, source_id=stored.id, target_id=previous[-1].id),
                result,
            )

        context = [p.content.body for p in previous[-self.config.context_episodes:]]
        extraction = await self._reasoning.extract(episode.body, context)
        if extraction.degraded:
            result.degraded_episodes.append(stored.id)
            return

        resolved: dict[str, str] = {}
        for entity in extraction.output.entities:
            entity_node = await self._resolve_entity(entity, stored, result)
            if entity_node is None:
                continue
            resolved[entity.id] = entity_node.id
            await self._try_add_edge(
                GraphEdge(
                    type=EdgeType.MENTIONS,
                    source_id=stored.id,
                    target_id=entity_node.id,
                    episode_ids=[stored.id],
                    valid_at=episode.timestamp,
                ),
                result,
            )

        for rel in extraction.output.relationships:
            source_id = resolved.get(rel.source_id)
            target_id = resolved.get(rel.target_id)
            if source_id is None or target_id is None or source_id == target_id:
                result.skipped += 1
                continue
            edge_id = make_edge_id(rel.type, source_id, target_id)
            existing = await self._storage.get_edge(edge_id)
            if existing is not None:
                episode_ids = existing.episode_ids + [stored.id]
                updated = await self._storage.update_edge(edge_id, {"episode_ids": episode_ids})
                result.edges.append(updated)
                continue
            await self._try_add_edge(
                GraphEdge(
                    id=edge_id,
                    type=rel.type,
                    source_id=source_id,
                    target_id=target_id,
                    content=rel.description,
                    metadata={"is_temporary": rel.is_temporary, "confidence": rel.confidence},
                    episode_ids=[stored.id],
                    valid_at=episode.timestamp,
                ),
                result,
            )

        for entity_id in dict.fromkeys(resolved.values()):
            neighbors = await self._storage.find_connected_nodes(
                entity_id, node_types=[NodeType.ENTITY.value]
            )
            self._communities.update_node_community(entity_id, [n.id for n in neighbors])

    async def _resolve_entity(
        self,
        entity: ExtractedEntity,
        episode: GraphNode,
        result: IngestResult,
    ) -> GraphNode | None:
        """Reuse a known entity when it is the same thing, otherwise store a new one."""
        node_id = make_node_id(NodeType.ENTITY.value, entity.name)
        existing = await self._storage.get_node(node_id)
        if existing is None:
            duplicate = await self._find_duplicate(entity)
            if duplicate is not None:
                existing = duplicate
        if existing is not None:
            updates: dict[str, Any] = {"metadata": {"last_episode": episode.id}}
            if entity.summary and isinstance(existing.content, dict) and not existing.content.get("summary"):
                updates["content"] = {**existing.content, "summary": entity.summary}
            return await self._storage.update_node(existing.id, updates)

        node = GraphNode(
            id=node_id,
            type=NodeType.ENTITY,
            content={"name": entity.name, "summary": entity.summary},
            metadata={
                "entity_type": entity.type,
                "first_episode": episode.id,
                "last_episode": episode.id,
            },
            valid_at=episode.valid_at,
            embedding=await self._try_embed(entity.name) if self.config.embed_entities else None,
        )
        try:
            stored = await self._storage.add_node(node)
        except GraphMemoryError as e:
            self._log.warning("Skipping entity %s: %s", entity.name, e)
            result.skipped += 1
            return None
        result.entities.append(stored)
        return stored

    async def _find_duplicate(self, entity: ExtractedEntity) -> GraphNode | None:
        name_tokens = set(tokenize(entity.name))
        if not name_tokens:
            return None
        scored = []
        for node in await self._storage.list_nodes(NodeType.ENTITY.value):
            tokens = set(tokenize(_entity_name(node)))
            shared = len(name_tokens & tokens)
            if shared:
                scored.append((-shared, node.id, node))
        if not scored:
            return None
        scored.sort(key=lambda item: (item[0], item[1]))
        candidates = [node for _, _, node in scored[: self.config.dedupe_candidates]]
        decision = await self._reasoning.dedupe_entity(
            {"name": entity.name, "type": entity.type, "summary": entity.summary},
            [{"id": n.id, "name": _entity_name(n), "summary": n.text} for n in candidates],
        )
        min_confidence = self._reasoning.config.min_confidence
        if not decision.is_duplicate or decision.confidence < min_confidence:
            return None
        return next(n for n in candidates if n.id == decision.duplicate_id)

    async def _try_add_edge(self, edge: GraphEdge, result: IngestResult) -> GraphEdge | None:
        try:
            stored = await self._storage.add_edge(edge)
        except GraphMemoryError as e:
            self._log.warning("Skipping edge %s: %s", edge.id, e)
            result.skipped += 1
            return None
        result.edges.append(stored)
        return stored

    async def _try_embed(self, text: str) -> list[float] | None:
        if not text.strip():
            return None
        try:
            return await self._encoder.embed(text)
        except CollaboratorError as e:
            self._log.warning("Embedding unavailable, storing without vector: %s", e)
            return None

    async def _next_turn(self, session: str) -> int:
        if session not in self._turns:
            self._turns[session] = len(await self._session_episodes(session))
        turn = self._turns[session]
        self._turns[session] = turn + 1
        return turn

    async def _session_episodes(self, session: str) -> list[GraphNode]:
        result = await self._storage.query(GraphFilter(
            node_types=[NodeType.EPISODE.value],
            metadata={"session_id": session},
            deduplicate=False,
        ))
        return sorted(result.nodes, key=lambda n: (n.valid_at, n.metadata.get("turn", 0)))

    # ==================== Search ====================

    async def search(
        self,
        query: str,
        graph_filter: GraphFilter | None = None,
        options: RerankerConfig | None = None,
        center_ids: list[str] | None = None,
        reference_time: float | None = None,
    ) -> list[SearchResult]:
        """Rank Store-filtered candidates against ``query``."""
        async def op() -> list[SearchResult]:
            cfg = options or self._reranker.config
            candidate_filter = graph_filter or GraphFilter(
                node_types=[NodeType.ENTITY.value, NodeType.EPISODE.value, NodeType.FACT.value],
            )
            candidates = (await self._storage.query(candidate_filter)).nodes
            if not candidates or not query.strip():
                return []
            candidates = self._preselect(query, candidates)

            query_embedding = None
            if cfg.weights.get("vector", 0.0) > 0:
                query_embedding = await self._try_embed(query)
                if query_embedding is not None:
                    candidates = await self._with_embeddings(candidates)

            centers = center_ids if center_ids is not None else self._centers_for(query, candidates)
            graph = GraphContext(
                view=self._storage.undirected_view(at=reference_time),
                center_ids=centers,
                mentions=await self._storage.count_mentions(c.id for c in candidates),
            )

            cross_scores = None
            if cfg.use_cross_encoder:
                cross_scores = await self._cross_encode(query, candidates, cfg)

            return self._reranker.rank(
                query,
                candidates,
                query_embedding=query_embedding,
                graph=graph,
                cross_scores=cross_scores,
                reference_time=reference_time,
                config=cfg,
            )

        return await self._observe("search", op, query=query)

    def _preselect(self, query: str, candidates: list[GraphNode]) -> list[GraphNode]:
        """Best lexical matches up to ``search_candidate_limit``, newest first on ties."""
        limit = self.config.search_candidate_limit
        if not limit or len(candidates) <= limit:
            return candidates
        index = BM25Index()
        for c in candidates:
            index.add_document(c.id, c.text)
        lexical = index.score(query)
        ranked = sorted(candidates, key=lambda c: (-lexical.get(c.id, 0.0), -c.created_at, c.id))
        return ranked[:limit]

    async def _with_embeddings(self, candidates: list[GraphNode]) -> list[GraphNode]:
        missing = [c for c in candidates if not c.embedding and c.text.strip()]
        if not missing:
            return candidates
        try:
            vectors = await self._encoder.embed_batch([c.text for c in missing])
        except CollaboratorError as e:
            self._log.warning("Candidate embeddings unavailable: %s", e)
            return candidates
        filled = {c.id: vec for c, vec in zip(missing, vectors)}
        return [
            dataclasses.replace(c, embedding=filled[c.id]) if c.id in filled else c
            for c in candidates
        ]

    def _centers_for(self, query: str, candidates: list[GraphNode]) -> list[str]:
        """Entities whose whole name appears in the query."""
        query_tokens = set(tokenize(query))
        centers = []
        for c in candidates:
            if c.type != NodeType.ENTITY.value:
                continue
            name_tokens = set(tokenize(_entity_name(c)))
            if name_tokens and name_tokens <= query_tokens:
                centers.append(c.id)
        return centers

    async def _cross_encode(
        self,
        query: str,
        candidates: list[GraphNode],
        cfg: RerankerConfig,
    ) -> dict[str, float] | None:
        scores: dict[str, float] = {}
        for batch in self._reranker.cross_encoder_batches(candidates, cfg):
            batch_scores = await self._reasoning.score_relevance(query, [(c.id, c.text) for c in batch])
            if not batch_scores:
                # Failed batch: its candidates stay unscored and are not filtered
                continue
            scores.update(batch_scores)
        if not scores:
            self._log.warning("Cross-encoder produced no scores; ranking without it")
            return None
        return scores

    # ==================== Communities ====================

    async def detect_communities(self, node_types: list[str] | None = None) -> list[Community]:
        """Recompute communities over the entity graph."""
        async def op() -> list[Community]:
            types = node_types or [NodeType.ENTITY.value]
            nodes = [n for t in types for n in await self._storage.list_nodes(t)]
            edges = await self._storage.get_edges_for(n.id for n in nodes)
            return await self._communities.detect_communities(nodes, edges)

        return await self._observe("detect_communities", op)

    async def find_communities(self, node_ids: list[str] | None = None) -> list[Community]:
        """Communities containing any of ``node_ids``, or all communities."""
        async def op() -> list[Community]:
            if node_ids is None:
                return self._communities.communities()
            found: dict[str, Community] = {}
            for nid in node_ids:
                community = self._communities.community_of(nid)
                if community is not None:
                    found[community.id] = community
            return [found[cid] for cid in sorted(found)]

        return await self._observe("find_communities", op)

    async def merge_communities(self, min_similarity: float | None = None) -> list[Community]:
        async def op() -> list[Community]:
            return self._communities.merge_communities(min_similarity=min_similarity)

        return await self._observe("merge_communities", op)

    async def refresh_communities(self, threshold: float | None = None) -> list[Community]:
        """Recompute every community whose divergence exceeds ``threshold``."""
        async def op() -> list[Community]:
            limit = self.config.refresh_threshold if threshold is None else threshold
            refreshed: list[Community] = []
            for community in self._communities.get_communities_needing_refresh(limit):
                members = []
                for nid in sorted(community.members):
                    node = await self._storage.get_node(nid)
                    if node is not None:
                        members.append(node)
                edges = await self._storage.get_edges_for(community.members)
                refreshed.extend(await self._communities.refresh_community(community.id, members, edges))
            return refreshed

        return await self._observe("refresh_communities", op)

    def get_community_meta(self, community_id: str) -> CommunityMeta:
        return self._communities.get_community_meta(community_id)

    async def _label_community(self, community: Community, members: list[GraphNode]) -> tuple[str, float]:
        return await self._reasoning.label_community([m.text for m in members if m.text])

    # ==================== Explanation ====================

    async def find_path(self, source_id: str, target_id: str, max_length: int = 3) -> PathExplanation:
        """Shortest path between two nodes plus a natural-language explanation.

        Collaborator failures propagate as CollaboratorError.
        """
        async def op() -> PathExplanation:
            paths = await self._storage.find_paths(source_id, target_id, max_length=max_length, limit=1)
            if not paths:
                return PathExplanation(source_id, target_id, path=None)
            path = paths[0]
            if not path.edge_ids:
                return PathExplanation(source_id, target_id, path=path)
            steps = []
            for edge_id in path.edge_ids:
                edge = await self._storage.get_edge(edge_id)
                steps.append(await self._describe_edge(edge))
            source = await self._storage.get_node(source_id)
            target = await self._storage.get_node(target_id)
            explanation = await self._reasoning.explain_path(source.text, target.text, steps)
            return PathExplanation(source_id, target_id, path=path, explanation=explanation)

        return await self._observe("find_path", op)

    async def analyze_temporal_changes(self, node_id: str) -> TemporalAnalysis:
        """Edge history of a node, including expired edges, and inferred validity.

        Collaborator failures propagate as CollaboratorError.
        """
        async def op() -> TemporalAnalysis:
            node = await self._storage.get_node(node_id)
            if node is None:
                raise NodeNotFoundError(node_id)
            edges = await self._storage.get_incident_edges(node_id, include_expired=True)
            history = sorted(edges, key=lambda e: (e.valid_at or e.created_at, e.id))
            lines = [await self._describe_edge(e, with_times=True) for e in history]
            inferred = await self._reasoning.infer_temporal(node.text, lines)
            return TemporalAnalysis(node_id=node_id, history=history, inferred=inferred)

        return await self._observe("analyze_temporal_changes", op)

    async def _describe_edge(self, edge: GraphEdge, with_times: bool = False) -> str:
        source = await self._storage.get_node(edge.source_id)
        target = await self._storage.get_node(edge.target_id)
        text = f"{source.text if source else edge.source_id} -[{edge.type}]-> {target.text if target else edge.target_id}"
        if edge.text:
            text += f" ({edge.text})"
        if with_times:
            text += f" valid_at={edge.valid_at} invalid_at={edge.invalid_at} expired_at={edge.expired_at}"
        return text

    # ==================== Maintenance ====================

    async def clear(self) -> None:
        await self._storage.clear()
        self._communities.clear()
        self._encoder.cache.clear()
        self._turns.clear()

    def get_stats(self) -> dict[str, Any]:
        cache = self._encoder.cache.stats()
        return {
            "graph": self._storage.get_stats(),
            "communities": len(self._communities.communities()),
            "cache": {"size": cache.size, "hits": cache.hits, "misses": cache.misses},
        }


def _entity_name(node: GraphNode) -> str:
    if isinstance(node.content, dict) and node.content.get("name"):
        return str(node.content["name"])
    return node.text
