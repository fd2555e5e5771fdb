"""Tests for graph models and the in-memory bi-temporal store."""

import pytest

from src.chronograph.errors import (
    DanglingEdgeError,
    EdgeNotFoundError,
    NodeNotFoundError,
    TemporalInvariantError,
)
from src.chronograph.models import (
    EdgeType,
    EpisodeContent,
    GraphEdge,
    GraphNode,
    NodeType,
    make_edge_id,
    make_episode_id,
    make_node_id,
)
from src.chronograph.storage.base import GraphFilter, TraversalOptions
from src.chronograph.storage.memory_graph import InMemoryGraphStorage

T0 = 1_700_000_000.0
DAY = 86400.0


def entity(node_id: str, name: str, created_at: float = T0, **kwargs) -> GraphNode:
    return GraphNode(id=node_id, type=NodeType.ENTITY, content={"name": name}, created_at=created_at, **kwargs)


def episode(node_id: str, body: str, timestamp: float, **kwargs) -> GraphNode:
    return GraphNode(
        id=node_id,
        type=NodeType.EPISODE,
        content=EpisodeContent(body=body, timestamp=timestamp, session_id="s1"),
        created_at=timestamp,
        **kwargs,
    )


class TestGraphModels:
    """Tests for node and edge construction rules."""

    def test_valid_at_defaults_to_created_at(self):
        node = entity("n1", "Alice", created_at=T0)
        assert node.valid_at == T0

    def test_episode_valid_at_defaults_to_content_timestamp(self):
        node = episode("ep1", "hello", T0 - 60)
        assert node.valid_at == T0 - 60

    def test_episode_valid_at_mismatch_fails(self):
        with pytest.raises(TemporalInvariantError):
            GraphNode(
                id="ep1",
                type="episode",
                content=EpisodeContent(body="hi", timestamp=T0),
                valid_at=T0 + 1,
            )

    def test_episode_without_timestamp_fails(self):
        with pytest.raises(TemporalInvariantError):
            GraphNode(id="ep1", type="episode", content=EpisodeContent(body="hi", timestamp=None))

    def test_expired_before_created_fails(self):
        with pytest.raises(TemporalInvariantError):
            entity("n1", "Alice", created_at=T0, expired_at=T0 - 1)

    def test_edge_invalid_before_valid_fails(self):
        with pytest.raises(TemporalInvariantError):
            GraphEdge(type="knows", source_id="a", target_id="b", valid_at=T0, invalid_at=T0 - 1)

    def test_deterministic_ids(self):
        assert make_node_id("entity", "Alice  Smith") == make_node_id("entity", "alice smith")
        assert make_node_id("entity", "Alice").startswith("entity_")
        assert make_edge_id("knows", "a", "b").startswith("rel_")
        assert make_edge_id("knows", "a", "b") != make_edge_id("knows", "b", "a")
        assert make_episode_id("s1", 3) == "ep_s1_3"

    def test_node_serialization(self):
        node = episode("ep1", "hello there", T0, metadata={"role": "user"})
        restored = GraphNode.from_dict(node.to_dict())
        assert restored.id == node.id
        assert restored.content.body == "hello there"
        assert restored.valid_at == T0
        assert restored.metadata == {"role": "user"}


class TestNodeCrud:
    """Tests for node lifecycle in the store."""

    @pytest.fixture
    def store(self):
        return InMemoryGraphStorage()

    @pytest.mark.asyncio
    async def test_add_and_get(self, store):
        await store.add_node(entity("n1", "Alice"))
        node = await store.get_node("n1")
        assert node is not None
        assert node.content["name"] == "Alice"

    @pytest.mark.asyncio
    async def test_delete_removes_node(self, store):
        await store.add_node(entity("n1", "Alice"))
        await store.delete_node("n1")
        assert await store.get_node("n1") is None

    @pytest.mark.asyncio
    async def test_delete_cascades_edges(self, store):
        await store.add_node(entity("a", "A"))
        await store.add_node(entity("b", "B"))
        edge = await store.add_edge(GraphEdge(type="knows", source_id="a", target_id="b", created_at=T0))
        await store.delete_node("b")
        assert await store.get_edge(edge.id) is None

    @pytest.mark.asyncio
    async def test_update_missing_node_raises(self, store):
        with pytest.raises(NodeNotFoundError):
            await store.update_node("missing", {"metadata": {"x": 1}})

    @pytest.mark.asyncio
    async def test_delete_missing_node_raises(self, store):
        with pytest.raises(NodeNotFoundError):
            await store.delete_node("missing")

    @pytest.mark.asyncio
    async def test_update_merges_and_preserves_temporal_fields(self, store):
        await store.add_node(entity("n1", "Alice", created_at=T0, valid_at=T0 - DAY, metadata={"a": 1}))
        updated = await store.update_node("n1", {"metadata": {"b": 2}, "valid_at": None})
        assert updated.metadata == {"a": 1, "b": 2}
        assert updated.valid_at == T0 - DAY
        assert updated.created_at == T0

    @pytest.mark.asyncio
    async def test_created_at_is_immutable(self, store):
        await store.add_node(entity("n1", "Alice", created_at=T0))
        with pytest.raises(TemporalInvariantError):
            await store.update_node("n1", {"created_at": T0 + 5})


class TestEdgeCrud:
    """Tests for edges and their invariants."""

    @pytest.mark.asyncio
    async def test_dangling_edge_rejected(self):
        store = InMemoryGraphStorage()
        await store.add_node(entity("a", "A"))
        with pytest.raises(DanglingEdgeError):
            await store.add_edge(GraphEdge(type="knows", source_id="a", target_id="ghost"))

    @pytest.mark.asyncio
    async def test_update_missing_edge_raises(self):
        store = InMemoryGraphStorage()
        with pytest.raises(EdgeNotFoundError):
            await store.update_edge("missing", {"weight": 2.0})

    @pytest.mark.asyncio
    async def test_invalidate_edge_hides_it_from_default_queries(self):
        store = InMemoryGraphStorage()
        await store.add_node(entity("a", "A"))
        await store.add_node(entity("b", "B"))
        edge = await store.add_edge(GraphEdge(type="knows", source_id="a", target_id="b", created_at=T0))

        await store.invalidate_edge(edge.id, at=T0 + DAY)

        current = await store.query(GraphFilter())
        assert current.edges == []
        past = await store.query(GraphFilter(as_of=T0 + 1))
        assert [e.id for e in past.edges] == [edge.id]
        everything = await store.query(GraphFilter(include_expired=True))
        assert [e.id for e in everything.edges] == [edge.id]
        assert (await store.get_edge(edge.id)).invalid_at == T0 + DAY

    @pytest.mark.asyncio
    async def test_incident_edges_keep_parallel_history(self):
        store = InMemoryGraphStorage()
        await store.add_node(entity("alice", "Alice"))
        await store.add_node(entity("acme", "Acme"))
        works_at = await store.add_edge(GraphEdge(type="works_at", source_id="alice", target_id="acme", created_at=T0))
        left = await store.add_edge(GraphEdge(type="left", source_id="alice", target_id="acme", created_at=T0 + DAY))
        await store.invalidate_edge(works_at.id, at=T0 + DAY)

        history = await store.get_incident_edges("acme", include_expired=True)
        assert [e.id for e in history] == [works_at.id, left.id]
        assert [e.id for e in await store.get_incident_edges("acme")] == [left.id]
        with pytest.raises(NodeNotFoundError):
            await store.get_incident_edges("ghost")


class TestQuery:
    """Tests for filtered, deduplicated queries."""

    @pytest.mark.asyncio
    async def test_type_and_metadata_filters(self):
        store = InMemoryGraphStorage()
        await store.add_node(entity("a", "Alice", metadata={"team": "red"}))
        await store.add_node(entity("b", "Bob", metadata={"team": "blue"}))
        await store.add_node(episode("ep1", "Alice met Bob", T0))

        result = await store.query(GraphFilter(node_types=["entity"], metadata={"team": "red"}))
        assert [n.id for n in result.nodes] == ["a"]

    @pytest.mark.asyncio
    async def test_expired_node_excluded_by_default(self):
        store = InMemoryGraphStorage()
        await store.add_node(entity("a", "Alice", created_at=T0, expired_at=T0 + 10))
        assert (await store.query(GraphFilter())).nodes == []
        assert len((await store.query(GraphFilter(as_of=T0 + 5))).nodes) == 1

    @pytest.mark.asyncio
    async def test_identical_facts_collapse_to_earliest(self):
        store = InMemoryGraphStorage()
        await store.add_node(GraphNode(id="f2", type="fact", content="Sky is blue", created_at=T0 + 5))
        await store.add_node(GraphNode(id="f1", type="fact", content="sky is  BLUE", created_at=T0))

        deduped = await store.query(GraphFilter(node_types=["fact"]))
        assert [n.id for n in deduped.nodes] == ["f1"]
        raw = await store.query(GraphFilter(node_types=["fact"], deduplicate=False))
        assert len(raw.nodes) == 2

    @pytest.mark.asyncio
    async def test_episodes_with_same_entities_collapse(self):
        store = InMemoryGraphStorage()
        await store.add_node(entity("a", "Alice"))
        await store.add_node(episode("ep1", "Alice here", T0))
        await store.add_node(episode("ep2", "Alice again", T0 + 60))
        await store.add_edge(GraphEdge(type=EdgeType.MENTIONS, source_id="ep1", target_id="a"))
        await store.add_edge(GraphEdge(type=EdgeType.MENTIONS, source_id="ep2", target_id="a"))

        result = await store.query(GraphFilter(node_types=["episode"]))
        assert [n.id for n in result.nodes] == ["ep1"]

    @pytest.mark.asyncio
    async def test_embedding_similarity_filter(self):
        store = InMemoryGraphStorage()
        await store.add_node(entity("a", "A", embedding=[1.0, 0.0]))
        await store.add_node(entity("b", "B", embedding=[0.0, 1.0]))
        await store.add_node(entity("c", "C", embedding=[0.9, 0.1]))

        result = await store.query(GraphFilter(embedding=[1.0, 0.0], min_similarity=0.5))
        assert [n.id for n in result.nodes] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_node_ids_with_neighbors(self):
        store = InMemoryGraphStorage()
        for nid in ("a", "b", "c"):
            await store.add_node(entity(nid, nid.upper()))
        await store.add_edge(GraphEdge(type="knows", source_id="a", target_id="b"))

        result = await store.query(GraphFilter(node_ids=["a"], include_neighbors=True))
        assert {n.id for n in result.nodes} == {"a", "b"}
        assert len(result.edges) == 1


class TestTraversal:
    """Tests for traversal and path finding."""

    @pytest.fixture
    async def chain(self):
        # a -> b -> c -> d, plus a -> e of another type
        store = InMemoryGraphStorage()
        for nid in "abcde":
            await store.add_node(entity(nid, nid.upper()))
        await store.add_edge(GraphEdge(type="next", source_id="a", target_id="b"))
        await store.add_edge(GraphEdge(type="next", source_id="b", target_id="c"))
        await store.add_edge(GraphEdge(type="next", source_id="c", target_id="d"))
        await store.add_edge(GraphEdge(type="other", source_id="a", target_id="e"))
        return store

    @pytest.mark.asyncio
    async def test_traverse_respects_depth(self, chain):
        result = await chain.traverse("a", TraversalOptions(max_depth=2, edge_types=["next"]))
        assert [n.id for n in result.nodes] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_traverse_direction(self, chain):
        outbound = await chain.traverse("c", TraversalOptions(max_depth=3, direction="outbound"))
        inbound = await chain.traverse("c", TraversalOptions(max_depth=3, direction="inbound"))
        assert [n.id for n in outbound.nodes] == ["c", "d"]
        assert {n.id for n in inbound.nodes} == {"c", "b", "a"}

    @pytest.mark.asyncio
    async def test_traverse_unknown_start(self, chain):
        with pytest.raises(NodeNotFoundError):
            await chain.traverse("zzz")

    @pytest.mark.asyncio
    async def test_find_paths(self, chain):
        paths = await chain.find_paths("a", "d", max_length=3)
        assert len(paths) == 1
        assert paths[0].node_ids == ["a", "b", "c", "d"]
        assert paths[0].edge_types == ["next", "next", "next"]

        assert await chain.find_paths("a", "d", max_length=2) == []

    @pytest.mark.asyncio
    async def test_neighbors_and_path_length(self, chain):
        assert set(await chain.get_neighbors("b")) == {"a", "c"}
        assert await chain.get_neighbors("b", direction="outbound") == ["c"]
        assert await chain.shortest_path_length("d", "e") == 4
        assert await chain.shortest_path_length("d", "e", edge_types=["next"]) is None
        with pytest.raises(NodeNotFoundError):
            await chain.shortest_path_length("a", "zz")

    @pytest.mark.asyncio
    async def test_find_connected_nodes(self, chain):
        connected = await chain.find_connected_nodes("a", edge_types=["next"])
        assert [n.id for n in connected] == ["b"]
        everything = await chain.find_connected_nodes("a")
        assert {n.id for n in everything} == {"b", "e"}


class TestTimeline:
    """Tests for episode timeline and snapshots."""

    @pytest.mark.asyncio
    async def test_episode_timeline_sorted_by_valid_time(self):
        store = InMemoryGraphStorage()
        await store.add_node(episode("ep2", "second", T0 + 2 * DAY))
        await store.add_node(episode("ep1", "first", T0 + DAY))
        await store.add_node(episode("ep3", "late", T0 + 10 * DAY))

        timeline = await store.get_episode_timeline(T0, T0 + 5 * DAY)
        assert [n.id for n in timeline] == ["ep1", "ep2"]

    @pytest.mark.asyncio
    async def test_snapshot_excludes_episodes_and_future_nodes(self):
        store = InMemoryGraphStorage()
        await store.add_node(entity("old", "Old", created_at=T0))
        await store.add_node(entity("new", "New", created_at=T0 + 5 * DAY))
        await store.add_node(episode("ep1", "talk", T0))

        snapshot = await store.get_snapshot(T0 + DAY)
        assert [n.id for n in snapshot.nodes] == ["old"]
