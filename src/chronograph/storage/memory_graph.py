"""In-memory bi-temporal graph storage.

Records live in plain dicts keyed by id; adjacency lives in a NetworkX
MultiDiGraph keyed by edge id so parallel edges of different types can
coexist between the same pair of nodes.

Every method body runs without awaiting, so each call observes a consistent
snapshot even when several coroutines share the store.
"""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
import time
from dataclasses import dataclass
from itertools import islice
from typing import Any, Iterable

import networkx as nx

from src.chronograph.errors import (
    DanglingEdgeError,
    EdgeNotFoundError,
    NodeNotFoundError,
    TemporalInvariantError,
)
from src.chronograph.models import (
    EdgeType,
    GraphEdge,
    GraphNode,
    GraphPath,
    NodeType,
    normalize_content,
)
from src.chronograph.search.fusion import cosine_similarity
from src.chronograph.storage.base import (
    GraphFilter,
    GraphStorageBackend,
    QueryResult,
    TraversalOptions,
)

_TEMPORAL_FIELDS = ("valid_at", "expired_at", "invalid_at")
_NODE_FIELDS = {f.name for f in dataclasses.fields(GraphNode)}
_EDGE_FIELDS = {f.name for f in dataclasses.fields(GraphEdge)}


@dataclass
class GraphStoreConfig:
    """Configuration for in-memory graph storage."""
    max_path_results: int = 10
    max_traversal_nodes: int = 1000


class InMemoryGraphStorage(GraphStorageBackend):
    """Bi-temporal node/edge store with time-travel queries."""

    def __init__(
        self,
        config: GraphStoreConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config or GraphStoreConfig()
        self._log = logger or logging.getLogger(__name__)
        self._nodes: dict[str, GraphNode] = {}
        self._edges: dict[str, GraphEdge] = {}
        self._graph: nx.MultiDiGraph = nx.MultiDiGraph()

    # ==================== Nodes ====================

    async def add_node(self, node: GraphNode) -> GraphNode:
        stored = copy.deepcopy(node)
        self._nodes[stored.id] = stored
        self._graph.add_node(stored.id)
        self._log.debug("Stored node %s (%s)", stored.id, stored.type)
        return stored

    async def get_node(self, node_id: str) -> GraphNode | None:
        return self._nodes.get(node_id)

    async def update_node(self, node_id: str, updates: dict[str, Any]) -> GraphNode:
        """Merge ``updates`` into a stored node.

        ``metadata`` is merged key by key. Temporal fields passed as None keep
        their stored value. ``created_at`` is immutable.
        """
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        changes = self._merge_changes(node, updates, _NODE_FIELDS)
        updated = dataclasses.replace(node, **changes)
        self._nodes[node_id] = updated
        return updated

    async def delete_node(self, node_id: str) -> None:
        if node_id not in self._nodes:
            raise NodeNotFoundError(node_id)
        for edge_id in self._incident_edge_ids(node_id):
            self._edges.pop(edge_id, None)
        self._graph.remove_node(node_id)
        del self._nodes[node_id]
        self._log.debug("Deleted node %s", node_id)

    # ==================== Edges ====================

    async def add_edge(self, edge: GraphEdge) -> GraphEdge:
        for endpoint in (edge.source_id, edge.target_id):
            if endpoint not in self._nodes:
                raise DanglingEdgeError(edge.id, endpoint)
        stored = copy.deepcopy(edge)
        previous = self._edges.get(stored.id)
        if previous is not None:
            self._graph.remove_edge(previous.source_id, previous.target_id, key=previous.id)
        self._edges[stored.id] = stored
        self._graph.add_edge(stored.source_id, stored.target_id, key=stored.id)
        return stored

    async def get_edge(self, edge_id: str) -> GraphEdge | None:
        return self._edges.get(edge_id)

    async def update_edge(self, edge_id: str, updates: dict[str, Any]) -> GraphEdge:
        edge = self._edges.get(edge_id)
        if edge is None:
            raise EdgeNotFoundError(edge_id)
        for key in ("source_id", "target_id"):
            if key in updates and updates[key] != getattr(edge, key):
                raise ValueError(f"Edge {edge_id} endpoints cannot be changed")
        changes = self._merge_changes(edge, updates, _EDGE_FIELDS)
        updated = dataclasses.replace(edge, **changes)
        self._edges[edge_id] = updated
        return updated

    async def delete_edge(self, edge_id: str) -> None:
        edge = self._edges.pop(edge_id, None)
        if edge is None:
            raise EdgeNotFoundError(edge_id)
        self._graph.remove_edge(edge.source_id, edge.target_id, key=edge_id)

    async def invalidate_edge(self, edge_id: str, at: float | None = None) -> GraphEdge:
        """Close an edge's validity window at ``at`` (default now)."""
        at = time.time() if at is None else at
        return await self.update_edge(edge_id, {"invalid_at": at, "expired_at": at})

    def _merge_changes(self, record: Any, updates: dict[str, Any], allowed: set[str]) -> dict[str, Any]:
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"Unknown fields for {record.id}: {sorted(unknown)}")
        if "id" in updates and updates["id"] != record.id:
            raise ValueError(f"Record id {record.id} cannot be changed")
        if "created_at" in updates and updates["created_at"] not in (None, record.created_at):
            raise TemporalInvariantError(f"created_at of {record.id} is immutable")

        changes: dict[str, Any] = {}
        for key, value in updates.items():
            if key in ("id", "created_at"):
                continue
            if key in _TEMPORAL_FIELDS and value is None:
                continue
            if key == "metadata":
                merged = dict(record.metadata)
                merged.update(value or {})
                value = merged
            changes[key] = value
        return changes

    # ==================== Queries ====================

    async def query(self, graph_filter: GraphFilter) -> QueryResult:
        """Return nodes and edges matching every predicate of the filter.

        Metadata predicates apply to nodes. Edges are returned when their own
        type and temporal predicates match and both endpoints matched.
        """
        now = time.time()
        reference = graph_filter.as_of if graph_filter.as_of is not None else now

        candidate_ids: Iterable[str]
        if graph_filter.node_ids is not None:
            wanted = {nid for nid in graph_filter.node_ids if nid in self._nodes}
            if graph_filter.include_neighbors:
                for nid in list(wanted):
                    wanted.update(nx.all_neighbors(self._graph, nid))
            candidate_ids = wanted
        else:
            candidate_ids = self._nodes.keys()

        node_types = set(graph_filter.node_types) if graph_filter.node_types else None
        matched: list[GraphNode] = []
        similarity: dict[str, float] = {}
        for nid in candidate_ids:
            node = self._nodes[nid]
            if node_types is not None and node.type not in node_types:
                continue
            if not self._passes_temporal(node, graph_filter, reference):
                continue
            if graph_filter.metadata and not _metadata_matches(node.metadata, graph_filter.metadata):
                continue
            if graph_filter.embedding is not None:
                if not node.embedding:
                    continue
                score = cosine_similarity(graph_filter.embedding, node.embedding)
                if score < graph_filter.min_similarity:
                    continue
                similarity[nid] = score
            matched.append(node)

        if graph_filter.embedding is not None:
            matched.sort(key=lambda n: (-similarity[n.id], n.id))
        else:
            matched.sort(key=lambda n: (n.created_at, n.id))

        matched_ids = {n.id for n in matched}
        nodes = self._deduplicate(matched) if graph_filter.deduplicate else matched
        if graph_filter.max_results is not None:
            nodes = nodes[: graph_filter.max_results]

        edge_types = set(graph_filter.edge_types) if graph_filter.edge_types else None
        edges = [
            edge for edge in self._edges.values()
            if (edge_types is None or edge.type in edge_types)
            and edge.source_id in matched_ids
            and edge.target_id in matched_ids
            and self._passes_temporal(edge, graph_filter, reference)
        ]
        edges.sort(key=lambda e: (e.created_at, e.id))
        return QueryResult(nodes=nodes, edges=edges)

    def _passes_temporal(self, record: GraphNode | GraphEdge, f: GraphFilter, reference: float) -> bool:
        if not f.include_expired and record.is_expired(reference):
            return False
        if f.as_of is not None and record.created_at > f.as_of:
            return False
        if f.created_after is not None and record.created_at < f.created_after:
            return False
        if f.created_before is not None and record.created_at > f.created_before:
            return False
        valid_at = record.valid_at
        if f.valid_after is not None and (valid_at is None or valid_at < f.valid_after):
            return False
        if f.valid_before is not None and (valid_at is None or valid_at > f.valid_before):
            return False
        if f.valid_at is not None:
            if valid_at is None or valid_at > f.valid_at:
                return False
            invalid_at = getattr(record, "invalid_at", None)
            if invalid_at is not None and invalid_at <= f.valid_at:
                return False
        return True

    def _deduplicate(self, nodes: list[GraphNode]) -> list[GraphNode]:
        """Collapse logically identical nodes to their earliest-created member."""
        groups: dict[Any, GraphNode] = {}
        order: list[Any] = []
        for node in nodes:
            key = self._dedup_key(node)
            current = groups.get(key)
            if current is None:
                groups[key] = node
                order.append(key)
            elif (node.created_at, node.id) < (current.created_at, current.id):
                groups[key] = node
        return [groups[key] for key in order]

    def _dedup_key(self, node: GraphNode) -> Any:
        if node.is_episode:
            entity_ids = frozenset(
                e.target_id for e in self._out_edges(node.id)
                if e.type == EdgeType.MENTIONS.value
            )
            if entity_ids:
                return ("episode", entity_ids)
        metadata = json.dumps(node.metadata, sort_keys=True, default=str)
        return (node.type, normalize_content(node.content), metadata)

    # ==================== Traversal ====================

    async def traverse(self, start_id: str, options: TraversalOptions | None = None) -> QueryResult:
        """Breadth-first walk from ``start_id`` bounded by ``max_depth``."""
        options = options or TraversalOptions()
        start = self._nodes.get(start_id)
        if start is None:
            raise NodeNotFoundError(start_id)

        reference = options.as_of if options.as_of is not None else time.time()
        edge_types = set(options.edge_types) if options.edge_types else None
        node_types = set(options.node_types) if options.node_types else None
        limit = options.limit or self.config.max_traversal_nodes

        visited = {start_id}
        result_nodes = [start]
        result_edges: list[GraphEdge] = []
        frontier = [start_id]

        for _ in range(options.max_depth):
            next_frontier: list[str] = []
            for nid in frontier:
                for edge, neighbor_id in self._walk_edges(nid, options.direction):
                    if edge_types is not None and edge.type not in edge_types:
                        continue
                    if not self._visible(edge, reference, options.as_of, options.include_expired):
                        continue
                    neighbor = self._nodes[neighbor_id]
                    if not self._visible(neighbor, reference, options.as_of, options.include_expired):
                        continue
                    if neighbor_id in visited:
                        continue
                    visited.add(neighbor_id)
                    result_edges.append(edge)
                    next_frontier.append(neighbor_id)
                    if node_types is None or neighbor.type in node_types:
                        result_nodes.append(neighbor)
                    if len(result_nodes) >= limit:
                        return QueryResult(nodes=result_nodes, edges=result_edges)
            if not next_frontier:
                break
            frontier = next_frontier

        return QueryResult(nodes=result_nodes, edges=result_edges)

    async def find_paths(
        self,
        start_id: str,
        end_id: str,
        max_length: int = 3,
        edge_types: list[str] | None = None,
        limit: int = 10,
    ) -> list[GraphPath]:
        """Simple paths between two nodes, shortest first, ignoring direction."""
        for nid in (start_id, end_id):
            if nid not in self._nodes:
                raise NodeNotFoundError(nid)
        if start_id == end_id:
            return [GraphPath(node_ids=[start_id], edge_ids=[], edge_types=[])]

        view = self.undirected_view(edge_types=edge_types)
        if start_id not in view or end_id not in view:
            return []

        paths: list[GraphPath] = []
        try:
            for node_path in islice(nx.shortest_simple_paths(view, start_id, end_id), limit):
                if len(node_path) - 1 > max_length:
                    break
                paths.append(path_from_nodes(view, node_path))
        except nx.NetworkXNoPath:
            pass
        return paths

    async def find_connected_nodes(
        self,
        start_id: str,
        edge_types: list[str] | None = None,
        node_types: list[str] | None = None,
        direction: str = "any",
        limit: int | None = None,
    ) -> list[GraphNode]:
        """Direct neighbors of a node through visible edges."""
        if start_id not in self._nodes:
            raise NodeNotFoundError(start_id)
        now = time.time()
        wanted_edges = set(edge_types) if edge_types else None
        wanted_nodes = set(node_types) if node_types else None

        seen: set[str] = set()
        connected: list[GraphNode] = []
        for edge, neighbor_id in self._walk_edges(start_id, direction):
            if wanted_edges is not None and edge.type not in wanted_edges:
                continue
            if edge.is_expired(now) or neighbor_id in seen:
                continue
            neighbor = self._nodes[neighbor_id]
            if neighbor.is_expired(now):
                continue
            if wanted_nodes is not None and neighbor.type not in wanted_nodes:
                continue
            seen.add(neighbor_id)
            connected.append(neighbor)
            if limit is not None and len(connected) >= limit:
                break
        return connected

    def undirected_view(
        self,
        edge_types: list[str] | None = None,
        node_types: list[str] | None = None,
        at: float | None = None,
    ) -> nx.Graph:
        """Simple undirected graph of records visible at ``at`` (default now).

        Parallel edges collapse to the heaviest one; its id and type are kept
        as the ``edge_id`` and ``type`` attributes.
        """
        at = time.time() if at is None else at
        wanted_edges = set(edge_types) if edge_types else None
        wanted_nodes = set(node_types) if node_types else None

        view = nx.Graph()
        for node in self._nodes.values():
            if node.is_expired(at) or node.created_at > at:
                continue
            if wanted_nodes is not None and node.type not in wanted_nodes:
                continue
            view.add_node(node.id)
        for edge in self._edges.values():
            if wanted_edges is not None and edge.type not in wanted_edges:
                continue
            if edge.is_expired(at) or edge.created_at > at:
                continue
            if edge.source_id not in view or edge.target_id not in view:
                continue
            if edge.source_id == edge.target_id:
                continue
            existing = view.get_edge_data(edge.source_id, edge.target_id)
            if existing is not None and existing["weight"] >= edge.weight:
                continue
            view.add_edge(
                edge.source_id, edge.target_id,
                edge_id=edge.id, type=edge.type, weight=edge.weight,
            )
        return view

    # ==================== Timeline ====================

    async def get_episode_timeline(self, start: float, end: float) -> list[GraphNode]:
        """Non-expired episodes whose valid time falls within [start, end]."""
        now = time.time()
        episodes = [
            node for node in self._nodes.values()
            if node.is_episode
            and node.valid_at is not None
            and start <= node.valid_at <= end
            and not node.is_expired(now)
        ]
        episodes.sort(key=lambda n: (n.valid_at, n.id))
        return episodes

    async def get_snapshot(self, at: float) -> QueryResult:
        """Non-episode nodes and edges as both timelines stood at ``at``."""
        nodes = [
            node for node in self._nodes.values()
            if not node.is_episode
            and node.created_at <= at
            and not node.is_expired(at)
            and (node.valid_at is None or node.valid_at <= at)
        ]
        nodes.sort(key=lambda n: (n.created_at, n.id))
        ids = {n.id for n in nodes}
        edges = [
            edge for edge in self._edges.values()
            if edge.source_id in ids and edge.target_id in ids
            and edge.created_at <= at
            and not edge.is_expired(at)
        ]
        edges.sort(key=lambda e: (e.created_at, e.id))
        return QueryResult(nodes=nodes, edges=edges)

    # ==================== Helpers ====================

    async def list_nodes(self, node_type: str | None = None, include_expired: bool = False) -> list[GraphNode]:
        now = time.time()
        return [
            n for n in self._nodes.values()
            if (node_type is None or n.type == node_type)
            and (include_expired or not n.is_expired(now))
        ]

    async def list_edges(self, edge_type: str | None = None, include_expired: bool = False) -> list[GraphEdge]:
        now = time.time()
        return [
            e for e in self._edges.values()
            if (edge_type is None or e.type == edge_type)
            and (include_expired or not e.is_expired(now))
        ]

    async def get_edges_for(self, node_ids: Iterable[str]) -> list[GraphEdge]:
        """Visible edges with both endpoints in ``node_ids``."""
        ids = set(node_ids)
        now = time.time()
        return [
            e for e in self._edges.values()
            if e.source_id in ids and e.target_id in ids and not e.is_expired(now)
        ]

    async def get_incident_edges(self, node_id: str, include_expired: bool = False) -> list[GraphEdge]:
        """Every edge touching a node, parallel edges included, oldest first."""
        if node_id not in self._nodes:
            raise NodeNotFoundError(node_id)
        now = time.time()
        edges = [
            self._edges[eid] for eid in self._incident_edge_ids(node_id)
            if include_expired or not self._edges[eid].is_expired(now)
        ]
        edges.sort(key=lambda e: (e.created_at, e.id))
        return edges

    async def get_neighbors(self, node_id: str, direction: str = "any") -> list[str]:
        """Ids of nodes one visible edge away."""
        return [n.id for n in await self.find_connected_nodes(node_id, direction=direction)]

    async def shortest_path_length(
        self,
        start_id: str,
        end_id: str,
        edge_types: list[str] | None = None,
    ) -> int | None:
        """Hop count between two nodes ignoring direction, or None if unreachable."""
        for nid in (start_id, end_id):
            if nid not in self._nodes:
                raise NodeNotFoundError(nid)
        view = self.undirected_view(edge_types=edge_types)
        if start_id not in view or end_id not in view:
            return None
        try:
            return nx.shortest_path_length(view, start_id, end_id)
        except nx.NetworkXNoPath:
            return None

    async def count_mentions(self, node_ids: Iterable[str]) -> dict[str, int]:
        """Number of episodes mentioning each node."""
        counts: dict[str, int] = {}
        for nid in node_ids:
            if nid not in self._nodes:
                continue
            counts[nid] = sum(
                1 for e in self._in_edges(nid)
                if e.type == EdgeType.MENTIONS.value
                and self._nodes[e.source_id].type == NodeType.EPISODE.value
            )
        return counts

    async def clear(self) -> None:
        self._nodes.clear()
        self._edges.clear()
        self._graph.clear()

    def get_stats(self) -> dict[str, Any]:
        node_types: dict[str, int] = {}
        for node in self._nodes.values():
            node_types[node.type] = node_types.get(node.type, 0) + 1
        edge_types: dict[str, int] = {}
        for edge in self._edges.values():
            edge_types[edge.type] = edge_types.get(edge.type, 0) + 1
        return {
            "nodes": len(self._nodes),
            "edges": len(self._edges),
            "node_types": node_types,
            "edge_types": edge_types,
        }

    def _visible(self, record: GraphNode | GraphEdge, reference: float, as_of: float | None, include_expired: bool) -> bool:
        if as_of is not None and record.created_at > as_of:
            return False
        return include_expired or not record.is_expired(reference)

    def _out_edges(self, node_id: str) -> list[GraphEdge]:
        return [self._edges[key] for _, _, key in self._graph.out_edges(node_id, keys=True)]

    def _in_edges(self, node_id: str) -> list[GraphEdge]:
        return [self._edges[key] for _, _, key in self._graph.in_edges(node_id, keys=True)]

    def _incident_edge_ids(self, node_id: str) -> set[str]:
        return {e.id for e in self._out_edges(node_id)} | {e.id for e in self._in_edges(node_id)}

    def _walk_edges(self, node_id: str, direction: str) -> list[tuple[GraphEdge, str]]:
        """(edge, neighbor id) pairs for a direction: outbound, inbound or any."""
        if direction not in ("outbound", "inbound", "any"):
            raise ValueError(f"Unknown traversal direction: {direction}")
        pairs: list[tuple[GraphEdge, str]] = []
        if direction in ("outbound", "any"):
            pairs.extend((e, e.target_id) for e in self._out_edges(node_id))
        if direction in ("inbound", "any"):
            pairs.extend((e, e.source_id) for e in self._in_edges(node_id))
        pairs.sort(key=lambda pair: (pair[0].created_at, pair[0].id))
        return pairs


def path_from_nodes(view: nx.Graph, node_path: list[str]) -> GraphPath:
    """Build a GraphPath from a node sequence in an ``undirected_view``."""
    edge_ids = []
    edge_types = []
    for u, v in zip(node_path, node_path[1:]):
        data = view.get_edge_data(u, v)
        edge_ids.append(data["edge_id"])
        edge_types.append(data["type"])
    return GraphPath(node_ids=list(node_path), edge_ids=edge_ids, edge_types=edge_types)


def _metadata_matches(metadata: dict[str, Any], expected: dict[str, Any]) -> bool:
    return all(key in metadata and metadata[key] == value for key, value in expected.items())
