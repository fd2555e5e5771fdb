"""Abstract storage interface for the bi-temporal graph."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from src.chronograph.models import GraphNode, GraphEdge, GraphPath


@dataclass
class GraphFilter:
    """Predicates for ``GraphStorageBackend.query``.

    Every set field narrows the result. Temporal bounds are inclusive.
    """
    node_types: list[str] | None = None
    edge_types: list[str] | None = None
    node_ids: list[str] | None = None
    include_neighbors: bool = False
    metadata: dict[str, Any] | None = None

    # Embedding similarity
    embedding: list[float] | None = None
    min_similarity: float = 0.0

    # Temporal predicates
    created_after: float | None = None
    created_before: float | None = None
    valid_after: float | None = None
    valid_before: float | None = None
    valid_at: float | None = None      # point-in-time check on the episode timeline
    as_of: float | None = None         # point-in-time check on system time
    include_expired: bool = False

    max_results: int | None = None
    deduplicate: bool = True


@dataclass
class QueryResult:
    """Nodes and edges matching a filter."""
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass
class TraversalOptions:
    """Bounds for ``GraphStorageBackend.traverse``."""
    max_depth: int = 2
    edge_types: list[str] | None = None
    node_types: list[str] | None = None
    direction: str = "outbound"        # "outbound", "inbound" or "any"
    as_of: float | None = None
    include_expired: bool = False
    limit: int | None = None


class GraphStorageBackend(ABC):
    """Interface for bi-temporal node/edge storage."""

    # ==================== Nodes ====================

    @abstractmethod
    async def add_node(self, node: GraphNode) -> GraphNode:
        """Store a node. Re-adding an existing id replaces it."""
        pass

    @abstractmethod
    async def get_node(self, node_id: str) -> GraphNode | None:
        pass

    @abstractmethod
    async def update_node(self, node_id: str, updates: dict[str, Any]) -> GraphNode:
        """Merge partial fields into a stored node."""
        pass

    @abstractmethod
    async def delete_node(self, node_id: str) -> None:
        """Hard-delete a node and its incident edges."""
        pass

    # ==================== Edges ====================

    @abstractmethod
    async def add_edge(self, edge: GraphEdge) -> GraphEdge:
        pass

    @abstractmethod
    async def get_edge(self, edge_id: str) -> GraphEdge | None:
        pass

    @abstractmethod
    async def update_edge(self, edge_id: str, updates: dict[str, Any]) -> GraphEdge:
        pass

    @abstractmethod
    async def delete_edge(self, edge_id: str) -> None:
        pass

    @abstractmethod
    async def invalidate_edge(self, edge_id: str, at: float | None = None) -> GraphEdge:
        """Mark an edge as no longer holding, without deleting it."""
        pass

    # ==================== Queries ====================

    @abstractmethod
    async def query(self, graph_filter: GraphFilter) -> QueryResult:
        pass

    @abstractmethod
    async def traverse(self, start_id: str, options: TraversalOptions | None = None) -> QueryResult:
        pass

    @abstractmethod
    async def find_paths(
        self,
        start_id: str,
        end_id: str,
        max_length: int = 3,
        edge_types: list[str] | None = None,
        limit: int = 10,
    ) -> list[GraphPath]:
        pass

    @abstractmethod
    async def find_connected_nodes(
        self,
        start_id: str,
        edge_types: list[str] | None = None,
        node_types: list[str] | None = None,
        direction: str = "any",
        limit: int | None = None,
    ) -> list[GraphNode]:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass
