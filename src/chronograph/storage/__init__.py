"""Storage layer for the graph memory."""

from src.chronograph.storage.base import (
    GraphStorageBackend,
    GraphFilter,
    QueryResult,
    TraversalOptions,
)
from src.chronograph.storage.memory_graph import InMemoryGraphStorage, GraphStoreConfig

__all__ = [
    # Base interfaces
    "GraphStorageBackend",
    "GraphFilter",
    "QueryResult",
    "TraversalOptions",
    # In-memory graph
    "InMemoryGraphStorage",
    "GraphStoreConfig",
]
