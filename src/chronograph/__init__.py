"""Chronograph - bi-temporal graph memory for conversational agents.

Records entities, relationships and raw interaction episodes in a graph that
tracks both system time and episode time, with hybrid retrieval and
community discovery on top.

Usage:
    from src.chronograph import GraphManager, GraphManagerConfig, EpisodeContent

    manager = GraphManager(GraphManagerConfig.from_env())

    # Ingest conversation turns
    result = await manager.ingest([
        EpisodeContent(body="Alice joined Acme in March", timestamp=time.time(), session_id="s1"),
    ])

    # Hybrid search with explained scores
    results = await manager.search("Where does Alice work?")

    # Communities over the entity graph
    communities = await manager.detect_communities()
"""

from src.chronograph.errors import (
    GraphMemoryError,
    NotFoundError,
    NodeNotFoundError,
    EdgeNotFoundError,
    CommunityNotFoundError,
    TemporalInvariantError,
    DanglingEdgeError,
    CollaboratorError,
    CollaboratorTimeoutError,
)
from src.chronograph.models import (
    GraphNode,
    GraphEdge,
    GraphPath,
    EpisodeContent,
    Community,
    CommunityMeta,
    NodeType,
    EdgeType,
)
from src.chronograph.graph_manager import (
    GraphManager,
    GraphManagerConfig,
    IngestResult,
    PathExplanation,
    TemporalAnalysis,
)

__all__ = [
    # Errors
    "GraphMemoryError",
    "NotFoundError",
    "NodeNotFoundError",
    "EdgeNotFoundError",
    "CommunityNotFoundError",
    "TemporalInvariantError",
    "DanglingEdgeError",
    "CollaboratorError",
    "CollaboratorTimeoutError",
    # Models
    "GraphNode",
    "GraphEdge",
    "GraphPath",
    "EpisodeContent",
    "Community",
    "CommunityMeta",
    "NodeType",
    "EdgeType",
    # Main API
    "GraphManager",
    "GraphManagerConfig",
    "IngestResult",
    "PathExplanation",
    "TemporalAnalysis",
]
