"""Typed errors for the graph memory.

Invariant violations derive from ``GraphMemoryError`` directly and are never
retried. Collaborator failures derive from ``CollaboratorError``.
"""


class GraphMemoryError(Exception):
    """Base class for all graph memory errors."""


class NotFoundError(GraphMemoryError, KeyError):
    """A referenced record does not exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")

    def __str__(self) -> str:
        return self.args[0]


class NodeNotFoundError(NotFoundError):
    def __init__(self, node_id: str):
        super().__init__("Node", node_id)


class EdgeNotFoundError(NotFoundError):
    def __init__(self, edge_id: str):
        super().__init__("Edge", edge_id)


class CommunityNotFoundError(NotFoundError):
    def __init__(self, community_id: str):
        super().__init__("Community", community_id)


class TemporalInvariantError(GraphMemoryError, ValueError):
    """Malformed temporal data, such as an episode without a timestamp."""


class DanglingEdgeError(GraphMemoryError, ValueError):
    """An edge references a node that is not stored."""

    def __init__(self, edge_id: str, missing_id: str):
        self.edge_id = edge_id
        self.missing_id = missing_id
        super().__init__(f"Edge {edge_id} references missing node {missing_id}")


class CollaboratorError(GraphMemoryError):
    """The reasoning or embedding collaborator failed after retries."""

    def __init__(self, message: str, task: str = "", attempts: int = 0):
        self.task = task
        self.attempts = attempts
        super().__init__(message)


class CollaboratorTimeoutError(CollaboratorError):
    """A collaborator call exceeded its deadline."""
