"""Core data models for the bi-temporal graph memory.

All timestamps are epoch seconds (float). ``created_at`` records when the
system learned a fact, ``valid_at`` when it became true in the episode
timeline, ``expired_at`` when the system stopped tracking it and, for edges,
``invalid_at`` when the relationship stopped holding.
"""

from __future__ import annotations

import hashlib
import json
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.chronograph.errors import TemporalInvariantError


class NodeType(str, Enum):
    """Well-known node type tags. Other tags are allowed."""
    EPISODE = "episode"
    ENTITY = "entity"
    COMMUNITY = "community"
    FACT = "fact"


class EdgeType(str, Enum):
    """Well-known edge type tags. Other tags are allowed."""
    MENTIONS = "mentions"       # episode -> entity
    RELATES_TO = "relates_to"   # entity -> entity
    MEMBER_OF = "member_of"     # entity -> community
    FOLLOWS = "follows"         # episode -> previous episode


def _type_value(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def normalize_content(content: Any) -> str:
    """Stable text form of a content payload, used for ids and dedup keys."""
    if isinstance(content, dict):
        text = json.dumps(content, sort_keys=True, default=str)
    else:
        text = str(content)
    return re.sub(r"\s+", " ", text.strip().lower())


def content_text(content: Any) -> str:
    """Human-readable text of a content payload, used for lexical scoring."""
    if isinstance(content, str):
        return content
    if isinstance(content, EpisodeContent):
        return content.body
    if isinstance(content, dict):
        parts = [
            str(content[key]) for key in ("name", "body", "summary", "description")
            if content.get(key)
        ]
        if parts:
            return " ".join(parts)
        return json.dumps(content, sort_keys=True, default=str)
    if content is None:
        return ""
    return str(content)


def make_node_id(node_type: str, content: Any) -> str:
    """Deterministic node id: type prefix plus a content hash."""
    digest = hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()[:32]
    return f"{_type_value(node_type)}_{digest}"


def make_edge_id(edge_type: str, source_id: str, target_id: str) -> str:
    """Deterministic edge id for a (type, source, target) triple."""
    key = f"{_type_value(edge_type)}|{source_id}|{target_id}"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
    return f"rel_{digest}"


def make_episode_id(session_id: str, turn: int | str) -> str:
    """Episode ids are scoped to their session and turn."""
    return f"ep_{session_id}_{turn}"


@dataclass
class EpisodeContent:
    """Payload of an episode node: one recorded interaction turn."""
    body: str
    timestamp: float | None
    source: str = "message"
    source_description: str = ""
    session_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "body": self.body,
            "timestamp": self.timestamp,
            "source": self.source,
            "source_description": self.source_description,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EpisodeContent:
        return cls(
            body=data.get("body", ""),
            timestamp=data.get("timestamp"),
            source=data.get("source", "message"),
            source_description=data.get("source_description", ""),
            session_id=data.get("session_id", ""),
        )


def _episode_timestamp(content: Any) -> float | None:
    if isinstance(content, EpisodeContent):
        return content.timestamp
    if isinstance(content, dict):
        return content.get("timestamp")
    return None


@dataclass
class GraphNode:
    """A typed unit in the graph: entity, episode, community or other.

    ``valid_at`` defaults to ``created_at``. Episode nodes instead default to
    the timestamp embedded in their content and must agree with it.
    """
    type: str
    content: Any = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None
    created_at: float = field(default_factory=time.time)
    valid_at: float | None = None
    expired_at: float | None = None

    def __post_init__(self) -> None:
        self.type = _type_value(self.type)
        if self.type == NodeType.EPISODE.value:
            self._check_episode()
        elif self.valid_at is None:
            self.valid_at = self.created_at
        check_expiry(self.created_at, self.expired_at)

    def _check_episode(self) -> None:
        timestamp = _episode_timestamp(self.content)
        if timestamp is None:
            raise TemporalInvariantError(
                f"Episode node {self.id} must have a content timestamp"
            )
        if self.valid_at is None:
            self.valid_at = timestamp
        elif self.valid_at != timestamp:
            raise TemporalInvariantError(
                f"Episode node {self.id} valid_at {self.valid_at} "
                f"does not match content timestamp {timestamp}"
            )

    @property
    def is_episode(self) -> bool:
        return self.type == NodeType.EPISODE.value

    @property
    def text(self) -> str:
        return content_text(self.content)

    def is_expired(self, at: float | None = None) -> bool:
        at = time.time() if at is None else at
        return self.expired_at is not None and self.expired_at <= at

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain structured data."""
        content = self.content.to_dict() if isinstance(self.content, EpisodeContent) else self.content
        return {
            "id": self.id,
            "type": self.type,
            "content": content,
            "metadata": dict(self.metadata),
            "embedding": list(self.embedding) if self.embedding is not None else None,
            "created_at": self.created_at,
            "valid_at": self.valid_at,
            "expired_at": self.expired_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphNode:
        content = data.get("content")
        if data["type"] == NodeType.EPISODE.value and isinstance(content, dict):
            content = EpisodeContent.from_dict(content)
        return cls(
            id=data["id"],
            type=data["type"],
            content=content,
            metadata=dict(data.get("metadata") or {}),
            embedding=data.get("embedding"),
            created_at=data.get("created_at", time.time()),
            valid_at=data.get("valid_at"),
            expired_at=data.get("expired_at"),
        )


@dataclass
class GraphEdge:
    """Directed, typed relationship between two stored nodes."""
    type: str
    source_id: str
    target_id: str
    content: Any = None
    id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    weight: float = 1.0
    episode_ids: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    valid_at: float | None = None
    invalid_at: float | None = None
    expired_at: float | None = None

    def __post_init__(self) -> None:
        self.type = _type_value(self.type)
        if not self.id:
            self.id = make_edge_id(self.type, self.source_id, self.target_id)
        if self.valid_at is None:
            self.valid_at = self.created_at
        check_expiry(self.created_at, self.expired_at)
        check_validity_window(self.valid_at, self.invalid_at)

    @property
    def text(self) -> str:
        return content_text(self.content)

    def is_expired(self, at: float | None = None) -> bool:
        at = time.time() if at is None else at
        if self.expired_at is not None and self.expired_at <= at:
            return True
        return self.invalid_at is not None and self.invalid_at <= at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "weight": self.weight,
            "episode_ids": list(self.episode_ids),
            "created_at": self.created_at,
            "valid_at": self.valid_at,
            "invalid_at": self.invalid_at,
            "expired_at": self.expired_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphEdge:
        return cls(
            id=data.get("id", ""),
            type=data["type"],
            source_id=data["source_id"],
            target_id=data["target_id"],
            content=data.get("content"),
            metadata=dict(data.get("metadata") or {}),
            weight=data.get("weight", 1.0),
            episode_ids=list(data.get("episode_ids") or []),
            created_at=data.get("created_at", time.time()),
            valid_at=data.get("valid_at"),
            invalid_at=data.get("invalid_at"),
            expired_at=data.get("expired_at"),
        )


def check_expiry(created_at: float, expired_at: float | None) -> None:
    if expired_at is not None and expired_at < created_at:
        raise TemporalInvariantError(
            f"expired_at {expired_at} must not precede created_at {created_at}"
        )


def check_validity_window(valid_at: float | None, invalid_at: float | None) -> None:
    if valid_at is not None and invalid_at is not None and invalid_at <= valid_at:
        raise TemporalInvariantError(
            f"valid_at {valid_at} must be before invalid_at {invalid_at}"
        )


@dataclass
class GraphPath:
    """A walk through the graph as alternating node and edge ids."""
    node_ids: list[str]
    edge_ids: list[str]
    edge_types: list[str] = field(default_factory=list)

    @property
    def length(self) -> int:
        return len(self.edge_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_ids": list(self.node_ids),
            "edge_ids": list(self.edge_ids),
            "edge_types": list(self.edge_types),
        }


@dataclass
class Community:
    """A cluster of closely related nodes. Derived, rebuildable state."""
    id: str
    members: set[str] = field(default_factory=set)
    label: str = ""
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "members": sorted(self.members),
            "label": self.label,
            "confidence": self.confidence,
        }


@dataclass
class CommunityMeta:
    """Separately tracked bookkeeping for a community."""
    member_count: int = 0
    last_update_time: float = field(default_factory=time.time)
    divergence_score: float = 0.0
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_count": self.member_count,
            "last_update_time": self.last_update_time,
            "divergence_score": self.divergence_score,
            "summary": self.summary,
        }
