"""Typed output schemas for reasoning tasks and the parse step.

``parse_task_output`` never raises: it returns either ``Parsed`` with a
validated value or ``Unparseable`` with the reason. List entries that fail
validation or fall below the confidence floor are dropped one by one.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

T = TypeVar("T")


class TaskKind(str, Enum):
    EXTRACT = "extract"
    DEDUPE = "dedupe"
    TEMPORAL = "temporal"
    LABEL_COMMUNITY = "label_community"
    SCORE_RELEVANCE = "score_relevance"
    EXPLAIN_PATH = "explain_path"


# ==================== Schemas ====================

class ExtractedEntity(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    type: str = "entity"
    summary: str = ""
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class ExtractedRelationship(BaseModel):
    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    type: str = "relates_to"
    description: str = ""
    is_temporary: bool = False
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        value = re.sub(r"[\s\-]+", "_", value.strip().lower())
        return re.sub(r"[^a-z0-9_]", "", value) or "relates_to"


class ExtractionOutput(BaseModel):
    entities: list[ExtractedEntity] = Field(default_factory=list)
    relationships: list[ExtractedRelationship] = Field(default_factory=list)


class DedupeOutput(BaseModel):
    is_duplicate: bool = False
    duplicate_id: str | None = None
    name: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class TemporalOutput(BaseModel):
    valid_at: float | None = None
    invalid_at: float | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    summary: str = ""


class CommunityLabelOutput(BaseModel):
    label: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class RelevanceScore(BaseModel):
    id: str = Field(min_length=1)
    score: float = Field(ge=0.0, le=1.0)


class RelevanceOutput(BaseModel):
    scores: list[RelevanceScore] = Field(default_factory=list)


class PathExplanationOutput(BaseModel):
    explanation: str = Field(min_length=1)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


SCHEMAS: dict[TaskKind, type[BaseModel]] = {
    TaskKind.EXTRACT: ExtractionOutput,
    TaskKind.DEDUPE: DedupeOutput,
    TaskKind.TEMPORAL: TemporalOutput,
    TaskKind.LABEL_COMMUNITY: CommunityLabelOutput,
    TaskKind.SCORE_RELEVANCE: RelevanceOutput,
    TaskKind.EXPLAIN_PATH: PathExplanationOutput,
}

# List fields whose entries are validated individually
_ITEM_LISTS: dict[TaskKind, dict[str, type[BaseModel]]] = {
    TaskKind.EXTRACT: {"entities": ExtractedEntity, "relationships": ExtractedRelationship},
    TaskKind.SCORE_RELEVANCE: {"scores": RelevanceScore},
}


# ==================== Results ====================

@dataclass
class Parsed(Generic[T]):
    """Validated output of one task."""
    kind: TaskKind
    value: T
    dropped: int = 0


@dataclass
class Unparseable:
    """Output that could not be turned into the task's schema."""
    kind: TaskKind
    reason: str
    raw: str = ""


ParseResult = Union[Parsed, Unparseable]


# ==================== Parsing ====================

_FENCE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)
_CLOSERS = {"{": "}", "[": "]"}


def extract_json(text: str) -> str | None:
    """Locate the first balanced, decodable JSON object or array in free text.

    Markdown fences are preferred. Bracketed prose such as ``[json]`` is
    skipped in favour of the next opening bracket. Returns None when no
    candidate decodes.
    """
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1)
    for start, ch in enumerate(text):
        if ch not in _CLOSERS:
            continue
        candidate = _balanced_from(text, start)
        if candidate is None:
            continue
        try:
            json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return candidate
    return None


def _balanced_from(text: str, start: int) -> str | None:
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return text[start:i + 1]
    return None


def parse_task_output(kind: TaskKind, text: str | None, min_confidence: float = 0.0) -> ParseResult:
    """Parse then validate collaborator output for ``kind``."""
    kind = TaskKind(kind)
    if not text or not text.strip():
        return Unparseable(kind, "empty response", text or "")

    candidate = extract_json(text)
    if candidate is None:
        return Unparseable(kind, "no valid JSON found", text)
    data = json.loads(candidate)

    if isinstance(data, list) and kind in _ITEM_LISTS and len(_ITEM_LISTS[kind]) == 1:
        data = {next(iter(_ITEM_LISTS[kind])): data}
    if not isinstance(data, dict):
        return Unparseable(kind, f"expected an object, got {type(data).__name__}", text)
    data = _camel_to_snake(data)

    dropped = 0
    for field_name, item_model in _ITEM_LISTS.get(kind, {}).items():
        items, removed = _filter_items(data.get(field_name), item_model, min_confidence)
        data[field_name] = items
        dropped += removed

    try:
        value = SCHEMAS[kind].model_validate(data)
    except ValidationError as e:
        return Unparseable(kind, f"schema mismatch: {e.error_count()} errors", text)
    return Parsed(kind=kind, value=value, dropped=dropped)


def _filter_items(raw: Any, model: type[BaseModel], min_confidence: float) -> tuple[list[dict], int]:
    if not isinstance(raw, list):
        return [], 0
    kept: list[dict] = []
    dropped = 0
    for entry in raw:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        entry = _camel_to_snake(entry)
        try:
            item = model.model_validate(entry)
        except ValidationError:
            dropped += 1
            continue
        if getattr(item, "confidence", 1.0) < min_confidence:
            dropped += 1
            continue
        kept.append(item.model_dump())
    return kept, dropped


def _camel_to_snake(entry: dict) -> dict:
    return {re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower(): value for key, value in entry.items()}
