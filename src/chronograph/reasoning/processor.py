"""Reasoning processor - prompts, bounded retries and schema-checked output.

Extraction, deduplication, labeling and relevance scoring degrade to an empty
or default value once retries are exhausted. Path explanation and temporal
inference have no sensible default and raise CollaboratorError instead.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from src.chronograph.errors import CollaboratorError
from src.chronograph.reasoning.schemas import (
    CommunityLabelOutput,
    DedupeOutput,
    ExtractionOutput,
    Parsed,
    PathExplanationOutput,
    RelevanceOutput,
    TaskKind,
    TemporalOutput,
    Unparseable,
    parse_task_output,
)
from src.chronograph.retry import RetryPolicy, call_with_retries


class CompletionClient(Protocol):
    async def complete(self, messages: list[dict]) -> Any: ...


@dataclass
class ReasoningConfig:
    """Configuration for reasoning tasks."""
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    min_confidence: float = 0.5        # list entries below this are dropped
    max_context_episodes: int = 4
    max_member_texts: int = 20


SYSTEM_PROMPT = "You are a precise knowledge graph assistant. Reply with JSON only."

EXTRACT_PROMPT = """Extract entities and relationships from the current message.

## Previous messages (context only, do not extract from them)
{context}

## Current message
{body}

Return JSON:
```json
{{
  "entities": [{{"id": "short_stable_id", "name": "Name", "type": "person|place|organization|concept|...", "summary": "one sentence", "confidence": 0.0-1.0}}],
  "relationships": [{{"source_id": "entity id", "target_id": "entity id", "type": "verb_phrase", "description": "fact in one sentence", "is_temporary": false, "confidence": 0.0-1.0}}]
}}
```"""

DEDUPE_PROMPT = """Decide whether the new entity is the same real-world thing as one of the existing entities.

New entity:
{entity}

Existing entities:
{existing}

Return JSON:
```json
{{"is_duplicate": true, "duplicate_id": "id of the existing entity or null", "name": "best name", "confidence": 0.0-1.0}}
```"""

TEMPORAL_PROMPT = """Infer when the facts about this subject became true and when they stopped being true.
Times are unix epoch seconds.

Subject:
{subject}

History, oldest first:
{history}

Return JSON:
```json
{{"valid_at": 1700000000.0, "invalid_at": null, "confidence": 0.0-1.0, "summary": "what changed over time"}}
```"""

LABEL_PROMPT = """Give a short human-readable label for a cluster of related items.

Members:
{members}

Return JSON:
```json
{{"label": "2-5 words", "confidence": 0.0-1.0}}
```"""

RELEVANCE_PROMPT = """Score how relevant each candidate is to the query, from 0 (unrelated) to 1 (directly answers it).

Query: {query}

Candidates:
{candidates}

Return JSON:
```json
{{"scores": [{{"id": "candidate id", "score": 0.0-1.0}}]}}
```"""

EXPLAIN_PATH_PROMPT = """Explain in one or two sentences how the source relates to the target through this path.

Source: {source}
Target: {target}
Path:
{path}

Return JSON:
```json
{{"explanation": "...", "confidence": 0.0-1.0}}
```"""


@dataclass
class ExtractionResult:
    """Extraction output plus whether it is a degraded default."""
    output: ExtractionOutput
    degraded: bool = False
    dropped: int = 0


class _UnparseableOutput(Exception):
    def __init__(self, result: Unparseable):
        self.result = result
        super().__init__(f"unparseable {result.kind.value} output: {result.reason}")


class ReasoningProcessor:
    """Runs typed reasoning tasks against a completion client."""

    def __init__(
        self,
        llm: CompletionClient,
        config: ReasoningConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self._llm = llm
        self.config = config or ReasoningConfig()
        self._log = logger or logging.getLogger(__name__)

    async def run(self, kind: TaskKind, prompt: str, min_confidence: float = 0.0) -> Parsed:
        """Call the model until its output validates, within the retry policy.

        Unparseable output counts as a failed attempt.
        """
        kind = TaskKind(kind)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        async def attempt() -> Parsed:
            response = await self._llm.complete(messages)
            content = getattr(response, "content", response)
            result = parse_task_output(kind, content, min_confidence=min_confidence)
            if isinstance(result, Unparseable):
                raise _UnparseableOutput(result)
            if result.dropped:
                self._log.debug("%s: dropped %d invalid entries", kind.value, result.dropped)
            return result

        return await call_with_retries(kind.value, attempt, self.config.retry, logger=self._log)

    # ==================== Degrading tasks ====================

    async def extract(self, body: str, context: list[str] | None = None) -> ExtractionResult:
        """Entities and relationships in one episode; empty on failure."""
        recent = (context or [])[-self.config.max_context_episodes:]
        prompt = EXTRACT_PROMPT.format(
            context="\n".join(f"- {c}" for c in recent) or "(none)",
            body=body,
        )
        try:
            result = await self.run(TaskKind.EXTRACT, prompt, self.config.min_confidence)
        except CollaboratorError as e:
            self._log.warning("Extraction degraded to empty result: %s", e)
            return ExtractionResult(output=ExtractionOutput(), degraded=True)
        return ExtractionResult(output=_consistent_extraction(result.value), dropped=result.dropped)

    async def dedupe_entity(self, entity: dict[str, Any], existing: list[dict[str, Any]]) -> DedupeOutput:
        """Duplicate decision for one entity; "not a duplicate" on failure."""
        if not existing:
            return DedupeOutput()
        prompt = DEDUPE_PROMPT.format(
            entity=json.dumps(entity, ensure_ascii=False),
            existing=json.dumps(existing, ensure_ascii=False, indent=2),
        )
        try:
            result = await self.run(TaskKind.DEDUPE, prompt)
        except CollaboratorError as e:
            self._log.warning("Deduplication degraded to no-match: %s", e)
            return DedupeOutput()
        decision: DedupeOutput = result.value
        known = {str(e.get("id")) for e in existing}
        if decision.is_duplicate and decision.duplicate_id not in known:
            self._log.debug("Ignoring duplicate decision for unknown id %s", decision.duplicate_id)
            return DedupeOutput()
        return decision

    async def label_community(self, member_texts: list[str]) -> tuple[str, float]:
        """(label, confidence) for a cluster; ("", 0.0) on failure."""
        members = member_texts[: self.config.max_member_texts]
        prompt = LABEL_PROMPT.format(members="\n".join(f"- {m}" for m in members))
        try:
            result = await self.run(TaskKind.LABEL_COMMUNITY, prompt)
        except CollaboratorError as e:
            self._log.warning("Community labeling degraded to default: %s", e)
            return "", 0.0
        value: CommunityLabelOutput = result.value
        return value.label, value.confidence

    async def score_relevance(self, query: str, candidates: list[tuple[str, str]]) -> dict[str, float]:
        """Cross-encoder scores per candidate id; empty on failure.

        Candidates the reply leaves out score 0.
        """
        if not candidates:
            return {}
        prompt = RELEVANCE_PROMPT.format(
            query=query,
            candidates="\n".join(f"- [{cid}] {text}" for cid, text in candidates),
        )
        try:
            result = await self.run(TaskKind.SCORE_RELEVANCE, prompt)
        except CollaboratorError as e:
            self._log.warning("Relevance scoring degraded to no scores: %s", e)
            return {}
        value: RelevanceOutput = result.value
        scores = {cid: 0.0 for cid, _ in candidates}
        for s in value.scores:
            if s.id in scores:
                scores[s.id] = s.score
        return scores

    # ==================== Propagating tasks ====================

    async def infer_temporal(self, subject: str, history: list[str]) -> TemporalOutput:
        """Validity window of a subject's facts. Raises CollaboratorError."""
        prompt = TEMPORAL_PROMPT.format(
            subject=subject,
            history="\n".join(f"- {h}" for h in history) or "(none)",
        )
        result = await self.run(TaskKind.TEMPORAL, prompt)
        return result.value

    async def explain_path(self, source: str, target: str, steps: list[str]) -> str:
        """Natural-language reading of a path. Raises CollaboratorError."""
        prompt = EXPLAIN_PATH_PROMPT.format(
            source=source,
            target=target,
            path="\n".join(f"{i + 1}. {s}" for i, s in enumerate(steps)),
        )
        result = await self.run(TaskKind.EXPLAIN_PATH, prompt)
        value: PathExplanationOutput = result.value
        return value.explanation


def _consistent_extraction(output: ExtractionOutput) -> ExtractionOutput:
    """Drop relationships whose endpoints are not among the extracted entities."""
    ids = {e.id for e in output.entities}
    relationships = [
        r for r in output.relationships
        if r.source_id in ids and r.target_id in ids and r.source_id != r.target_id
    ]
    return ExtractionOutput(entities=output.entities, relationships=relationships)
