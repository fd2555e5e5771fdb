"""Explicit observability wrapper for public graph operations.

Operations are wrapped by calling ``observed(...)`` around them, and the
logger and event sink are passed in by the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


@dataclass
class OperationEvent:
    """Outcome of one observed operation."""
    name: str
    ok: bool
    duration: float
    error: str = ""
    started_at: float = field(default_factory=time.time)
    attributes: dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[OperationEvent], None]


class EventRecorder:
    """In-memory event sink that keeps the most recent events."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.events: list[OperationEvent] = []

    def __call__(self, event: OperationEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def named(self, name: str) -> list[OperationEvent]:
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        self.events.clear()


async def observed(
    name: str,
    operation: Callable[[], Awaitable[T]],
    *,
    logger: logging.Logger | None = None,
    sink: EventSink | None = None,
    **attributes: Any,
) -> T:
    """Run ``operation``, record its duration and outcome, forward the result.

    Exceptions are recorded and re-raised unchanged.
    """
    log = logger or logging.getLogger(__name__)
    started = time.time()
    start = time.perf_counter()
    try:
        result = await operation()
    except Exception as e:
        duration = time.perf_counter() - start
        log.warning("%s failed after %.3fs: %s", name, duration, e)
        if sink is not None:
            sink(OperationEvent(
                name=name,
                ok=False,
                duration=duration,
                error=f"{type(e).__name__}: {e}",
                started_at=started,
                attributes=attributes,
            ))
        raise
    duration = time.perf_counter() - start
    log.debug("%s completed in %.3fs", name, duration)
    if sink is not None:
        sink(OperationEvent(
            name=name,
            ok=True,
            duration=duration,
            started_at=started,
            attributes=attributes,
        ))
    return result
