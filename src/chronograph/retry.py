"""Bounded retries with exponential backoff and per-attempt deadlines."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from src.chronograph.errors import CollaboratorError, CollaboratorTimeoutError

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How often and how patiently to call a collaborator."""
    max_attempts: int = 3
    initial_backoff: float = 0.5
    backoff_multiplier: float = 2.0
    max_backoff: float = 8.0
    timeout: float | None = 60.0       # per-attempt deadline in seconds

    def backoff(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        delay = self.initial_backoff * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff)


async def call_with_retries(
    task: str,
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    logger: logging.Logger | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``call()`` up to ``policy.max_attempts`` times.

    Raises CollaboratorTimeoutError when the final attempt timed out and
    CollaboratorError for any other final failure. Cancellation propagates.
    """
    log = logger or logging.getLogger(__name__)
    attempts = max(1, policy.max_attempts)
    last_error: Exception | None = None
    timed_out = False

    for attempt in range(1, attempts + 1):
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(call(), timeout=policy.timeout)
            return await call()
        except asyncio.TimeoutError as e:
            last_error = e
            timed_out = True
            log.warning("%s attempt %d/%d timed out after %.1fs", task, attempt, attempts, policy.timeout)
        except Exception as e:
            last_error = e
            timed_out = False
            log.warning("%s attempt %d/%d failed: %s", task, attempt, attempts, e)
        if attempt < attempts:
            await sleep(policy.backoff(attempt))

    if timed_out:
        raise CollaboratorTimeoutError(
            f"{task} timed out after {attempts} attempts", task=task, attempts=attempts
        ) from last_error
    raise CollaboratorError(
        f"{task} failed after {attempts} attempts: {last_error}", task=task, attempts=attempts
    ) from last_error
