# mutation_sdk/batch/retry.py
# SPDX-License-Identifier: Apache-2.0
"""
Async retry with exponential backoff for throttled submissions.

The server answers a full execution queue with ResourceExhausted and a
retry_after_ms hint. Callers wait for the hint when it is present, otherwise
for the policy's exponential backoff, and give up after max_attempts.

Classification is by class name, so the helpers work the same on exceptions
raised in-process and on ones rebuilt from wire error envelopes.

Usage:
    policy = RetryPolicy(max_attempts=5, base_ms=200)
    view = await retry_async(lambda: client.apply(chunk), policy=policy)
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

LOG = logging.getLogger(__name__)

_RETRYABLE_NAMES = {
    "ResourceExhausted",
    "Unavailable",
}

_NON_RETRYABLE_NAMES = {
    "BadRequest",
    "SchemaViolation",
    "DuplicateConflict",
    "UnresolvedReference",
    "PhaseConflictError",
    "DirectionMismatch",
    "IdempotencyConflict",
    "NotSupported",
    "OperationNotFound",
}


@dataclass(frozen=True)
class RetryStats:
    """
    Attributes:
        attempts: Attempts made, including the successful one.
        total_delay_ms: Time spent waiting between attempts.
        last_exception: Last retried exception, if any.
    """
    attempts: int
    total_delay_ms: int
    last_exception: Optional[BaseException] = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration with exponential backoff.

    Attributes:
        max_attempts: Total tries including the first attempt.
        base_ms:      Initial backoff in milliseconds.
        max_ms:       Maximum backoff cap in milliseconds.
        multiplier:   Exponential growth factor per attempt.
        use_jitter:   Randomize sleep in [0, backoff] when no server hint is given.
        honor_retry_after: Prefer the exception's retry_after_ms over the backoff.
    """

    max_attempts: int = 4
    base_ms: int = 150
    max_ms: int = 10_000
    multiplier: float = 2.0
    use_jitter: bool = True
    honor_retry_after: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_ms <= 0 or self.max_ms <= 0:
            raise ValueError("Backoff times must be positive")
        if self.multiplier < 1.0:
            raise ValueError("Multiplier must be >= 1.0")
        if self.base_ms > self.max_ms:
            raise ValueError("base_ms cannot exceed max_ms")

    def backoff_ms(self, attempt_index: int) -> int:
        """Exponential backoff for a given retry index."""
        raw = int(self.base_ms * (self.multiplier ** attempt_index))
        return min(raw, self.max_ms)

    def delay_ms(self, attempt_index: int, exc: Optional[BaseException] = None) -> int:
        """Wait before the next attempt: server hint first, then backoff."""
        if self.honor_retry_after and exc is not None:
            hint = getattr(exc, "retry_after_ms", None)
            if isinstance(hint, (int, float)) and hint >= 0:
                return int(hint)
        backoff = self.backoff_ms(attempt_index)
        return int(random.random() * backoff) if self.use_jitter else backoff


def is_retryable_normalized(exc: BaseException) -> bool:
    """
    Decide if an exception should be retried.

    Non-retryable names win; otherwise the retryable set or any
    ``retry_after_ms`` hint makes it retryable.
    """
    name = type(exc).__name__
    if name in _NON_RETRYABLE_NAMES:
        return False
    if name in _RETRYABLE_NAMES:
        return True
    return getattr(exc, "retry_after_ms", None) is not None


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy = RetryPolicy(),
    is_retryable: Callable[[BaseException], bool] = is_retryable_normalized,
    on_backoff: Optional[Callable[[int, int, BaseException], None]] = None,
    return_stats: bool = False,
) -> Any:
    """
    Run ``fn`` until it succeeds, a non-retryable error occurs, or attempts
    run out. The last exception propagates unchanged.

    ``on_backoff(attempt_no, delay_ms, exc)`` is called before each wait.
    """
    total_delay = 0
    last_exception: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await fn()
        except Exception as exc:
            last_exception = exc
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_ms(attempt - 1, exc)
            total_delay += delay
            LOG.warning(
                "attempt %d/%d failed with %s; retrying in %dms",
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            if on_backoff:
                try:
                    on_backoff(attempt, delay, exc)
                except Exception:
                    # hooks never break the retry loop
                    pass
            await asyncio.sleep(delay / 1000.0)
            continue
        if return_stats:
            return result, RetryStats(attempt, total_delay, last_exception)
        return result


__all__ = [
    "RetryPolicy",
    "RetryStats",
    "retry_async",
    "is_retryable_normalized",
]
