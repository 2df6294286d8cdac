"""
Exponential backoff for network-bound pipeline steps.

`retry_with_backoff` runs an awaitable factory up to `max_attempts` times. An attempt is retried
only when it raises an `AssistantError` whose kind is listed in the policy's `retry_on` set;
anything else propagates after the first attempt. When the policy carries a timeout, each attempt
is bounded with `asyncio.wait_for` and an expiry surfaces as `RequestTimeoutError`, which is
itself a transient kind and therefore eligible for retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, FrozenSet, Optional, TypeVar

from core.errors import TRANSIENT_KINDS, AssistantError, ErrorKind, RequestTimeoutError
from monitoring.metrics import RETRY_COUNT

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    factor: float = 2.0
    timeout_s: Optional[float] = None
    retry_on: FrozenSet[ErrorKind] = TRANSIENT_KINDS

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (0-based)."""
        return self.base_delay_s * (self.factor ** attempt)

    def scaled(self, multiplier: float) -> "RetryPolicy":
        return replace(self, base_delay_s=self.base_delay_s * multiplier)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "operation",
) -> T:
    """
    Run `operation` with exponential backoff.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        policy (RetryPolicy): Attempt cap, delays, per-attempt timeout and retryable kinds.
        label (str): Name used in logs and the retry counter.

    Returns:
        The value produced by the first successful attempt.

    Raises:
        AssistantError: The last error once attempts are exhausted, or the first
            non-retryable one.
        Exception: Untagged exceptions propagate immediately.
    """
    attempt = 0
    while True:
        try:
            if policy.timeout_s is not None:
                try:
                    return await asyncio.wait_for(operation(), timeout=policy.timeout_s)
                except asyncio.TimeoutError:
                    raise RequestTimeoutError(f"{label} timed out after {policy.timeout_s}s")
            return await operation()
        except AssistantError as exc:
            attempt += 1
            if exc.kind not in policy.retry_on or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt - 1)
            RETRY_COUNT.labels(operation=label, kind=exc.kind.value).inc()
            logger.warning(
                "[retry] %s failed with %s (attempt %d/%d); retrying in %.2fs",
                label, exc.kind.value, attempt, policy.max_attempts, delay,
            )
            await asyncio.sleep(delay)
