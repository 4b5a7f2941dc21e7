"""
Retry helper for Sink writes.

Switches on the ErrorKind of a failed call:
- CONFLICT: short exponential backoff (200ms doubling, cap 2s), 5 attempts
- THROTTLED: max(Retry-After, exponential from 1s), 5 attempts
- TRANSIENT_SERVER: linear 500ms * attempt, 3 attempts
- anything else: raised immediately

Budgets are counted per kind, so a run of conflicts does not use up the
retries a later 5xx is entitled to.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from assignsync.connectors.backoff import RetryPolicies
from assignsync.connectors.errors import ApiError, ErrorKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    value: T
    attempts: int


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    policies: RetryPolicies | None = None,
    sleep_fn: Callable[[float], Awaitable[None]] | None = None,
) -> RetryOutcome[T]:
    """
    Run ``operation`` retrying according to the failed call's ErrorKind.

    Args:
        operation: Zero-argument coroutine factory (called once per attempt).
        operation_name: Label for logs (e.g. "create", "update").
        policies: Retry table; defaults to RetryPolicies().
        sleep_fn: Sleep function in seconds (injectable for tests).

    Returns:
        RetryOutcome with the value and the number of attempts made.

    Raises:
        ApiError: The last error, with ``attempts`` set, once the policy for
            its kind is exhausted (or immediately for non-retryable kinds).
    """
    policies = policies or RetryPolicies()
    sleep = sleep_fn or asyncio.sleep
    attempt = 0
    # Each kind spends its own budget; ``attempt`` counts every call
    failures: dict[ErrorKind, int] = {}

    while True:
        attempt += 1
        try:
            value = await operation()
        except ApiError as e:
            policy = policies.for_kind(e.kind)
            kind_failures = failures[e.kind] = failures.get(e.kind, 0) + 1
            if not policy.should_retry(kind_failures):
                e.attempts = attempt
                if attempt > 1:
                    logger.warning(
                        "retry_exhausted",
                        extra={
                            "operation": operation_name,
                            "kind": e.kind.value,
                            "attempts": attempt,
                            "kind_failures": kind_failures,
                        },
                    )
                raise
            delay_ms = policy.delay_ms(kind_failures, e.retry_after_ms)
            logger.info(
                "retry_scheduled",
                extra={
                    "operation": operation_name,
                    "kind": e.kind.value,
                    "attempt": attempt,
                    "kind_failures": kind_failures,
                    "delay_ms": delay_ms,
                },
            )
            if delay_ms > 0:
                await sleep(delay_ms / 1000.0)
            continue
        return RetryOutcome(value=value, attempts=attempt)
