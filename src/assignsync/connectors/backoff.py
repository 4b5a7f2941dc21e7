"""
Backoff computation shared by the rate limiters and the dispatch retry helper.

- Exponential backoff with symmetric jitter for Source throttling
- Per-ErrorKind retry policies for Sink writes
- Optional seeded RNG so retry schedules are reproducible in tests
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum

from assignsync.connectors.errors import ErrorKind


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff with jitter."""

    base_delay_ms: int = 1000
    max_delay_ms: int = 16000
    multiplier: float = 2.0
    jitter_factor: float = 0.2  # 0.2 = ±20% jitter
    max_retries: int = 5

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1), got {self.jitter_factor}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


def compute_backoff_delay(
    config: BackoffConfig,
    attempt: int,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the delay before retry number ``attempt``.

    Args:
        config: Backoff configuration.
        attempt: 1-based retry number (0 means no delay).
        retry_after_ms: Server-provided delay; used as a floor when present.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds.
    """
    if attempt <= 0:
        return 0

    delay = config.base_delay_ms * (config.multiplier ** (attempt - 1))

    jitter_min = 1.0 - config.jitter_factor
    jitter_max = 1.0 + config.jitter_factor
    source = rng if rng is not None else random
    delay = delay * source.uniform(jitter_min, jitter_max)

    delay = min(delay, config.max_delay_ms)

    if retry_after_ms is not None and retry_after_ms > 0:
        delay = max(delay, retry_after_ms)

    return int(delay)


class RetryStrategy(str, Enum):
    """How the delay grows between attempts."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and delay schedule for one ErrorKind.

    ``max_attempts`` counts the first call, so 5 means one call plus four
    retries.
    """

    max_attempts: int = 1
    strategy: RetryStrategy = RetryStrategy.NONE
    base_delay_ms: int = 0
    max_delay_ms: int | None = None
    honor_retry_after: bool = False

    def should_retry(self, attempt: int) -> bool:
        """True when another attempt is allowed after ``attempt`` failures."""
        return self.strategy != RetryStrategy.NONE and attempt < self.max_attempts

    def delay_ms(self, attempt: int, retry_after_ms: int | None = None) -> int:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        if self.strategy == RetryStrategy.EXPONENTIAL:
            delay = self.base_delay_ms * (2 ** (attempt - 1))
        elif self.strategy == RetryStrategy.LINEAR:
            delay = self.base_delay_ms * attempt
        else:
            return 0

        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)

        if self.honor_retry_after:
            delay = max(delay, retry_after_ms or self.base_delay_ms)

        return int(delay)


NO_RETRY = RetryPolicy()


def _default_policies() -> dict[ErrorKind, RetryPolicy]:
    return {
        ErrorKind.CONFLICT: RetryPolicy(
            max_attempts=5,
            strategy=RetryStrategy.EXPONENTIAL,
            base_delay_ms=200,
            max_delay_ms=2000,
        ),
        ErrorKind.THROTTLED: RetryPolicy(
            max_attempts=5,
            strategy=RetryStrategy.EXPONENTIAL,
            base_delay_ms=1000,
            honor_retry_after=True,
        ),
        ErrorKind.TRANSIENT_SERVER: RetryPolicy(
            max_attempts=3,
            strategy=RetryStrategy.LINEAR,
            base_delay_ms=500,
        ),
    }


@dataclass
class RetryPolicies:
    """ErrorKind -> RetryPolicy table; kinds without an entry are never retried."""

    policies: dict[ErrorKind, RetryPolicy] = field(default_factory=_default_policies)

    def for_kind(self, kind: ErrorKind) -> RetryPolicy:
        return self.policies.get(kind, NO_RETRY)
