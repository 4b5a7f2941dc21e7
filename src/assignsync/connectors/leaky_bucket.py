"""
Cost-based leaky bucket limiter for the Source API.

The Source meters requests by cost against a bucket that refills at a fixed
rate and reports the authoritative remaining quota and last request cost in
response headers. This limiter mirrors that bucket locally:

- level refills toward capacity at leak_rate_per_s, clamped to [0, capacity]
- each dispatch debits a moving-average cost estimate
- delay zones: exact refill wait, none, linear, critical fixed delay
- response headers overwrite the level and feed the cost average
- throttled calls are retried in place with exponential backoff + jitter
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from assignsync.connectors.backoff import BackoffConfig, compute_backoff_delay
from assignsync.connectors.errors import ApiError, ErrorKind
from assignsync.connectors.headers import (
    HEADER_RATE_LIMIT_REMAINING,
    HEADER_REQUEST_COST,
    header_float,
)
from assignsync.connectors.serial_queue import SerialOperationQueue

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from assignsync.connectors.headers import HeaderSource
    from assignsync.connectors.serial_queue import _PendingOperation

logger = logging.getLogger(__name__)


@dataclass
class LeakyBucketConfig:
    """Configuration for the Source leaky bucket."""

    capacity: float = 700.0
    leak_rate_per_s: float = 10.0
    initial_cost_estimate: float = 2.0
    cost_smoothing: float = 0.3  # weight of the newest observed cost
    low_water: float = 100.0  # at or above: no delay
    critical_water: float = 30.0  # below: fixed critical delay
    critical_delay_ms: int = 500
    max_linear_delay_ms: int = 200
    max_retries: int = 5
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 16000
    jitter_factor: float = 0.2
    operation_timeout_s: float | None = None

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ValueError(f"capacity must be > 0, got {self.capacity}")
        if self.leak_rate_per_s <= 0:
            raise ValueError(f"leak_rate_per_s must be > 0, got {self.leak_rate_per_s}")
        if not 0.0 < self.cost_smoothing <= 1.0:
            raise ValueError(f"cost_smoothing must be in (0, 1], got {self.cost_smoothing}")
        if not 0 <= self.critical_water < self.low_water <= self.capacity:
            raise ValueError(
                "thresholds must satisfy 0 <= critical_water < low_water <= capacity, "
                f"got critical={self.critical_water} low={self.low_water} capacity={self.capacity}"
            )

    def backoff_config(self) -> BackoffConfig:
        return BackoffConfig(
            base_delay_ms=self.backoff_base_ms,
            max_delay_ms=self.backoff_max_ms,
            jitter_factor=self.jitter_factor,
            max_retries=self.max_retries,
        )


@dataclass(frozen=True)
class QuotaSnapshot:
    """Authoritative quota values read from one response."""

    cost: float | None
    remaining: float | None


class LeakyBucketLimiter(SerialOperationQueue):
    """
    Serial limiter that models the Source's cost-based quota.

    Usage:
        limiter = LeakyBucketLimiter()
        result = await limiter.execute(lambda: client.fetch_page(url))
        limiter.update_from_headers(response.headers)
    """

    def __init__(
        self,
        config: LeakyBucketConfig | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or LeakyBucketConfig()
        super().__init__(
            name="source",
            operation_timeout_s=self.config.operation_timeout_s,
            time_fn=time_fn,
            sleep_fn=sleep_fn,
        )
        self._backoff = self.config.backoff_config()
        self._rng = rng
        self.level = float(self.config.capacity)
        self.estimated_cost = float(self.config.initial_cost_estimate)
        self._last_refill_ms = self._now_ms()

    def _clamp(self, value: float) -> float:
        return max(0.0, min(float(self.config.capacity), value))

    def _refill(self, now_ms: int | None = None) -> None:
        """Leak elapsed time back into the bucket."""
        now_ms = self._now_ms() if now_ms is None else now_ms
        elapsed_ms = now_ms - self._last_refill_ms
        if elapsed_ms <= 0:
            return
        self.level = self._clamp(self.level + elapsed_ms / 1000.0 * self.config.leak_rate_per_s)
        self._last_refill_ms = now_ms

    def compute_delay_ms(self, estimated_cost: float | None = None) -> int:
        """Delay required before dispatching a call of ``estimated_cost``."""
        cfg = self.config
        cost = self.estimated_cost if estimated_cost is None else estimated_cost
        self._refill()

        if self.level < cost:
            return math.ceil((cost - self.level) / cfg.leak_rate_per_s * 1000)
        if self.level >= cfg.low_water:
            return 0
        if self.level < cfg.critical_water:
            return cfg.critical_delay_ms

        # Linear between critical_water (full delay) and low_water (none)
        ratio = 1.0 - (self.level - cfg.critical_water) / (cfg.low_water - cfg.critical_water)
        return math.ceil(ratio * cfg.max_linear_delay_ms)

    async def _admit(self) -> None:
        delay_ms = self.compute_delay_ms()
        if delay_ms > 0:
            self.metrics.record_delay(delay_ms)
            logger.debug(
                "source_limiter_delay",
                extra={"delay_ms": delay_ms, "level": round(self.level, 2)},
            )
            await self._sleep_ms(delay_ms)
        self._refill()
        self.level = self._clamp(self.level - self.estimated_cost)

    def update_from_headers(self, headers: HeaderSource | None) -> QuotaSnapshot:
        """Fold authoritative quota headers into the local model."""
        remaining = header_float(headers, HEADER_RATE_LIMIT_REMAINING)
        cost = header_float(headers, HEADER_REQUEST_COST)

        if remaining is not None:
            self._refill()
            self.level = self._clamp(remaining)
        if cost is not None and cost >= 0:
            weight = self.config.cost_smoothing
            self.estimated_cost = self.estimated_cost * (1.0 - weight) + cost * weight

        return QuotaSnapshot(cost=cost, remaining=remaining)

    def _retry_delay_ms(self, item: _PendingOperation, exc: Exception) -> int | None:
        if not isinstance(exc, ApiError) or exc.kind != ErrorKind.THROTTLED:
            return None
        if item.retries >= self.config.max_retries:
            logger.error(
                "source_throttle_retries_exhausted",
                extra={"retries": item.retries, "status": exc.status},
            )
            return None
        return compute_backoff_delay(self._backoff, item.retries + 1, rng=self._rng)

    def get_status(self) -> dict[str, Any]:
        self._refill()
        status = super().get_status()
        status.update(
            {
                "level": round(self.level, 2),
                "capacity": self.config.capacity,
                "estimated_cost": round(self.estimated_cost, 3),
            }
        )
        return status

    def reset(self) -> None:
        """Refill the bucket and forget the cost history."""
        self.level = float(self.config.capacity)
        self.estimated_cost = float(self.config.initial_cost_estimate)
        self._last_refill_ms = self._now_ms()
