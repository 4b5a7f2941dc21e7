"""
Dual sliding-window limiter for the Sink API.

The Sink allows short bursts but enforces a lower average rate:
- burst: at most burst_limit admissions in any burst_window_ms
- average: at most average_rate_per_s * average_window_ms / 1000 admissions
  in any average_window_ms

Waits are sliced into max_wait_slice_ms chunks and re-checked. A 429 from
the server short-circuits the heuristic: the call is requeued at the head
and the worker sleeps for the server-provided Retry-After.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from assignsync.connectors.errors import ApiError, ErrorKind
from assignsync.connectors.serial_queue import SerialOperationQueue

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from assignsync.connectors.serial_queue import _PendingOperation

logger = logging.getLogger(__name__)


@dataclass
class SlidingWindowConfig:
    """Configuration for the Sink sliding-window limiter."""

    burst_limit: int = 25
    burst_window_ms: int = 1000
    average_rate_per_s: float = 10.0
    average_window_ms: int = 5000
    max_wait_slice_ms: int = 20
    default_retry_after_ms: int = 1000
    max_throttle_retries: int = 5
    operation_timeout_s: float | None = None

    def __post_init__(self) -> None:
        if self.burst_limit < 1:
            raise ValueError(f"burst_limit must be >= 1, got {self.burst_limit}")
        if self.burst_window_ms <= 0 or self.average_window_ms <= 0:
            raise ValueError("window sizes must be > 0")
        if self.burst_window_ms > self.average_window_ms:
            raise ValueError(
                f"burst_window_ms ({self.burst_window_ms}) must be <= "
                f"average_window_ms ({self.average_window_ms})"
            )
        if self.average_limit < 1:
            raise ValueError(f"average window admits no requests: {self.average_limit}")
        if self.max_wait_slice_ms <= 0:
            raise ValueError(f"max_wait_slice_ms must be > 0, got {self.max_wait_slice_ms}")

    @property
    def average_limit(self) -> int:
        """Max admissions within one average window."""
        return int(self.average_rate_per_s * self.average_window_ms / 1000)


class SlidingWindowLimiter(SerialOperationQueue):
    """Serial limiter enforcing burst and average windows on the Sink."""

    def __init__(
        self,
        config: SlidingWindowConfig | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.config = config or SlidingWindowConfig()
        super().__init__(
            name="sink",
            operation_timeout_s=self.config.operation_timeout_s,
            time_fn=time_fn,
            sleep_fn=sleep_fn,
        )
        self._timestamps: deque[int] = deque()
        # Every admission ever made; only populated when tracking is enabled
        self.admission_log: list[int] | None = None

    def _prune(self, now_ms: int) -> None:
        cutoff = now_ms - self.config.average_window_ms
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _count_since(self, cutoff_ms: int) -> tuple[int, int | None]:
        """Count timestamps newer than cutoff and return the oldest of them."""
        count = 0
        oldest: int | None = None
        for ts in reversed(self._timestamps):
            if ts <= cutoff_ms:
                break
            count += 1
            oldest = ts
        return count, oldest

    def wait_time_ms(self, now_ms: int | None = None) -> int:
        """Time until the next admission fits both windows (0 = admit now)."""
        cfg = self.config
        now_ms = self._now_ms() if now_ms is None else now_ms
        self._prune(now_ms)

        wait_ms = 0
        burst_count, burst_oldest = self._count_since(now_ms - cfg.burst_window_ms)
        if burst_count >= cfg.burst_limit and burst_oldest is not None:
            wait_ms = max(wait_ms, burst_oldest + cfg.burst_window_ms - now_ms)

        average_count = len(self._timestamps)
        if average_count >= cfg.average_limit and self._timestamps:
            wait_ms = max(wait_ms, self._timestamps[0] + cfg.average_window_ms - now_ms)

        return max(wait_ms, 0)

    def admitted_in_window(self, window_ms: int) -> int:
        """Admissions in the last ``window_ms`` (at most average_window_ms back)."""
        now_ms = self._now_ms()
        self._prune(now_ms)
        count, _ = self._count_since(now_ms - window_ms)
        return count

    async def _admit(self) -> None:
        while True:
            wait_ms = self.wait_time_ms()
            if wait_ms <= 0:
                break
            slice_ms = min(wait_ms, self.config.max_wait_slice_ms)
            self.metrics.record_delay(slice_ms)
            await self._sleep_ms(slice_ms)

        now_ms = self._now_ms()
        self._timestamps.append(now_ms)
        if self.admission_log is not None:
            self.admission_log.append(now_ms)

    def _on_success(self) -> None:
        # Completion time replaces the dispatch time of the call just finished
        if self._timestamps:
            self._timestamps[-1] = max(self._timestamps[-1], self._now_ms())

    def _retry_delay_ms(self, item: _PendingOperation, exc: Exception) -> int | None:
        if not isinstance(exc, ApiError) or exc.kind != ErrorKind.THROTTLED:
            return None
        if item.retries >= self.config.max_throttle_retries:
            logger.error(
                "sink_throttle_retries_exhausted",
                extra={"retries": item.retries, "status": exc.status},
            )
            return None
        return exc.retry_after_ms or self.config.default_retry_after_ms

    def enable_admission_log(self) -> None:
        """Record every admission timestamp (for auditing window bounds)."""
        self.admission_log = []

    def get_status(self) -> dict[str, Any]:
        now_ms = self._now_ms()
        self._prune(now_ms)
        burst_count, _ = self._count_since(now_ms - self.config.burst_window_ms)
        status = super().get_status()
        status.update(
            {
                "burst_count": burst_count,
                "burst_limit": self.config.burst_limit,
                "average_count": len(self._timestamps),
                "average_limit": self.config.average_limit,
            }
        )
        return status

    def reset(self) -> None:
        self._timestamps.clear()
