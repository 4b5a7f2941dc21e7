"""
Single-worker FIFO execution queue shared by both rate limiters.

Every submitted operation becomes a future; one worker task drains the
queue strictly in submission order and runs each operation only after the
subclass's admission check returns. Operations whose future was cancelled
before the worker reached them are dropped without running.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LimiterMetrics:
    """Counters for limiter observability."""

    submitted: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    dropped_cancelled: int = 0
    delayed: int = 0
    total_delay_ms: int = 0
    max_delay_ms: int = 0
    max_queue_depth: int = 0

    def record_delay(self, delay_ms: int) -> None:
        if delay_ms <= 0:
            return
        self.delayed += 1
        self.total_delay_ms += delay_ms
        self.max_delay_ms = max(self.max_delay_ms, delay_ms)


@dataclass
class _PendingOperation:
    """Queued unit of work."""

    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    enqueue_time_ms: int
    retries: int = 0


async def _default_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


class SerialOperationQueue:
    """
    FIFO queue drained by a single worker task.

    Subclasses implement :meth:`_admit` (called before each dispatch),
    :meth:`_on_success` and :meth:`_retry_delay_ms` (decides whether a failed
    operation goes back to the head of the queue).

    Time and sleep are injectable for deterministic tests, following the
    ``_time_fn`` convention used across the connectors.
    """

    def __init__(
        self,
        *,
        name: str,
        operation_timeout_s: float | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self._operation_timeout_s = operation_timeout_s
        self._time_fn = time_fn
        self._sleep_fn = sleep_fn or _default_sleep
        self._queue: deque[_PendingOperation] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False
        self.metrics = LimiterMetrics()

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    async def _sleep_ms(self, delay_ms: float) -> None:
        if delay_ms > 0:
            await self._sleep_fn(delay_ms / 1000.0)

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` once the limiter admits it.

        Args:
            operation: Zero-argument coroutine factory representing one API call.
                It may be invoked more than once when the limiter retries it.

        Returns:
            Whatever the operation returns.

        Raises:
            RuntimeError: If the limiter has been closed.
            Exception: Whatever the operation raised once retries are exhausted.
        """
        if self._closed:
            raise RuntimeError(f"{self.name} limiter is closed")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._queue.append(
            _PendingOperation(operation=operation, future=future, enqueue_time_ms=self._now_ms())
        )
        self.metrics.submitted += 1
        self.metrics.max_queue_depth = max(self.metrics.max_queue_depth, len(self._queue))
        self._ensure_worker()
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name=f"{self.name}-limiter")

    async def _drain(self) -> None:
        while self._queue:
            item = self._queue.popleft()
            if item.future.done():
                self.metrics.dropped_cancelled += 1
                continue

            try:
                await self._admit()
                result = await self._run(item)
            except asyncio.CancelledError:
                item.future.cancel()
                raise
            except Exception as exc:
                delay_ms = self._retry_delay_ms(item, exc)
                if delay_ms is not None and not item.future.done():
                    item.retries += 1
                    self.metrics.retried += 1
                    logger.warning(
                        "limiter_retry_scheduled",
                        extra={
                            "limiter": self.name,
                            "retry": item.retries,
                            "delay_ms": delay_ms,
                            "error": str(exc),
                        },
                    )
                    await self._sleep_ms(delay_ms)
                    self._queue.appendleft(item)
                    continue
                self.metrics.failed += 1
                if not item.future.done():
                    item.future.set_exception(exc)
            else:
                self.metrics.completed += 1
                self._on_success()
                if not item.future.done():
                    item.future.set_result(result)

    async def _run(self, item: _PendingOperation) -> Any:
        if self._operation_timeout_s is None:
            return await item.operation()
        return await asyncio.wait_for(item.operation(), timeout=self._operation_timeout_s)

    async def _admit(self) -> None:
        """Block until the next operation may be dispatched."""
        raise NotImplementedError

    def _on_success(self) -> None:
        """Hook called after an operation completes successfully."""

    def _retry_delay_ms(self, item: _PendingOperation, exc: Exception) -> int | None:
        """Return a delay to requeue ``item`` at the head, or None to fail it."""
        return None

    async def close(self) -> None:
        """Stop the worker and cancel operations still waiting."""
        self._closed = True
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.cancel()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None

    def get_status(self) -> dict[str, Any]:
        """Get current limiter status for observability."""
        return {
            "queue_depth": len(self._queue),
            "submitted": self.metrics.submitted,
            "completed": self.metrics.completed,
            "failed": self.metrics.failed,
            "retried": self.metrics.retried,
            "delayed": self.metrics.delayed,
        }
