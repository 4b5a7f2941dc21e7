"""
Tests for the Source leaky bucket limiter.

All tests run on a FakeClock: sleeps advance time instantly so delay zones,
refill and retry schedules are asserted exactly.
"""

from __future__ import annotations

import asyncio
import random

import pytest

from assignsync.connectors.errors import ThrottledError, ValidationError
from assignsync.connectors.headers import MappingHeaders
from assignsync.connectors.leaky_bucket import LeakyBucketConfig, LeakyBucketLimiter


def _limiter(clock, config: LeakyBucketConfig | None = None) -> LeakyBucketLimiter:
    return LeakyBucketLimiter(
        config,
        time_fn=clock.time_fn,
        sleep_fn=clock.sleep,
        rng=random.Random(1),
    )


class TestLeakyBucketConfig:
    def test_default_values(self) -> None:
        config = LeakyBucketConfig()
        assert config.capacity == 700.0
        assert config.leak_rate_per_s == 10.0
        assert config.initial_cost_estimate == 2.0
        assert config.low_water == 100.0
        assert config.critical_water == 30.0
        assert config.critical_delay_ms == 500
        assert config.max_retries == 5

    def test_invalid_thresholds(self) -> None:
        with pytest.raises(ValueError, match="thresholds"):
            LeakyBucketConfig(critical_water=200.0, low_water=100.0)
        with pytest.raises(ValueError, match="capacity"):
            LeakyBucketConfig(capacity=0)
        with pytest.raises(ValueError, match="cost_smoothing"):
            LeakyBucketConfig(cost_smoothing=0.0)


class TestDelayZones:
    """compute_delay_ms across the four bucket zones."""

    def test_full_bucket_no_delay(self, clock) -> None:
        limiter = _limiter(clock)
        assert limiter.compute_delay_ms() == 0

    def test_linear_zone(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.level = 65.0  # halfway between critical (30) and low (100)
        assert limiter.compute_delay_ms() == 100

    def test_linear_zone_at_low_water_is_free(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.level = 100.0
        assert limiter.compute_delay_ms() == 0

    def test_critical_zone_fixed_delay(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.level = 10.0
        assert limiter.compute_delay_ms() == 500

    def test_insufficient_level_waits_exact_refill(self, clock) -> None:
        """Level 0.5 with cost 2.0 needs 1.5 units at 10/s -> 150 ms."""
        limiter = _limiter(clock)
        limiter.level = 0.5
        assert limiter.compute_delay_ms() == 150

    def test_refill_over_time(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.level = 0.0
        clock.advance(5000)
        limiter._refill()
        assert limiter.level == pytest.approx(50.0)

    def test_refill_clamped_to_capacity(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.level = 690.0
        clock.advance(60_000)
        limiter._refill()
        assert limiter.level == 700.0


class TestHeaderUpdates:
    def test_remaining_overwrites_level(self, clock) -> None:
        limiter = _limiter(clock)
        snapshot = limiter.update_from_headers(MappingHeaders({"X-Rate-Limit-Remaining": "123.5"}))
        assert snapshot.remaining == 123.5
        assert limiter.level == 123.5

    def test_remaining_clamped(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.update_from_headers(MappingHeaders({"X-Rate-Limit-Remaining": "5000"}))
        assert limiter.level == 700.0
        limiter.update_from_headers(MappingHeaders({"X-Rate-Limit-Remaining": "-12"}))
        assert limiter.level == 0.0

    def test_cost_moving_average(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.update_from_headers(MappingHeaders({"X-Request-Cost": "10"}))
        # 2.0 * 0.7 + 10 * 0.3
        assert limiter.estimated_cost == pytest.approx(4.4)

    def test_missing_headers_change_nothing(self, clock) -> None:
        limiter = _limiter(clock)
        snapshot = limiter.update_from_headers(None)
        assert snapshot.cost is None
        assert snapshot.remaining is None
        assert limiter.level == 700.0
        assert limiter.estimated_cost == 2.0


class TestExecute:
    """Serial dispatch through the limiter."""

    @pytest.mark.asyncio
    async def test_debits_estimated_cost(self, clock) -> None:
        limiter = _limiter(clock)

        async def op() -> str:
            return "ok"

        assert await limiter.execute(op) == "ok"
        assert limiter.level == pytest.approx(698.0)
        assert limiter.metrics.completed == 1
        await limiter.close()

    @pytest.mark.asyncio
    async def test_fifo_order(self, clock) -> None:
        limiter = _limiter(clock)
        order: list[int] = []

        def make_op(i: int):
            async def op() -> int:
                order.append(i)
                return i

            return op

        results = await asyncio.gather(*(limiter.execute(make_op(i)) for i in range(10)))
        assert results == list(range(10))
        assert order == list(range(10))
        await limiter.close()

    @pytest.mark.asyncio
    async def test_level_stays_within_bounds(self, clock) -> None:
        """Level never leaves [0, capacity] under random header feedback."""
        limiter = _limiter(clock)
        rng = random.Random(99)
        levels: list[float] = []

        async def op() -> None:
            remaining = rng.choice([rng.uniform(-50, 800), None])
            cost = rng.uniform(0, 40)
            headers = {"X-Request-Cost": str(cost)}
            if remaining is not None:
                headers["X-Rate-Limit-Remaining"] = str(remaining)
            limiter.update_from_headers(MappingHeaders(headers))
            levels.append(limiter.level)

        for _ in range(200):
            await limiter.execute(op)
            levels.append(limiter.level)

        assert all(0.0 <= level <= 700.0 for level in levels)
        await limiter.close()

    @pytest.mark.asyncio
    async def test_low_level_delays_dispatch(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.level = 10.0

        async def op() -> None:
            return None

        await limiter.execute(op)
        assert clock.sleeps[0] == pytest.approx(0.5)
        assert limiter.metrics.delayed == 1
        assert limiter.metrics.max_delay_ms == 500
        await limiter.close()


class TestThrottleRetries:
    @pytest.mark.asyncio
    async def test_throttled_call_retried_then_succeeds(self, clock) -> None:
        limiter = _limiter(clock)
        calls = 0

        async def op() -> str:
            nonlocal calls
            calls += 1
            if calls <= 2:
                raise ThrottledError("throttled", status=403, service="source")
            return "done"

        assert await limiter.execute(op) == "done"
        assert calls == 3
        assert limiter.metrics.retried == 2
        # Backoff 1000ms then 2000ms, each +-20% jitter
        assert 0.8 <= clock.sleeps[0] <= 1.2
        assert 1.6 <= clock.sleeps[1] <= 2.4
        await limiter.close()

    @pytest.mark.asyncio
    async def test_six_throttles_exhaust_retries(self, clock) -> None:
        limiter = _limiter(clock)
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise ThrottledError("throttled", status=429, service="source")

        with pytest.raises(ThrottledError):
            await limiter.execute(op)
        assert calls == 6
        assert limiter.metrics.retried == 5
        assert limiter.metrics.failed == 1
        await limiter.close()

    @pytest.mark.asyncio
    async def test_retry_keeps_position_at_head(self, clock) -> None:
        """A throttled call is retried before calls queued behind it."""
        limiter = _limiter(clock)
        order: list[str] = []
        failed_once = False

        async def first() -> None:
            nonlocal failed_once
            order.append("first")
            if not failed_once:
                failed_once = True
                raise ThrottledError("throttled", status=429, service="source")

        async def second() -> None:
            order.append("second")

        await asyncio.gather(limiter.execute(first), limiter.execute(second))
        assert order == ["first", "first", "second"]
        await limiter.close()

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, clock) -> None:
        limiter = _limiter(clock)
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise ValidationError("bad", status=400, service="source")

        with pytest.raises(ValidationError):
            await limiter.execute(op)
        assert calls == 1
        assert limiter.metrics.retried == 0
        await limiter.close()


class TestQueueLifecycle:
    @pytest.mark.asyncio
    async def test_cancelled_caller_is_dropped(self, clock) -> None:
        limiter = _limiter(clock)
        release = asyncio.Event()
        second_called = False

        async def blocking() -> str:
            await release.wait()
            return "first"

        async def second() -> None:
            nonlocal second_called
            second_called = True

        t1 = asyncio.create_task(limiter.execute(blocking))
        t2 = asyncio.create_task(limiter.execute(second))
        for _ in range(3):
            await asyncio.sleep(0)

        t2.cancel()
        await asyncio.sleep(0)
        release.set()

        assert await t1 == "first"
        with pytest.raises(asyncio.CancelledError):
            await t2
        await asyncio.sleep(0)
        assert not second_called
        assert limiter.metrics.dropped_cancelled == 1
        await limiter.close()

    @pytest.mark.asyncio
    async def test_timeout_releases_slot(self, clock) -> None:
        limiter = LeakyBucketLimiter(
            LeakyBucketConfig(operation_timeout_s=0.01),
            time_fn=clock.time_fn,
            sleep_fn=clock.sleep,
        )

        async def hangs() -> None:
            await asyncio.sleep(10)

        async def quick() -> str:
            return "quick"

        with pytest.raises(asyncio.TimeoutError):
            await limiter.execute(hangs)
        assert await limiter.execute(quick) == "quick"
        await limiter.close()

    @pytest.mark.asyncio
    async def test_execute_after_close_raises(self, clock) -> None:
        limiter = _limiter(clock)
        await limiter.close()

        async def op() -> None:
            return None

        with pytest.raises(RuntimeError, match="closed"):
            await limiter.execute(op)

    @pytest.mark.asyncio
    async def test_status_and_reset(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.level = 42.0
        limiter.estimated_cost = 9.0
        status = limiter.get_status()
        assert status["level"] == 42.0
        assert status["capacity"] == 700.0
        assert status["queue_depth"] == 0

        limiter.reset()
        assert limiter.level == 700.0
        assert limiter.estimated_cost == 2.0
        await limiter.close()
