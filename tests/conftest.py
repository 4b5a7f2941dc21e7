"""Shared fixtures: a manually advanced clock for limiters, caches and retries."""

from __future__ import annotations

import asyncio

import pytest


class FakeClock:
    """Millisecond clock whose sleep advances time instead of waiting."""

    def __init__(self, start_ms: int = 0) -> None:
        self.now_ms: float = float(start_ms)
        self.sleeps: list[float] = []

    def time_fn(self) -> int:
        return int(self.now_ms)

    def advance(self, ms: float) -> None:
        self.now_ms += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now_ms += seconds * 1000
        # Let other tasks run, as a real sleep would
        await asyncio.sleep(0)

    @property
    def total_slept_ms(self) -> float:
        return sum(self.sleeps) * 1000


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start_ms=1_000_000)
