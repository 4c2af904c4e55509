"""
Shared fixtures.

Time is injected everywhere the gate waits: FakeClock stands in for both
the monotonic and the wall clock, and fake_sleep advances it instead of
blocking, so polling tests run instantly and deterministically.
"""

from __future__ import annotations

import asyncio

import pytest


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    async def _sleep(seconds: float) -> None:
        clock.advance(seconds)
        await asyncio.sleep(0)

    return _sleep
