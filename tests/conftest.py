import asyncio
from typing import Optional

import pytest

from bulwark.core.clock import ManualClock
from bulwark.core.exceptions import StoreUnavailableError
from bulwark.core.metrics import DecisionMetrics
from bulwark.core.registry import ResilienceRegistry
from bulwark.domain.interfaces import ICounterStore
from bulwark.infrastructure import InMemoryCounterStore

# Divisible by every window length used in the tests, so windows start at the clock's start.
EPOCH = 6000.0


class FailingCounterStore(ICounterStore):
    """Store whose every operation fails, as a down Redis would."""

    is_remote = True

    def __init__(self):
        self.calls = 0

    async def _fail(self):
        self.calls += 1
        raise StoreUnavailableError("connection refused")

    async def get(self, key: str) -> Optional[str]:
        await self._fail()

    async def compare_and_set(self, key, expected, new, ttl=None) -> bool:
        await self._fail()

    async def increment(self, key, delta=1.0, ttl=None) -> float:
        await self._fail()

    async def expire(self, key, ttl) -> bool:
        await self._fail()

    async def delete(self, key) -> bool:
        await self._fail()

    async def ping(self) -> bool:
        return False


class YieldingCounterStore(InMemoryCounterStore):
    """In-memory store that yields to the event loop inside every call,
    so concurrent tasks interleave between read and compare-and-set."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def compare_and_set(self, key, expected, new, ttl=None):
        await asyncio.sleep(0)
        return await super().compare_and_set(key, expected, new, ttl)


@pytest.fixture
def clock():
    """Fixture providing a manual clock starting on a window boundary."""
    return ManualClock(start=EPOCH)


@pytest.fixture
def store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def failing_store():
    return FailingCounterStore()


@pytest.fixture
def metrics():
    return DecisionMetrics()


@pytest.fixture
def registry(store, clock, metrics):
    """Fixture to create a fresh registry backed by the in-memory store."""
    return ResilienceRegistry(store=store, clock=clock, metrics=metrics)


@pytest.fixture
def yielding_store(clock):
    return YieldingCounterStore(clock=clock)
