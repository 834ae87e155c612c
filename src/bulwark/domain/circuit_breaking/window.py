"""
Rolling outcome windows for circuit breakers.

Both implementations apply the sliding-window-counter technique to
(success, failure) pairs: two adjacent epoch-aligned buckets, with the
previous bucket weighted by the share of it still inside the trailing
window. Memory is constant and the failure rate favours recent outcomes.
"""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import structlog

from bulwark.domain.interfaces import ICounterStore
from bulwark.domain.rate_limiting.algorithms import window_index
from bulwark.domain.rate_limiting.value_objects import EPSILON

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class OutcomeTotals:
    """Weighted call and failure counts over the trailing window"""
    calls: float = 0.0
    failures: float = 0.0

    @property
    def volume(self) -> int:
        return math.floor(self.calls + EPSILON)

    @property
    def failure_rate(self) -> float:
        if self.calls <= 0:
            return 0.0
        return self.failures / self.calls


def _weighted(
    now: float,
    window_seconds: float,
    current_id: int,
    current: tuple,
    previous: tuple,
) -> OutcomeTotals:
    fraction = min(1.0, max(0.0, (now - current_id * window_seconds) / window_seconds))
    weight = 1.0 - fraction
    successes = current[0] + previous[0] * weight
    failures = current[1] + previous[1] * weight
    return OutcomeTotals(calls=successes + failures, failures=failures)


class RollingOutcomeWindow(ABC):
    """Interface for the window a breaker consults while Closed"""

    def __init__(self, window_seconds: float):
        self.window_seconds = window_seconds

    @abstractmethod
    async def record(self, failed: bool, now: float) -> None:
        """Count one outcome in the bucket containing `now`"""
        raise NotImplementedError

    @abstractmethod
    async def totals(self, now: float) -> OutcomeTotals:
        """Weighted counts over the trailing window ending at `now`"""
        raise NotImplementedError

    @abstractmethod
    async def reset(self, now: float) -> None:
        """Drop all recorded outcomes"""
        raise NotImplementedError


class LocalOutcomeWindow(RollingOutcomeWindow):
    """In-process window. The owning breaker serialises access."""

    def __init__(self, window_seconds: float):
        super().__init__(window_seconds)
        self._window_id: Optional[int] = None
        self._current = (0, 0)
        self._previous = (0, 0)

    def _roll(self, now: float) -> int:
        current_id = window_index(now, self.window_seconds)
        if self._window_id is None:
            self._window_id = current_id
        elif current_id == self._window_id + 1:
            self._previous, self._current = self._current, (0, 0)
            self._window_id = current_id
        elif current_id > self._window_id + 1:
            self._previous, self._current = (0, 0), (0, 0)
            self._window_id = current_id
        # current_id behind the stored window (clock skew): keep counting the newer bucket
        return self._window_id

    async def record(self, failed: bool, now: float) -> None:
        self._roll(now)
        successes, failures = self._current
        self._current = (successes, failures + 1) if failed else (successes + 1, failures)

    async def totals(self, now: float) -> OutcomeTotals:
        current_id = self._roll(now)
        return _weighted(now, self.window_seconds, current_id, self._current, self._previous)

    async def reset(self, now: float) -> None:
        self._window_id = None
        self._current = (0, 0)
        self._previous = (0, 0)


class SharedOutcomeWindow(RollingOutcomeWindow):
    """
    Window kept in the counter store, one counter per (bucket, outcome).

    Best-effort: store failures are logged and the window reports no data,
    which keeps the breaker Closed rather than breaking the reporting path.
    """

    def __init__(
        self,
        store: ICounterStore,
        namespace: str,
        window_seconds: float,
        timeout_seconds: float = 0.02,
    ):
        super().__init__(window_seconds)
        self.store = store
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds

    def _key(self, window_id: int, outcome: str) -> str:
        return f"{self.namespace}:{window_id}:{outcome}"

    async def _call(self, operation):
        if not self.store.is_remote:
            return await operation
        return await asyncio.wait_for(operation, timeout=self.timeout_seconds)

    async def record(self, failed: bool, now: float) -> None:
        current_id = window_index(now, self.window_seconds)
        try:
            await self._call(self.store.increment(
                self._key(current_id, "f" if failed else "s"), 1.0, ttl=2 * self.window_seconds
            ))
        except Exception as e:
            logger.warning("outcome_window_record_failed", namespace=self.namespace, error=str(e))

    async def totals(self, now: float) -> OutcomeTotals:
        current_id = window_index(now, self.window_seconds)
        try:
            values = []
            for window_id in (current_id, current_id - 1):
                for outcome in ("s", "f"):
                    raw = await self._call(self.store.get(self._key(window_id, outcome)))
                    values.append(float(raw) if raw is not None else 0.0)
        except Exception as e:
            logger.warning("outcome_window_read_failed", namespace=self.namespace, error=str(e))
            return OutcomeTotals()
        current = (values[0], values[1])
        previous = (values[2], values[3])
        return _weighted(now, self.window_seconds, current_id, current, previous)

    async def reset(self, now: float) -> None:
        current_id = window_index(now, self.window_seconds)
        try:
            for window_id in (current_id, current_id - 1):
                for outcome in ("s", "f"):
                    await self._call(self.store.delete(self._key(window_id, outcome)))
        except Exception as e:
            logger.warning("outcome_window_reset_failed", namespace=self.namespace, error=str(e))
