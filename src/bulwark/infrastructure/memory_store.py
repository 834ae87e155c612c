"""
In-memory counter store.

Single-process implementation of ICounterStore for development, tests and
deployments where each node limits independently. Keys are spread over a
fixed set of lock stripes, so operations on unrelated keys rarely contend
and no single lock serialises the whole store.
"""

import threading
from typing import Dict, Optional, Tuple

import structlog

from bulwark.core.clock import MonotonicClock
from bulwark.domain.interfaces import IClock, ICounterStore

logger = structlog.get_logger(__name__)


class InMemoryCounterStore(ICounterStore):
    """
    Dict-backed store with lazy TTL expiry.

    Expired entries disappear on the next access to their key, or in bulk
    via `purge_expired()`, which the registry's idle sweep calls.
    """

    def __init__(self, clock: Optional[IClock] = None, stripes: int = 64):
        self._clock = clock or MonotonicClock()
        self._data: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}
        self._locks: Tuple[threading.Lock, ...] = tuple(threading.Lock() for _ in range(stripes))

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def _expire_if_due(self, key: str, now: float) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and now >= deadline:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def _set_ttl(self, key: str, ttl: Optional[float], now: float) -> None:
        if ttl is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = now + ttl

    async def get(self, key: str) -> Optional[str]:
        with self._lock_for(key):
            self._expire_if_due(key, self._clock.now())
            return self._data.get(key)

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        new: str,
        ttl: Optional[float] = None,
    ) -> bool:
        with self._lock_for(key):
            now = self._clock.now()
            self._expire_if_due(key, now)
            if self._data.get(key) != expected:
                return False
            self._data[key] = new
            self._set_ttl(key, ttl, now)
            return True

    async def increment(self, key: str, delta: float = 1.0, ttl: Optional[float] = None) -> float:
        with self._lock_for(key):
            now = self._clock.now()
            self._expire_if_due(key, now)
            value = float(self._data.get(key, 0.0)) + delta
            self._data[key] = repr(value)
            if ttl is not None:
                self._set_ttl(key, ttl, now)
            return value

    async def expire(self, key: str, ttl: float) -> bool:
        with self._lock_for(key):
            now = self._clock.now()
            self._expire_if_due(key, now)
            if key not in self._data:
                return False
            self._set_ttl(key, ttl, now)
            return True

    async def delete(self, key: str) -> bool:
        with self._lock_for(key):
            self._expiry.pop(key, None)
            return self._data.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Evict every expired entry. Returns the number removed."""
        now = self._clock.now()
        removed = 0
        for key, deadline in list(self._expiry.items()):
            if now < deadline:
                continue
            with self._lock_for(key):
                current = self._expiry.get(key)
                if current is not None and now >= current:
                    self._data.pop(key, None)
                    self._expiry.pop(key, None)
                    removed += 1
        if removed:
            logger.debug("memory_store_purged", removed=removed)
        return removed

    def __len__(self) -> int:
        return len(self._data)
