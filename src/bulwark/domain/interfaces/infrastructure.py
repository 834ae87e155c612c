"""Infrastructure service interfaces for the resilience core.

The rate limiter and circuit breaker never touch time or storage directly.
They depend on the two abstractions below, which infrastructure modules
implement for a single process (in-memory) or for a fleet (Redis).

Infrastructure collaborators:
- Clock: the time source every decision is stamped with
- Counter Store: key -> state storage with atomic read-modify-write primitives
"""

from abc import ABC, abstractmethod
from typing import Optional


class IClock(ABC):
    """Interface for the time source used by limiters and breakers.

    Implementations must be consistent within a process. Distributed
    deployments sharing a counter store should use the same NTP-synced
    wall clock on every node; residual skew is tolerated, never corrected.
    """

    @abstractmethod
    def now(self) -> float:
        """Returns the current time in seconds."""
        raise NotImplementedError


class ICounterStore(ABC):
    """Interface for key -> state storage shared by limiters and breakers.

    State values are opaque strings (JSON payloads produced by the domain),
    counters are floats. Every mutating operation must be atomic for its key:
    concurrent `compare_and_set` calls for the same key succeed for exactly
    one caller holding the current value.

    Implementations raise `StoreUnavailableError` when the backend fails;
    callers decide how to degrade. Stores that cross the network set
    `is_remote`, which makes callers bound every operation with a timeout.
    """

    is_remote: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Retrieves the value stored under `key`.

        Args:
            key: The storage key.

        Returns:
            The stored value, or None if the key is absent or expired.
        """
        raise NotImplementedError

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        new: str,
        ttl: Optional[float] = None,
    ) -> bool:
        """Atomically replaces the value of `key` if it still equals `expected`.

        Args:
            key: The storage key.
            expected: The value the caller read, or None if the key must be absent.
            new: The replacement value.
            ttl: Optional time-to-live in seconds applied on success.

        Returns:
            True if the value was replaced, False if another writer got there first.
        """
        raise NotImplementedError

    @abstractmethod
    async def increment(self, key: str, delta: float = 1.0, ttl: Optional[float] = None) -> float:
        """Atomically adds `delta` to the counter under `key` (created at 0).

        Args:
            key: The storage key.
            delta: Amount to add; may be negative.
            ttl: Optional time-to-live in seconds applied after the increment.

        Returns:
            The counter value after the increment.
        """
        raise NotImplementedError

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> bool:
        """Sets a time-to-live on an existing key.

        Returns:
            True if the key exists and the TTL was applied.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Removes a key. Returns True if it existed."""
        raise NotImplementedError

    async def ping(self) -> bool:
        """Health check. Stores without a remote backend are always healthy."""
        return True

    async def close(self) -> None:
        """Releases backend resources."""
        return None
