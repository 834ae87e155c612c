"""Counter store implementations and backend clients."""

from .memory_store import InMemoryCounterStore
from .redis_store import RedisCounterStore

__all__ = [
    "InMemoryCounterStore",
    "RedisCounterStore",
]
