"""
Redis counter store.

Shared implementation of ICounterStore so every node in a fleet limits
against the same counters. Compare-and-set runs as a Lua script, which
Redis executes atomically, and increments run in a MULTI/EXEC pipeline.

Every Redis or socket error is translated into StoreUnavailableError;
limiters and breakers decide how to degrade from there.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from bulwark.core.exceptions import StoreUnavailableError
from bulwark.domain.interfaces import ICounterStore

logger = structlog.get_logger(__name__)

# KEYS[1] = key
# ARGV[1] = "1" if the key must be absent, "0" otherwise
# ARGV[2] = expected value, ARGV[3] = new value, ARGV[4] = ttl in ms (0 = none)
_COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '1' then
    if current then
        return 0
    end
elseif current ~= ARGV[2] then
    return 0
end
redis.call('SET', KEYS[1], ARGV[3])
local ttl_ms = tonumber(ARGV[4])
if ttl_ms > 0 then
    redis.call('PEXPIRE', KEYS[1], ttl_ms)
end
return 1
"""


def _ttl_ms(ttl: Optional[float]) -> int:
    if ttl is None:
        return 0
    return max(1, int(ttl * 1000))


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisCounterStore(ICounterStore):
    """
    A concrete implementation of ICounterStore using Redis.

    The client may be created with or without `decode_responses`; values
    are normalised to str either way.
    """

    is_remote = True

    def __init__(self, redis_client: Redis, key_prefix: str = "bulwark:"):
        """
        Initialize the Redis-backed counter store.

        Args:
            redis_client (Redis): The async Redis client instance.
            key_prefix (str): Namespace prepended to every key.
        """
        self.redis = redis_client
        self.key_prefix = key_prefix
        # register_script handles EVALSHA and reloads the script on NOSCRIPT.
        self._compare_and_set = redis_client.register_script(_COMPARE_AND_SET_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisError, OSError) as e:
            logger.warning("redis_store_error", operation=operation, error=str(e))
            raise StoreUnavailableError(f"Redis {operation} failed: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        with self._translate_errors("get"):
            return _decode(await self.redis.get(self._key(key)))

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        new: str,
        ttl: Optional[float] = None,
    ) -> bool:
        args = ["1" if expected is None else "0", expected or "", new, _ttl_ms(ttl)]
        with self._translate_errors("compare_and_set"):
            result = await self._compare_and_set(keys=[self._key(key)], args=args)
        return int(result) == 1

    async def increment(self, key: str, delta: float = 1.0, ttl: Optional[float] = None) -> float:
        full_key = self._key(key)
        with self._translate_errors("increment"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incrbyfloat(full_key, delta)
                if ttl is not None:
                    pipe.pexpire(full_key, _ttl_ms(ttl))
                results = await pipe.execute()
        return float(_decode(results[0]))

    async def expire(self, key: str, ttl: float) -> bool:
        with self._translate_errors("expire"):
            return bool(await self.redis.pexpire(self._key(key), _ttl_ms(ttl)))

    async def delete(self, key: str) -> bool:
        with self._translate_errors("delete"):
            return int(await self.redis.delete(self._key(key))) > 0

    async def ping(self) -> bool:
        """
        Perform a health check on the Redis connection.
        """
        try:
            return bool(await self.redis.ping())
        except (RedisError, OSError) as e:
            logger.warning("redis_store_unhealthy", error=str(e))
            return False

    async def close(self) -> None:
        await self.redis.aclose()
        logger.debug("Redis connection closed")
