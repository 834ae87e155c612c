"""
Redis Connection Module

Creates the asynchronous Redis client behind RedisCounterStore.

**Security Note**: Ensure that the Redis connection URL (REDIS_URL) includes
SSL/TLS parameters (rediss://) when connecting over an untrusted network.
Avoid logging connection details such as passwords.

Functions:
    create_redis_client: Builds an asynchronous Redis client from settings.
"""

from redis.asyncio import Redis
import logging

from bulwark.core.config.settings import ResilienceSettings

# Configure logging for Redis connection events
logger = logging.getLogger(__name__)


def create_redis_client(settings: ResilienceSettings) -> Redis:
    """
    Provides an asynchronous Redis client.

    The socket timeout matches the store timeout so a hung connection
    surfaces as an error instead of stalling a decision; limiters also
    bound each call with their own policy timeout.

    Args:
        settings: Settings carrying REDIS_URL and STORE_TIMEOUT_MS.

    Returns:
        Redis: An asynchronous Redis client instance.
    """
    timeout = settings.STORE_TIMEOUT_MS / 1000.0
    redis = Redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=max(timeout, 1.0),
    )
    logger.debug("Redis client created")
    return redis
