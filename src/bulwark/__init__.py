"""Bulwark: rate limiting and circuit breaking for asyncio services."""

from bulwark.core.circuit_breaker import CircuitBreaker, circuit_breaker
from bulwark.core.clock import ManualClock, MonotonicClock, SystemClock
from bulwark.core.config import ResilienceSettings, load_policies, load_policies_file
from bulwark.core.exceptions import (
    BulwarkError,
    CircuitOpenError,
    ConfigConflictError,
    InvalidKeyError,
    InvalidPolicyError,
    StoreUnavailableError,
    ThrottledError,
)
from bulwark.core.lifecycle import resilience_lifespan
from bulwark.core.metrics import DecisionMetrics
from bulwark.core.registry import ResilienceRegistry
from bulwark.domain.circuit_breaking import (
    BreakerDecision,
    CircuitBreakerPolicy,
    CircuitState,
    WindowScope,
)
from bulwark.domain.rate_limiting import (
    FailureMode,
    RateLimitAlgorithm,
    RateLimitDecision,
    RateLimiter,
    RateLimitPolicy,
)
from bulwark.infrastructure import InMemoryCounterStore, RedisCounterStore

__version__ = "0.1.0"

__all__ = [
    "BreakerDecision",
    "BulwarkError",
    "CircuitBreaker",
    "CircuitBreakerPolicy",
    "CircuitOpenError",
    "CircuitState",
    "ConfigConflictError",
    "DecisionMetrics",
    "FailureMode",
    "InMemoryCounterStore",
    "InvalidKeyError",
    "InvalidPolicyError",
    "ManualClock",
    "MonotonicClock",
    "RateLimitAlgorithm",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimiter",
    "RedisCounterStore",
    "ResilienceRegistry",
    "ResilienceSettings",
    "StoreUnavailableError",
    "SystemClock",
    "ThrottledError",
    "WindowScope",
    "circuit_breaker",
    "load_policies",
    "load_policies_file",
    "resilience_lifespan",
]
