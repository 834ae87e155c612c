"""
Rate Limiting Value Objects

Immutable value objects representing core concepts in the rate limiting domain.

Value Objects:
- RateLimitAlgorithm: Enumeration of supported algorithms
- FailureMode: Behaviour when the counter store is unavailable
- RateLimitPolicy: Immutable per-policy configuration shared by every key

Design Principles:
- Immutability: All value objects are frozen after creation
- Validation: Business rules enforced at construction time
- Equality: Value-based equality, so identical registrations compare equal
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional

# Tolerance for float comparisons at exact capacity/window boundaries.
EPSILON: Final = 1e-9


class RateLimitAlgorithm(str, Enum):
    """
    Enumeration of supported rate limiting algorithms.

    Each algorithm has different characteristics suitable for different use cases:
    - TOKEN_BUCKET: Allows bursts up to capacity, then a steady refill rate
    - FIXED_WINDOW: Cheapest; bursts straddling a window boundary can reach
      twice the limit in a short span
    - SLIDING_WINDOW_LOG: Exact trailing window, memory bounded by the limit
    - SLIDING_WINDOW_COUNTER: Approximate trailing window from two counters
    """
    TOKEN_BUCKET = "token_bucket"
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW_LOG = "sliding_window_log"
    SLIDING_WINDOW_COUNTER = "sliding_window_counter"


class FailureMode(str, Enum):
    """What a limiter does when its counter store fails or times out.

    - FAIL_OPEN: admit the request and log a degraded-mode warning
    - FAIL_CLOSED: reject the request
    - FAIL_HARD: reject by raising `StoreUnavailableError` to the caller
    """
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"
    FAIL_HARD = "fail_hard"


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """
    Immutable value object describing how one family of keys is limited.

    Created once at registry-configuration time and shared read-only by
    every RateLimiter that uses it.

    Business Rules:
    - capacity must be positive (bucket size, or requests per window)
    - token bucket needs a positive refill_rate (tokens/second)
    - window algorithms need a positive window_seconds
    - store_timeout_ms must be positive
    """
    algorithm: RateLimitAlgorithm
    capacity: int
    refill_rate: Optional[float] = None
    window_seconds: Optional[float] = None
    failure_mode: FailureMode = FailureMode.FAIL_OPEN
    store_timeout_ms: float = 20.0
    max_cas_retries: int = 32

    def __post_init__(self):
        """Validate policy configuration at construction time"""
        if not isinstance(self.algorithm, RateLimitAlgorithm):
            object.__setattr__(self, "algorithm", RateLimitAlgorithm(self.algorithm))
        if not isinstance(self.failure_mode, FailureMode):
            object.__setattr__(self, "failure_mode", FailureMode(self.failure_mode))

        if self.capacity <= 0:
            raise ValueError("capacity must be positive")

        if self.algorithm is RateLimitAlgorithm.TOKEN_BUCKET:
            if self.refill_rate is None or self.refill_rate <= 0:
                raise ValueError("token bucket requires a positive refill_rate")
        elif self.window_seconds is None or self.window_seconds <= 0:
            raise ValueError(f"{self.algorithm.value} requires a positive window_seconds")

        if self.store_timeout_ms <= 0:
            raise ValueError("store_timeout_ms must be positive")

        if self.max_cas_retries < 1:
            raise ValueError("max_cas_retries must be at least 1")

    @property
    def store_timeout_seconds(self) -> float:
        return self.store_timeout_ms / 1000.0

    @property
    def idle_ttl_seconds(self) -> float:
        """
        How long per-key state stays meaningful without traffic.

        A token bucket idle for capacity / refill_rate is full again and
        indistinguishable from a fresh one; window state is stale after one
        window (two for the sliding counter, which reads the previous window).
        """
        if self.algorithm is RateLimitAlgorithm.TOKEN_BUCKET:
            return self.capacity / self.refill_rate
        if self.algorithm is RateLimitAlgorithm.SLIDING_WINDOW_COUNTER:
            return 2 * self.window_seconds
        return self.window_seconds

    @classmethod
    def token_bucket(cls, capacity: int, refill_rate: float, **kwargs) -> RateLimitPolicy:
        """Create a token bucket policy"""
        return cls(RateLimitAlgorithm.TOKEN_BUCKET, capacity, refill_rate=refill_rate, **kwargs)

    @classmethod
    def fixed_window(cls, limit: int, window_seconds: float, **kwargs) -> RateLimitPolicy:
        """Create a fixed window policy"""
        return cls(RateLimitAlgorithm.FIXED_WINDOW, limit, window_seconds=window_seconds, **kwargs)

    @classmethod
    def sliding_window_log(cls, limit: int, window_seconds: float, **kwargs) -> RateLimitPolicy:
        """Create an exact sliding window policy"""
        return cls(RateLimitAlgorithm.SLIDING_WINDOW_LOG, limit, window_seconds=window_seconds, **kwargs)

    @classmethod
    def sliding_window_counter(cls, limit: int, window_seconds: float, **kwargs) -> RateLimitPolicy:
        """Create an approximate sliding window policy"""
        return cls(
            RateLimitAlgorithm.SLIDING_WINDOW_COUNTER, limit, window_seconds=window_seconds, **kwargs
        )

    @classmethod
    def from_rate_string(cls, rate_string: str, algorithm: RateLimitAlgorithm = RateLimitAlgorithm.FIXED_WINDOW,
                         **kwargs) -> RateLimitPolicy:
        """
        Create a policy from rate string format (e.g., "100/minute").

        Supported time units: second, minute, hour, day. For a token bucket
        the rate string sets capacity and a refill of capacity per period.
        """
        try:
            count_str, period = rate_string.split('/')
            count = int(count_str)

            period_map = {
                'second': 1,
                'minute': 60,
                'hour': 3600,
                'day': 86400
            }

            if period not in period_map:
                raise ValueError(f"Unsupported period: {period}")

            window_seconds = period_map[period]
        except (ValueError, AttributeError) as e:
            raise ValueError(f"Invalid rate string format: {rate_string}") from e

        algorithm = RateLimitAlgorithm(algorithm)
        if algorithm is RateLimitAlgorithm.TOKEN_BUCKET:
            return cls(algorithm, count, refill_rate=count / window_seconds, **kwargs)
        return cls(algorithm, count, window_seconds=window_seconds, **kwargs)
