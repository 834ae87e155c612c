"""
Circuit Breaking Value Objects

- CircuitState: the three states of the breaker state machine
- WindowScope: where the rolling outcome window is kept
- CircuitBreakerPolicy: immutable per-policy configuration
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CircuitState(str, Enum):
    """Circuit breaker states. CLOSED is initial; there is no terminal state."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class WindowScope(str, Enum):
    """
    LOCAL keeps the outcome window in process memory; SHARED keeps it in
    the counter store so every node feeds and reads the same failure rate.
    """
    LOCAL = "local"
    SHARED = "shared"


@dataclass(frozen=True, slots=True)
class CircuitBreakerPolicy:
    """
    Immutable configuration for a family of circuit breakers.

    Business Rules:
    - failure_rate_threshold is a fraction in (0, 1]
    - minimum_volume, half_open_trial_count are at least 1
    - rolling_window_seconds, cooldown_seconds are positive
    - half_open_timeout_seconds, when set, is positive: a Half-Open breaker
      whose trials have not all completed by then reopens
    - slow_call_threshold_ms, when set, is positive: slower successful calls
      count as failures
    """
    failure_rate_threshold: float = 0.5
    minimum_volume: int = 10
    rolling_window_seconds: float = 30.0
    cooldown_seconds: float = 30.0
    half_open_trial_count: int = 3
    half_open_timeout_seconds: Optional[float] = None
    slow_call_threshold_ms: Optional[float] = None
    window_scope: WindowScope = WindowScope.LOCAL
    store_timeout_ms: float = 20.0

    def __post_init__(self):
        """Validate policy configuration at construction time"""
        if not isinstance(self.window_scope, WindowScope):
            object.__setattr__(self, "window_scope", WindowScope(self.window_scope))

        if not 0.0 < self.failure_rate_threshold <= 1.0:
            raise ValueError("failure_rate_threshold must be in (0, 1]")
        if self.minimum_volume < 1:
            raise ValueError("minimum_volume must be at least 1")
        if self.rolling_window_seconds <= 0:
            raise ValueError("rolling_window_seconds must be positive")
        if self.cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be positive")
        if self.half_open_trial_count < 1:
            raise ValueError("half_open_trial_count must be at least 1")
        if self.half_open_timeout_seconds is not None and self.half_open_timeout_seconds <= 0:
            raise ValueError("half_open_timeout_seconds must be positive")
        if self.slow_call_threshold_ms is not None and self.slow_call_threshold_ms <= 0:
            raise ValueError("slow_call_threshold_ms must be positive")
        if self.store_timeout_ms <= 0:
            raise ValueError("store_timeout_ms must be positive")

    @property
    def store_timeout_seconds(self) -> float:
        return self.store_timeout_ms / 1000.0

    def counts_as_failure(self, success: bool, latency_ms: float) -> bool:
        """A call fails if it errored, or if it succeeded slower than the slow-call threshold"""
        if not success:
            return True
        return self.slow_call_threshold_ms is not None and latency_ms > self.slow_call_threshold_ms
