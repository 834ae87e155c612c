"""
Metrics collection for resilience decisions.
"""
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict

from bulwark.domain.circuit_breaking import CircuitState


class DecisionMetrics:
    """
    Collects in-process counters for every decision the core makes.

    This class tracks:
    - Rate limit decisions per policy (admitted, rejected, degraded)
    - Circuit breaker decisions per breaker (allowed, rejected)
    - Circuit breaker state transitions
    - Reported call outcomes and their latency

    The counters are meant to be scraped into the host's own metrics system
    via `snapshot()`.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._start_time = datetime.now(timezone.utc)
        self.reset()

    def reset(self) -> None:
        """Reset all counters."""
        with self._lock:
            self._rate_limits: Dict[str, Dict[str, int]] = defaultdict(
                lambda: {"admitted": 0, "rejected": 0, "degraded": 0}
            )
            self._breakers: Dict[str, Dict[str, Any]] = defaultdict(
                lambda: {
                    "allowed": 0,
                    "rejected": 0,
                    "successes": 0,
                    "failures": 0,
                    "total_latency_ms": 0.0,
                    "transitions": defaultdict(int),
                }
            )

    def record_rate_limit(self, policy_name: str, allowed: bool) -> None:
        """Record a rate limit decision."""
        with self._lock:
            self._rate_limits[policy_name]["admitted" if allowed else "rejected"] += 1

    def record_degraded(self, policy_name: str) -> None:
        """Record a decision made without the counter store."""
        with self._lock:
            self._rate_limits[policy_name]["degraded"] += 1

    def record_breaker_decision(self, breaker_name: str, allowed: bool) -> None:
        """Record a circuit breaker allow/reject."""
        with self._lock:
            self._breakers[breaker_name]["allowed" if allowed else "rejected"] += 1

    def record_outcome(self, breaker_name: str, failed: bool, latency_ms: float) -> None:
        """Record a reported call outcome."""
        with self._lock:
            stats = self._breakers[breaker_name]
            stats["failures" if failed else "successes"] += 1
            stats["total_latency_ms"] += latency_ms

    def record_transition(self, breaker_name: str, old: CircuitState, new: CircuitState) -> None:
        """Record a circuit breaker state transition."""
        with self._lock:
            self._breakers[breaker_name]["transitions"][f"{old.value}->{new.value}"] += 1

    def snapshot(self) -> Dict[str, Any]:
        """Get a plain-dict copy of all collected metrics."""
        with self._lock:
            breakers = {}
            for name, stats in self._breakers.items():
                outcomes = stats["successes"] + stats["failures"]
                breakers[name] = {
                    "allowed": stats["allowed"],
                    "rejected": stats["rejected"],
                    "successes": stats["successes"],
                    "failures": stats["failures"],
                    "avg_latency_ms": stats["total_latency_ms"] / outcomes if outcomes else 0.0,
                    "transitions": dict(stats["transitions"]),
                }
            return {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime": (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                "rate_limits": {name: dict(stats) for name, stats in self._rate_limits.items()},
                "circuit_breakers": breakers,
            }
