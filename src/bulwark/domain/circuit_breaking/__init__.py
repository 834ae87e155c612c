"""
Circuit Breaking Domain

Policy, tagged state variants and rolling outcome windows used by
`bulwark.core.circuit_breaker.CircuitBreaker`.
"""

from .entities import BreakerDecision, BreakerState, ClosedState, HalfOpenState, OpenState
from .value_objects import CircuitBreakerPolicy, CircuitState, WindowScope
from .window import (
    LocalOutcomeWindow,
    OutcomeTotals,
    RollingOutcomeWindow,
    SharedOutcomeWindow,
)

__all__ = [
    "BreakerDecision",
    "BreakerState",
    "CircuitBreakerPolicy",
    "CircuitState",
    "ClosedState",
    "HalfOpenState",
    "LocalOutcomeWindow",
    "OpenState",
    "OutcomeTotals",
    "RollingOutcomeWindow",
    "SharedOutcomeWindow",
    "WindowScope",
]
