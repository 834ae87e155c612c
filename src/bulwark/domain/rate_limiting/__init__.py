"""
Rate Limiting Domain

Admission control per caller/key using one of four interchangeable
algorithms, executed atomically against an abstract counter store.
"""

from .algorithms import Transition, decide
from .entities import (
    FixedWindowState,
    RateLimitDecision,
    SlidingCounterState,
    SlidingLogState,
    TokenBucketState,
)
from .services import RateLimiter
from .value_objects import EPSILON, FailureMode, RateLimitAlgorithm, RateLimitPolicy

__all__ = [
    "EPSILON",
    "FailureMode",
    "FixedWindowState",
    "RateLimitAlgorithm",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimiter",
    "SlidingCounterState",
    "SlidingLogState",
    "TokenBucketState",
    "Transition",
    "decide",
]
