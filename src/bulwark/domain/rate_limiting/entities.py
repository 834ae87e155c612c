"""Rate Limiting Domain Entities

Per-key limiter state and the decision returned for every acquire.

Entities:
- TokenBucketState / FixedWindowState / SlidingLogState / SlidingCounterState:
  per-key state, one shape per algorithm
- RateLimitDecision: Result of a rate limiting operation

State objects are frozen. A decision never mutates state in place; it
produces a replacement that the limiter installs with compare-and-set, so
the serialised payload doubles as the CAS token.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from .value_objects import RateLimitAlgorithm


@dataclass(frozen=True, slots=True)
class TokenBucketState:
    """Tokens currently in the bucket and when they were last topped up."""
    tokens: float
    last_refill: float


@dataclass(frozen=True, slots=True)
class FixedWindowState:
    """Admitted cost inside the epoch-aligned window `window_id`."""
    window_id: int
    count: int


@dataclass(frozen=True, slots=True)
class SlidingLogState:
    """Ordered timestamps of admitted requests still inside the window."""
    timestamps: Tuple[float, ...] = ()


@dataclass(frozen=True, slots=True)
class SlidingCounterState:
    """Counts for the current window and the one immediately before it."""
    window_id: int
    current: int
    previous: int


LimiterState = Union[TokenBucketState, FixedWindowState, SlidingLogState, SlidingCounterState]


def encode_state(state: LimiterState) -> str:
    """Serialise a state object to the JSON payload kept in the counter store."""
    if isinstance(state, TokenBucketState):
        body: Dict[str, Any] = {"tokens": state.tokens, "last_refill": state.last_refill}
    elif isinstance(state, FixedWindowState):
        body = {"window_id": state.window_id, "count": state.count}
    elif isinstance(state, SlidingLogState):
        body = {"timestamps": list(state.timestamps)}
    elif isinstance(state, SlidingCounterState):
        body = {"window_id": state.window_id, "current": state.current, "previous": state.previous}
    else:
        raise TypeError(f"Unsupported limiter state: {type(state).__name__}")
    return json.dumps(body, separators=(",", ":"), sort_keys=True)


def decode_state(algorithm: RateLimitAlgorithm, payload: Optional[str]) -> Optional[LimiterState]:
    """
    Parse a stored payload back into the state object for `algorithm`.

    Returns None for an absent key. Unreadable payloads also return None so
    the next successful decision overwrites them.
    """
    if payload is None:
        return None
    try:
        body = json.loads(payload)
        if algorithm is RateLimitAlgorithm.TOKEN_BUCKET:
            return TokenBucketState(float(body["tokens"]), float(body["last_refill"]))
        if algorithm is RateLimitAlgorithm.FIXED_WINDOW:
            return FixedWindowState(int(body["window_id"]), int(body["count"]))
        if algorithm is RateLimitAlgorithm.SLIDING_WINDOW_LOG:
            return SlidingLogState(tuple(float(ts) for ts in body["timestamps"]))
        if algorithm is RateLimitAlgorithm.SLIDING_WINDOW_COUNTER:
            return SlidingCounterState(int(body["window_id"]), int(body["current"]), int(body["previous"]))
    except (ValueError, KeyError, TypeError):
        return None
    raise ValueError(f"Unsupported algorithm: {algorithm}")


@dataclass
class RateLimitDecision:
    """Entity representing the result of a rate limiting operation.

    Contains whether a request was admitted, remaining capacity and, when
    rejected, how long to wait. `retry_after` is None when the requested
    cost exceeds the policy capacity and can never be admitted.
    """

    # Core result
    allowed: bool
    limit: int
    remaining: int
    algorithm: RateLimitAlgorithm

    # Timing information
    retry_after: Optional[float] = None  # Seconds to wait before retrying

    # Context
    key: Optional[str] = None
    policy_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    # Error handling
    degraded: bool = False
    error_details: Optional[str] = None

    @property
    def is_blocked(self) -> bool:
        """Check if the request was rejected"""
        return not self.allowed

    @property
    def retry_after_ms(self) -> Optional[int]:
        """Milliseconds to wait, rounded up so a prompt retry is not early"""
        if self.retry_after is None:
            return None
        return int(math.ceil(self.retry_after * 1000))

    @classmethod
    def admitted(
        cls,
        limit: int,
        remaining: int,
        algorithm: RateLimitAlgorithm,
        **kwargs,
    ) -> RateLimitDecision:
        """Factory method for admitted decisions"""
        return cls(
            allowed=True,
            limit=limit,
            remaining=remaining,
            algorithm=algorithm,
            **kwargs,
        )

    @classmethod
    def rejected(
        cls,
        limit: int,
        retry_after: Optional[float],
        algorithm: RateLimitAlgorithm,
        **kwargs,
    ) -> RateLimitDecision:
        """Factory method for rejected decisions"""
        remaining = kwargs.pop("remaining", 0)
        return cls(
            allowed=False,
            limit=limit,
            remaining=remaining,
            retry_after=retry_after,
            algorithm=algorithm,
            **kwargs,
        )

    @classmethod
    def fallback(
        cls, allowed: bool, limit: int, algorithm: RateLimitAlgorithm, error_details: str, **kwargs
    ) -> RateLimitDecision:
        """Factory method for decisions made without the counter store"""
        return cls(
            allowed=allowed,
            limit=limit,
            remaining=-1,  # Indicates fallback mode
            algorithm=algorithm,
            degraded=True,
            error_details=error_details,
            **kwargs,
        )
