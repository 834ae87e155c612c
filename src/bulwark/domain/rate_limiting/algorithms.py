"""
Rate Limiting Algorithms

Pure decision functions, one per algorithm. Each takes the state read from
the counter store (None for a key never seen or evicted), the current time,
the request cost and the policy, and returns a Transition: the state to
write back (None means "leave the store untouched") plus the decision.

Nothing here performs I/O, so the limiter can re-run a decision against a
fresh read whenever its compare-and-set loses a race.

Boundary rules shared by all algorithms:
- Fixed windows start on their boundary; window indices are floor(now / W).
- A sliding log covers (now - W, now]: an entry exactly W old has expired.
- Fractional counts are floored before comparing against the limit.
- Float comparisons allow EPSILON of slack so exact boundaries do not flap.
- Retry hints land just past the boundary they wait for, so a caller
  retrying at exactly now + retry_after is admitted.
- A clock reading older than the stored state is clamped: elapsed time is
  never negative and stored timestamps never move backwards.
"""

from __future__ import annotations

import bisect
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .entities import (
    FixedWindowState,
    LimiterState,
    SlidingCounterState,
    SlidingLogState,
    TokenBucketState,
)
from .value_objects import EPSILON, RateLimitAlgorithm, RateLimitPolicy

# Added to every retry hint; larger than the rounding of epoch-second timestamps.
RETRY_MARGIN = 5e-7


@dataclass(frozen=True, slots=True)
class Transition:
    """Outcome of one decision: what to persist and what to tell the caller"""
    new_state: Optional[LimiterState]
    allowed: bool
    remaining: int
    retry_after: Optional[float] = None


def window_index(now: float, window_seconds: float) -> int:
    """Epoch-aligned window number containing `now`"""
    return math.floor(now / window_seconds + EPSILON)


def _floor_count(value: float) -> int:
    return math.floor(value + EPSILON)


def _retry_hint(delay: float) -> float:
    return max(0.0, delay) + RETRY_MARGIN


def decide_token_bucket(
    state: Optional[TokenBucketState], now: float, cost: int, policy: RateLimitPolicy
) -> Transition:
    """
    Continuous refill at `refill_rate`, capped at `capacity`.

    A key with no state starts with a full bucket. Rejections leave the
    stored state untouched; the refill they computed is recomputed next time.
    """
    capacity = policy.capacity
    rate = policy.refill_rate

    if state is None:
        tokens, last_refill = float(capacity), now
    else:
        elapsed = max(0.0, now - state.last_refill)
        tokens = min(float(capacity), state.tokens + elapsed * rate)
        last_refill = max(state.last_refill, now)

    if cost > capacity:
        return Transition(None, False, _floor_count(tokens), None)

    if tokens - cost >= -EPSILON:
        left = max(0.0, tokens - cost)
        return Transition(TokenBucketState(left, last_refill), True, _floor_count(left))

    return Transition(None, False, _floor_count(tokens), _retry_hint((cost - tokens) / rate))


def decide_fixed_window(
    state: Optional[FixedWindowState], now: float, cost: int, policy: RateLimitPolicy
) -> Transition:
    """
    Count admitted cost per epoch-aligned window of length W.

    Two bursts straddling a boundary can admit up to 2 x limit within a
    short span. That is the accepted trade-off of this algorithm.
    """
    limit = policy.capacity
    window = policy.window_seconds
    current_id = window_index(now, window)

    if state is None or state.window_id < current_id:
        count = 0
    else:
        # A stored window ahead of `now` means this node's clock lags; keep counting it.
        count = state.count
        current_id = state.window_id

    if count + cost <= limit:
        return Transition(FixedWindowState(current_id, count + cost), True, limit - count - cost)

    if cost > limit:
        return Transition(None, False, max(0, limit - count), None)

    window_end = (current_id + 1) * window
    return Transition(None, False, max(0, limit - count), _retry_hint(window_end - now))


def decide_sliding_window_log(
    state: Optional[SlidingLogState], now: float, cost: int, policy: RateLimitPolicy
) -> Transition:
    """
    Exact trailing window: one timestamp per admitted unit of cost.

    Entries W or more seconds old are pruned on every call. Rejected
    requests are never appended, so the log never holds more than `limit`
    entries.
    """
    limit = policy.capacity
    window = policy.window_seconds
    cutoff = now - window

    timestamps = state.timestamps if state is not None else ()
    kept = timestamps[bisect.bisect_right(timestamps, cutoff + EPSILON):]

    if len(kept) + cost <= limit:
        merged = list(kept)
        for _ in range(cost):
            bisect.insort(merged, now)
        return Transition(SlidingLogState(tuple(merged)), True, limit - len(merged))

    remaining = max(0, limit - len(kept))
    if cost > limit:
        return Transition(None, False, remaining, None)

    # The entry whose expiry frees enough room for `cost`.
    blocking = kept[len(kept) + cost - limit - 1]
    return Transition(None, False, remaining, _retry_hint(blocking + window - now))


def decide_sliding_window_counter(
    state: Optional[SlidingCounterState], now: float, cost: int, policy: RateLimitPolicy
) -> Transition:
    """
    Approximate trailing window from the current and previous fixed windows:

        estimate = current + previous * (1 - elapsed_fraction_of_current_window)

    The estimate is floored, then admitted if estimate + cost <= limit.
    """
    limit = policy.capacity
    window = policy.window_seconds
    current_id = window_index(now, window)

    if state is None:
        current, previous = 0, 0
    elif state.window_id == current_id:
        current, previous = state.current, state.previous
    elif state.window_id == current_id - 1:
        current, previous = 0, state.current
    elif state.window_id > current_id:
        current, previous = state.current, state.previous
        current_id = state.window_id
    else:
        current, previous = 0, 0

    fraction = min(1.0, max(0.0, (now - current_id * window) / window))
    estimate = _floor_count(current + previous * (1.0 - fraction))

    if estimate + cost <= limit:
        new_state = SlidingCounterState(current_id, current + cost, previous)
        return Transition(new_state, True, limit - estimate - cost)

    remaining = max(0, limit - estimate)
    if cost > limit:
        return Transition(None, False, remaining, None)

    return Transition(None, False, remaining, _counter_retry_after(
        now, window, current_id, fraction, current, previous, limit, cost
    ))


def _counter_retry_after(
    now: float,
    window: float,
    current_id: int,
    fraction: float,
    current: int,
    previous: int,
    limit: int,
    cost: int,
) -> float:
    """
    Time until the weighted previous-window share decays enough to fit `cost`.

    The target weight leaves the estimate just under the next whole count,
    so the floored estimate has already dropped when the hint runs out.
    """
    room = limit - cost - current
    if room >= 0 and previous > 0:
        target = 1.0 - (room + 1 - 2 * EPSILON) / previous
        return _retry_hint((target - fraction) * window)

    # The current window alone is too full; wait for it to become the previous one.
    until_next = (current_id + 1) * window - now
    room_next = limit - cost
    if current <= room_next:
        return _retry_hint(until_next)
    target = 1.0 - (room_next + 1 - 2 * EPSILON) / current
    return _retry_hint(until_next + target * window)


Decider = Callable[[Optional[LimiterState], float, int, RateLimitPolicy], Transition]

DECIDERS: Dict[RateLimitAlgorithm, Decider] = {
    RateLimitAlgorithm.TOKEN_BUCKET: decide_token_bucket,
    RateLimitAlgorithm.FIXED_WINDOW: decide_fixed_window,
    RateLimitAlgorithm.SLIDING_WINDOW_LOG: decide_sliding_window_log,
    RateLimitAlgorithm.SLIDING_WINDOW_COUNTER: decide_sliding_window_counter,
}


def decide(
    state: Optional[LimiterState], now: float, cost: int, policy: RateLimitPolicy
) -> Transition:
    """Dispatch to the decision function for the policy's algorithm"""
    try:
        decider = DECIDERS[policy.algorithm]
    except KeyError:
        raise ValueError(f"Unsupported algorithm: {policy.algorithm}") from None
    return decider(state, now, cost, policy)
