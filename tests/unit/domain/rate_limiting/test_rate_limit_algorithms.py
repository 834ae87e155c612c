"""Tests for the pure rate limiting decision functions.

Each decision is driven by hand: state in, Transition out, with the
returned state fed into the next call the way the limiter would commit it.
"""

import pytest

from bulwark.domain.rate_limiting.algorithms import (
    decide,
    decide_fixed_window,
    decide_sliding_window_counter,
    decide_sliding_window_log,
    decide_token_bucket,
    window_index,
)
from bulwark.domain.rate_limiting.entities import (
    FixedWindowState,
    SlidingCounterState,
    SlidingLogState,
    TokenBucketState,
)
from bulwark.domain.rate_limiting.value_objects import RateLimitPolicy


def run(decider, policy, times, cost=1, state=None):
    """Apply a decider at each timestamp, committing admitted states. Returns (transitions, state)."""
    results = []
    for now in times:
        transition = decider(state, now, cost, policy)
        if transition.new_state is not None:
            state = transition.new_state
        results.append(transition)
    return results, state


class TestWindowIndex:
    def test_boundary_belongs_to_next_window(self):
        assert window_index(60.0, 60.0) == 1
        assert window_index(59.999, 60.0) == 0

    def test_float_noise_does_not_flip_the_window(self):
        # 0.7 / 0.1 evaluates to 6.999999999999999.
        assert window_index(0.7, 0.1) == 7


class TestTokenBucket:
    policy = RateLimitPolicy.token_bucket(capacity=10, refill_rate=1.0)

    def test_new_key_starts_full(self):
        transition = decide_token_bucket(None, 100.0, 1, self.policy)
        assert transition.allowed
        assert transition.remaining == 9
        assert transition.new_state == TokenBucketState(9.0, 100.0)

    def test_burst_then_reject_with_retry_after(self):
        results, state = run(decide_token_bucket, self.policy, [100.0] * 11)
        assert all(t.allowed for t in results[:10])
        rejected = results[10]
        assert not rejected.allowed
        assert rejected.new_state is None
        assert rejected.retry_after == pytest.approx(1.0)
        assert state.tokens == pytest.approx(0.0)

    def test_refill_is_continuous_and_capped(self):
        state = TokenBucketState(0.0, 100.0)
        half = decide_token_bucket(state, 100.5, 1, self.policy)
        assert not half.allowed
        assert half.retry_after == pytest.approx(0.5, abs=1e-6)

        later = decide_token_bucket(state, 1000.0, 1, self.policy)
        assert later.allowed
        assert later.new_state.tokens == pytest.approx(9.0)

    def test_exact_refill_boundary_admits(self):
        state = TokenBucketState(0.0, 100.0)
        assert decide_token_bucket(state, 101.0, 1, self.policy).allowed

    def test_cost_above_capacity_never_satisfiable(self):
        transition = decide_token_bucket(None, 100.0, 11, self.policy)
        assert not transition.allowed
        assert transition.retry_after is None

    def test_clock_going_backwards_does_not_drain_or_rewind(self):
        state = TokenBucketState(5.0, 100.0)
        transition = decide_token_bucket(state, 90.0, 1, self.policy)
        assert transition.allowed
        assert transition.new_state.tokens == pytest.approx(4.0)
        assert transition.new_state.last_refill == 100.0

    def test_tokens_stay_within_bounds(self):
        times = [100.0 + i * 0.37 for i in range(200)]
        results, _ = run(decide_token_bucket, self.policy, times, cost=2)
        for transition in results:
            if transition.new_state is not None:
                assert 0.0 <= transition.new_state.tokens <= self.policy.capacity

    def test_rate_conservation(self):
        # Admitted cost over T never exceeds capacity + rate * T.
        times = [100.0 + i * 0.05 for i in range(400)]
        results, _ = run(decide_token_bucket, self.policy, times)
        admitted = sum(1 for t in results if t.allowed)
        elapsed = times[-1] - times[0]
        assert admitted <= self.policy.capacity + self.policy.refill_rate * elapsed + 1e-6


class TestFixedWindow:
    policy = RateLimitPolicy.fixed_window(limit=5, window_seconds=60)

    def test_limit_then_reject_until_rollover(self):
        results, state = run(decide_fixed_window, self.policy, [120.0] * 6)
        assert [t.allowed for t in results] == [True] * 5 + [False]
        assert results[5].retry_after == pytest.approx(60.0)

        after = decide_fixed_window(state, 180.0, 1, self.policy)
        assert after.allowed
        assert after.new_state == FixedWindowState(3, 1)

    def test_retry_after_is_time_to_window_end(self):
        state = FixedWindowState(2, 5)
        transition = decide_fixed_window(state, 170.0, 1, self.policy)
        assert transition.retry_after == pytest.approx(10.0)

    def test_boundary_straddle_admits_twice_the_limit(self):
        results, _ = run(decide_fixed_window, self.policy, [179.9] * 5 + [180.0] * 5)
        assert all(t.allowed for t in results)

    def test_cost_counts_against_limit(self):
        transition = decide_fixed_window(FixedWindowState(2, 3), 130.0, 3, self.policy)
        assert not transition.allowed
        assert transition.remaining == 2

    def test_lagging_clock_keeps_counting_the_newer_window(self):
        state = FixedWindowState(3, 5)
        transition = decide_fixed_window(state, 179.0, 1, self.policy)
        assert not transition.allowed


class TestSlidingWindowLog:
    policy = RateLimitPolicy.sliding_window_log(limit=3, window_seconds=10)

    def test_exact_limit_in_trailing_window(self):
        results, state = run(decide_sliding_window_log, self.policy, [0.0, 1.0, 2.0, 3.0])
        assert [t.allowed for t in results] == [True, True, True, False]
        assert results[3].retry_after == pytest.approx(7.0)
        assert state.timestamps == (0.0, 1.0, 2.0)

    def test_entry_exactly_window_old_has_expired(self):
        state = SlidingLogState((0.0, 1.0, 2.0))
        assert not decide_sliding_window_log(state, 9.999, 1, self.policy).allowed

        transition = decide_sliding_window_log(state, 10.0, 1, self.policy)

        assert transition.allowed
        assert transition.new_state.timestamps == (1.0, 2.0, 10.0)

    def test_retry_at_advertised_time_is_admitted(self):
        state = SlidingLogState((0.0, 1.0, 2.0))
        rejected = decide_sliding_window_log(state, 3.0, 1, self.policy)

        retry = decide_sliding_window_log(state, 3.0 + rejected.retry_after, 1, self.policy)

        assert retry.allowed

    def test_pruning_keeps_log_bounded(self):
        times = [i * 0.5 for i in range(100)]
        results, state = run(decide_sliding_window_log, self.policy, times)
        assert len(state.timestamps) <= self.policy.capacity
        for transition in results:
            if transition.new_state is not None:
                assert len(transition.new_state.timestamps) <= self.policy.capacity

    def test_never_more_than_limit_in_any_trailing_window(self):
        times = [i * 0.7 for i in range(60)]
        results, _ = run(decide_sliding_window_log, self.policy, times)
        admitted = [now for now, t in zip(times, results) if t.allowed]
        for start in admitted:
            inside = [ts for ts in admitted if start <= ts < start + self.policy.window_seconds]
            assert len(inside) <= self.policy.capacity

    def test_multi_unit_cost_appends_one_entry_per_unit(self):
        transition = decide_sliding_window_log(None, 5.0, 2, self.policy)
        assert transition.new_state.timestamps == (5.0, 5.0)
        assert transition.remaining == 1

    def test_retry_after_for_multi_unit_cost(self):
        state = SlidingLogState((0.0, 1.0, 2.0))
        transition = decide_sliding_window_log(state, 3.0, 2, self.policy)
        # Two entries must expire; the second one (t=1.0) leaves at 11.0.
        assert transition.retry_after == pytest.approx(8.0)


class TestSlidingWindowCounter:
    policy = RateLimitPolicy.sliding_window_counter(limit=10, window_seconds=60)

    def test_weighted_estimate_uses_previous_window(self):
        # 25% into window 2: estimate = 0 + 8 * 0.75 = 6
        state = SlidingCounterState(1, 8, 0)
        transition = decide_sliding_window_counter(state, 135.0, 1, self.policy)
        assert transition.allowed
        assert transition.remaining == 3
        assert transition.new_state == SlidingCounterState(2, 1, 8)

    def test_estimate_is_floored(self):
        # 50% in: 0 + 9 * 0.5 = 4.5 -> 4
        state = SlidingCounterState(1, 9, 0)
        transition = decide_sliding_window_counter(state, 150.0, 6, self.policy)
        assert transition.allowed
        assert transition.remaining == 0

    def test_rejects_when_estimate_full(self):
        state = SlidingCounterState(2, 5, 10)
        transition = decide_sliding_window_counter(state, 121.0, 1, self.policy)
        assert not transition.allowed
        assert transition.retry_after > 0

    def test_retry_at_advertised_time_is_admitted(self):
        state = SlidingCounterState(2, 5, 10)
        transition = decide_sliding_window_counter(state, 121.0, 1, self.policy)
        assert transition.retry_after == pytest.approx(29.0)

        retry = decide_sliding_window_counter(state, 121.0 + transition.retry_after, 1, self.policy)

        assert retry.allowed

    def test_retry_hint_is_not_early(self):
        state = SlidingCounterState(2, 5, 10)
        transition = decide_sliding_window_counter(state, 121.0, 1, self.policy)

        early = decide_sliding_window_counter(state, 121.0 + transition.retry_after - 0.01, 1, self.policy)

        assert not early.allowed

    def test_retry_after_full_current_window(self):
        # Current window alone holds 10; after rollover it decays as the previous one.
        state = SlidingCounterState(2, 10, 0)
        transition = decide_sliding_window_counter(state, 150.0, 1, self.policy)

        retry = decide_sliding_window_counter(state, 150.0 + transition.retry_after, 1, self.policy)

        assert retry.allowed

    def test_stale_state_is_ignored(self):
        state = SlidingCounterState(0, 10, 10)
        transition = decide_sliding_window_counter(state, 600.0, 1, self.policy)
        assert transition.allowed
        assert transition.remaining == 9

    def test_cost_above_limit_never_satisfiable(self):
        transition = decide_sliding_window_counter(None, 0.0, 11, self.policy)
        assert not transition.allowed
        assert transition.retry_after is None


def test_decide_dispatches_on_policy_algorithm():
    policy = RateLimitPolicy.fixed_window(limit=1, window_seconds=1)
    assert decide(None, 0.0, 1, policy).new_state == FixedWindowState(0, 1)


@pytest.mark.parametrize(
    "policy",
    [
        RateLimitPolicy.token_bucket(capacity=10, refill_rate=1.0),
        RateLimitPolicy.fixed_window(limit=10, window_seconds=60),
        RateLimitPolicy.sliding_window_log(limit=10, window_seconds=10),
        RateLimitPolicy.sliding_window_counter(limit=10, window_seconds=60),
    ],
    ids=lambda policy: policy.algorithm.value,
)
def test_retry_at_advertised_time_is_admitted_at_epoch_scale(policy):
    # Wall-clock sized timestamps, where float rounding exceeds EPSILON.
    now = 1_700_000_030.25
    results, state = run(decide, policy, [now] * 11)
    rejected = results[-1]
    assert not rejected.allowed

    retry = decide(state, now + rejected.retry_after, 1, policy)

    assert retry.allowed
