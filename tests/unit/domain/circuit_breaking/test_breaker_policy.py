import pytest

from bulwark.domain.circuit_breaking import (
    BreakerDecision,
    CircuitBreakerPolicy,
    CircuitState,
    ClosedState,
    HalfOpenState,
    OpenState,
    WindowScope,
)


class TestCircuitBreakerPolicy:
    def test_defaults(self):
        policy = CircuitBreakerPolicy()
        assert policy.failure_rate_threshold == 0.5
        assert policy.minimum_volume == 10
        assert policy.half_open_trial_count == 3
        assert policy.half_open_timeout_seconds is None
        assert policy.window_scope is WindowScope.LOCAL

    def test_scope_string_is_coerced(self):
        assert CircuitBreakerPolicy(window_scope="shared").window_scope is WindowScope.SHARED

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"failure_rate_threshold": 0},
            {"failure_rate_threshold": 1.5},
            {"minimum_volume": 0},
            {"rolling_window_seconds": 0},
            {"cooldown_seconds": -1},
            {"half_open_trial_count": 0},
            {"half_open_timeout_seconds": 0},
            {"slow_call_threshold_ms": -5},
            {"store_timeout_ms": 0},
        ],
    )
    def test_invalid_configuration_rejected(self, kwargs):
        with pytest.raises(ValueError):
            CircuitBreakerPolicy(**kwargs)

    def test_threshold_of_one_is_allowed(self):
        assert CircuitBreakerPolicy(failure_rate_threshold=1.0).failure_rate_threshold == 1.0

    def test_counts_as_failure(self):
        policy = CircuitBreakerPolicy(slow_call_threshold_ms=200)
        assert policy.counts_as_failure(False, 5.0)
        assert not policy.counts_as_failure(True, 200.0)
        assert policy.counts_as_failure(True, 200.1)

    def test_slow_calls_ignored_without_threshold(self):
        assert not CircuitBreakerPolicy().counts_as_failure(True, 60_000.0)


class TestBreakerStates:
    def test_each_variant_is_tagged(self):
        assert ClosedState(0.0).kind is CircuitState.CLOSED
        assert OpenState(0.0).kind is CircuitState.OPEN
        assert HalfOpenState(0.0).kind is CircuitState.HALF_OPEN

    def test_trials_started_counts_in_flight_and_succeeded(self):
        assert HalfOpenState(0.0, trials_in_flight=1, trials_succeeded=2).trials_started == 3

    def test_states_are_immutable(self):
        with pytest.raises(AttributeError):
            OpenState(0.0).entered_at = 1.0

    def test_decision_blocked(self):
        assert BreakerDecision(False, CircuitState.OPEN, retry_after=3.0).is_blocked
        assert not BreakerDecision(True, CircuitState.CLOSED).is_blocked
