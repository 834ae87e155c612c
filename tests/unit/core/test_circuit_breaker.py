import asyncio
from unittest.mock import AsyncMock

import pytest

from bulwark.core.circuit_breaker import CircuitBreaker, circuit_breaker
from bulwark.core.exceptions import CircuitOpenError
from bulwark.domain.circuit_breaking import (
    CircuitBreakerPolicy,
    CircuitState,
    HalfOpenState,
    OutcomeTotals,
    RollingOutcomeWindow,
)

POLICY = CircuitBreakerPolicy(
    failure_rate_threshold=0.5,
    minimum_volume=10,
    rolling_window_seconds=30,
    cooldown_seconds=30,
    half_open_trial_count=3,
)


@pytest.fixture
def breaker(clock, metrics):
    """Fixture to create a breaker on the manual clock."""
    return CircuitBreaker(POLICY, clock, name="test", metrics=metrics)


async def trip(breaker):
    for _ in range(POLICY.minimum_volume):
        await breaker.record_outcome(False)
    assert breaker.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_circuit_breaker_initial_state(breaker):
    """Test that the circuit breaker starts in closed state."""
    assert breaker.state is CircuitState.CLOSED
    assert breaker.is_closed
    decision = await breaker.allow()
    assert decision.allowed
    assert decision.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_circuit_breaker_closed_to_open(breaker):
    """Test transition from closed to open once volume and failure rate are reached."""
    for success in [False] * 6 + [True] * 3:
        await breaker.record_outcome(success)
    assert breaker.is_closed

    await breaker.record_outcome(True)

    assert breaker.is_open


@pytest.mark.asyncio
async def test_below_minimum_volume_never_opens(breaker):
    for _ in range(POLICY.minimum_volume - 1):
        await breaker.record_outcome(False)
    assert breaker.is_closed


@pytest.mark.asyncio
async def test_below_threshold_never_opens(breaker):
    for success in [False] * 4 + [True] * 16:
        await breaker.record_outcome(success)
    assert breaker.is_closed


@pytest.mark.asyncio
async def test_threshold_is_inclusive(breaker):
    for success in [False, True] * 5:
        await breaker.record_outcome(success)
    assert breaker.is_open


@pytest.mark.asyncio
async def test_open_rejects_with_remaining_cooldown(breaker, clock):
    await trip(breaker)
    clock.advance(10)

    decision = await breaker.allow()

    assert not decision.allowed
    assert decision.state is CircuitState.OPEN
    assert decision.retry_after == pytest.approx(20.0)


@pytest.mark.asyncio
async def test_circuit_breaker_open_to_half_open(breaker, clock):
    """Test transition from open to half-open once the cooldown elapses."""
    await trip(breaker)
    clock.advance(30)

    decision = await breaker.allow()

    assert decision.allowed
    assert decision.trial
    assert breaker.state is CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_half_open_limits_trial_calls(breaker, clock):
    await trip(breaker)
    clock.advance(30)

    decisions = [await breaker.allow() for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert decisions[3].state is CircuitState.HALF_OPEN
    assert decisions[3].retry_after is None


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_to_closed(breaker, clock):
    """Test transition from half-open to closed after every trial succeeds."""
    await trip(breaker)
    clock.advance(30)

    for _ in range(3):
        assert (await breaker.allow()).allowed
        await breaker.record_outcome(True)

    assert breaker.is_closed
    # The window was reset on closing, so old failures cannot re-trip it.
    await breaker.record_outcome(False)
    assert breaker.is_closed


@pytest.mark.asyncio
async def test_single_trial_failure_reopens_with_fresh_cooldown(breaker, clock):
    await trip(breaker)
    clock.advance(30)
    for _ in range(2):
        await breaker.allow()
        await breaker.record_outcome(True)
    await breaker.allow()

    await breaker.record_outcome(False)

    assert breaker.is_open
    decision = await breaker.allow()
    assert decision.retry_after == pytest.approx(30.0)


@pytest.mark.asyncio
async def test_completed_trial_frees_its_slot_count(breaker, clock):
    await trip(breaker)
    clock.advance(30)
    await breaker.allow()
    await breaker.record_outcome(True)

    snapshot = breaker.snapshot
    assert isinstance(snapshot, HalfOpenState)
    assert snapshot.trials_in_flight == 0
    assert snapshot.trials_succeeded == 1


@pytest.mark.asyncio
async def test_half_open_timeout_reopens_wedged_breaker(clock):
    policy = CircuitBreakerPolicy(minimum_volume=1, cooldown_seconds=30, half_open_timeout_seconds=5)
    breaker = CircuitBreaker(policy, clock, name="wedged")
    await breaker.record_outcome(False)
    clock.advance(30)
    for _ in range(3):
        await breaker.allow()
    assert not (await breaker.allow()).allowed

    clock.advance(5)
    decision = await breaker.allow()

    assert not decision.allowed
    assert breaker.is_open
    assert decision.retry_after == pytest.approx(30.0)


@pytest.mark.asyncio
async def test_outcomes_while_open_are_ignored(breaker, clock):
    await trip(breaker)
    opened_at = breaker.snapshot.entered_at
    clock.advance(5)

    await breaker.record_outcome(True)
    await breaker.record_outcome(False)

    assert breaker.is_open
    assert breaker.snapshot.entered_at == opened_at


@pytest.mark.asyncio
async def test_slow_successes_count_as_failures(clock):
    policy = CircuitBreakerPolicy(minimum_volume=4, slow_call_threshold_ms=100)
    breaker = CircuitBreaker(policy, clock, name="slow")

    for _ in range(4):
        await breaker.record_outcome(True, latency_ms=250.0)

    assert breaker.is_open


@pytest.mark.asyncio
async def test_record_outcome_never_raises(clock):
    window = AsyncMock(spec=RollingOutcomeWindow)
    window.record.side_effect = RuntimeError("window broken")
    breaker = CircuitBreaker(POLICY, clock, window=window, name="broken")

    await breaker.record_outcome(False)

    assert breaker.is_closed


@pytest.mark.asyncio
async def test_concurrent_allow_grants_exactly_the_trial_count(breaker, clock):
    await trip(breaker)
    clock.advance(30)

    decisions = await asyncio.gather(*(breaker.allow() for _ in range(50)))

    assert sum(d.allowed for d in decisions) == POLICY.half_open_trial_count


@pytest.mark.asyncio
async def test_transitions_are_recorded_in_metrics(breaker, clock, metrics):
    await trip(breaker)
    clock.advance(30)
    await breaker.allow()

    transitions = metrics.snapshot()["circuit_breakers"]["test"]["transitions"]

    assert transitions == {"closed->open": 1, "open->half_open": 1}


@pytest.mark.asyncio
async def test_circuit_breaker_execute_success(breaker):
    """Test successful execution through circuit breaker."""
    mock_func = AsyncMock(return_value="success")

    result = await breaker.execute(mock_func, 1, key="value")

    assert result == "success"
    mock_func.assert_awaited_once_with(1, key="value")
    assert breaker.is_closed


@pytest.mark.asyncio
async def test_circuit_breaker_execute_failure_is_recorded(clock):
    breaker = CircuitBreaker(CircuitBreakerPolicy(minimum_volume=1), clock, name="test")
    mock_func = AsyncMock(side_effect=ValueError("fail"))

    with pytest.raises(ValueError, match="fail"):
        await breaker.execute(mock_func)

    assert breaker.is_open


@pytest.mark.asyncio
async def test_circuit_breaker_execute_when_open(breaker):
    """Test circuit breaker blocks execution when open."""
    await trip(breaker)
    mock_func = AsyncMock(return_value="success")

    with pytest.raises(CircuitOpenError, match="Circuit breaker test is open") as exc_info:
        await breaker.execute(mock_func)

    assert exc_info.value.retry_after == pytest.approx(30.0)
    mock_func.assert_not_awaited()


@pytest.mark.asyncio
async def test_context_manager_records_outcomes(clock):
    window = AsyncMock(spec=RollingOutcomeWindow)
    window.totals.return_value = OutcomeTotals()
    breaker = CircuitBreaker(POLICY, clock, window=window, name="ctx")

    async with breaker:
        pass
    with pytest.raises(KeyError):
        async with breaker:
            raise KeyError("boom")

    recorded = [call.args[0] for call in window.record.await_args_list]
    assert recorded == [False, True]


@pytest.mark.asyncio
async def test_context_manager_rejects_when_open(breaker):
    await trip(breaker)
    with pytest.raises(CircuitOpenError):
        async with breaker:
            pytest.fail("guarded block must not run")


@pytest.mark.asyncio
async def test_circuit_breaker_decorator(registry):
    """Test circuit breaker decorator with a registry-managed breaker."""
    registry.register_policy("downstream", CircuitBreakerPolicy(minimum_volume=3))

    @circuit_breaker(registry, "downstream")
    async def fetch_profile(user_id):
        if user_id < 0:
            raise ValueError("fail")
        return {"id": user_id}

    assert await fetch_profile(7) == {"id": 7}
    with pytest.raises(ValueError, match="fail"):
        await fetch_profile(-1)
    with pytest.raises(ValueError, match="fail"):
        await fetch_profile(-1)

    assert registry.get_circuit_breaker("downstream", "fetch_profile").is_open
    with pytest.raises(CircuitOpenError):
        await fetch_profile(7)
