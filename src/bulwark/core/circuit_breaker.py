"""Circuit breaker for calls to a downstream dependency.

This module provides an asyncio-compatible circuit breaker that suppresses
calls to an unhealthy dependency. It follows the classic pattern with
closed, open and half-open states, driven by recorded outcomes and elapsed
time rather than by commands.
"""

import asyncio
import contextvars
import time
from dataclasses import replace
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional, TypeVar

from bulwark.core.exceptions import CircuitOpenError
from bulwark.core.logging import logger
from bulwark.domain.circuit_breaking import (
    BreakerDecision,
    BreakerState,
    CircuitBreakerPolicy,
    CircuitState,
    ClosedState,
    HalfOpenState,
    LocalOutcomeWindow,
    OpenState,
    RollingOutcomeWindow,
)
from bulwark.domain.interfaces import IClock
from bulwark.domain.rate_limiting.value_objects import EPSILON

if TYPE_CHECKING:
    from bulwark.core.metrics import DecisionMetrics
    from bulwark.core.registry import ResilienceRegistry

# Type variable for the decorated function's return value
T = TypeVar("T")


class CircuitBreaker:
    """Circuit breaker guarding one dependency.

    State Transitions:
    - CLOSED: All calls are allowed and their outcomes feed a rolling window.
      Once the window holds at least `minimum_volume` calls and the failure
      rate reaches `failure_rate_threshold`, the state transitions to OPEN.
    - OPEN: All calls are rejected. Once `cooldown_seconds` have elapsed the
      next `allow()` transitions to HALF-OPEN.
    - HALF-OPEN: Up to `half_open_trial_count` trial calls are allowed. Any
      failed trial returns to OPEN with a fresh cooldown; once every trial
      has succeeded the state transitions to CLOSED with an empty window.

    A per-breaker asyncio lock serialises this breaker's transitions; other
    breakers are never blocked by it.
    """

    def __init__(
        self,
        policy: CircuitBreakerPolicy,
        clock: IClock,
        window: Optional[RollingOutcomeWindow] = None,
        name: str = "default",
        metrics: Optional["DecisionMetrics"] = None,
    ):
        """Initializes the CircuitBreaker.

        Args:
            policy: Thresholds, window length, cooldown and trial count.
            clock: Time source for cooldowns and window buckets.
            window: Outcome window; a local in-memory window if omitted.
            name: The name of the circuit breaker, used for logging.
            metrics: Optional collector for decisions and transitions.
        """
        self.policy = policy
        self.clock = clock
        self.window = window or LocalOutcomeWindow(policy.rolling_window_seconds)
        self.name = name
        self.metrics = metrics

        self._state: BreakerState = ClosedState(entered_at=clock.now())
        self._lock = asyncio.Lock()
        # Start time of the call guarded by `async with`, per task.
        self._call_started: contextvars.ContextVar[Optional[float]] = contextvars.ContextVar(
            f"bulwark_breaker_{name}", default=None
        )

    async def __aenter__(self):
        """Enter the context manager, rejecting the call if the circuit does not allow it."""
        decision = await self.allow()
        if not decision.allowed:
            raise CircuitOpenError(self.name, decision.retry_after)
        self._call_started.set(time.perf_counter())
        return self

    async def __aexit__(self, exc_type, exc_val, traceback):
        """Exit the context manager, recording the outcome."""
        started = self._call_started.get()
        latency_ms = (time.perf_counter() - started) * 1000 if started is not None else 0.0
        await self.record_outcome(exc_type is None, latency_ms)

    @property
    def state(self) -> CircuitState:
        """The current state, without applying any time-based transition."""
        return self._state.kind

    @property
    def snapshot(self) -> BreakerState:
        return self._state

    @property
    def is_closed(self) -> bool:
        """Return True if the circuit is closed."""
        return self._state.kind is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        """Return True if the circuit is open."""
        return self._state.kind is CircuitState.OPEN

    async def allow(self) -> BreakerDecision:
        """Decide whether the next call to the dependency may proceed."""
        async with self._lock:
            decision = self._allow_locked(self.clock.now())
        logger.debug(
            "circuit_decision",
            breaker=self.name,
            allowed=decision.allowed,
            state=decision.state.value,
        )
        if self.metrics is not None:
            self.metrics.record_breaker_decision(self.name, decision.allowed)
        return decision

    def _allow_locked(self, now: float) -> BreakerDecision:
        state = self._state

        if isinstance(state, OpenState):
            elapsed = max(0.0, now - state.entered_at)
            remaining = self.policy.cooldown_seconds - elapsed
            if remaining > EPSILON:
                return BreakerDecision(False, CircuitState.OPEN, retry_after=remaining)
            state = self._transition(HalfOpenState(entered_at=now), reason="cooldown_elapsed")

        if isinstance(state, HalfOpenState):
            timeout = self.policy.half_open_timeout_seconds
            if timeout is not None and now - state.entered_at >= timeout:
                self._transition(OpenState(entered_at=now), reason="half_open_timeout")
                return BreakerDecision(False, CircuitState.OPEN, retry_after=self.policy.cooldown_seconds)
            if state.trials_started < self.policy.half_open_trial_count:
                self._state = replace(state, trials_in_flight=state.trials_in_flight + 1)
                return BreakerDecision(True, CircuitState.HALF_OPEN, trial=True)
            return BreakerDecision(False, CircuitState.HALF_OPEN)

        if isinstance(state, ClosedState):
            return BreakerDecision(True, CircuitState.CLOSED)

        raise TypeError(f"Unknown breaker state: {state!r}")

    async def record_outcome(self, success: bool, latency_ms: float = 0.0) -> None:
        """Record the outcome of a call. Never raises: a lost outcome only costs accuracy."""
        try:
            failed = self.policy.counts_as_failure(success, latency_ms)
            if self.metrics is not None:
                self.metrics.record_outcome(self.name, failed, latency_ms)
            async with self._lock:
                await self._record_locked(failed, self.clock.now())
        except Exception as e:
            logger.warning("circuit_outcome_dropped", breaker=self.name, error=str(e))

    async def _record_locked(self, failed: bool, now: float) -> None:
        state = self._state

        if isinstance(state, ClosedState):
            await self.window.record(failed, now)
            totals = await self.window.totals(now)
            if (
                totals.volume >= self.policy.minimum_volume
                and totals.failure_rate >= self.policy.failure_rate_threshold - EPSILON
            ):
                self._transition(
                    OpenState(entered_at=now),
                    reason="failure_rate_exceeded",
                    failure_rate=round(totals.failure_rate, 4),
                    volume=totals.volume,
                )

        elif isinstance(state, HalfOpenState):
            in_flight = max(0, state.trials_in_flight - 1)
            if failed:
                self._transition(OpenState(entered_at=now), reason="trial_failed")
                return
            succeeded = state.trials_succeeded + 1
            if succeeded >= self.policy.half_open_trial_count:
                self._transition(ClosedState(entered_at=now), reason="trials_succeeded")
                await self.window.reset(now)
            else:
                self._state = replace(state, trials_in_flight=in_flight, trials_succeeded=succeeded)

        elif isinstance(state, OpenState):
            # Late report from a call admitted before the circuit opened.
            logger.debug("circuit_outcome_ignored", breaker=self.name, state=state.kind.value)

        else:
            raise TypeError(f"Unknown breaker state: {state!r}")

    def _transition(self, new_state: BreakerState, reason: str, **fields: Any) -> BreakerState:
        old_kind = self._state.kind
        self._state = new_state
        event = {
            CircuitState.OPEN: "circuit_opened",
            CircuitState.HALF_OPEN: "circuit_half_opened",
            CircuitState.CLOSED: "circuit_closed",
        }[new_state.kind]
        log = logger.warning if new_state.kind is CircuitState.OPEN else logger.info
        log(event, breaker=self.name, previous=old_kind.value, reason=reason, **fields)
        if self.metrics is not None:
            self.metrics.record_transition(self.name, old_kind, new_state.kind)
        return new_state

    async def execute(self, func: Callable[..., Coroutine[Any, Any, T]], *args: Any, **kwargs: Any) -> T:
        """Execute an async function with circuit breaker protection.

        Args:
            func: The async function to execute.
            *args: Positional arguments for the function.
            **kwargs: Keyword arguments for the function.

        Returns:
            The result of the function execution.

        Raises:
            CircuitOpenError: If the circuit does not allow the call.
            Exception: Propagates exceptions from the executed function.
        """
        decision = await self.allow()
        if not decision.allowed:
            raise CircuitOpenError(self.name, decision.retry_after)

        started = time.perf_counter()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self.record_outcome(False, (time.perf_counter() - started) * 1000)
            logger.error("circuit_call_failed", breaker=self.name, error=str(e))
            raise
        await self.record_outcome(True, (time.perf_counter() - started) * 1000)
        return result


def circuit_breaker(
    registry: "ResilienceRegistry",
    policy_name: str,
    dependency_key: Optional[str] = None,
) -> Callable[[Callable[..., Coroutine[Any, Any, T]]], Callable[..., Coroutine[Any, Any, T]]]:
    """Decorator to guard an async function with a registry-managed circuit breaker.

    The breaker is resolved through the registry on every call, so all
    callers guarding the same (policy, dependency) share one state machine.

    Args:
        registry: The registry owning the breaker.
        policy_name: A registered circuit breaker policy.
        dependency_key: The dependency identifier. Defaults to the function's name.

    Returns:
        A decorator that wraps an async function with circuit breaker logic.
    """

    def decorator(
        func: Callable[..., Coroutine[Any, Any, T]]
    ) -> Callable[..., Coroutine[Any, Any, T]]:
        key = dependency_key or func.__name__

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            breaker = registry.get_circuit_breaker(policy_name, key)
            return await breaker.execute(func, *args, **kwargs)

        return wrapper

    return decorator
