"""Resilience registry.

The registry is the single entry point application code talks to. It owns
the registered policies and the live RateLimiter and CircuitBreaker
instances, keyed by (policy name, key), creating them lazily on first use.

Construction is guarded by a threading lock with a double-checked lookup,
so concurrent first access to a key never produces two instances. The lock
is held only while creating instances, never while a decision runs;
decisions on different keys proceed independently.
"""

import asyncio
import threading
from typing import Dict, Optional, Tuple, Union

from bulwark.core.circuit_breaker import CircuitBreaker
from bulwark.core.clock import SystemClock
from bulwark.core.config import (
    CircuitBreakerPolicyConfig,
    Policy,
    RateLimitPolicyConfig,
    ResilienceSettings,
    load_policies_file,
)
from bulwark.core.exceptions import ConfigConflictError, InvalidKeyError, InvalidPolicyError
from bulwark.core.logging import logger
from bulwark.core.metrics import DecisionMetrics
from bulwark.domain.circuit_breaking import (
    BreakerDecision,
    CircuitBreakerPolicy,
    SharedOutcomeWindow,
    WindowScope,
)
from bulwark.domain.interfaces import IClock, ICounterStore
from bulwark.domain.rate_limiting import RateLimitDecision, RateLimiter, RateLimitPolicy
from bulwark.infrastructure import InMemoryCounterStore, RedisCounterStore
from bulwark.infrastructure.redis import create_redis_client

PolicyLike = Union[Policy, RateLimitPolicyConfig, CircuitBreakerPolicyConfig]


def create_counter_store(settings: ResilienceSettings, clock: Optional[IClock] = None) -> ICounterStore:
    """Build the counter store selected by STORE_BACKEND."""
    if settings.STORE_BACKEND == "redis":
        logger.info("counter_store_selected", backend="redis", key_prefix=settings.REDIS_KEY_PREFIX)
        return RedisCounterStore(create_redis_client(settings), key_prefix=settings.REDIS_KEY_PREFIX)
    logger.info("counter_store_selected", backend="memory")
    return InMemoryCounterStore(clock=clock)


class ResilienceRegistry:
    """Owns policies and per-key limiter and breaker instances.

    Policy names share one namespace across rate limit and circuit breaker
    policies. Registering an identical policy twice is a no-op; registering
    a different one under a taken name raises ConfigConflictError and
    leaves the original in place.
    """

    def __init__(
        self,
        store: Optional[ICounterStore] = None,
        clock: Optional[IClock] = None,
        metrics: Optional[DecisionMetrics] = None,
        sweep_interval_seconds: float = 30.0,
    ):
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        self.clock = clock or SystemClock()
        self.store = store if store is not None else InMemoryCounterStore(clock=self.clock)
        self.metrics = metrics
        self.sweep_interval_seconds = sweep_interval_seconds

        self._policies: Dict[str, Policy] = {}
        self._rate_limiters: Dict[Tuple[str, str], RateLimiter] = {}
        self._circuit_breakers: Dict[Tuple[str, str], CircuitBreaker] = {}
        self._lock = threading.Lock()

        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @classmethod
    def from_settings(
        cls,
        settings: ResilienceSettings,
        clock: Optional[IClock] = None,
        metrics: Optional[DecisionMetrics] = None,
        store: Optional[ICounterStore] = None,
    ) -> "ResilienceRegistry":
        """Build a registry, its store and its policies from settings.

        Args:
            settings: Backend, timeouts, sweep interval and optional policy file.
            clock: Time source; wall clock if omitted.
            metrics: Optional decision metrics collector.
            store: Overrides the store STORE_BACKEND would select.
        """
        clock = clock or SystemClock()
        registry = cls(
            store=store if store is not None else create_counter_store(settings, clock),
            clock=clock,
            metrics=metrics,
            sweep_interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
        )
        if settings.POLICIES_FILE:
            policies = load_policies_file(settings.POLICIES_FILE, settings.STORE_TIMEOUT_MS)
            for name, policy in policies.items():
                registry.register_policy(name, policy)
            logger.info("policies_loaded", path=settings.POLICIES_FILE, count=len(policies))
        return registry

    # Policies

    def register_policy(self, name: str, policy: PolicyLike) -> None:
        """Register a policy under a name.

        Raises:
            InvalidPolicyError: If the name is empty or the policy is not a known type.
            ConfigConflictError: If a different policy is already registered under the name.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidPolicyError(str(name), "Policy name must be a non-empty string")
        if isinstance(policy, (RateLimitPolicyConfig, CircuitBreakerPolicyConfig)):
            policy = policy.to_policy()
        if not isinstance(policy, (RateLimitPolicy, CircuitBreakerPolicy)):
            raise InvalidPolicyError(name, f"Unsupported policy type: {type(policy).__name__}")

        with self._lock:
            existing = self._policies.get(name)
            if existing is None:
                self._policies[name] = policy
                logger.info("policy_registered", policy=name, kind=type(policy).__name__)
                return
            if existing == policy:
                return
        logger.warning("policy_conflict", policy=name)
        raise ConfigConflictError(name)

    def policies(self) -> Dict[str, Policy]:
        """A copy of the registered policies, by name."""
        with self._lock:
            return dict(self._policies)

    def _policy(self, name: str, expected: type) -> Policy:
        policy = self._policies.get(name)
        if policy is None:
            raise InvalidPolicyError(name)
        if not isinstance(policy, expected):
            raise InvalidPolicyError(
                name, f"Policy '{name}' is not a {expected.__name__}"
            )
        return policy

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise InvalidKeyError()

    # Instances

    def get_rate_limiter(self, policy_name: str, key: str) -> RateLimiter:
        """The single RateLimiter for (policy_name, key), created on first access."""
        self._validate_key(key)
        slot = (policy_name, key)
        limiter = self._rate_limiters.get(slot)
        if limiter is not None:
            return limiter

        policy = self._policy(policy_name, RateLimitPolicy)
        with self._lock:
            limiter = self._rate_limiters.get(slot)
            if limiter is None:
                limiter = RateLimiter(
                    policy,
                    key,
                    self.store,
                    self.clock,
                    policy_name=policy_name,
                    metrics=self.metrics,
                )
                self._rate_limiters[slot] = limiter
            return limiter

    def get_circuit_breaker(self, policy_name: str, dependency_key: str) -> CircuitBreaker:
        """The single CircuitBreaker for (policy_name, dependency_key), created on first access."""
        self._validate_key(dependency_key)
        slot = (policy_name, dependency_key)
        breaker = self._circuit_breakers.get(slot)
        if breaker is not None:
            return breaker

        policy = self._policy(policy_name, CircuitBreakerPolicy)
        with self._lock:
            breaker = self._circuit_breakers.get(slot)
            if breaker is None:
                name = f"{policy_name}:{dependency_key}"
                window = None
                if policy.window_scope is WindowScope.SHARED:
                    window = SharedOutcomeWindow(
                        self.store,
                        namespace=f"cb:{name}",
                        window_seconds=policy.rolling_window_seconds,
                        timeout_seconds=policy.store_timeout_seconds,
                    )
                breaker = CircuitBreaker(
                    policy, self.clock, window=window, name=name, metrics=self.metrics
                )
                self._circuit_breakers[slot] = breaker
            return breaker

    def deregister_circuit_breaker(self, policy_name: str, dependency_key: str) -> bool:
        """Drop a breaker; the next access starts a fresh Closed one."""
        with self._lock:
            removed = self._circuit_breakers.pop((policy_name, dependency_key), None)
        if removed is not None:
            logger.info("circuit_breaker_deregistered", breaker=removed.name)
        return removed is not None

    # Runtime API

    async def try_acquire(self, policy_name: str, key: str, cost: int = 1) -> RateLimitDecision:
        return await self.get_rate_limiter(policy_name, key).try_acquire(cost)

    async def allow_call(self, policy_name: str, dependency_key: str) -> BreakerDecision:
        return await self.get_circuit_breaker(policy_name, dependency_key).allow()

    async def record_outcome(
        self, policy_name: str, dependency_key: str, success: bool, latency_ms: float = 0.0
    ) -> None:
        await self.get_circuit_breaker(policy_name, dependency_key).record_outcome(success, latency_ms)

    # Housekeeping

    def sweep_idle(self) -> int:
        """Evict rate limiters idle past their policy's TTL and purge expired store entries.

        Limiters hold no state of their own, so an eviction racing a
        decision only costs a re-creation on the next access. Circuit
        breakers are never evicted here.

        Returns:
            int: Number of limiter instances evicted.
        """
        now = self.clock.now()
        with self._lock:
            idle = [slot for slot, limiter in self._rate_limiters.items() if limiter.is_idle(now)]
            for slot in idle:
                del self._rate_limiters[slot]

        purged = 0
        purge = getattr(self.store, "purge_expired", None)
        if callable(purge):
            purged = purge()

        if idle or purged:
            logger.debug("registry_swept", limiters_evicted=len(idle), store_entries_purged=purged)
        return len(idle)

    async def _sweep_loop(self) -> None:
        """Periodically evict idle state until shutdown."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                self.sweep_idle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("registry_sweep_failed", error=str(e))

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the background idle sweeper. Calling it twice is harmless."""
        if self.is_running:
            return
        self._shutdown_event = asyncio.Event()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("registry_sweeper_started", interval_seconds=self.sweep_interval_seconds)

    async def shutdown(self) -> None:
        """Stop the background sweeper."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("registry_sweeper_stopped")

    async def __aenter__(self) -> "ResilienceRegistry":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, traceback) -> None:
        await self.shutdown()
