"""
Rate Limiting Domain Services

The RateLimiter executes a policy's algorithm for one key against the
counter store.

Every acquire is a read -> decide -> compare-and-set loop. The decision is
a pure function of the state that was read, so when another caller wins
the compare-and-set the loop simply re-reads and decides again. No
check-then-act window exists: an admission only counts once its new state
is installed atomically.

Store failures and timeouts are handled by the policy's failure mode:
fail-open admits and logs a degraded-mode warning, fail-closed rejects,
fail-hard raises StoreUnavailableError to the caller. Running out of
compare-and-set attempts is treated the same way.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Awaitable, Optional, TypeVar

import structlog

from bulwark.core.exceptions import StoreUnavailableError, ThrottledError
from bulwark.domain.interfaces import IClock, ICounterStore

from .algorithms import Transition, decide
from .entities import RateLimitDecision, decode_state, encode_state
from .value_objects import FailureMode, RateLimitPolicy

if TYPE_CHECKING:
    from bulwark.core.metrics import DecisionMetrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class _ContentionExhausted(Exception):
    """Every compare-and-set attempt lost to a concurrent writer"""


class RateLimiter:
    """
    Per-key admission control for one policy.

    Instances are created and cached by the ResilienceRegistry, one per
    (policy name, key). State lives in the counter store under
    `storage_key`; the instance itself holds no mutable limiter state
    besides its last-access time, which drives idle eviction.

    Callers in this process that share the instance queue on a per-key
    asyncio lock, so compare-and-set only ever races writers in other
    processes and local bursts cannot exhaust the retry budget. With a
    remote store the policy timeout bounds the whole acquire, time spent
    queued on the lock included.
    """

    def __init__(
        self,
        policy: RateLimitPolicy,
        key: str,
        store: ICounterStore,
        clock: IClock,
        policy_name: str = "default",
        metrics: Optional[DecisionMetrics] = None,
    ):
        self.policy = policy
        self.key = key
        self.policy_name = policy_name
        self.store = store
        self.clock = clock
        self.metrics = metrics
        self.storage_key = f"rl:{policy_name}:{key}"
        self.last_access = clock.now()
        self._lock = asyncio.Lock()

    async def try_acquire(self, cost: int = 1) -> RateLimitDecision:
        """
        Decide whether a request of `cost` units is admitted.

        Args:
            cost: Units this request consumes (positive integer).

        Returns:
            RateLimitDecision; `allowed` is False with `retry_after` when throttled.

        Raises:
            ValueError: If cost is not a positive integer.
            StoreUnavailableError: Only when the policy's failure mode is FAIL_HARD.
        """
        self._validate_cost(cost)
        self.last_access = self.clock.now()

        try:
            transition = await self._commit_within_deadline(cost)
        except StoreUnavailableError as e:
            return self._fallback(e)
        except _ContentionExhausted:
            attempts = self.policy.max_cas_retries
            logger.warning(
                "rate_limit_contention_exhausted",
                policy=self.policy_name,
                key=self.key,
                attempts=attempts,
            )
            return self._fallback(
                StoreUnavailableError(f"Compare-and-set lost {attempts} consecutive attempts"),
                contention=True,
            )

        decision = self._to_decision(transition)
        self._record(decision)
        return decision

    async def acquire_or_raise(self, cost: int = 1) -> RateLimitDecision:
        """Like try_acquire, but raises ThrottledError instead of returning a rejection"""
        decision = await self.try_acquire(cost)
        if not decision.allowed:
            raise ThrottledError(self.key, decision.retry_after)
        return decision

    async def peek(self) -> RateLimitDecision:
        """
        Report whether a unit request would be admitted right now, without
        consuming anything. Store errors propagate as StoreUnavailableError.
        """
        payload = await self._store_call(self.store.get(self.storage_key))
        state = decode_state(self.policy.algorithm, payload)
        return self._to_decision(decide(state, self.clock.now(), 1, self.policy))

    async def reset(self) -> bool:
        """Forget all state for this key"""
        return await self._store_call(self.store.delete(self.storage_key))

    def is_idle(self, now: float) -> bool:
        """True once the key has seen no traffic for its policy's idle TTL"""
        return now - self.last_access >= self.policy.idle_ttl_seconds

    async def _commit_within_deadline(self, cost: int) -> Transition:
        """
        Run the commit loop under the per-key lock. For remote stores one
        deadline covers both the wait for the lock and the loop itself.
        """
        if not self.store.is_remote:
            async with self._lock:
                return await self._decide_and_commit(cost)

        async def locked_commit() -> Transition:
            async with self._lock:
                return await self._decide_and_commit(cost)

        try:
            return await asyncio.wait_for(locked_commit(), timeout=self.policy.store_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(
                f"Counter store timed out after {self.policy.store_timeout_ms:g} ms"
            ) from e

    async def _decide_and_commit(self, cost: int) -> Transition:
        ttl = self.policy.idle_ttl_seconds
        for _ in range(self.policy.max_cas_retries):
            payload = await self._store_call(self.store.get(self.storage_key))
            state = decode_state(self.policy.algorithm, payload)
            transition = decide(state, self.clock.now(), cost, self.policy)

            if transition.new_state is None:
                return transition

            committed = await self._store_call(
                self.store.compare_and_set(
                    self.storage_key, payload, encode_state(transition.new_state), ttl
                )
            )
            if committed:
                return transition

        raise _ContentionExhausted()

    async def _store_call(self, operation: Awaitable[T]) -> T:
        """Await a store operation, bounded by the policy timeout for remote stores"""
        try:
            if not self.store.is_remote:
                return await operation
            return await asyncio.wait_for(operation, timeout=self.policy.store_timeout_seconds)
        except StoreUnavailableError:
            raise
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(
                f"Counter store timed out after {self.policy.store_timeout_ms:g} ms"
            ) from e
        except Exception as e:
            raise StoreUnavailableError(f"Counter store error: {e}") from e

    def _fallback(self, error: StoreUnavailableError, contention: bool = False) -> RateLimitDecision:
        mode = self.policy.failure_mode
        logger.warning(
            "rate_limit_degraded",
            policy=self.policy_name,
            key=self.key,
            failure_mode=mode.value,
            error=str(error),
        )
        if self.metrics is not None:
            self.metrics.record_degraded(self.policy_name)

        if mode is FailureMode.FAIL_HARD:
            raise error

        decision = RateLimitDecision.fallback(
            allowed=mode is FailureMode.FAIL_OPEN,
            limit=self.policy.capacity,
            algorithm=self.policy.algorithm,
            error_details=str(error),
            key=self.key,
            policy_name=self.policy_name,
            metadata={"contention": True} if contention else {},
        )
        self._record(decision)
        return decision

    def _to_decision(self, transition: Transition) -> RateLimitDecision:
        if transition.allowed:
            return RateLimitDecision.admitted(
                limit=self.policy.capacity,
                remaining=transition.remaining,
                algorithm=self.policy.algorithm,
                key=self.key,
                policy_name=self.policy_name,
            )
        return RateLimitDecision.rejected(
            limit=self.policy.capacity,
            retry_after=transition.retry_after,
            algorithm=self.policy.algorithm,
            remaining=transition.remaining,
            key=self.key,
            policy_name=self.policy_name,
        )

    def _record(self, decision: RateLimitDecision) -> None:
        if decision.allowed:
            logger.debug(
                "rate_limit_admitted",
                policy=self.policy_name,
                key=self.key,
                remaining=decision.remaining,
                degraded=decision.degraded,
            )
        else:
            logger.info(
                "rate_limit_rejected",
                policy=self.policy_name,
                key=self.key,
                retry_after_ms=decision.retry_after_ms,
                degraded=decision.degraded,
            )
        if self.metrics is not None:
            self.metrics.record_rate_limit(self.policy_name, decision.allowed)

    @staticmethod
    def _validate_cost(cost: int) -> None:
        if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
            raise ValueError("cost must be a positive integer")
