from __future__ import annotations

"""Centralized, structured exception hierarchy for Bulwark.

Every error carries a machine-readable `code` for programmatic handling and a
human-readable `message` for logging.

The hierarchy separates three families:
- Programming errors surfaced immediately to the caller (unknown policy,
  invalid key, conflicting policy registration).
- Infrastructure errors (the counter store failed or timed out). These are
  absorbed by the configured failure mode and only escape when a policy
  explicitly asks for the "hard" mode.
- Decision errors (throttled, circuit open). The decision API returns values
  for these; the exceptions exist for the convenience surfaces that raise.
"""

from typing import Final, Optional

__all__: Final = [
    "BulwarkError",
    "ConfigConflictError",
    "InvalidPolicyError",
    "InvalidKeyError",
    "StoreUnavailableError",
    "ThrottledError",
    "CircuitOpenError",
]


class BulwarkError(Exception):
    """Base exception class for all custom errors raised by Bulwark.

    Attributes:
        message (str): A human-readable error message, suitable for logging.
        code (str): A unique, machine-readable error code.
    """

    message: str
    code: str = "generic_error"

    def __init__(self, message: str, code: str = "generic_error"):
        self.message = message
        self.code = code
        Exception.__init__(self, self.message)

    # A concise, structured representation used by loggers.
    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigConflictError(BulwarkError):
    """Raised when a policy name is re-registered with a different configuration.

    Fatal to the registration call only; the policy already registered under
    that name keeps working.
    """

    def __init__(self, policy_name: str, message: Optional[str] = None, code: str = "config_conflict"):
        self.policy_name = policy_name
        if message is None:
            message = f"Policy '{policy_name}' is already registered with a different configuration"
        super().__init__(message, code)


class InvalidPolicyError(BulwarkError):
    """Raised when a caller references a policy that is not registered,
    or a policy of the wrong kind (e.g. a breaker policy used for rate limiting).
    """

    def __init__(self, policy_name: str, message: Optional[str] = None, code: str = "invalid_policy"):
        self.policy_name = policy_name
        if message is None:
            message = f"Policy '{policy_name}' is not registered"
        super().__init__(message, code)


class InvalidKeyError(BulwarkError):
    """Raised when a rate-limit or dependency key is empty or not a string."""

    def __init__(self, message: str = "Key must be a non-empty string", code: str = "invalid_key"):
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Infrastructure errors
# ---------------------------------------------------------------------------


class StoreUnavailableError(BulwarkError):
    """Raised when a counter store operation fails or times out."""

    def __init__(self, message: str = "Counter store unavailable", code: str = "store_unavailable"):
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Decision errors
# ---------------------------------------------------------------------------


class ThrottledError(BulwarkError):
    """Raised by `RateLimiter.acquire_or_raise` when a request is rejected.

    Attributes:
        retry_after (Optional[float]): Seconds until the request could be
            admitted, or None if it never can (cost above capacity).
    """

    def __init__(
        self,
        key: str,
        retry_after: Optional[float],
        message: Optional[str] = None,
        code: str = "throttled",
    ):
        self.key = key
        self.retry_after = retry_after
        if message is None:
            message = f"Rate limit exceeded for '{key}'"
        super().__init__(message, code)


class CircuitOpenError(BulwarkError):
    """Raised by the circuit breaker convenience surfaces when a call is rejected."""

    def __init__(
        self,
        breaker_name: str,
        retry_after: Optional[float] = None,
        message: Optional[str] = None,
        code: str = "circuit_open",
    ):
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        if message is None:
            message = f"Circuit breaker {breaker_name} is open"
        super().__init__(message, code)
