"""
Policy configuration surface.

Policies are declared in a mapping (usually a JSON file) keyed by policy
name. Each entry carries a `kind` of `rate_limit` or `circuit_breaker` and
accepts both snake_case and camelCase keys:

    {
        "policies": {
            "api": {"kind": "rate_limit", "algorithm": "token_bucket",
                    "capacity": 100, "rate": 10, "failOpen": true},
            "search": {"kind": "rate_limit", "algorithm": "fixed_window",
                       "limit": 5, "windowLength": 60, "failClosed": true},
            "payments": {"kind": "circuit_breaker", "failureRateThreshold": 0.5,
                         "minimumVolume": 10, "rollingWindowLength": 30,
                         "cooldown": 30, "halfOpenTrialCount": 3}
        }
    }

The pydantic models only parse and normalise; the frozen domain policies
they convert into enforce the business rules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from bulwark.domain.circuit_breaking import CircuitBreakerPolicy, WindowScope
from bulwark.domain.rate_limiting import FailureMode, RateLimitAlgorithm, RateLimitPolicy

logger = logging.getLogger(__name__)

Policy = Union[RateLimitPolicy, CircuitBreakerPolicy]


class RateLimitPolicyConfig(BaseModel):
    """Declarative form of a RateLimitPolicy."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["rate_limit"]
    algorithm: RateLimitAlgorithm
    capacity: Optional[int] = Field(default=None, gt=0)
    limit: Optional[int] = Field(default=None, gt=0)
    rate: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("rate", "refill_rate", "refillRate")
    )
    window_length: Optional[float] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("window_length", "windowLength", "window_seconds", "windowSeconds"),
    )
    failure_mode: Optional[FailureMode] = Field(
        default=None, validation_alias=AliasChoices("failure_mode", "failureMode")
    )
    fail_open: Optional[bool] = Field(default=None, validation_alias=AliasChoices("fail_open", "failOpen"))
    fail_closed: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("fail_closed", "failClosed")
    )
    store_timeout_ms: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("store_timeout_ms", "storeTimeoutMs")
    )

    @field_validator("algorithm", mode="before")
    @classmethod
    def normalise_algorithm(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_")
        return value

    @model_validator(mode="after")
    def check_consistency(self) -> "RateLimitPolicyConfig":
        if self.capacity is None and self.limit is None:
            raise ValueError("either capacity or limit is required")
        if self.capacity is not None and self.limit is not None and self.capacity != self.limit:
            raise ValueError("capacity and limit disagree")
        if self.fail_open and self.fail_closed:
            raise ValueError("failOpen and failClosed are mutually exclusive")
        return self

    def resolved_failure_mode(self) -> FailureMode:
        if self.failure_mode is not None:
            return self.failure_mode
        if self.fail_closed or self.fail_open is False:
            return FailureMode.FAIL_CLOSED
        return FailureMode.FAIL_OPEN

    def to_policy(self, default_store_timeout_ms: float = 20.0) -> RateLimitPolicy:
        """Convert to the frozen domain policy. Raises ValueError on invalid combinations."""
        return RateLimitPolicy(
            algorithm=self.algorithm,
            capacity=self.capacity if self.capacity is not None else self.limit,
            refill_rate=self.rate,
            window_seconds=self.window_length,
            failure_mode=self.resolved_failure_mode(),
            store_timeout_ms=self.store_timeout_ms or default_store_timeout_ms,
        )


class CircuitBreakerPolicyConfig(BaseModel):
    """Declarative form of a CircuitBreakerPolicy."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["circuit_breaker"]
    failure_rate_threshold: float = Field(
        default=0.5, gt=0, validation_alias=AliasChoices("failure_rate_threshold", "failureRateThreshold")
    )
    minimum_volume: int = Field(
        default=10, ge=1, validation_alias=AliasChoices("minimum_volume", "minimumVolume")
    )
    rolling_window_length: float = Field(
        default=30.0,
        gt=0,
        validation_alias=AliasChoices(
            "rolling_window_length", "rollingWindowLength", "rolling_window_seconds"
        ),
    )
    cooldown: float = Field(default=30.0, gt=0, validation_alias=AliasChoices("cooldown", "cooldown_seconds"))
    half_open_trial_count: int = Field(
        default=3, ge=1, validation_alias=AliasChoices("half_open_trial_count", "halfOpenTrialCount")
    )
    half_open_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("half_open_timeout", "halfOpenTimeout", "half_open_timeout_seconds"),
    )
    slow_call_threshold_ms: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("slow_call_threshold_ms", "slowCallThresholdMs")
    )
    window_scope: WindowScope = Field(
        default=WindowScope.LOCAL, validation_alias=AliasChoices("window_scope", "windowScope")
    )
    store_timeout_ms: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("store_timeout_ms", "storeTimeoutMs")
    )

    @field_validator("failure_rate_threshold")
    @classmethod
    def normalise_threshold(cls, value: float) -> float:
        """Accept percentages (50) as well as fractions (0.5)."""
        if value > 1.0:
            if value > 100.0:
                raise ValueError("failure_rate_threshold must be a fraction or a percentage")
            return value / 100.0
        return value

    def to_policy(self, default_store_timeout_ms: float = 20.0) -> CircuitBreakerPolicy:
        return CircuitBreakerPolicy(
            failure_rate_threshold=self.failure_rate_threshold,
            minimum_volume=self.minimum_volume,
            rolling_window_seconds=self.rolling_window_length,
            cooldown_seconds=self.cooldown,
            half_open_trial_count=self.half_open_trial_count,
            half_open_timeout_seconds=self.half_open_timeout,
            slow_call_threshold_ms=self.slow_call_threshold_ms,
            window_scope=self.window_scope,
            store_timeout_ms=self.store_timeout_ms or default_store_timeout_ms,
        )


PolicyConfig = Annotated[
    Union[RateLimitPolicyConfig, CircuitBreakerPolicyConfig], Field(discriminator="kind")
]


class PolicyDocument(BaseModel):
    """Top-level policy file: a mapping of policy name to policy config."""

    model_config = ConfigDict(extra="forbid")

    policies: Dict[str, PolicyConfig] = Field(default_factory=dict)


def load_policies(data: Mapping[str, Any], default_store_timeout_ms: float = 20.0) -> Dict[str, Policy]:
    """
    Parse a policy mapping into domain policies.

    Accepts either `{"policies": {...}}` or the bare name -> config mapping.

    Raises:
        ValueError: If any entry is malformed (pydantic's ValidationError is a ValueError).
    """
    if "policies" not in data:
        data = {"policies": data}
    document = PolicyDocument.model_validate(data)

    policies: Dict[str, Policy] = {}
    for name, config in document.policies.items():
        try:
            policies[name] = config.to_policy(default_store_timeout_ms)
        except ValueError as e:
            raise ValueError(f"Invalid policy '{name}': {e}") from e
    logger.debug(f"Loaded {len(policies)} resilience policies")
    return policies


def load_policies_file(path: Union[str, Path], default_store_timeout_ms: float = 20.0) -> Dict[str, Policy]:
    """Load and parse a JSON policy file."""
    file_path = Path(path)
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Policy file {file_path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Policy file {file_path} must contain a JSON object")
    try:
        return load_policies(data, default_store_timeout_ms)
    except ValidationError as e:
        logger.error(f"Invalid policy file {file_path}: {e}")
        raise
