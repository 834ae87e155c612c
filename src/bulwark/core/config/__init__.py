from .policies import (
    CircuitBreakerPolicyConfig,
    Policy,
    PolicyDocument,
    RateLimitPolicyConfig,
    load_policies,
    load_policies_file,
)
from .settings import ResilienceSettings, create_settings

__all__ = [
    "CircuitBreakerPolicyConfig",
    "Policy",
    "PolicyDocument",
    "RateLimitPolicyConfig",
    "ResilienceSettings",
    "create_settings",
    "load_policies",
    "load_policies_file",
]
