"""Resilience core settings and configuration management.

Settings are read from `BULWARK_`-prefixed environment variables and
`.env` files, validated, and handed to `ResilienceRegistry.from_settings`
or `resilience_lifespan`. Nothing here is a process-wide singleton; build
a settings object and pass it where it is needed.

Environment Support:
- Development: Uses .env, Redis password optional
- Test: Uses .env.test
- Staging: Uses .env.staging, Redis password required for the redis backend
- Production: Uses .env.production, Redis password required for the redis backend
"""

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ENV_PREFIX = "BULWARK_"


class ResilienceSettings(BaseSettings):
    """
    Defines settings for the counter store, logging and housekeeping.

    Security Note:
        - REDIS_PASSWORD must be set in staging/production when the redis
          backend is used, to prevent unauthorized access to shared counters.
        - REDIS_URL should use rediss:// across untrusted networks.
    Performance Note:
        - STORE_TIMEOUT_MS bounds every remote store call made on the decision
          path; keep it in the low tens of milliseconds.
    """
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    STORE_BACKEND: str = Field(default="memory", pattern="^(memory|redis)$")
    STORE_TIMEOUT_MS: float = Field(default=20.0, gt=0)

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = Field(ge=1, le=65535, default=6379)
    REDIS_PASSWORD: SecretStr = SecretStr("")
    REDIS_SSL: bool = False
    REDIS_DB: int = Field(ge=0, default=0)
    REDIS_URL: str = Field(default="", validate_default=True)
    REDIS_KEY_PREFIX: str = "bulwark:"

    SWEEP_INTERVAL_SECONDS: float = Field(default=30.0, gt=0)
    POLICIES_FILE: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("REDIS_PASSWORD")
    @classmethod
    def validate_redis_password(cls, value: SecretStr, info: ValidationInfo) -> SecretStr:
        """
        Ensures REDIS_PASSWORD is set for staging/production when Redis backs the store.

        Raises:
            ValueError: If password is not set in staging/production.
        """
        app_env = info.data.get("APP_ENV", "development")
        backend = info.data.get("STORE_BACKEND", "memory")
        if backend == "redis" and app_env in ("staging", "production") and not value.get_secret_value():
            logger.error(f"REDIS_PASSWORD must be set in {app_env} environment.")
            raise ValueError("REDIS_PASSWORD must be set in staging/production environments")
        return value

    @field_validator("REDIS_URL", mode="before")
    @classmethod
    def assemble_redis_url(cls, v: Optional[str], info: ValidationInfo) -> str:
        """
        Assembles the Redis connection URL if not provided explicitly.

        Args:
            v: Explicitly provided URL or None.
            info: Validation context with other field values.

        Returns:
            Assembled or provided Redis URL.
        """
        if v:
            return v

        values = info.data
        protocol = "rediss" if values.get("REDIS_SSL") else "redis"
        secret = values.get("REDIS_PASSWORD")
        redis_password = secret.get_secret_value() if secret is not None else ""
        password = f":{redis_password}@" if redis_password else ""

        url = (
            f"{protocol}://{password}{values.get('REDIS_HOST')}:"
            f"{values.get('REDIS_PORT')}/{values.get('REDIS_DB', 0)}"
        )
        logger.debug("Assembled REDIS_URL (password masked for security).")
        return url

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {value}")
        return level


def create_settings(**overrides) -> ResilienceSettings:
    """Create settings with environment-specific configuration.

    The env file is chosen from BULWARK_APP_ENV; keyword overrides win over
    both the environment and the file.

    Returns:
        ResilienceSettings: Configured settings instance
    """
    env = os.getenv(f"{ENV_PREFIX}APP_ENV", "development")

    env_files = {
        "development": ".env",
        "test": ".env.test",
        "staging": ".env.staging",
        "production": ".env.production",
    }
    env_file = env_files.get(env, ".env")

    if env != "development" and Path(env_file).exists():
        logger.info(f"Loading resilience configuration from {env_file}")
        return ResilienceSettings(_env_file=env_file, **overrides)

    logger.debug(f"Loading resilience configuration from environment (environment: {env})")
    return ResilienceSettings(**overrides)
