"""Centralized configuration for the Entrolytics cache and rate-limit layer.

Every option can be supplied through the environment.
Default: a local Redis on the standard port.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class RedisSettings(BaseSettings):
    """Redis store configuration.

    Environment variables:
        ENTROLYTICS_REDIS_URL: connection URL (default: redis://localhost:6379/0)
        ENTROLYTICS_REDIS_PREFIX: key namespace prefix (default: entrolytics:)
        ENTROLYTICS_REDIS_DEFAULT_TTL: default TTL in seconds (default: 3600)
        ENTROLYTICS_REDIS_MAX_RECONNECT_ATTEMPTS: retries before giving up (default: 10)
        ENTROLYTICS_REDIS_CONNECT_TIMEOUT: connect timeout in milliseconds (default: 10000)
        ENTROLYTICS_REDIS_SCAN_BATCH_SIZE: SCAN COUNT hint (default: 100)
    """

    url: str = "redis://localhost:6379/0"
    prefix: str = "entrolytics:"
    default_ttl: int = Field(default=3600, ge=0)
    max_reconnect_attempts: int = Field(default=10, ge=0)
    connect_timeout: int = Field(default=10000, gt=0)
    scan_batch_size: int = Field(default=100, gt=0)

    model_config = {"env_prefix": "ENTROLYTICS_REDIS_"}


class RateLimitSettings(BaseSettings):
    """Rate limiting configuration.

    Environment variables:
        ENTROLYTICS_RATELIMIT_ENABLED: enable the HTTP middleware (default: true)
        ENTROLYTICS_RATELIMIT_SWEEP_PROBABILITY: chance per local check of a
            full sweep of the fallback tracker (default: 0.01)
    """

    enabled: bool = True
    sweep_probability: float = Field(default=0.01, ge=0.0, le=1.0)

    model_config = {"env_prefix": "ENTROLYTICS_RATELIMIT_"}


class AppSettings(BaseSettings):
    """Application-level configuration."""

    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    redis: RedisSettings = RedisSettings()
    ratelimit: RateLimitSettings = RateLimitSettings()

    model_config = {"env_prefix": "ENTROLYTICS_"}


# Singleton instance, importable from anywhere
settings = AppSettings()
