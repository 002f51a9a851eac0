"""
Configuration surface for the execution core.

Adapters hand the core one ``BulwarkSettings`` (or the individual section
models) describing pool sizing, admission rates, retry budget, breaker
thresholds and simulation mode. Each section is a plain pydantic model so it
can also be built in code; ``BulwarkSettings`` layers environment variables
and ``.env`` files on top.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Bad thresholds fail at startup, not mid-call
    - **Environment-driven:** ``BULWARK_RETRY__MAX_ATTEMPTS=5``
    - **Sectioned:** One model per component, injected where it is consumed
    - **Sensible defaults:** Works out of the box for development

Examples:
    >>> settings = BulwarkSettings(retry=RetryConfig(max_attempts=5))
    >>> settings.retry.max_attempts
    5

    Environment (nested delimiter ``__``)::

        BULWARK_RATE_LIMIT__REFILL_RATE=20
        BULWARK_SIMULATION__MODE=replay
        BULWARK_SIMULATION__PATH=fixtures/jira.json

Tags:
    settings, configuration, pydantic, environment, bulwark

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bulwark.core.models import SimulationMode


class PoolConfig(BaseModel):
    """Connection pool sizing and lifecycle (seconds)."""

    min_connections: int = Field(default=1, ge=0)
    max_connections: int = Field(default=10, ge=1)
    acquire_timeout: float = Field(default=30.0, gt=0)
    idle_timeout: float = Field(default=600.0, gt=0)
    max_lifetime: float = Field(default=3600.0, gt=0)
    maintenance_interval: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> PoolConfig:
        if self.min_connections > self.max_connections:
            raise ValueError(
                f"min_connections ({self.min_connections}) exceeds "
                f"max_connections ({self.max_connections})"
            )
        return self


class RateLimitConfig(BaseModel):
    """Token bucket: steady ``refill_rate`` per second, ``burst`` capacity."""

    refill_rate: float = Field(default=10.0, gt=0)
    burst: float = Field(default=10.0, ge=1)
    adaptive: bool = False


class RetryConfig(BaseModel):
    """Retry budget and backoff (seconds)."""

    max_attempts: int = Field(default=3, ge=1)
    max_auth_refreshes: int = Field(default=1, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    jitter_ratio: float = Field(default=0.1, ge=0, le=1)


class CircuitBreakerConfig(BaseModel):
    """Breaker thresholds; ``reset_timeout`` in seconds."""

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    reset_timeout: float = Field(default=30.0, gt=0)
    failure_decay: Literal["decrement", "reset"] = "decrement"


class SimulationConfig(BaseModel):
    """Record/replay mode and fixture location."""

    mode: SimulationMode = SimulationMode.DISABLED
    path: Path | None = None
    float_precision: int = Field(default=6, ge=0, le=17)


class BulwarkSettings(BaseSettings):
    """Aggregate settings for one adapter's execution core.

    All fields can be set via ``BULWARK_*`` environment variables with ``__``
    separating nested sections.
    """

    model_config = SettingsConfigDict(
        env_prefix="BULWARK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Components ───────────────────────────────────────────────
    pool: PoolConfig = Field(default_factory=PoolConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)

    # ── Per-attempt deadline ─────────────────────────────────────
    request_timeout: float | None = Field(default=30.0, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> BulwarkSettings:
    """Return the process-wide settings, read once from the environment."""
    return BulwarkSettings()


__all__ = [
    "PoolConfig",
    "RateLimitConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "SimulationConfig",
    "BulwarkSettings",
    "get_settings",
]
