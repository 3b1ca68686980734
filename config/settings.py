"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. All keys use
the ``GRAMAMB_`` prefix and may also be supplied through a ``.env`` file.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the Gram-Amb dispatch service."""

    model_config = SettingsConfigDict(
        env_prefix="GRAMAMB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    # Comma-separated list of allowed origins (production only).
    cors_origins: str = ""

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    # ── Backing store / pub-sub ────────────────────────────────────────
    # Empty string selects the in-process store and event bus.
    redis_url: str = ""
    store_namespace: str = "gramamb:"

    # ── Intake sanity bounds (default: Bangladesh) ─────────────────────
    valid_lat_min: float = Field(default=20.5, ge=-90.0, le=90.0)
    valid_lat_max: float = Field(default=26.7, ge=-90.0, le=90.0)
    valid_lon_min: float = Field(default=88.0, ge=-180.0, le=180.0)
    valid_lon_max: float = Field(default=92.7, ge=-180.0, le=180.0)

    # ── Matching ───────────────────────────────────────────────────────
    radius_tiers_km: tuple[float, ...] = (3.0, 8.0, 50.0)
    max_attempts_per_tier: int = Field(default=3, ge=1)
    ack_timeout_seconds: float = Field(default=30.0, gt=0)
    retry_backoff_seconds: tuple[float, ...] = (30.0, 60.0, 120.0, 240.0)
    max_pending_wait_seconds: float = Field(default=900.0, gt=0)

    # ── Offline fallback ───────────────────────────────────────────────
    fallback_max_chars: int = Field(default=140, ge=40)
    fallback_consumed_ttl_seconds: int = Field(default=86_400, ge=1)  # 1 day

    @model_validator(mode="after")
    def _check_bounds(self) -> Settings:
        if self.valid_lat_min >= self.valid_lat_max:
            raise ValueError("valid_lat_min must be below valid_lat_max")
        if self.valid_lon_min >= self.valid_lon_max:
            raise ValueError("valid_lon_min must be below valid_lon_max")
        if not self.radius_tiers_km:
            raise ValueError("radius_tiers_km must contain at least one tier")
        if list(self.radius_tiers_km) != sorted(self.radius_tiers_km):
            raise ValueError("radius_tiers_km must be ascending")
        return self

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton: import ``settings`` everywhere.
settings = Settings()
