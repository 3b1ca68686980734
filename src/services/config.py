"""Dispatch tunables passed into the services.

Kept separate from :mod:`config.settings` so services and tests can be
built without reading the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.services.geo import BoundingBox

if TYPE_CHECKING:
    from config.settings import Settings


@dataclass(frozen=True, slots=True)
class DispatchConfig:
    """Matching, intake and fallback parameters."""

    region: BoundingBox = field(
        default_factory=lambda: BoundingBox(lat_min=20.5, lat_max=26.7, lon_min=88.0, lon_max=92.7)
    )
    radius_tiers_km: tuple[float, ...] = (3.0, 8.0, 50.0)
    max_attempts_per_tier: int = 3
    ack_timeout_seconds: float = 30.0
    retry_backoff_seconds: tuple[float, ...] = (30.0, 60.0, 120.0, 240.0)
    max_pending_wait_seconds: float = 900.0
    fallback_max_chars: int = 140
    fallback_consumed_ttl_seconds: int = 86_400

    def backoff_for(self, round_index: int) -> float:
        """Delay before matching round *round_index* (0-based) is retried."""
        if not self.retry_backoff_seconds:
            return 0.0
        return self.retry_backoff_seconds[min(round_index, len(self.retry_backoff_seconds) - 1)]

    @classmethod
    def from_settings(cls, settings: Settings) -> DispatchConfig:
        return cls(
            region=BoundingBox(
                lat_min=settings.valid_lat_min,
                lat_max=settings.valid_lat_max,
                lon_min=settings.valid_lon_min,
                lon_max=settings.valid_lon_max,
            ),
            radius_tiers_km=tuple(settings.radius_tiers_km),
            max_attempts_per_tier=settings.max_attempts_per_tier,
            ack_timeout_seconds=settings.ack_timeout_seconds,
            retry_backoff_seconds=tuple(settings.retry_backoff_seconds),
            max_pending_wait_seconds=settings.max_pending_wait_seconds,
            fallback_max_chars=settings.fallback_max_chars,
            fallback_consumed_ttl_seconds=settings.fallback_consumed_ttl_seconds,
        )
