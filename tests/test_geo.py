"""Tests for great-circle distance and the service-region bounding box."""

from __future__ import annotations

import math

import pytest

from src.services.config import DispatchConfig
from src.services.geo import WORLD, BoundingBox, haversine_km


class TestHaversine:
    def test_zero_distance(self) -> None:
        assert haversine_km(23.7461, 90.3742, 23.7461, 90.3742) == pytest.approx(0.0), (
            "distance from a point to itself should be zero"
        )

    def test_dhaka_neighbourhood(self) -> None:
        distance = haversine_km(23.7461, 90.3742, 23.7500, 90.3800)
        assert 0.6 < distance < 0.8, f"Dhaka reporter to driver should be ~0.7 km, got {distance}"

    def test_one_degree_latitude(self) -> None:
        distance = haversine_km(0.0, 0.0, 1.0, 0.0)
        assert distance == pytest.approx(111.19, rel=1e-3), "one degree of latitude is ~111 km"

    def test_symmetric(self) -> None:
        a = haversine_km(23.7, 90.3, 22.3, 91.8)
        b = haversine_km(22.3, 91.8, 23.7, 90.3)
        assert a == pytest.approx(b), "distance should not depend on direction"


class TestBoundingBox:
    def test_default_region_covers_dhaka(self) -> None:
        region = DispatchConfig().region
        assert region.contains(23.7461, 90.3742), "Dhaka should be inside the default region"

    def test_default_region_rejects_london(self) -> None:
        region = DispatchConfig().region
        assert not region.contains(51.5074, -0.1278), "London should be outside the default region"

    def test_edges_are_inclusive(self) -> None:
        box = BoundingBox(lat_min=10.0, lat_max=20.0, lon_min=30.0, lon_max=40.0)
        assert box.contains(10.0, 30.0)
        assert box.contains(20.0, 40.0)

    @pytest.mark.parametrize("lat, lon", [(math.nan, 90.0), (23.0, math.inf), (-math.inf, 0.0)])
    def test_non_finite_rejected(self, lat: float, lon: float) -> None:
        assert not WORLD.contains(lat, lon), "non-finite coordinates are never inside a region"
