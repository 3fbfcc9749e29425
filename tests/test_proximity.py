"""
test_proximity.py — Tests for great-circle radius checks and nearby-device
selection.

Covers:
    • Haversine distances and inclusive radius checks
    • Coordinate validation and bounding-box pre-filter
    • Device filtering (originator exclusion, malformed locations)
    • ProximitySelector against the in-memory store

Run with:
    pytest tests/test_proximity.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.alerts.models import DeviceRegistration, GeoPoint, LastLocation
from backend.app.alerts.proximity import ProximitySelector, filter_nearby_devices
from backend.app.alerts.store import InMemoryStore
from backend.app.spatial.radius_utils import (
    Coordinate,
    bounding_box,
    haversine_m,
    inside_bbox,
    is_inside_radius,
)

ORIGIN = Coordinate(0.0, 0.0)


def _device(legacy: str, token, lat, lon, canonical: str = None) -> DeviceRegistration:
    return DeviceRegistration(
        user_id=canonical or legacy.lower().ljust(32, "0"),
        legacy_user_id=legacy,
        device_token=token,
        last_location=LastLocation(lat, lon),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Radius maths
# ═══════════════════════════════════════════════════════════════════════════

class TestHaversine:
    def test_zero_distance(self):
        assert haversine_m(ORIGIN, ORIGIN) == 0.0

    def test_known_equatorial_distances(self):
        assert haversine_m(ORIGIN, Coordinate(0, 0.009)) == pytest.approx(1000.75, abs=0.5)
        assert haversine_m(ORIGIN, Coordinate(0, 0.02)) == pytest.approx(2224, abs=1)

    def test_symmetric(self):
        a, b = Coordinate(13.0827, 80.2707), Coordinate(12.9941, 80.1709)
        assert haversine_m(a, b) == pytest.approx(haversine_m(b, a))


class TestIsInsideRadius:
    def test_just_outside(self):
        inside, dist = is_inside_radius(ORIGIN, Coordinate(0, 0.009), 1000)
        assert not inside
        assert dist > 1000

    def test_boundary_is_inclusive(self):
        point = Coordinate(0, 0.009)
        dist = haversine_m(ORIGIN, point)
        inside, _ = is_inside_radius(ORIGIN, point, dist)
        assert inside

    def test_non_positive_radius_rejected(self):
        with pytest.raises(ValueError):
            is_inside_radius(ORIGIN, ORIGIN, 0)


class TestCoordinate:
    @pytest.mark.parametrize("lat,lon", [(91, 0), (0, 181), ("12", 0), (True, 0)])
    def test_invalid(self, lat, lon):
        with pytest.raises(ValueError):
            Coordinate(lat, lon)

    def test_from_mapping(self):
        c = Coordinate.from_mapping({"latitude": 1.5, "longitude": 2.5})
        assert (c.latitude, c.longitude) == (1.5, 2.5)

    def test_from_missing(self):
        with pytest.raises(ValueError):
            Coordinate.from_mapping(None)


class TestBoundingBox:
    def test_box_contains_boundary_point(self):
        point = Coordinate(0, 0.009)
        box = bounding_box(ORIGIN, haversine_m(ORIGIN, point))
        assert inside_bbox(point, box)

    def test_box_rejects_far_point(self):
        box = bounding_box(ORIGIN, 1000)
        assert not inside_bbox(Coordinate(0, 0.02), box)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Device filtering
# ═══════════════════════════════════════════════════════════════════════════

class TestFilterNearbyDevices:
    def test_near_included_far_excluded(self):
        devices = [
            _device("U2", "tok-near", 0, 0.0089),
            _device("U3", "tok-far", 0, 0.02),
        ]
        assert filter_nearby_devices(devices, ORIGIN, "U1", 1000) == ["tok-near"]

    def test_originator_excluded_by_legacy_id(self):
        devices = [_device("U1", "tok-self", 0, 0.001)]
        assert filter_nearby_devices(devices, ORIGIN, "U1", 1000) == []

    def test_originator_excluded_by_canonical_id(self):
        canonical = "a" * 32
        devices = [_device("U1", "tok-self", 0, 0.001, canonical=canonical)]
        assert filter_nearby_devices(devices, ORIGIN, canonical, 1000) == []

    def test_device_without_token_skipped(self):
        devices = [_device("U2", None, 0, 0.001)]
        assert filter_nearby_devices(devices, ORIGIN, "U1", 1000) == []

    def test_malformed_location_skipped(self):
        devices = [
            _device("U2", "tok-bad", "north", 0),
            _device("U3", "tok-range", 95, 0),
            _device("U4", "tok-ok", 0, 0.001),
        ]
        assert filter_nearby_devices(devices, ORIGIN, "U1", 1000) == ["tok-ok"]

    def test_antimeridian(self):
        origin = Coordinate(0, 179.999)
        devices = [_device("U2", "tok-east", 0, -179.999)]
        # ~222 m apart across the date line
        assert filter_nearby_devices(devices, origin, "U1", 1000) == ["tok-east"]


class TestProximitySelector:
    def test_reads_located_devices_from_store(self):
        async def scenario():
            store = InMemoryStore()
            await store.upsert_presence(
                "U2", device_token="ExponentPushToken[near]",
                location=GeoPoint(12.9, 77.6),
            )
            await store.upsert_presence(
                "U3", device_token="ExponentPushToken[far]",
                location=GeoPoint(13.5, 77.6),
            )
            await store.upsert_presence("U4", device_token="ExponentPushToken[nowhere]")
            await store.upsert_presence(
                "U1", device_token="ExponentPushToken[self]",
                location=GeoPoint(12.9, 77.6),
            )
            selector = ProximitySelector(store)
            return await selector.select_nearby_devices(
                {"latitude": 12.9, "longitude": 77.6}, "U1",
            )

        assert asyncio.run(scenario()) == ["ExponentPushToken[near]"]
