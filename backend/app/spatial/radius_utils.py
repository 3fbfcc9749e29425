"""
radius_utils.py — Great-circle distance and radius checks for hyper-local alerts.

Provides:
    - Haversine distance calculation between two (lat, lon) points
    - Point-in-radius check used by the proximity selector
    - Bounding-box pre-filter for cheap rejection before the trig

All distances are in **meters**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where:
    φ  = latitude in radians
    λ  = longitude in radians
    R  = Earth's mean radius = 6,371,000 m
    d  = great-circle distance in meters

At the equator one degree of longitude is ~111,195 m, so 0.009° ≈ 1000.75 m
and 0.02° ≈ 2223.9 m.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Tuple


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_M: float = 6_371_000.0


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        for name in ("latitude", "longitude"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be numeric, got {value!r}")
            if math.isnan(value):
                raise ValueError(f"{name} must not be NaN")
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @classmethod
    def from_mapping(cls, raw: Any) -> "Coordinate":
        """Build from a `{latitude, longitude}` mapping or object."""
        if raw is None:
            raise ValueError("location is missing")
        if isinstance(raw, dict):
            return cls(raw.get("latitude"), raw.get("longitude"))
        return cls(getattr(raw, "latitude", None), getattr(raw, "longitude", None))

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine_m(point1: Coordinate, point2: Coordinate) -> float:
    """
    Great-circle distance between two points, in meters.

    Examples
    --------
    >>> haversine_m(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    >>> round(haversine_m(Coordinate(0, 0), Coordinate(0, 0.02)))
    2224
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))

    return EARTH_RADIUS_M * c


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before Haversine)
# ---------------------------------------------------------------------------

def bounding_box(
    center: Coordinate, radius_m: float,
) -> Tuple[float, float, float, float]:
    """
    Lat/lon box that fully contains the circle (center, radius_m).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees. The box is
    padded by a hair so that points exactly on the circle survive the
    float comparison and get a precise Haversine check.
    """
    angular = radius_m / EARTH_RADIUS_M * (1.0 + 1e-9)

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    # Longitude delta widens toward the poles
    cos_lat = math.cos(center.lat_rad)
    if cos_lat > 1e-10:
        delta_lon = math.degrees(angular / cos_lat)
    else:
        delta_lon = 180.0

    return (
        max(min_lat, -90.0),
        min(max_lat, 90.0),
        max(center.longitude - delta_lon, -180.0),
        min(center.longitude + delta_lon, 180.0),
    )


def inside_bbox(
    point: Coordinate, box: Tuple[float, float, float, float],
) -> bool:
    min_lat, max_lat, min_lon, max_lon = box
    return (min_lat <= point.latitude <= max_lat
            and min_lon <= point.longitude <= max_lon)


# ---------------------------------------------------------------------------
# Radius check
# ---------------------------------------------------------------------------

def is_inside_radius(
    origin: Coordinate,
    point: Coordinate,
    radius_m: float,
) -> Tuple[bool, float]:
    """
    Check whether `point` lies within `radius_m` of `origin` (inclusive).

    Returns
    -------
    (inside, distance_m)
    """
    if radius_m <= 0:
        raise ValueError(f"Radius must be positive, got {radius_m}")

    dist = haversine_m(origin, point)
    return (dist <= radius_m, dist)
