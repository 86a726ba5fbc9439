"""
geo_math.py — Great-circle distance and radius membership.

Provides:
    - Haversine distance between two (lat, lon) points
    - Radius-membership test used by in-memory filtering AND as the
      semantic contract every persisted-store geo-query must honour
    - Spherical-cap radius conversion (km → radians) for geo-capable stores
    - Bounding-box pre-filter for stores that fall back to a scan

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

    R = 6371 km (mean Earth radius)

Geography variants
==================
Alert geography is a tagged union of ``GeoPoint`` and ``GeoPolygon``.
Only the point arm has matching logic; any radius computation handed a
polygon raises ``UnsupportedGeographyError`` instead of answering False.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple, Union

from geoalert.core.errors import UnsupportedGeographyError, ValidationError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6371.0


# ---------------------------------------------------------------------------
# Geography types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GeoPoint:
    """A geographic point in decimal degrees, stored as (lon, lat)."""
    lon: float
    lat: float

    kind = "Point"

    def __post_init__(self) -> None:
        if not (-90.0 <= self.lat <= 90.0):
            raise ValidationError(
                f"Latitude must be in [-90, 90], got {self.lat}", field="lat",
            )
        if not (-180.0 <= self.lon <= 180.0):
            raise ValidationError(
                f"Longitude must be in [-180, 180], got {self.lon}", field="lon",
            )

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "lon": self.lon, "lat": self.lat}


@dataclass(frozen=True)
class GeoPolygon:
    """
    Polygon geography — one or more linear rings of (lon, lat) pairs.

    Recognised by the data model but not by any matching logic.
    """
    rings: Tuple[Tuple[Tuple[float, float], ...], ...]

    kind = "Polygon"

    def __post_init__(self) -> None:
        if not self.rings or any(len(ring) < 4 for ring in self.rings):
            raise ValidationError(
                "Polygon rings need at least 4 positions each", field="coordinates",
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "coordinates": [[list(p) for p in ring] for ring in self.rings],
        }


Geography = Union[GeoPoint, GeoPolygon]


def require_point(geography: Geography, operation: str = "radius matching") -> GeoPoint:
    """Return the point arm of a geography or fail loudly."""
    if isinstance(geography, GeoPoint):
        return geography
    raise UnsupportedGeographyError(getattr(geography, "kind", type(geography).__name__), operation)


def geography_from_dict(data: Dict[str, Any]) -> Geography:
    """Rebuild a geography from its flat-document form."""
    if data.get("type", "Point") == "Polygon":
        rings = tuple(
            tuple((float(p[0]), float(p[1])) for p in ring)
            for ring in data["coordinates"]
        )
        return GeoPolygon(rings)
    return GeoPoint(lon=float(data["lon"]), lat=float(data["lat"]))


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance in kilometers between two points.

    No range validation — callers pass decimal degrees.

    Examples
    --------
    >>> haversine_km(0.0, 0.0, 0.0, 0.0)
    0.0
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lon2) - math.radians(lon1)

    a = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    # Float error can push `a` marginally past 1 for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))

    return EARTH_RADIUS_KM * c


def distance_km(a: Geography, b: Geography) -> float:
    """Haversine distance between two point geographies."""
    p = require_point(a, "distance")
    q = require_point(b, "distance")
    return haversine_km(p.lat, p.lon, q.lat, q.lon)


def within_radius(center: Geography, point: Geography, radius_km: float) -> bool:
    """
    True iff ``point`` lies within ``radius_km`` of ``center`` (inclusive).

    A zero radius matches only the exact centre. Negative radii are an
    input error.

    Examples
    --------
    >>> mumbai = GeoPoint(lon=72.8777, lat=19.0760)
    >>> within_radius(mumbai, GeoPoint(lon=72.8800, lat=19.0800), 25.0)
    True
    """
    if radius_km < 0:
        raise ValidationError(
            f"Radius must be non-negative, got {radius_km}", field="radius_km",
        )
    return distance_km(center, point) <= radius_km


def radius_to_radians(radius_km: float) -> float:
    """Angular radius of a spherical cap, as geo-capable stores expect."""
    return radius_km / EARTH_RADIUS_KM


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: GeoPoint, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Lat/lon rectangle that fully contains the disc (center, radius_km).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees. When the disc
    touches a pole or crosses the antimeridian the longitude range widens
    to the full [-180, 180].
    """
    angular = math.degrees(radius_to_radians(radius_km))

    min_lat = center.lat - angular
    max_lat = center.lat + angular

    cos_lat = math.cos(math.radians(center.lat))
    if min_lat <= -90.0 or max_lat >= 90.0 or cos_lat <= 1e-10:
        return max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0

    delta_lon = math.degrees(radius_to_radians(radius_km) / cos_lat)
    min_lon = center.lon - delta_lon
    max_lon = center.lon + delta_lon

    if min_lon < -180.0 or max_lon > 180.0:
        min_lon, max_lon = -180.0, 180.0

    return min_lat, max_lat, min_lon, max_lon


def inside_bbox(point: GeoPoint, bbox: Sequence[float]) -> bool:
    """Quick rectangular check."""
    min_lat, max_lat, min_lon, max_lon = bbox
    return min_lat <= point.lat <= max_lat and min_lon <= point.lon <= max_lon


# ---------------------------------------------------------------------------
# Utility: Human-readable distance
# ---------------------------------------------------------------------------

def format_distance(km: float) -> str:
    """
    Format a distance for display.

    >>> format_distance(0.45)
    '450 m'
    >>> format_distance(3.7266)
    '3.73 km'
    """
    if km < 1.0:
        return f"{int(km * 1000)} m"
    return f"{km:.2f} km"
