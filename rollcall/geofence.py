"""Geofence checks for attendance submissions.

Distances are great-circle (haversine) distances on a spherical Earth, which is
accurate to well under a meter at classroom scale.
"""

import math
from dataclasses import dataclass

from rollcall.config import DEFAULT_GEOFENCE_RADIUS_METERS
from rollcall.errors import ValidationError

EARTH_RADIUS_METERS = 6_371_000.0
DEFAULT_RADIUS_METERS = DEFAULT_GEOFENCE_RADIUS_METERS

Coordinate = tuple[float, float]


@dataclass(frozen=True)
class Geofence:
    latitude: float
    longitude: float
    radius_meters: float = DEFAULT_RADIUS_METERS

    @property
    def center(self) -> Coordinate:
        return (self.latitude, self.longitude)


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    accuracy: float | None = None

    @property
    def point(self) -> Coordinate:
        return (self.latitude, self.longitude)


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters between two (latitude, longitude) pairs in degrees."""
    lat1, lon1 = math.radians(a[0]), math.radians(a[1])
    lat2, lon2 = math.radians(b[0]), math.radians(b[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # Clamp: rounding can push h a hair past 1 for antipodal points.
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


def within_radius(center: Coordinate, radius: float, point: Coordinate) -> bool:
    return distance_meters(center, point) <= radius


def validate_coordinate(latitude: float, longitude: float) -> None:
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise ValidationError("Coordinates must be finite numbers.")
    if not -90.0 <= latitude <= 90.0:
        raise ValidationError("Latitude must be between -90 and 90 degrees.")
    if not -180.0 <= longitude <= 180.0:
        raise ValidationError("Longitude must be between -180 and 180 degrees.")


def build_geofence(
    latitude: float | None,
    longitude: float | None,
    radius_meters: float | None = None,
) -> Geofence | None:
    """
    Build a validated geofence, or None when no center is given.

    A center with only one of latitude/longitude is rejected; a missing radius
    falls back to DEFAULT_RADIUS_METERS.
    """
    if latitude is None and longitude is None:
        return None
    if latitude is None or longitude is None:
        raise ValidationError("Geofence needs both latitude and longitude.")
    validate_coordinate(latitude, longitude)

    radius = DEFAULT_RADIUS_METERS if radius_meters is None else float(radius_meters)
    if not math.isfinite(radius) or radius <= 0:
        raise ValidationError("Geofence radius must be a positive number of meters.")
    return Geofence(latitude=float(latitude), longitude=float(longitude), radius_meters=radius)


def mismatch_detail(distance: float, radius: float) -> str:
    return f"Distance: {round(distance)}m, Max allowed: {radius:g}m"
