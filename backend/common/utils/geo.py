"""
Geographic utility functions.

This module provides core geospatial calculations used throughout the application.
"""

from dataclasses import dataclass
from math import radians, cos, sin, atan2, sqrt

from common.exceptions import InvalidArgument

EARTH_RADIUS_KM = 6371.0

# Crude display heuristic: two minutes of driving per kilometre.
ETA_MINUTES_PER_KM = 2


@dataclass(frozen=True)
class Position:
    """A latitude/longitude pair in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self):
        validate_coordinates(self.latitude, self.longitude)

    @classmethod
    def from_mapping(cls, data) -> "Position":
        """Build a Position from a dict carrying lat/lng or latitude/longitude keys."""
        if data is None:
            raise InvalidArgument("Position is required")
        lat = data.get("latitude", data.get("lat"))
        lng = data.get("longitude", data.get("lng"))
        if lat is None or lng is None:
            raise InvalidArgument("Position requires latitude and longitude")
        try:
            return cls(float(lat), float(lng))
        except (TypeError, ValueError):
            raise InvalidArgument("Latitude and longitude must be numbers")


def validate_coordinates(lat: float, lon: float) -> None:
    """Raise InvalidArgument for coordinates outside the valid range."""
    if not -90.0 <= float(lat) <= 90.0:
        raise InvalidArgument(f"Latitude {lat} is out of range")
    if not -180.0 <= float(lon) <= 180.0:
        raise InvalidArgument(f"Longitude {lon} is out of range")


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in kilometres using Haversine formula.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in kilometres
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_between(a: Position, b: Position) -> float:
    """Haversine distance in kilometres between two positions."""
    return calculate_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def estimate_eta_minutes(distance_km: float) -> int:
    """Rough ETA for UI display; the routing oracle's duration is more accurate."""
    return int(round(distance_km * ETA_MINUTES_PER_KM))
