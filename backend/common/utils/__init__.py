"""Common utility functions."""

from .geo import (
    Position,
    calculate_distance,
    distance_between,
    estimate_eta_minutes,
    validate_coordinates,
)

__all__ = [
    "Position",
    "calculate_distance",
    "distance_between",
    "estimate_eta_minutes",
    "validate_coordinates",
]
