"""
Pricing service - Fare quotes.

This module handles:
    - Quoting a fare from a route distance
    - Reading and updating the fare configuration
"""

from .fare_calculator import (
    quote,
    quote_for_distance,
    get_fare_settings,
    update_fare_settings,
)

__all__ = [
    "quote",
    "quote_for_distance",
    "get_fare_settings",
    "update_fare_settings",
]
