"""
Trip management service - Trip lifecycle operations.

This module handles:
    - Creating trips and previewing their route and fare
    - Changing dropoffs and re-quoting
    - Starting, ending and cancelling trips
    - Querying trip status, history and events
"""

from .trip_lifecycle import (
    quote_route,
    create_trip,
    update_dropoffs,
    requote_trip,
    cancel_trip,
    start_trip,
    end_trip,
    get_trip,
    get_current_customer_trip,
    get_current_driver_trip,
    list_customer_trips,
    list_driver_trips,
    list_trips,
    get_trip_events,
    is_participant,
)

__all__ = [
    # Customer operations
    "quote_route",
    "create_trip",
    "update_dropoffs",
    "requote_trip",
    "cancel_trip",
    # Driver operations
    "start_trip",
    "end_trip",
    # Queries
    "get_trip",
    "get_current_customer_trip",
    "get_current_driver_trip",
    "list_customer_trips",
    "list_driver_trips",
    "list_trips",
    "get_trip_events",
    "is_participant",
]
