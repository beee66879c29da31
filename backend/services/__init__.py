"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - matching: Dispatch coordinator and accept-timeout timers
    - trip_management: Trip lifecycle operations and queries
    - pricing: Fare quotes and fare settings
    - routing: Routing oracle clients
"""

# Expose commonly used functions at package level
from .matching import (
    dispatch,
    accept_trip,
    reject_trip,
    expire_offer,
    sweep_expired_offers,
    redispatch_waiting_trips,
)
from .trip_management import (
    quote_route,
    create_trip,
    update_dropoffs,
    cancel_trip,
    start_trip,
    end_trip,
    get_trip,
    get_current_customer_trip,
    get_current_driver_trip,
)
from .results import TripResult

__all__ = [
    # Matching
    "dispatch",
    "accept_trip",
    "reject_trip",
    "expire_offer",
    "sweep_expired_offers",
    "redispatch_waiting_trips",
    # Trip management
    "quote_route",
    "create_trip",
    "update_dropoffs",
    "cancel_trip",
    "start_trip",
    "end_trip",
    "get_trip",
    "get_current_customer_trip",
    "get_current_driver_trip",
    "TripResult",
]
