"""
Driver matching and dispatch service.

This module handles:
    - Offering requested trips to the nearest eligible driver
    - Driver accept / reject responses
    - Accept-timeouts and re-dispatch to the next driver
"""

from .dispatch_coordinator import (
    dispatch,
    accept_trip,
    reject_trip,
    expire_offer,
    sweep_expired_offers,
    redispatch_waiting_trips,
)

__all__ = [
    "dispatch",
    "accept_trip",
    "reject_trip",
    "expire_offer",
    "sweep_expired_offers",
    "redispatch_waiting_trips",
]
