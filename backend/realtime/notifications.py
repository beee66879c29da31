"""
Notification helpers for sending dispatch events to connected clients.

This module provides functions to:
- Fan a trip state-change event out to the trip, customer and driver topics
- Announce driver presence changes to map subscribers
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from .publisher import (
    PRESENCE_TOPIC,
    customer_topic,
    driver_topic,
    publish_on_commit,
    trip_topic,
)

logger = logging.getLogger(__name__)


# ---------------------- Trip Events ----------------------

def build_trip_event_payload(trip, trip_event) -> Dict[str, Any]:
    """Serialize a TripEvent together with the trip snapshot it produced."""
    from trips.serializers import TripSerializer

    return {
        "kind": trip_event.kind,
        "trip_id": trip.id,
        "sequence": trip_event.sequence,
        "old_status": trip_event.old_status or None,
        "new_status": trip_event.new_status,
        "driver_id": trip_event.driver_id,
        "timestamp": trip_event.created_at.isoformat(),
        "payload": trip_event.payload,
        "trip": TripSerializer(trip).data,
    }


def notify_trip_event(trip, trip_event) -> None:
    """
    Publish a trip event to everyone interested in it, after commit.

    Args:
        trip: Trip model instance (already updated)
        trip_event: TripEvent row just recorded; a rejected or expired
            offer carries the released driver, who is told too
    """
    payload = build_trip_event_payload(trip, trip_event)

    publish_on_commit(trip_topic(trip.id), payload)
    publish_on_commit(customer_topic(trip.customer_id), payload)

    if trip_event.driver_id:
        publish_on_commit(driver_topic(trip_event.driver_id), payload)


# ---------------------- Driver Presence ----------------------

def notify_driver_presence(location, reason: str = "") -> None:
    """Announce a driver's presence/position change to map subscribers."""
    payload = {
        "kind": "driver_presence",
        "driver_id": location.driver_id,
        "latitude": float(location.latitude),
        "longitude": float(location.longitude),
        "is_online": location.is_online,
        "is_busy": location.is_busy,
        "reason": reason,
        "timestamp": location.last_updated_at.isoformat(),
    }
    publish_on_commit(PRESENCE_TOPIC, payload)
    publish_on_commit(driver_topic(location.driver_id), payload)
