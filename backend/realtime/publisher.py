"""
Event publisher.

Fire-and-forget delivery of dispatch events to WebSocket subscribers through
the Channels layer. Topics map one-to-one onto channel groups:

    trip_<trip_id>        every event for one trip
    customer_<user_id>    events for a customer's trips
    driver_<user_id>      offers and events for a driver
    drivers_presence      driver online/offline/busy/position changes

Delivery is at-least-once from the subscriber's point of view; a failed
send is logged and never raised into the caller.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction

logger = logging.getLogger(__name__)

PRESENCE_TOPIC = "drivers_presence"

# Channel group names allow ASCII alphanumerics, hyphens, underscores and periods
_INVALID_GROUP_CHARS = re.compile(r"[^A-Za-z0-9\-_.]")
_MAX_GROUP_LENGTH = 99


def group_name(topic: str) -> str:
    """Turn a topic into a valid channel group name."""
    return _INVALID_GROUP_CHARS.sub("_", str(topic))[:_MAX_GROUP_LENGTH]


def trip_topic(trip_id) -> str:
    return group_name(f"trip_{trip_id}")


def customer_topic(customer_id) -> str:
    return group_name(f"customer_{customer_id}")


def driver_topic(driver_id) -> str:
    return group_name(f"driver_{driver_id}")


def publish(topic: str, event: Dict[str, Any]) -> bool:
    """
    Send an event to every subscriber of `topic`.

    Returns:
        True if handed to the channel layer, False otherwise
    """
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("No channel layer available, dropping event for %s", topic)
        return False

    try:
        async_to_sync(channel_layer.group_send)(
            group_name(topic),
            {
                "type": "dispatch.event",
                "topic": topic,
                "event": event,
            },
        )
    except Exception:
        logger.exception("Failed to publish event to %s", topic)
        return False

    logger.debug("WS -> %s: %s", topic, event.get("kind"))
    return True


def publish_on_commit(topic: str, event: Dict[str, Any]) -> None:
    """Publish once the surrounding transaction commits (immediately if none)."""
    transaction.on_commit(lambda: publish(topic, event))
