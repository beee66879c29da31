"""Trip WebSocket consumer for subscribing to trip events."""

import logging
from typing import Dict, Any, Set

from channels.db import database_sync_to_async

from .base import BaseConsumer
from realtime.publisher import PRESENCE_TOPIC, customer_topic, driver_topic, trip_topic

logger = logging.getLogger(__name__)


class TripConsumer(BaseConsumer):
    """
    WebSocket consumer for trip event subscriptions.

    Used by customers, drivers and admins to:
        - Receive every event for a trip they take part in (subscribe)
        - Receive events for all of their own trips (personal group)
        - Watch driver presence on the map (watch_drivers)
    """

    async def on_connect(self):
        self.subscribed_trips: Set[str] = set()

        # Personal group: events for all of this user's trips
        if self.role == "driver":
            await self._join_group(driver_topic(self.user_id))
        elif self.role == "customer":
            await self._join_group(customer_topic(self.user_id))

        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "message": "Trip event connection established",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "subscribe":
            await self._handle_subscribe(data)
        elif msg_type == "unsubscribe":
            await self._handle_unsubscribe(data)
        elif msg_type == "watch_drivers":
            await self._join_group(PRESENCE_TOPIC)
            await self.send_success("watching_drivers")
        elif msg_type == "unwatch_drivers":
            await self._leave_group(PRESENCE_TOPIC)
            await self.send_success("stopped_watching_drivers")
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Message Handlers ----------------------

    async def _handle_subscribe(self, data: Dict[str, Any]):
        """
        Join trip_<trip_id>. Replies with the trip snapshot so the client can
        reconcile events it missed while disconnected.
        """
        trip_id = data.get("trip_id")
        if trip_id is None:
            await self.send_error("subscribe requires trip_id")
            return

        snapshot = await self._visible_trip_snapshot(trip_id)
        if snapshot is None:
            await self.send_error("You are not authorized to follow this trip")
            return

        group = trip_topic(trip_id)
        await self._join_group(group)
        self.subscribed_trips.add(group)

        await self.send_success("subscribed", trip_id=snapshot["id"], trip=snapshot)

    async def _handle_unsubscribe(self, data: Dict[str, Any]):
        trip_id = data.get("trip_id")
        if trip_id is None:
            return

        group = trip_topic(trip_id)
        await self._leave_group(group)
        self.subscribed_trips.discard(group)

        await self.send_success("unsubscribed", trip_id=trip_id)

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _visible_trip_snapshot(self, trip_id):
        """Serialized trip if this user may follow it, else None."""
        from trips.models import Trip
        from trips.serializers import TripSerializer
        from services.trip_management import is_participant

        try:
            trip = Trip.objects.get(pk=int(trip_id))
        except (Trip.DoesNotExist, TypeError, ValueError):
            return None

        if not is_participant(trip, self.user_id, self.role):
            return None
        return TripSerializer(trip).data
