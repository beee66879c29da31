"""Driver WebSocket consumer for real-time location updates and trip offers."""

import logging
from typing import Dict, Any

from channels.db import database_sync_to_async

from .base import BaseConsumer
from common.exceptions import DispatchError
from common.utils.geo import Position
from realtime.publisher import driver_topic

logger = logging.getLogger(__name__)


class DriverConsumer(BaseConsumer):
    """
    WebSocket consumer for drivers.

    Handles:
        - Driver location updates (fed to the geo index)
        - Trip offers and trip events for this driver (driver_<id> group)
    """

    allowed_roles = ("driver",)

    async def on_connect(self):
        # Join driver-specific group for offers and trip events
        self.driver_group = driver_topic(self.user_id)
        await self._join_group(self.driver_group)

        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "message": "Driver connected successfully",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Handle driver-specific messages."""

        if msg_type == "driver_location_update":
            await self._handle_location_update(data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Message Handlers ----------------------

    async def _handle_location_update(self, data: Dict[str, Any]):
        """Move the driver in the geo index. The session must already be online."""
        try:
            position = Position.from_mapping(data)
            await self._update_position(position)
        except DispatchError as e:
            await self.send_error(e.message, code=e.error_code)
            return

        logger.debug("Driver %s location update: %s, %s", self.user_id, position.latitude, position.longitude)
        await self.send_success("location_updated", latitude=position.latitude, longitude=position.longitude)

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _update_position(self, position: Position):
        from drivers.services import update_position
        return update_position(self.user_id, position)
