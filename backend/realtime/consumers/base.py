"""Base WebSocket consumer shared by the driver and trip sockets."""

import logging
from typing import Dict, Any, Set, Tuple

from channels.generic.websocket import AsyncJsonWebsocketConsumer

logger = logging.getLogger(__name__)


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Authenticated JSON socket that forwards published dispatch events.

    The user comes from JWTQueryAuthMiddleware. Anonymous users and roles
    outside `allowed_roles` are closed before accept.

    Subclasses should override:
        - on_connect(): join role-specific groups
        - handle_message(msg_type, data): handle incoming messages
    """

    allowed_roles: Tuple[str, ...] = ("customer", "driver", "admin")

    async def connect(self):
        self.user = self.scope["user"]
        if self.user.is_anonymous:
            await self.close()
            return

        self.user_id = str(getattr(self.user, "id", ""))
        self.role = getattr(self.user, "role", None)
        if self.role not in self.allowed_roles:
            logger.info("Rejecting %s socket for user %s with role %s",
                        self.__class__.__name__, self.user_id, self.role)
            await self.close()
            return

        # Groups to leave on disconnect
        self.joined_groups: Set[str] = set()

        await self.accept()
        await self.on_connect()

    async def on_connect(self):
        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
        })

    async def disconnect(self, close_code):
        try:
            for group in list(getattr(self, "joined_groups", ())):
                await self._leave_group(group)
            await self.on_disconnect(close_code)
        except Exception:
            logger.exception("Error during disconnect for user %s", getattr(self, 'user_id', 'unknown'))

    async def on_disconnect(self, close_code):
        pass

    async def receive_json(self, data: Dict[str, Any]):
        msg_type = data.get("type")
        if not msg_type:
            await self.send_error("Message type is required")
            return

        try:
            await self.handle_message(msg_type, data)
        except Exception:
            logger.exception("Error handling message type %s", msg_type)
            await self.send_error(f"Error processing {msg_type}")

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Groups ----------------------

    async def _join_group(self, group_name: str):
        await self.channel_layer.group_add(group_name, self.channel_name)
        self.joined_groups.add(group_name)

    async def _leave_group(self, group_name: str):
        await self.channel_layer.group_discard(group_name, self.channel_name)
        self.joined_groups.discard(group_name)

    # ---------------------- Replies ----------------------

    async def send_error(self, message: str, code: str = ""):
        payload = {"type": "error", "message": message}
        if code:
            payload["error"] = code
        await self.send_json(payload)

    async def send_success(self, event_type: str, **kwargs):
        await self.send_json({"type": event_type, **kwargs})

    # ---------------------- group_send handler ----------------------

    async def dispatch_event(self, event):
        """Forward a published dispatch event (trip event or driver presence)."""
        await self.send_json({
            "type": event["event"].get("kind", "event"),
            "topic": event.get("topic"),
            "data": event["event"],
        })
