"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers.driver_consumer import DriverConsumer
from .consumers.trip_consumer import TripConsumer

websocket_urlpatterns = [
    # Driver-specific WebSocket endpoint (offers, location updates)
    # URL: ws://localhost:8000/ws/driver/
    re_path(
        r"ws/driver/$",
        DriverConsumer.as_asgi(),
        name="driver-ws"
    ),

    # Trip event subscriptions (customers, drivers, admins)
    # URL: ws://localhost:8000/ws/trips/
    re_path(
        r"ws/trips/$",
        TripConsumer.as_asgi(),
        name="trips-ws"
    ),
]
