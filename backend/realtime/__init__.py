"""
Realtime app for WebSocket delivery of dispatch events.

This app provides:
- The event publisher (topic -> channel group fan-out)
- WebSocket consumers for drivers and for trip subscribers
- Notification helpers that turn trip events and presence changes into messages
- JWT query-string authentication middleware for WebSocket connections

Key Components:
    - publisher.py: publish(topic, event) over the channel layer
    - notifications.py: Trip event and driver presence notification helpers
    - consumers/: WebSocket consumers (driver, trip)

Usage:
    from realtime.publisher import publish, trip_topic
    from realtime.notifications import notify_trip_event, notify_driver_presence
"""
