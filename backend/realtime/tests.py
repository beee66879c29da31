import json
from unittest.mock import AsyncMock, MagicMock, patch

from asgiref.sync import async_to_sync
from django.contrib.auth.models import AnonymousUser
from django.test import SimpleTestCase, TestCase
from rest_framework_simplejwt.tokens import AccessToken

from common.exceptions import InvalidArgument
from common.utils.geo import Position
from drivers import services as driver_sessions
from services import matching, trip_management
from trips.models import TripEvent, TripEventKind
from trips.state_machine import TripStateMachine

from .consumers.driver_consumer import DriverConsumer
from .consumers.trip_consumer import TripConsumer
from .middleware import user_from_token
from .notifications import notify_trip_event
from .publisher import (
    PRESENCE_TOPIC,
    customer_topic,
    driver_topic,
    group_name,
    publish,
    publish_on_commit,
    trip_topic,
)


def consumer_for(consumer_class, user_id, role):
    """Build a consumer without a socket; outgoing frames are collected."""
    consumer = consumer_class()
    consumer.scope = {"user": AnonymousUser()}
    consumer.user_id = user_id
    consumer.role = role
    consumer.joined_groups = set()
    consumer.subscribed_trips = set()
    consumer.channel_name = "test.channel"
    consumer.channel_layer = MagicMock()
    consumer.channel_layer.group_add = AsyncMock()
    consumer.channel_layer.group_discard = AsyncMock()

    sent = []

    async def base_send(message):
        sent.append(json.loads(message["text"]))

    consumer.base_send = base_send
    return consumer, sent


class PublisherTests(SimpleTestCase):
    def test_topics_are_valid_group_names(self):
        self.assertEqual(trip_topic(42), "trip_42")
        self.assertEqual(customer_topic("auth0|abc"), "customer_auth0_abc")
        self.assertEqual(driver_topic("d 1"), "driver_d_1")
        self.assertEqual(len(group_name("x" * 300)), 99)

    @patch("realtime.publisher.get_channel_layer")
    def test_publish_sends_dispatch_event(self, mock_get_layer):
        layer = MagicMock()
        layer.group_send = AsyncMock()
        mock_get_layer.return_value = layer

        self.assertTrue(publish("trip_7", {"kind": "driver_proposed"}))

        layer.group_send.assert_awaited_once_with("trip_7", {
            "type": "dispatch.event",
            "topic": "trip_7",
            "event": {"kind": "driver_proposed"},
        })

    @patch("realtime.publisher.get_channel_layer", return_value=None)
    def test_publish_without_layer(self, _):
        self.assertFalse(publish("trip_7", {"kind": "created"}))

    @patch("realtime.publisher.get_channel_layer")
    def test_publish_failure_is_not_raised(self, mock_get_layer):
        layer = MagicMock()
        layer.group_send = AsyncMock(side_effect=RuntimeError("redis down"))
        mock_get_layer.return_value = layer

        self.assertFalse(publish("trip_7", {"kind": "created"}))


class NotificationTests(TestCase):
    @patch("realtime.publisher.publish")
    def test_publish_waits_for_commit(self, mock_publish):
        with self.captureOnCommitCallbacks() as callbacks:
            publish_on_commit("trip_1", {"kind": "created"})
        mock_publish.assert_not_called()

        callbacks[0]()
        mock_publish.assert_called_once_with("trip_1", {"kind": "created"})

    def test_trip_event_goes_to_trip_customer_and_driver(self):
        trip = TripStateMachine.create(
            customer_id="c1",
            pickup_latitude=6.9271,
            pickup_longitude=79.8612,
            dropoffs=[{"latitude": 6.935, "longitude": 79.87, "address": ""}],
        )
        record = TripEvent.objects.get(trip=trip)
        record.driver_id = "d1"

        with patch("realtime.notifications.publish_on_commit") as mock_publish:
            notify_trip_event(trip, record)

        topics = {c.args[0] for c in mock_publish.call_args_list}
        self.assertEqual(topics, {f"trip_{trip.id}", "customer_c1", "driver_d1"})
        payload = mock_publish.call_args_list[0].args[1]
        self.assertEqual(payload["kind"], TripEventKind.CREATED)
        self.assertEqual(payload["sequence"], 1)
        self.assertIsNone(payload["old_status"])
        self.assertEqual(payload["trip"]["status"], "requested")

    def test_expired_offer_reaches_the_released_driver(self):
        driver_sessions.go_online("d1", Position(6.9275, 79.8615))
        driver_sessions.go_online("d2", Position(6.9300, 79.8650))
        trip = trip_management.create_trip(
            "c1",
            {"latitude": 6.9271, "longitude": 79.8612, "address": ""},
            [{"latitude": 6.935, "longitude": 79.87, "address": ""}],
            auto_dispatch=False,
        ).trip
        matching.dispatch(trip.id)

        with patch("realtime.notifications.publish_on_commit") as mock_publish:
            matching.expire_offer(trip.id, 1)

        kinds_by_topic = {}
        for c in mock_publish.call_args_list:
            kinds_by_topic.setdefault(c.args[0], []).append(c.args[1]["kind"])
        self.assertIn(TripEventKind.OFFER_EXPIRED, kinds_by_topic["driver_d1"])
        self.assertNotIn(TripEventKind.DRIVER_PROPOSED, kinds_by_topic["driver_d1"])
        self.assertIn(TripEventKind.DRIVER_PROPOSED, kinds_by_topic["driver_d2"])


class MiddlewareTests(SimpleTestCase):
    def test_valid_token_carries_role(self):
        token = AccessToken()
        token["user_id"] = "d1"
        token["role"] = "driver"

        user = user_from_token(str(token))

        self.assertEqual(str(user.id), "d1")
        self.assertEqual(user.role, "driver")

    def test_bad_token_is_anonymous(self):
        self.assertTrue(user_from_token("not-a-jwt").is_anonymous)


class ConsumerTests(SimpleTestCase):
    def test_dispatch_event_is_forwarded(self):
        consumer, sent = consumer_for(TripConsumer, "c1", "customer")
        event = {"kind": "driver_accepted", "trip_id": 3}

        async_to_sync(consumer.dispatch_event)({
            "type": "dispatch.event",
            "topic": "trip_3",
            "event": event,
        })

        self.assertEqual(sent, [{"type": "driver_accepted", "topic": "trip_3", "data": event}])

    def test_subscribe_to_someone_elses_trip_is_refused(self):
        consumer, sent = consumer_for(TripConsumer, "c2", "customer")

        with patch.object(TripConsumer, "_visible_trip_snapshot", AsyncMock(return_value=None)):
            async_to_sync(consumer.receive_json)({"type": "subscribe", "trip_id": 3})

        self.assertEqual(sent[0]["type"], "error")
        consumer.channel_layer.group_add.assert_not_awaited()

    def test_subscribe_joins_trip_group_and_replies_with_snapshot(self):
        consumer, sent = consumer_for(TripConsumer, "c1", "customer")
        snapshot = {"id": 3, "status": "driver_assigned", "event_sequence": 2}

        with patch.object(TripConsumer, "_visible_trip_snapshot", AsyncMock(return_value=snapshot)):
            async_to_sync(consumer.receive_json)({"type": "subscribe", "trip_id": 3})

        consumer.channel_layer.group_add.assert_awaited_once_with("trip_3", "test.channel")
        self.assertEqual(sent, [{"type": "subscribed", "trip_id": 3, "trip": snapshot}])

    def test_watch_drivers(self):
        consumer, sent = consumer_for(TripConsumer, "ops", "admin")

        async_to_sync(consumer.receive_json)({"type": "watch_drivers"})

        self.assertIn(PRESENCE_TOPIC, consumer.joined_groups)
        self.assertEqual(sent[0]["type"], "watching_drivers")

    def test_message_without_type(self):
        consumer, sent = consumer_for(TripConsumer, "c1", "customer")

        async_to_sync(consumer.receive_json)({"trip_id": 3})

        self.assertEqual(sent[0]["message"], "Message type is required")

    def test_driver_location_update(self):
        consumer, sent = consumer_for(DriverConsumer, "d1", "driver")

        with patch.object(DriverConsumer, "_update_position", AsyncMock()) as mock_update:
            async_to_sync(consumer.receive_json)({
                "type": "driver_location_update",
                "latitude": 6.93,
                "longitude": 79.86,
            })

        self.assertEqual(mock_update.await_args.args[0].latitude, 6.93)
        self.assertEqual(sent, [{"type": "location_updated", "latitude": 6.93, "longitude": 79.86}])

    def test_driver_location_update_before_going_online(self):
        consumer, sent = consumer_for(DriverConsumer, "d1", "driver")
        offline = AsyncMock(side_effect=InvalidArgument("Driver d1 has no session; go online first"))

        with patch.object(DriverConsumer, "_update_position", offline):
            async_to_sync(consumer.receive_json)({
                "type": "driver_location_update",
                "latitude": 6.93,
                "longitude": 79.86,
            })

        self.assertEqual(sent[0]["type"], "error")
        self.assertEqual(sent[0]["error"], "invalid_argument")

    def test_driver_location_update_out_of_range(self):
        consumer, sent = consumer_for(DriverConsumer, "d1", "driver")

        async_to_sync(consumer.receive_json)({
            "type": "driver_location_update",
            "latitude": 95,
            "longitude": 79.86,
        })

        self.assertEqual(sent[0]["error"], "invalid_argument")

    def test_driver_socket_refuses_other_roles(self):
        token = AccessToken()
        token["user_id"] = "c1"
        token["role"] = "customer"
        consumer = DriverConsumer()
        consumer.scope = {"user": user_from_token(str(token))}
        consumer.accept = AsyncMock()
        consumer.close = AsyncMock()

        async_to_sync(consumer.connect)()

        consumer.close.assert_awaited_once()
        consumer.accept.assert_not_awaited()

    def test_anonymous_socket_is_closed(self):
        consumer = TripConsumer()
        consumer.scope = {"user": AnonymousUser()}
        consumer.accept = AsyncMock()
        consumer.close = AsyncMock()

        async_to_sync(consumer.connect)()

        consumer.close.assert_awaited_once()
        consumer.accept.assert_not_awaited()
