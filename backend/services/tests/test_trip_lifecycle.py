from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.db import IntegrityError, transaction
from django.test import TestCase

from common.exceptions import (
    ActiveTripExists,
    InvalidArgument,
    InvalidTransition,
    StaleAssignment,
    TripNotFound,
    UpstreamUnavailable,
)
from common.utils.geo import Position
from drivers import services as driver_sessions
from drivers.models import DriverLocation
from services import matching, trip_management
from services.pricing import update_fare_settings
from trips.models import Trip, TripEventKind, TripStatus

PICKUP = {"latitude": 6.9271, "longitude": 79.8612, "address": "Colombo Fort"}
DROPOFF = {"latitude": 6.9350, "longitude": 79.8700, "address": "Slave Island"}
SECOND_DROPOFF = {"latitude": 6.9400, "longitude": 79.8750, "address": "Kollupitiya"}

ORACLE_PATH = "services.trip_management.trip_lifecycle.get_routing_oracle"


def failing_oracle():
    oracle = MagicMock()
    oracle.route.side_effect = UpstreamUnavailable("routing down")
    return oracle


def request_trip(customer_id="c1", dropoffs=None):
    return trip_management.create_trip(
        customer_id, PICKUP, dropoffs or [DROPOFF], auto_dispatch=False,
    ).trip


def accepted_trip(driver_id="d1"):
    driver_sessions.go_online(driver_id, Position(6.9275, 79.8615))
    trip = request_trip()
    matching.dispatch(trip.id)
    matching.accept_trip(trip.id, driver_id)
    trip.refresh_from_db()
    return trip


class CreateTripTests(TestCase):
    def test_create_quotes_route_and_cost(self):
        result = trip_management.create_trip(
            "c1", PICKUP, [DROPOFF], customer_name="Nimal", auto_dispatch=False,
        )

        trip = result.trip
        self.assertTrue(result.success)
        self.assertEqual(trip.status, TripStatus.REQUESTED)
        self.assertEqual(trip.customer_name, "Nimal")
        self.assertAlmostEqual(trip.distance_km, 1.3097, places=3)
        self.assertEqual(trip.cost, 496)
        self.assertEqual(trip.dropoffs[0]["address"], "Slave Island")
        self.assertEqual(trip.events.get().kind, TripEventKind.CREATED)

    def test_rejects_malformed_input(self):
        cases = [
            ("", PICKUP, [DROPOFF]),
            ("c1", {"latitude": 91, "longitude": 0}, [DROPOFF]),
            ("c1", "somewhere", [DROPOFF]),
            ("c1", PICKUP, []),
            ("c1", PICKUP, [DROPOFF] * 6),
            ("c1", PICKUP, [{"latitude": 6.9, "longitude": 181}]),
        ]
        for customer_id, pickup, dropoffs in cases:
            with self.subTest(pickup=pickup, dropoffs=len(dropoffs)):
                with self.assertRaises(InvalidArgument):
                    trip_management.create_trip(customer_id, pickup, dropoffs, auto_dispatch=False)

    def test_one_active_trip_per_customer(self):
        request_trip("c1")

        with self.assertRaises(ActiveTripExists):
            request_trip("c1")

        # A different customer is unaffected
        self.assertEqual(request_trip("c2").status, TripStatus.REQUESTED)

    def test_database_backs_the_one_active_trip_rule(self):
        request_trip("c1")

        # Both requests passed the read before either inserted
        with patch("services.trip_management.trip_lifecycle.check_active_trip", return_value=None):
            with self.assertRaises(ActiveTripExists):
                request_trip("c1")

        self.assertEqual(Trip.objects.filter(customer_id="c1").count(), 1)

    def test_finished_trips_do_not_count_as_active(self):
        first = request_trip("c1")
        Trip.objects.filter(pk=first.pk).update(status=TripStatus.COMPLETED)
        Trip.objects.create(
            customer_id="c1",
            pickup_latitude=6.9271,
            pickup_longitude=79.8612,
            dropoffs=[DROPOFF],
            status=TripStatus.CANCELLED,
        )

        self.assertEqual(request_trip("c1").status, TripStatus.REQUESTED)
        with transaction.atomic():
            with self.assertRaises(IntegrityError):
                Trip.objects.create(
                    customer_id="c1",
                    pickup_latitude=6.9271,
                    pickup_longitude=79.8612,
                    dropoffs=[DROPOFF],
                    status=TripStatus.ACCEPTED,
                )

    def test_finished_trip_allows_a_new_one(self):
        trip = request_trip("c1")
        trip_management.cancel_trip(trip.id, "c1")

        self.assertEqual(request_trip("c1").status, TripStatus.REQUESTED)

    @patch("trips.tasks.requote_trip_task.delay")
    def test_routing_failure_still_creates_the_trip(self, mock_delay):
        with patch(ORACLE_PATH, return_value=failing_oracle()):
            with self.captureOnCommitCallbacks(execute=True):
                trip = request_trip()

        self.assertEqual(trip.status, TripStatus.REQUESTED)
        self.assertIsNone(trip.distance_km)
        self.assertIsNone(trip.cost)
        mock_delay.assert_called_once_with(trip.id)

    def test_requote_fills_in_missing_route(self):
        with patch(ORACLE_PATH, return_value=failing_oracle()):
            trip = request_trip()

        trip_management.requote_trip(trip.id)

        trip.refresh_from_db()
        self.assertEqual(trip.cost, 496)
        self.assertAlmostEqual(trip.distance_km, 1.3097, places=3)
        self.assertIsNotNone(trip.duration_minutes)
        self.assertEqual(trip.events.last().kind, TripEventKind.ROUTE_QUOTED)
        # Nothing left to do the second time
        self.assertIsNone(trip_management.requote_trip(trip.id))

    def test_requote_keeps_failing_while_routing_is_down(self):
        with patch(ORACLE_PATH, return_value=failing_oracle()):
            trip = request_trip()
            with self.assertRaises(UpstreamUnavailable):
                trip_management.requote_trip(trip.id)

    def test_quote_route_preview(self):
        quote = trip_management.quote_route(PICKUP, [DROPOFF])

        self.assertEqual(quote["cost"], 496)
        self.assertEqual(Decimal(quote["base_fare"]), Decimal("300"))
        self.assertEqual(Decimal(quote["per_km_rate"]), Decimal("150"))

    def test_quote_route_surfaces_routing_failure(self):
        with patch(ORACLE_PATH, return_value=failing_oracle()):
            with self.assertRaises(UpstreamUnavailable):
                trip_management.quote_route(PICKUP, [DROPOFF])


class UpdateDropoffsTests(TestCase):
    def test_update_requotes(self):
        trip = request_trip()
        old_cost = trip.cost

        trip_management.update_dropoffs(trip.id, "c1", [DROPOFF, SECOND_DROPOFF])

        trip.refresh_from_db()
        self.assertEqual(len(trip.dropoffs), 2)
        self.assertEqual(trip.dropoffs[1]["address"], "Kollupitiya")
        self.assertGreater(trip.cost, old_cost)
        self.assertGreater(trip.distance_km, 1.31)
        event = trip.events.last()
        self.assertEqual(event.kind, TripEventKind.ROUTE_QUOTED)
        self.assertEqual(event.payload["dropoff_count"], 2)

    def test_only_the_owner_can_update(self):
        trip = request_trip()

        with self.assertRaises(TripNotFound):
            trip_management.update_dropoffs(trip.id, "someone-else", [SECOND_DROPOFF])

    def test_refused_once_a_driver_is_assigned(self):
        driver_sessions.go_online("d1", Position(6.9275, 79.8615))
        trip = request_trip()
        matching.dispatch(trip.id)

        with self.assertRaises(InvalidTransition):
            trip_management.update_dropoffs(trip.id, "c1", [SECOND_DROPOFF])

    def test_routing_failure_leaves_dropoffs_unchanged(self):
        trip = request_trip()

        with patch(ORACLE_PATH, return_value=failing_oracle()):
            with self.assertRaises(UpstreamUnavailable):
                trip_management.update_dropoffs(trip.id, "c1", [SECOND_DROPOFF])

        trip.refresh_from_db()
        self.assertEqual(trip.dropoffs[0]["address"], "Slave Island")


class CancelTripTests(TestCase):
    def test_cancel_frees_the_offered_driver(self):
        driver_sessions.go_online("d1", Position(6.9275, 79.8615))
        trip = request_trip()
        matching.dispatch(trip.id)

        result = trip_management.cancel_trip(trip.id, "c1", reason="changed my mind")

        self.assertTrue(result.extra["was_assigned"])
        self.assertEqual(result.trip.status, TripStatus.CANCELLED)
        self.assertEqual(result.trip.cancellation_reason, "changed my mind")
        self.assertIsNotNone(result.trip.cancelled_at)
        self.assertFalse(DriverLocation.objects.get(driver_id="d1").is_busy)

    def test_cannot_cancel_after_accept(self):
        trip = accepted_trip()

        with self.assertRaises(InvalidTransition):
            trip_management.cancel_trip(trip.id, "c1")

    def test_other_customers_see_not_found(self):
        trip = request_trip()

        with self.assertRaises(TripNotFound):
            trip_management.cancel_trip(trip.id, "c2")

    def test_admin_can_cancel_any_trip(self):
        trip = request_trip()

        result = trip_management.cancel_trip(trip.id, "ops-1", actor_role="admin")

        self.assertEqual(result.trip.cancelled_by, "ops-1")
        self.assertEqual(result.trip.status, TripStatus.CANCELLED)


class DriverTripTests(TestCase):
    def test_only_the_assigned_driver_can_start(self):
        trip = accepted_trip("d1")

        with self.assertRaises(StaleAssignment):
            trip_management.start_trip(trip.id, "d2")

    def test_cannot_end_before_start(self):
        trip = accepted_trip("d1")

        with self.assertRaises(InvalidTransition):
            trip_management.end_trip(trip.id, "d1")

    def test_end_uses_fare_settings_at_completion(self):
        trip = accepted_trip("d1")
        trip_management.start_trip(trip.id, "d1")
        update_fare_settings(base_fare=Decimal("100"), per_km_rate=Decimal("100"))

        result = trip_management.end_trip(trip.id, "d1")

        self.assertEqual(result.trip.cost, round(100 + result.trip.distance_km * 100))
        self.assertFalse(DriverLocation.objects.get(driver_id="d1").is_busy)

    def test_end_routes_again_when_distance_is_unknown(self):
        with patch(ORACLE_PATH, return_value=failing_oracle()):
            trip = request_trip()
        driver_sessions.go_online("d1", Position(6.9275, 79.8615))
        matching.dispatch(trip.id)
        matching.accept_trip(trip.id, "d1")
        trip_management.start_trip(trip.id, "d1")

        with patch(ORACLE_PATH, return_value=failing_oracle()):
            with self.assertRaises(UpstreamUnavailable):
                trip_management.end_trip(trip.id, "d1")
        trip.refresh_from_db()
        self.assertEqual(trip.status, TripStatus.IN_PROGRESS)

        result = trip_management.end_trip(trip.id, "d1")
        self.assertEqual(result.trip.status, TripStatus.COMPLETED)
        self.assertEqual(result.trip.cost, 496)


class TripQueryTests(TestCase):
    def test_histories(self):
        done = accepted_trip("d1")
        trip_management.start_trip(done.id, "d1")
        trip_management.end_trip(done.id, "d1")
        cancelled = request_trip("c1")
        trip_management.cancel_trip(cancelled.id, "c1")
        request_trip("c1")

        self.assertEqual(trip_management.list_customer_trips("c1").count(), 3)
        self.assertEqual(trip_management.list_customer_trips("c1", finished_only=True).count(), 2)
        self.assertEqual(list(trip_management.list_driver_trips("d1")), [done])
        self.assertEqual(trip_management.list_trips("cancelled").get(), cancelled)

    def test_unknown_status_filter(self):
        with self.assertRaises(InvalidArgument):
            trip_management.list_trips("lost")

    def test_current_trips(self):
        trip = accepted_trip("d1")

        self.assertEqual(trip_management.get_current_customer_trip("c1"), trip)
        self.assertEqual(trip_management.get_current_driver_trip("d1"), trip)
        self.assertIsNone(trip_management.get_current_driver_trip("d2"))

    def test_events_after_sequence(self):
        trip = accepted_trip("d1")

        events = trip_management.get_trip_events(trip.id, after=1)

        self.assertEqual([e.kind for e in events], ["driver_proposed", "driver_accepted"])
        with self.assertRaises(TripNotFound):
            trip_management.get_trip_events(999999)

    def test_participants(self):
        trip = accepted_trip("d1")

        self.assertTrue(trip_management.is_participant(trip, "c1", "customer"))
        self.assertTrue(trip_management.is_participant(trip, "d1", "driver"))
        self.assertTrue(trip_management.is_participant(trip, "anyone", "admin"))
        self.assertFalse(trip_management.is_participant(trip, "c2", "customer"))
        self.assertFalse(trip_management.is_participant(trip, "c1", "driver"))
