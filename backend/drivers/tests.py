from datetime import timedelta
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from common.exceptions import InvalidArgument
from common.utils.geo import Position
from drivers import services
from drivers.geo_index import get_geo_index
from drivers.models import DriverLocation
from trips.models import Trip, TripStatus

PICKUP = Position(6.9271, 79.8612)


class GeoIndexTests(TestCase):
    def setUp(self):
        self.geo = get_geo_index()

    def test_nearest_returns_closest_eligible_driver(self):
        services.go_online("far", Position(6.9371, 79.8712))
        services.go_online("near", Position(6.9275, 79.8615))

        nearest = self.geo.nearest(PICKUP)

        self.assertEqual(nearest.driver_id, "near")
        self.assertEqual(nearest.eta_minutes, 0)

    def test_distance_tie_goes_to_first_registered(self):
        services.go_online("first", Position(6.9300, 79.8650))
        services.go_online("second", Position(6.9300, 79.8650))

        self.assertEqual(self.geo.nearest(PICKUP).driver_id, "first")

    def test_tie_break_survives_an_offline_online_cycle(self):
        services.go_online("first", Position(6.9300, 79.8650))
        services.go_online("second", Position(6.9300, 79.8650))
        services.go_offline("first")
        services.go_online("first", Position(6.9300, 79.8650))

        self.assertEqual(self.geo.nearest(PICKUP).driver_id, "first")

    def test_excluded_busy_and_offline_drivers_are_skipped(self):
        services.go_online("rejected", Position(6.9272, 79.8612))
        services.go_online("busy", Position(6.9273, 79.8612))
        services.go_online("offline", Position(6.9274, 79.8612))
        services.go_online("free", Position(6.9400, 79.8800))
        services.set_busy("busy", True)
        services.go_offline("offline")

        nearest = self.geo.nearest(PICKUP, excluding={"rejected"})

        self.assertEqual(nearest.driver_id, "free")

    def test_nearest_returns_none_without_eligible_drivers(self):
        self.assertIsNone(self.geo.nearest(PICKUP))

    def test_nearby_respects_radius_and_limit(self):
        services.go_online("a", Position(6.9272, 79.8612))
        services.go_online("b", Position(6.9280, 79.8612))
        services.go_online("c", Position(7.2000, 80.0000))

        within = self.geo.nearby(PICKUP, radius_km=5)
        self.assertEqual([d.driver_id for d in within], ["a", "b"])

        limited = self.geo.nearby(PICKUP, limit=1)
        self.assertEqual([d.driver_id for d in limited], ["a"])

    def test_stale_upsert_is_ignored(self):
        now = timezone.now()
        self.geo.upsert("d1", Position(6.93, 79.86), True, False, updated_at=now)
        self.geo.upsert("d1", Position(7.00, 80.00), True, False, updated_at=now - timedelta(seconds=5))

        location = self.geo.get("d1")
        self.assertAlmostEqual(float(location.latitude), 6.93)

    def test_busy_requires_online(self):
        with self.assertRaises(InvalidArgument):
            self.geo.upsert("d1", PICKUP, is_online=False, is_busy=True)

    def test_claim_succeeds_only_once(self):
        services.go_online("d1", PICKUP)

        self.assertTrue(services.claim_for_trip("d1"))
        self.assertFalse(services.claim_for_trip("d1"))
        self.assertIsNone(self.geo.nearest(PICKUP))

    def test_offline_driver_cannot_be_claimed(self):
        services.go_online("d1", PICKUP)
        services.go_offline("d1")

        self.assertFalse(services.claim_for_trip("d1"))


class DriverSessionTests(TestCase):
    def test_go_online_copies_metadata(self):
        location = services.go_online("d1", PICKUP, metadata={
            "name": "Nimal",
            "vehicle": "Bajaj RE",
            "plate": "WP-1234",
            "phone": "0771234567",
            "rating": "4.80",
            "unknown": "ignored",
        })

        self.assertTrue(location.is_online)
        self.assertFalse(location.is_busy)
        self.assertEqual(location.plate, "WP-1234")
        self.assertIsNotNone(location.went_online_at)

    def test_go_offline_is_idempotent(self):
        services.go_online("d1", PICKUP)

        self.assertIsNotNone(services.go_offline("d1"))
        self.assertIsNone(services.go_offline("d1"))
        self.assertIsNone(services.go_offline("never-seen"))

    def test_go_online_keeps_driver_busy_during_active_trip(self):
        services.go_online("d1", PICKUP)
        Trip.objects.create(
            customer_id="c1",
            pickup_latitude=6.9271,
            pickup_longitude=79.8612,
            dropoffs=[{"latitude": 6.935, "longitude": 79.87, "address": ""}],
            status=TripStatus.ACCEPTED,
            assigned_driver_id="d1",
        )
        services.set_busy("d1", True)
        services.go_offline("d1")

        location = services.go_online("d1", PICKUP)

        self.assertTrue(location.is_busy)

    def test_update_position_moves_without_touching_busy_flag(self):
        services.go_online("d1", PICKUP)
        services.claim_for_trip("d1")

        services.update_position("d1", Position(6.95, 79.88))

        location = DriverLocation.objects.get(driver_id="d1")
        self.assertAlmostEqual(float(location.latitude), 6.95)
        self.assertTrue(location.is_busy)

    def test_update_position_requires_a_session(self):
        with self.assertRaises(InvalidArgument):
            services.update_position("ghost", PICKUP)

    def test_stale_idle_sessions_expire_but_busy_ones_do_not(self):
        services.go_online("idle", PICKUP)
        services.go_online("busy", PICKUP)
        services.go_online("fresh", PICKUP)
        services.set_busy("busy", True)
        DriverLocation.objects.filter(driver_id__in=["idle", "busy"]).update(
            last_updated_at=timezone.now() - timedelta(minutes=10)
        )

        expired = services.expire_stale_sessions(ttl_seconds=120)

        self.assertEqual(expired, ["idle"])
        self.assertFalse(DriverLocation.objects.get(driver_id="idle").is_online)
        self.assertTrue(DriverLocation.objects.get(driver_id="busy").is_online)

    def test_expire_driver_sessions_command(self):
        services.go_online("idle", PICKUP)
        DriverLocation.objects.filter(driver_id="idle").update(
            last_updated_at=timezone.now() - timedelta(minutes=10)
        )

        call_command("expire_driver_sessions", ttl=60)

        self.assertFalse(DriverLocation.objects.get(driver_id="idle").is_online)

    @override_settings(ENABLE_PRESENCE_REDISPATCH=True)
    @patch("trips.tasks.redispatch_waiting_trips_task.delay")
    def test_going_online_schedules_redispatch_of_waiting_trips(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=True):
            services.go_online("d1", PICKUP)

        mock_delay.assert_called_once_with()

    @patch("drivers.services.notify_driver_presence")
    def test_every_mutation_announces_presence(self, mock_notify):
        services.go_online("d1", PICKUP)
        services.update_position("d1", Position(6.93, 79.87))
        services.set_busy("d1", True)
        services.set_busy("d1", False)
        services.go_offline("d1")

        reasons = [c.kwargs["reason"] for c in mock_notify.call_args_list]
        self.assertEqual(reasons, ["online", "moved", "busy", "free", "offline"])
