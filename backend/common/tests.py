from django.test import SimpleTestCase

from common.exceptions import InvalidArgument
from common.utils.geo import Position, calculate_distance, distance_between, estimate_eta_minutes


class HaversineTests(SimpleTestCase):
    def test_distance_to_same_point_is_zero(self):
        self.assertEqual(calculate_distance(6.9271, 79.8612, 6.9271, 79.8612), 0.0)

    def test_distance_is_symmetric(self):
        a = Position(6.9271, 79.8612)
        b = Position(6.9371, 79.8712)
        self.assertAlmostEqual(distance_between(a, b), distance_between(b, a), places=12)

    def test_colombo_points(self):
        # 0.01 degree north and east at Colombo's latitude
        distance = calculate_distance(6.9271, 79.8612, 6.9371, 79.8712)
        self.assertAlmostEqual(distance, 1.567, delta=0.01)

    def test_one_degree_of_latitude(self):
        self.assertAlmostEqual(calculate_distance(0, 0, 1, 0), 111.19, delta=0.01)

    def test_eta_heuristic_is_two_minutes_per_km(self):
        self.assertEqual(estimate_eta_minutes(0), 0)
        self.assertEqual(estimate_eta_minutes(1.567), 3)
        self.assertEqual(estimate_eta_minutes(10), 20)


class PositionTests(SimpleTestCase):
    def test_rejects_out_of_range_coordinates(self):
        with self.assertRaises(InvalidArgument):
            Position(91, 0)
        with self.assertRaises(InvalidArgument):
            Position(0, -181)

    def test_from_mapping_accepts_short_keys(self):
        self.assertEqual(Position.from_mapping({"lat": "6.9", "lng": 79.8}), Position(6.9, 79.8))

    def test_from_mapping_requires_both_coordinates(self):
        with self.assertRaises(InvalidArgument):
            Position.from_mapping({"latitude": 6.9})
        with self.assertRaises(InvalidArgument):
            Position.from_mapping({"latitude": "north", "longitude": 79.8})
