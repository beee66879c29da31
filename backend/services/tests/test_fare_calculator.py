from decimal import Decimal

from django.test import TestCase

from common.exceptions import InvalidArgument
from services.pricing import get_fare_settings, quote, quote_for_distance, update_fare_settings
from trips.models import FareSettings


class FareQuoteTests(TestCase):
    def setUp(self):
        self.fares = get_fare_settings()

    def test_defaults(self):
        self.assertEqual(self.fares.base_fare, Decimal("300"))
        self.assertEqual(self.fares.per_km_rate, Decimal("150"))

    def test_zero_distance_costs_the_base_fare(self):
        self.assertEqual(quote(0, self.fares), 300)

    def test_cost_is_base_plus_distance_times_rate(self):
        for distance in (0.1, 1.3097, 2.0, 12.345, 100):
            with self.subTest(distance=distance):
                self.assertEqual(quote(distance, self.fares), round(300 + distance * 150))

    def test_quote_is_deterministic(self):
        self.assertEqual(quote(7.77, self.fares), quote(7.77, self.fares))

    def test_halves_round_up(self):
        fares = FareSettings(base_fare=Decimal("0"), per_km_rate=Decimal("1"))
        self.assertEqual(quote(2.5, fares), 3)
        self.assertEqual(quote(3.5, fares), 4)

    def test_negative_distance_is_rejected(self):
        with self.assertRaises(InvalidArgument):
            quote(-0.01, self.fares)

    def test_updated_settings_apply_to_new_quotes(self):
        update_fare_settings(base_fare=100, per_km_rate=Decimal("50.50"))

        self.assertEqual(quote_for_distance(2), 201)
        self.assertEqual(FareSettings.objects.count(), 1)

    def test_partial_update_keeps_other_value(self):
        update_fare_settings(per_km_rate=200)

        fares = get_fare_settings()
        self.assertEqual(fares.base_fare, Decimal("300"))
        self.assertEqual(fares.per_km_rate, Decimal("200"))

    def test_negative_settings_are_rejected(self):
        with self.assertRaises(InvalidArgument):
            update_fare_settings(base_fare=-1)
        with self.assertRaises(InvalidArgument):
            update_fare_settings(per_km_rate=Decimal("-0.5"))
