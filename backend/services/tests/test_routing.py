from unittest.mock import Mock

import requests
from django.test import SimpleTestCase, override_settings

from common.exceptions import InvalidArgument, UpstreamUnavailable
from common.utils.geo import Position, calculate_distance
from services.routing import (
    OSRMRoutingOracle,
    StraightLineRoutingOracle,
    get_routing_oracle,
    reset_routing_oracle,
)

PICKUP = Position(6.9271, 79.8612)
DROPOFF = Position(6.9350, 79.8700)
SECOND_DROPOFF = Position(6.9400, 79.8750)


def osrm_response(payload, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code}")
    else:
        response.raise_for_status.return_value = None
    return response


class OSRMRoutingOracleTests(SimpleTestCase):
    def setUp(self):
        self.session = Mock()
        self.oracle = OSRMRoutingOracle("http://osrm.test/", timeout=2, session=self.session)

    def test_route_converts_units_and_uses_lon_lat_order(self):
        self.session.get.return_value = osrm_response({
            "code": "Ok",
            "routes": [{"distance": 2450.0, "duration": 390.0}],
        })

        route = self.oracle.route([PICKUP, DROPOFF, SECOND_DROPOFF])

        self.assertAlmostEqual(route.distance_km, 2.45)
        self.assertAlmostEqual(route.duration_minutes, 6.5)
        url = self.session.get.call_args.args[0]
        self.assertEqual(
            url,
            "http://osrm.test/route/v1/driving/79.8612,6.9271;79.87,6.935;79.875,6.94",
        )
        self.assertEqual(self.session.get.call_args.kwargs["params"], {"overview": "false"})
        self.assertEqual(self.session.get.call_args.kwargs["timeout"], 2)

    def test_transport_errors_are_upstream_unavailable(self):
        for error in (requests.exceptions.Timeout(), requests.exceptions.ConnectionError()):
            with self.subTest(error=type(error).__name__):
                self.session.get.side_effect = error
                with self.assertRaises(UpstreamUnavailable):
                    self.oracle.route([PICKUP, DROPOFF])

    def test_http_error_is_upstream_unavailable(self):
        self.session.get.return_value = osrm_response({}, status_code=503)

        with self.assertRaises(UpstreamUnavailable):
            self.oracle.route([PICKUP, DROPOFF])

    def test_no_route_is_upstream_unavailable(self):
        self.session.get.return_value = osrm_response({"code": "NoRoute", "routes": []})

        with self.assertRaises(UpstreamUnavailable):
            self.oracle.route([PICKUP, DROPOFF])

    def test_malformed_route_is_upstream_unavailable(self):
        self.session.get.return_value = osrm_response({"code": "Ok", "routes": [{"distance": None}]})

        with self.assertRaises(UpstreamUnavailable):
            self.oracle.route([PICKUP, DROPOFF])

    def test_needs_two_stops(self):
        with self.assertRaises(InvalidArgument):
            self.oracle.route([PICKUP])
        self.session.get.assert_not_called()

    def test_session_retries_transient_gateway_errors(self):
        oracle = OSRMRoutingOracle("http://osrm.test", max_retries=3, backoff_factor=0.5)

        retry = oracle.session.get_adapter("http://osrm.test").max_retries
        self.assertEqual(retry.total, 3)
        self.assertIn(503, retry.status_forcelist)


class StraightLineRoutingOracleTests(SimpleTestCase):
    def test_sums_legs_in_order(self):
        route = StraightLineRoutingOracle().route([PICKUP, DROPOFF, SECOND_DROPOFF])

        expected = (
            calculate_distance(6.9271, 79.8612, 6.9350, 79.8700)
            + calculate_distance(6.9350, 79.8700, 6.9400, 79.8750)
        )
        self.assertAlmostEqual(route.distance_km, expected)
        self.assertEqual(route.duration_minutes, round(expected * 2))


class RoutingOracleSelectionTests(SimpleTestCase):
    def tearDown(self):
        reset_routing_oracle()

    @override_settings(ROUTING_ORACLE={"BACKEND": "straight_line"})
    def test_straight_line_backend(self):
        reset_routing_oracle()
        self.assertIsInstance(get_routing_oracle(), StraightLineRoutingOracle)

    @override_settings(ROUTING_ORACLE={"BACKEND": "osrm", "BASE_URL": "http://osrm.test"})
    def test_osrm_backend(self):
        reset_routing_oracle()
        oracle = get_routing_oracle()
        self.assertIsInstance(oracle, OSRMRoutingOracle)
        self.assertEqual(oracle.base_url, "http://osrm.test")
