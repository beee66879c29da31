"""
Routing oracles.

An oracle turns an ordered list of stops (pickup, then dropoffs) into the
total road distance and duration of driving through them.

- OSRMRoutingOracle asks an OSRM server, retrying transient failures
- StraightLineRoutingOracle sums Haversine legs (no network, used in tests)

Every failure surfaces as UpstreamUnavailable; the caller decides whether to
store a null route or to refuse the operation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from common.exceptions import InvalidArgument, UpstreamUnavailable
from common.utils.geo import Position, distance_between, estimate_eta_minutes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteEstimate:
    distance_km: float
    duration_minutes: float

    def as_dict(self):
        return {
            "distance_km": round(self.distance_km, 3),
            "duration_minutes": round(self.duration_minutes, 1),
        }


class RoutingOracle:
    """Base class. Subclasses implement route()."""

    def route(self, stops: Sequence[Position]) -> RouteEstimate:
        raise NotImplementedError

    @staticmethod
    def _check_stops(stops: Sequence[Position]) -> List[Position]:
        stops = list(stops)
        if len(stops) < 2:
            raise InvalidArgument("A route needs at least two stops")
        return stops


class OSRMRoutingOracle(RoutingOracle):
    """
    Queries the OSRM /route service.

    Note:
        OSRM expects coordinates in lon,lat order (not lat,lon).
    """

    def __init__(self, base_url: str, timeout: float = 5.0, max_retries: int = 3,
                 backoff_factor: float = 0.5, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or self._build_session(max_retries, backoff_factor)

    @staticmethod
    def _build_session(max_retries: int, backoff_factor: float) -> requests.Session:
        retry = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
        )
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def route(self, stops: Sequence[Position]) -> RouteEstimate:
        stops = self._check_stops(stops)
        coordinates = ";".join(f"{p.longitude},{p.latitude}" for p in stops)
        url = f"{self.base_url}/route/v1/driving/{coordinates}"

        try:
            response = self.session.get(url, params={"overview": "false"}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout:
            logger.warning("OSRM request timed out")
            raise UpstreamUnavailable("Routing service timed out")
        except requests.exceptions.RequestException as e:
            logger.warning(f"OSRM request failed: {e}")
            raise UpstreamUnavailable("Routing service unavailable")
        except ValueError as e:
            logger.warning(f"OSRM returned invalid JSON: {e}")
            raise UpstreamUnavailable("Routing service returned an invalid response")

        if data.get("code") != "Ok" or not data.get("routes"):
            logger.warning(f"OSRM returned no route: {data.get('code')}")
            raise UpstreamUnavailable("Routing service found no route", code=data.get("code"))

        try:
            route = data["routes"][0]
            distance_km = float(route["distance"]) / 1000   # meters -> km
            duration_min = float(route["duration"]) / 60    # seconds -> minutes
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"OSRM response parsing failed: {e}")
            raise UpstreamUnavailable("Routing service returned an invalid response")

        return RouteEstimate(distance_km=distance_km, duration_minutes=duration_min)


class StraightLineRoutingOracle(RoutingOracle):
    """Great-circle legs summed; duration from the ETA heuristic."""

    def route(self, stops: Sequence[Position]) -> RouteEstimate:
        stops = self._check_stops(stops)
        distance_km = sum(distance_between(a, b) for a, b in zip(stops, stops[1:]))
        return RouteEstimate(
            distance_km=distance_km,
            duration_minutes=float(estimate_eta_minutes(distance_km)),
        )


# ---------------------- Singleton Instance ----------------------

_oracle: Optional[RoutingOracle] = None


def get_routing_oracle() -> RoutingOracle:
    """Get the configured routing oracle."""
    global _oracle
    if _oracle is None:
        config = settings.ROUTING_ORACLE
        if config.get("BACKEND", "osrm") == "straight_line":
            _oracle = StraightLineRoutingOracle()
        else:
            _oracle = OSRMRoutingOracle(
                base_url=config["BASE_URL"],
                timeout=config.get("TIMEOUT_SECONDS", 5.0),
                max_retries=config.get("MAX_RETRIES", 3),
                backoff_factor=config.get("BACKOFF_FACTOR", 0.5),
            )
    return _oracle


def reset_routing_oracle():
    """Forget the cached oracle (after settings change)."""
    global _oracle
    _oracle = None
