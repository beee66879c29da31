"""
Fare calculation.

cost = round(base_fare + distance_km * per_km_rate), rounded half up to a
whole currency unit.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from django.db import transaction

from common.exceptions import InvalidArgument
from trips.models import FareSettings

logger = logging.getLogger(__name__)


def quote(distance_km: float, fare_settings: FareSettings) -> int:
    """
    Price a route.

    Args:
        distance_km: Route length, must be >= 0
        fare_settings: The FareSettings to price with

    Returns:
        Whole-unit cost

    Raises:
        InvalidArgument: If distance is negative
    """
    if distance_km is None or distance_km < 0:
        raise InvalidArgument("distance_km must be a non-negative number", distance_km=distance_km)

    raw = Decimal(fare_settings.base_fare) + Decimal(str(distance_km)) * Decimal(fare_settings.per_km_rate)
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def quote_for_distance(distance_km: float) -> int:
    """Price a route with the current fare configuration."""
    return quote(distance_km, get_fare_settings())


def get_fare_settings() -> FareSettings:
    return FareSettings.load()


@transaction.atomic
def update_fare_settings(base_fare: Optional[Decimal] = None, per_km_rate: Optional[Decimal] = None) -> FareSettings:
    """
    Change the fare configuration. Already-quoted trips keep their cost until
    they are re-quoted or completed.

    Raises:
        InvalidArgument: If either value is negative
    """
    fare_settings = FareSettings.objects.select_for_update().get_or_create(pk=FareSettings.SINGLETON_ID)[0]

    if base_fare is not None:
        base_fare = Decimal(str(base_fare))
        if base_fare < 0:
            raise InvalidArgument("base_fare cannot be negative")
        fare_settings.base_fare = base_fare

    if per_km_rate is not None:
        per_km_rate = Decimal(str(per_km_rate))
        if per_km_rate < 0:
            raise InvalidArgument("per_km_rate cannot be negative")
        fare_settings.per_km_rate = per_km_rate

    fare_settings.save()
    logger.info("Fare settings updated: base=%s per_km=%s", fare_settings.base_fare, fare_settings.per_km_rate)
    return fare_settings
