"""Celery tasks for trip dispatch background processing."""

import logging

from celery import shared_task
from django.conf import settings

from common.exceptions import TripNotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)


@shared_task
def expire_trip_offer_task(trip_id: int, generation: int):
    """
    Accept-timeout for one proposal.

    Scheduled when a trip is offered to a driver. If that same offer is
    still waiting when it fires, the driver is excluded and the trip goes
    to the next nearest driver.
    """
    from services.matching import expire_offer

    try:
        result = expire_offer(trip_id, generation)
    except TripNotFound:
        logger.warning(f"Trip {trip_id} not found for offer expiry task")
        return False

    if result is None:
        logger.info(f"Offer for trip {trip_id} (generation {generation}) already answered")
        return False
    return True


@shared_task
def sweep_expired_offers_task():
    """Periodic backstop: expire offers past offer_expires_at."""
    from services.matching import sweep_expired_offers

    expired = sweep_expired_offers()
    if expired:
        logger.info(f"Swept {expired} expired offer(s)")
    return expired


@shared_task
def redispatch_waiting_trips_task():
    """Offer waiting trips to drivers that became available."""
    from services.matching import redispatch_waiting_trips

    return redispatch_waiting_trips()


@shared_task(
    bind=True,
    autoretry_for=(UpstreamUnavailable,),
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=getattr(settings, "TRIP_REQUOTE_MAX_RETRIES", 5),
)
def requote_trip_task(self, trip_id: int):
    """Fill in route and estimated cost for a trip created while routing was down."""
    from services.trip_management import requote_trip

    try:
        trip = requote_trip(trip_id)
    except TripNotFound:
        logger.warning(f"Trip {trip_id} not found for re-quote task")
        return None
    return trip.cost if trip else None
