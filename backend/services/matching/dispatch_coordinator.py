"""
Dispatch coordinator.

Turns a requested trip into a matched driver:
1. Nearest eligible driver (online, idle, not rejected for this trip) is claimed
2. Trip moves to driver_assigned and an accept-timeout is scheduled
3. Accept -> accepted; reject/timeout -> driver excluded, back to requested
   and dispatched again straight away
4. Repeat until someone accepts or no eligible driver is left

Every operation holds the trip row lock for its whole transaction, so
concurrent dispatches, late accepts and timer firings for one trip are
serialized. The driver claim is a conditional UPDATE, so one driver can
never be claimed by two trips.
"""

import logging
from typing import List, Optional

from django.db import transaction
from django.utils import timezone

from common.exceptions import NoDriversAvailable, StaleAssignment, TripNotFound
from drivers import services as driver_sessions
from drivers.geo_index import NearbyDriver, get_geo_index
from services.results import TripResult
from trips.models import Trip, TripEventKind, TripStatus
from trips.state_machine import TripStateMachine

from .offer_timer import cancel_offer_expiry, offer_deadline, schedule_offer_expiry

logger = logging.getLogger(__name__)

# Same driver acting again on a trip they already moved past the offer
ALREADY_ACCEPTED_STATUSES = (
    TripStatus.ACCEPTED,
    TripStatus.IN_PROGRESS,
    TripStatus.COMPLETED,
)


def lock_trip(trip_id: int) -> Trip:
    """Fetch a trip holding its row lock. Must run inside a transaction."""
    try:
        return Trip.objects.select_for_update().get(pk=trip_id)
    except Trip.DoesNotExist:
        raise TripNotFound(f"Trip {trip_id} not found", trip_id=trip_id)


# ===================== Dispatch =====================

def _claim_nearest(trip: Trip) -> Optional[NearbyDriver]:
    """
    Claim the nearest eligible driver for `trip`.

    A candidate claimed by another trip in the meantime is skipped for this
    attempt only; it does not join the trip's rejected set.
    """
    candidates = get_geo_index().nearby(trip.pickup, excluding=trip.rejected_driver_ids or [])
    for candidate in candidates:
        if driver_sessions.claim_for_trip(candidate.driver_id):
            return candidate
        logger.info(
            "Driver %s was taken before trip %s could claim them; trying next",
            candidate.driver_id, trip.id,
        )
    return None


def _propose(trip: Trip, candidate: NearbyDriver) -> None:
    now = timezone.now()
    trip.driver_eta_minutes = candidate.eta_minutes
    trip.offer_expires_at = offer_deadline(now)

    TripStateMachine(trip).fire(
        TripEventKind.DRIVER_PROPOSED,
        driver_id=candidate.driver_id,
        at=now,
        payload={
            "distance_km": round(candidate.distance_km, 3),
            "eta_minutes": candidate.eta_minutes,
            "expires_at": trip.offer_expires_at.isoformat(),
        },
    )
    schedule_offer_expiry(trip.id, trip.assignment_generation)


def dispatch_locked(trip: Trip, announce_failure: bool = True) -> TripResult:
    """
    Dispatch a locked, requested trip.

    Returns an unsuccessful TripResult (error_code no_drivers_available)
    instead of raising, so callers already inside a transaction keep the
    work they did before.
    """
    candidate = _claim_nearest(trip)

    if candidate is None:
        if announce_failure:
            TripStateMachine(trip).notice(
                TripEventKind.NO_DRIVERS_AVAILABLE,
                payload={"excluded_driver_ids": list(trip.rejected_driver_ids or [])},
            )
        logger.info("No drivers available for trip %s", trip.id)
        return TripResult(
            success=False,
            trip=trip,
            message="No drivers found nearby. Please try again later.",
            error_code=NoDriversAvailable.error_code,
        )

    _propose(trip, candidate)
    return TripResult(
        success=True,
        trip=trip,
        message="Waiting for driver to accept",
        extra={
            "driver_id": candidate.driver_id,
            "distance_km": round(candidate.distance_km, 3),
            "eta_minutes": candidate.eta_minutes,
        },
    )


def dispatch(trip_id: int) -> TripResult:
    """
    Offer a requested trip to the nearest eligible driver.

    A trip that is no longer requested is left alone and returned as is.

    Raises:
        TripNotFound: Unknown trip
        NoDriversAvailable: Nobody eligible; the trip stays requested
    """
    with transaction.atomic():
        trip = lock_trip(trip_id)
        if trip.status != TripStatus.REQUESTED:
            return TripResult(
                success=True,
                trip=trip,
                message=f"Trip is already {trip.status}",
                extra={"dispatched": False},
            )
        result = dispatch_locked(trip)

    # Raised after commit so the no_drivers_available event is kept
    if not result.success:
        raise NoDriversAvailable(result.message, trip_id=trip_id)
    return result


def redispatch_waiting_trips(limit: Optional[int] = None) -> List[int]:
    """
    Dispatch every requested trip, oldest first, while drivers are free.

    Returns:
        Ids of trips that were proposed to a driver
    """
    geo = get_geo_index()
    waiting = Trip.objects.filter(status=TripStatus.REQUESTED).order_by("requested_at", "id")
    if limit:
        waiting = waiting[:limit]

    proposed = []
    for trip_id in list(waiting.values_list("id", flat=True)):
        if not geo.eligible().exists():
            break
        with transaction.atomic():
            trip = lock_trip(trip_id)
            if trip.status != TripStatus.REQUESTED:
                continue
            result = dispatch_locked(trip, announce_failure=False)
        if result.success:
            proposed.append(trip_id)

    if proposed:
        logger.info("Re-dispatched %d waiting trip(s)", len(proposed))
    return proposed


# ===================== Driver Responses =====================

def _copy_driver_snapshot(trip: Trip, driver_id: str) -> None:
    location = get_geo_index().get(driver_id)
    if location is None:
        return
    trip.driver_name = location.name
    trip.driver_phone = location.phone
    trip.vehicle = location.vehicle
    trip.license_plate = location.plate
    trip.driver_rating = location.rating


def accept_trip(trip_id: int, driver_id: str) -> TripResult:
    """
    Driver accepts the offer they were sent.

    Accepting again once the trip moved on is a no-op.

    Raises:
        TripNotFound: Unknown trip
        StaleAssignment: The offer is not (or no longer) this driver's
    """
    with transaction.atomic():
        trip = lock_trip(trip_id)

        if trip.assigned_driver_id == driver_id and trip.status in ALREADY_ACCEPTED_STATUSES:
            return TripResult(
                success=True,
                trip=trip,
                message=f"Trip already {trip.status}",
                extra={"already_accepted": True},
            )

        if trip.status != TripStatus.DRIVER_ASSIGNED or trip.assigned_driver_id != driver_id:
            raise StaleAssignment(
                "This ride is no longer available",
                trip_id=trip_id,
                driver_id=driver_id,
            )

        generation = trip.assignment_generation
        _copy_driver_snapshot(trip, driver_id)
        TripStateMachine(trip).fire(TripEventKind.DRIVER_ACCEPTED, driver_id=driver_id)
        # Already claimed at proposal; re-asserted in case of a reconnect
        driver_sessions.set_busy(driver_id, True)
        cancel_offer_expiry(trip.id, generation)

    logger.info("Driver %s accepted trip %s", driver_id, trip_id)
    return TripResult(success=True, trip=trip, message="Ride accepted")


def _release_and_redispatch(trip: Trip, driver_id: str, event: str, payload=None) -> TripResult:
    TripStateMachine(trip).fire(event, driver_id=driver_id, payload=payload)
    driver_sessions.set_busy(driver_id, False)

    next_result = dispatch_locked(trip)
    return TripResult(
        success=True,
        trip=trip,
        message=next_result.message,
        error_code=next_result.error_code,
        extra={
            "queued_next_driver": next_result.success,
            "next_driver_id": (next_result.extra or {}).get("driver_id"),
        },
    )


def reject_trip(trip_id: int, driver_id: str) -> TripResult:
    """
    Driver declines the offer. The trip is offered to the next nearest
    driver straight away.

    Rejecting twice, or after accepting, is a no-op.

    Raises:
        TripNotFound: Unknown trip
        StaleAssignment: The offer is not (or no longer) this driver's
    """
    with transaction.atomic():
        trip = lock_trip(trip_id)

        if trip.assigned_driver_id != driver_id and driver_id in (trip.rejected_driver_ids or []):
            return TripResult(
                success=True,
                trip=trip,
                message="Offer already declined",
                extra={"already_rejected": True},
            )

        if trip.assigned_driver_id == driver_id and trip.status in ALREADY_ACCEPTED_STATUSES:
            return TripResult(
                success=True,
                trip=trip,
                message=f"Trip already {trip.status}",
                extra={"already_accepted": True},
            )

        if trip.status != TripStatus.DRIVER_ASSIGNED or trip.assigned_driver_id != driver_id:
            raise StaleAssignment(
                "This ride is no longer available",
                trip_id=trip_id,
                driver_id=driver_id,
            )

        result = _release_and_redispatch(trip, driver_id, TripEventKind.DRIVER_REJECTED)

    logger.info("Driver %s rejected trip %s", driver_id, trip_id)
    return result


def expire_offer(trip_id: int, generation: int) -> Optional[TripResult]:
    """
    Accept-timeout handler.

    Does nothing unless the trip is still waiting on the assignment that
    scheduled this timeout.

    Returns:
        TripResult if the offer expired, None if the timer was stale
    """
    with transaction.atomic():
        trip = lock_trip(trip_id)

        if trip.status != TripStatus.DRIVER_ASSIGNED or trip.assignment_generation != generation:
            logger.debug(
                "Ignoring stale timeout for trip %s (generation %s, current %s, status %s)",
                trip_id, generation, trip.assignment_generation, trip.status,
            )
            return None

        driver_id = trip.assigned_driver_id
        result = _release_and_redispatch(
            trip, driver_id, TripEventKind.OFFER_EXPIRED, payload={"generation": generation},
        )

    logger.info("Offer for trip %s to driver %s expired", trip_id, driver_id)
    return result


def sweep_expired_offers(now=None) -> int:
    """
    Expire every offer past its deadline. Backstop for timer messages that
    were lost or never scheduled.

    Returns:
        Number of offers expired
    """
    now = now or timezone.now()
    overdue = list(
        Trip.objects.filter(
            status=TripStatus.DRIVER_ASSIGNED,
            offer_expires_at__lte=now,
        ).values_list("id", "assignment_generation")
    )

    expired = 0
    for trip_id, generation in overdue:
        if expire_offer(trip_id, generation) is not None:
            expired += 1
    return expired
