"""
Core trip lifecycle operations.

This module contains the business logic for trips outside of matching:
creating, re-routing, starting, ending and cancelling trips, and the
read-side queries used by the API and WebSocket layers.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction

from common.exceptions import (
    ActiveTripExists,
    InvalidArgument,
    InvalidTransition,
    NoDriversAvailable,
    StaleAssignment,
    TripNotFound,
    UpstreamUnavailable,
)
from common.utils.geo import Position
from drivers import services as driver_sessions
from services.pricing import get_fare_settings, quote, quote_for_distance
from services.results import TripResult
from services.routing import RouteEstimate, get_routing_oracle
from trips.models import (
    ACTIVE_CUSTOMER_STATUSES,
    ACTIVE_DRIVER_STATUSES,
    TERMINAL_STATUSES,
    Trip,
    TripEvent,
    TripEventKind,
    TripStatus,
)
from trips.state_machine import TripStateMachine

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (TripStatus.REQUESTED, TripStatus.DRIVER_ASSIGNED)


# ===================== Input Helpers =====================

def _parse_stop(data, label: str) -> Tuple[Position, str]:
    if isinstance(data, Position):
        return data, ""
    if not isinstance(data, dict):
        raise InvalidArgument(f"{label} must be an object with latitude and longitude")
    position = Position.from_mapping(data)
    return position, str(data.get("address") or "")


def _parse_dropoffs(dropoffs: Optional[Sequence[Any]]) -> List[Dict[str, Any]]:
    max_dropoffs = getattr(settings, "MAX_DROPOFFS", 5)
    if not dropoffs:
        raise InvalidArgument("At least one dropoff is required")
    if len(dropoffs) > max_dropoffs:
        raise InvalidArgument(f"At most {max_dropoffs} dropoffs are allowed")

    parsed = []
    for index, item in enumerate(dropoffs, start=1):
        position, address = _parse_stop(item, f"dropoff {index}")
        parsed.append({
            "latitude": position.latitude,
            "longitude": position.longitude,
            "address": address,
        })
    return parsed


def _stops(pickup: Position, dropoffs: List[Dict[str, Any]]) -> List[Position]:
    return [pickup] + [Position(d["latitude"], d["longitude"]) for d in dropoffs]


def _try_route(stops: List[Position]) -> Optional[RouteEstimate]:
    """Route the stops; None (logged) if the oracle is unavailable."""
    try:
        return get_routing_oracle().route(stops)
    except UpstreamUnavailable as e:
        logger.warning("Routing failed, trip will be re-quoted later: %s", e.message)
        return None


def _apply_route(trip: Trip, route: Optional[RouteEstimate]) -> None:
    if route is None:
        trip.distance_km = None
        trip.duration_minutes = None
        trip.cost = None
        return
    trip.distance_km = route.distance_km
    trip.duration_minutes = route.duration_minutes
    trip.cost = quote_for_distance(route.distance_km)


def _schedule_requote(trip_id: int) -> None:
    def _enqueue():
        from trips.tasks import requote_trip_task
        try:
            requote_trip_task.delay(trip_id)
        except Exception:
            logger.exception("Failed to enqueue re-quote for trip %s", trip_id)

    transaction.on_commit(_enqueue)


def _lock_trip(trip_id: int) -> Trip:
    from services.matching.dispatch_coordinator import lock_trip
    return lock_trip(trip_id)


def _require_assigned_driver(trip: Trip, driver_id: str) -> None:
    if trip.assigned_driver_id != driver_id:
        raise StaleAssignment(
            "This ride is not assigned to you",
            trip_id=trip.id,
            driver_id=driver_id,
        )


# ===================== Customer Operations =====================

def check_active_trip(customer_id: str) -> Optional[Trip]:
    """Check if customer has an active trip."""
    return Trip.objects.filter(
        customer_id=customer_id,
        status__in=ACTIVE_CUSTOMER_STATUSES,
    ).first()


def quote_route(pickup, dropoffs) -> Dict[str, Any]:
    """
    Preview distance, duration and cost before requesting a trip.

    Raises:
        InvalidArgument: Malformed stops
        UpstreamUnavailable: Routing failed
    """
    pickup_point, _ = _parse_stop(pickup, "pickup")
    parsed = _parse_dropoffs(dropoffs)

    route = get_routing_oracle().route(_stops(pickup_point, parsed))
    fare_settings = get_fare_settings()
    return {
        **route.as_dict(),
        "cost": quote(route.distance_km, fare_settings),
        "base_fare": str(fare_settings.base_fare),
        "per_km_rate": str(fare_settings.per_km_rate),
    }


def create_trip(
    customer_id: str,
    pickup,
    dropoffs: Sequence[Any],
    customer_name: str = "",
    customer_phone: str = "",
    auto_dispatch: Optional[bool] = None,
) -> TripResult:
    """
    Create a trip request and, by default, dispatch it.

    Args:
        customer_id: Requesting customer's id
        pickup: {"latitude", "longitude", "address"} or a Position
        dropoffs: 1..MAX_DROPOFFS stops in visiting order
        customer_name: Display name shown to the driver
        customer_phone: Contact number shown to the driver
        auto_dispatch: Offer to the nearest driver right away
            (defaults to TRIP_AUTO_DISPATCH)

    Returns:
        TripResult with the created trip. When dispatch found nobody the
        result is still successful with error_code no_drivers_available.

    Raises:
        InvalidArgument: Malformed input
        ActiveTripExists: Customer already has an active trip
    """
    if not customer_id:
        raise InvalidArgument("customer_id is required")

    pickup_point, pickup_address = _parse_stop(pickup, "pickup")
    parsed_dropoffs = _parse_dropoffs(dropoffs)

    if check_active_trip(customer_id):
        raise ActiveTripExists("You already have an active trip")

    # Outside the transaction; the oracle may be slow
    route = _try_route(_stops(pickup_point, parsed_dropoffs))

    try:
        with transaction.atomic():
            if check_active_trip(customer_id):
                raise ActiveTripExists("You already have an active trip")

            trip = TripStateMachine.create(
                customer_id=customer_id,
                customer_name=customer_name or "",
                customer_phone=customer_phone or "",
                pickup_latitude=pickup_point.latitude,
                pickup_longitude=pickup_point.longitude,
                pickup_address=pickup_address,
                dropoffs=parsed_dropoffs,
                distance_km=route.distance_km if route else None,
                duration_minutes=route.duration_minutes if route else None,
                cost=quote_for_distance(route.distance_km) if route else None,
            )
            if route is None:
                _schedule_requote(trip.id)
    except IntegrityError:
        # A concurrent request for the same customer won the insert
        raise ActiveTripExists("You already have an active trip")

    if auto_dispatch is None:
        auto_dispatch = getattr(settings, "TRIP_AUTO_DISPATCH", True)
    if not auto_dispatch:
        return TripResult(success=True, trip=trip, message="Trip requested")

    from services.matching import dispatch

    try:
        result = dispatch(trip.id)
    except NoDriversAvailable as e:
        trip.refresh_from_db()
        return TripResult(
            success=True,
            trip=trip,
            message=e.message,
            error_code=e.error_code,
        )

    return TripResult(
        success=True,
        trip=result.trip,
        message="Notifying nearest driver...",
        extra=result.extra,
    )


def update_dropoffs(trip_id: int, customer_id: str, dropoffs: Sequence[Any]) -> TripResult:
    """
    Replace a requested trip's dropoffs and re-quote its route.

    Raises:
        TripNotFound: Unknown trip or not this customer's
        InvalidTransition: Trip is no longer requested
        UpstreamUnavailable: Routing failed; the dropoffs are unchanged
    """
    parsed = _parse_dropoffs(dropoffs)

    current = get_trip(trip_id)
    if current.customer_id != customer_id:
        raise TripNotFound(f"Trip {trip_id} not found", trip_id=trip_id)

    route = get_routing_oracle().route(_stops(current.pickup, parsed))

    with transaction.atomic():
        trip = _lock_trip(trip_id)
        if trip.status != TripStatus.REQUESTED:
            raise InvalidTransition(
                f"Dropoffs cannot change once the trip is {trip.status}",
                current_status=trip.status,
            )
        trip.dropoffs = parsed
        _apply_route(trip, route)
        TripStateMachine(trip).notice(TripEventKind.ROUTE_QUOTED, payload={
            **route.as_dict(),
            "cost": trip.cost,
            "dropoff_count": len(parsed),
        })

    return TripResult(success=True, trip=trip, message="Dropoffs updated")


def requote_trip(trip_id: int) -> Optional[Trip]:
    """
    Fill in a trip's route and estimated cost if they are still unknown.

    Returns:
        The trip, or None if it is terminal or already quoted

    Raises:
        UpstreamUnavailable: Routing still failing
    """
    current = get_trip(trip_id)
    if current.is_terminal or current.distance_km is not None:
        return None

    route = get_routing_oracle().route(_stops(current.pickup, current.dropoffs))

    with transaction.atomic():
        trip = _lock_trip(trip_id)
        if trip.is_terminal or trip.distance_km is not None:
            return None
        _apply_route(trip, route)
        TripStateMachine(trip).notice(TripEventKind.ROUTE_QUOTED, payload={
            **route.as_dict(),
            "cost": trip.cost,
        })
    return trip


def cancel_trip(trip_id: int, actor_id: str, actor_role: str = "customer", reason: str = "") -> TripResult:
    """
    Cancel a trip before the driver accepted it.

    Args:
        trip_id: Trip to cancel
        actor_id: Who is cancelling
        actor_role: "customer" (own trips only) or "admin" (any trip)
        reason: Free-text reason stored on the trip

    Raises:
        TripNotFound: Unknown trip, or a customer cancelling someone else's
        InvalidTransition: Trip already accepted or finished
    """
    with transaction.atomic():
        trip = _lock_trip(trip_id)

        if actor_role != "admin" and trip.customer_id != actor_id:
            raise TripNotFound(f"Trip {trip_id} not found", trip_id=trip_id)

        if trip.status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(
                f"Cannot cancel - trip is already {trip.status}",
                current_status=trip.status,
            )

        driver_id = trip.assigned_driver_id
        generation = trip.assignment_generation
        trip.cancelled_by = actor_id or ""
        trip.cancellation_reason = reason or ""
        TripStateMachine(trip).fire(
            TripEventKind.TRIP_CANCELLED,
            payload={"cancelled_by": actor_id, "role": actor_role, "reason": reason or ""},
        )

        if driver_id:
            driver_sessions.set_busy(driver_id, False)
            from services.matching.offer_timer import cancel_offer_expiry
            cancel_offer_expiry(trip.id, generation)

    logger.info("Trip %s cancelled by %s %s", trip_id, actor_role, actor_id)
    return TripResult(
        success=True,
        trip=trip,
        message="Trip cancelled successfully",
        extra={"was_assigned": bool(driver_id)},
    )


# ===================== Driver Operations =====================

def start_trip(trip_id: int, driver_id: str) -> TripResult:
    """
    Driver picked the customer up.

    Raises:
        TripNotFound: Unknown trip
        StaleAssignment: Trip is not assigned to this driver
        InvalidTransition: Trip is not accepted
    """
    with transaction.atomic():
        trip = _lock_trip(trip_id)
        _require_assigned_driver(trip, driver_id)
        TripStateMachine(trip).fire(TripEventKind.TRIP_STARTED, driver_id=driver_id)

    return TripResult(success=True, trip=trip, message="Trip started")


def end_trip(trip_id: int, driver_id: str) -> TripResult:
    """
    Driver dropped the customer off. The final cost uses the fare settings
    current at completion.

    Raises:
        TripNotFound: Unknown trip
        StaleAssignment: Trip is not assigned to this driver
        InvalidTransition: Trip is not in progress
        UpstreamUnavailable: Route unknown and the oracle is still down;
            the trip stays in progress
    """
    current = get_trip(trip_id)
    route = None
    if current.distance_km is None and current.status == TripStatus.IN_PROGRESS:
        route = get_routing_oracle().route(_stops(current.pickup, current.dropoffs))

    with transaction.atomic():
        trip = _lock_trip(trip_id)
        _require_assigned_driver(trip, driver_id)

        if trip.status == TripStatus.IN_PROGRESS:
            if trip.distance_km is None:
                if route is None:
                    route = get_routing_oracle().route(_stops(trip.pickup, trip.dropoffs))
                trip.distance_km = route.distance_km
                trip.duration_minutes = route.duration_minutes
            trip.cost = quote_for_distance(trip.distance_km)

        TripStateMachine(trip).fire(
            TripEventKind.TRIP_COMPLETED,
            driver_id=driver_id,
            payload={"cost": trip.cost, "distance_km": trip.distance_km},
        )
        driver_sessions.set_busy(driver_id, False)

    logger.info("Trip %s completed by driver %s, cost %s", trip_id, driver_id, trip.cost)
    return TripResult(success=True, trip=trip, message="Trip completed")


# ===================== Queries =====================

def get_trip(trip_id: int) -> Trip:
    try:
        return Trip.objects.get(pk=trip_id)
    except Trip.DoesNotExist:
        raise TripNotFound(f"Trip {trip_id} not found", trip_id=trip_id)


def get_current_customer_trip(customer_id: str) -> Optional[Trip]:
    """Get customer's current active trip."""
    return check_active_trip(customer_id)


def get_current_driver_trip(driver_id: str) -> Optional[Trip]:
    """Get the trip a driver is currently offered or driving."""
    return Trip.objects.filter(
        assigned_driver_id=driver_id,
        status__in=ACTIVE_DRIVER_STATUSES,
    ).first()


def list_customer_trips(customer_id: str, finished_only: bool = False):
    qs = Trip.objects.filter(customer_id=customer_id)
    if finished_only:
        qs = qs.filter(status__in=TERMINAL_STATUSES)
    return qs


def list_driver_trips(driver_id: str):
    """Driver's finished trips, most recent first."""
    return Trip.objects.filter(
        assigned_driver_id=driver_id,
        status__in=TERMINAL_STATUSES,
        accepted_at__isnull=False,
    )


def list_trips(status: Optional[str] = None):
    """All trips for admins, optionally filtered by status."""
    qs = Trip.objects.all()
    if status:
        if status not in TripStatus.values:
            raise InvalidArgument(f"Unknown status '{status}'")
        qs = qs.filter(status=status)
    return qs


def get_trip_events(trip_id: int, after: int = 0):
    """Events with sequence > after, oldest first (for polling subscribers)."""
    get_trip(trip_id)
    return TripEvent.objects.filter(trip_id=trip_id, sequence__gt=after).order_by("sequence")


def is_participant(trip: Trip, user_id: str, role: str) -> bool:
    """Whether user may see a trip: its customer, its driver, or an admin."""
    if role == "admin":
        return True
    if role == "driver":
        return trip.assigned_driver_id == user_id
    return trip.customer_id == user_id
