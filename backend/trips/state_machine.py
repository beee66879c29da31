"""
Trip state machine.

Owns the legal lifecycle of a trip:

    requested -> driver_assigned -> accepted -> in_progress -> completed
    driver_assigned -> requested      (driver rejected / offer expired)
    requested | driver_assigned -> cancelled

completed and cancelled are terminal. Every transition stamps the matching
timestamp, appends a TripEvent and publishes it once the transaction commits.
Callers are expected to hold the trip row lock (select_for_update).
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from django.utils import timezone

from common.exceptions import InvalidTransition
from realtime.notifications import notify_trip_event
from trips.models import Trip, TripEvent, TripEventKind, TripStatus

logger = logging.getLogger(__name__)


TRANSITIONS = {
    (TripStatus.REQUESTED, TripEventKind.DRIVER_PROPOSED): TripStatus.DRIVER_ASSIGNED,
    (TripStatus.DRIVER_ASSIGNED, TripEventKind.DRIVER_ACCEPTED): TripStatus.ACCEPTED,
    (TripStatus.DRIVER_ASSIGNED, TripEventKind.DRIVER_REJECTED): TripStatus.REQUESTED,
    (TripStatus.DRIVER_ASSIGNED, TripEventKind.OFFER_EXPIRED): TripStatus.REQUESTED,
    (TripStatus.ACCEPTED, TripEventKind.TRIP_STARTED): TripStatus.IN_PROGRESS,
    (TripStatus.IN_PROGRESS, TripEventKind.TRIP_COMPLETED): TripStatus.COMPLETED,
    (TripStatus.REQUESTED, TripEventKind.TRIP_CANCELLED): TripStatus.CANCELLED,
    (TripStatus.DRIVER_ASSIGNED, TripEventKind.TRIP_CANCELLED): TripStatus.CANCELLED,
}

# Events that drive transitions (as opposed to notices like no_drivers_available)
TRANSITION_EVENTS = frozenset(event for _, event in TRANSITIONS)


def next_status(current: str, event: str) -> str:
    """
    Look up the state `event` moves a trip in `current` to.

    Raises:
        InvalidTransition: if the pair is not in the transition table
    """
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransition(
            f"Cannot apply '{event}' to a trip that is '{current}'",
            current_status=current,
            event=event,
        )


def can_transition(current: str, event: str) -> bool:
    return (current, event) in TRANSITIONS


class TripStateMachine:
    """Applies transitions and notices to a single (locked) trip."""

    def __init__(self, trip: Trip):
        self.trip = trip

    @classmethod
    def create(cls, **fields) -> Trip:
        """Create a trip in `requested` and record the creation event."""
        now = timezone.now()
        trip = Trip(status=TripStatus.REQUESTED, requested_at=now, **fields)
        trip.event_sequence = 1
        trip.save()
        cls(trip)._append_event(TripEventKind.CREATED, old_status="", driver_id=None, at=now, payload={})
        logger.info("Trip %s requested by customer %s", trip.id, trip.customer_id)
        return trip

    def fire(
        self,
        event: str,
        *,
        driver_id: Optional[str] = None,
        at: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> TripEvent:
        """
        Move the trip along `event`.

        Args:
            event: A TripEventKind in TRANSITION_EVENTS
            driver_id: Driver being proposed (required for driver_proposed)
            at: Transition time (defaults to now)
            payload: Extra data stored on the event

        Raises:
            InvalidTransition: if the trip's current state does not allow it;
                the trip is left untouched
        """
        trip = self.trip
        old_status = trip.status
        new_status = next_status(old_status, event)
        at = at or timezone.now()

        previous_driver = trip.assigned_driver_id
        self._apply_side_effects(event, driver_id, at)

        trip.status = new_status
        trip.event_sequence += 1
        trip.save()

        event_driver = driver_id or previous_driver or trip.assigned_driver_id
        record = self._append_event(event, old_status, event_driver, at, payload or {})
        logger.info(
            "Trip %s: %s -> %s (%s, driver=%s)",
            trip.id, old_status, new_status, event, event_driver,
        )
        return record

    def notice(self, kind: str, payload: Optional[Dict[str, Any]] = None,
               driver_id: Optional[str] = None) -> TripEvent:
        """
        Record and publish an event that does not change status.

        Field changes the caller made on the trip (route, fare, dropoffs)
        are saved with it.
        """
        if kind in TRANSITION_EVENTS:
            raise ValueError(f"{kind} is a transition; use fire()")
        trip = self.trip
        trip.event_sequence += 1
        trip.save()
        return self._append_event(kind, trip.status, driver_id, timezone.now(), payload or {})

    # ---------------------- Helpers ----------------------

    def _apply_side_effects(self, event: str, driver_id: Optional[str], at: datetime):
        trip = self.trip

        if event == TripEventKind.DRIVER_PROPOSED:
            if not driver_id:
                raise ValueError("driver_proposed requires a driver_id")
            trip.assigned_driver_id = driver_id
            trip.assignment_generation += 1
            trip.offered_at = at

        elif event == TripEventKind.DRIVER_ACCEPTED:
            trip.accepted_at = at
            trip.offer_expires_at = None

        elif event in (TripEventKind.DRIVER_REJECTED, TripEventKind.OFFER_EXPIRED):
            rejected = list(trip.rejected_driver_ids or [])
            if trip.assigned_driver_id and trip.assigned_driver_id not in rejected:
                rejected.append(trip.assigned_driver_id)
            trip.rejected_driver_ids = rejected
            self._clear_assignment()

        elif event == TripEventKind.TRIP_STARTED:
            trip.started_at = at

        elif event == TripEventKind.TRIP_COMPLETED:
            trip.completed_at = at

        elif event == TripEventKind.TRIP_CANCELLED:
            trip.cancelled_at = at
            trip.offer_expires_at = None

    def _clear_assignment(self):
        trip = self.trip
        trip.assigned_driver_id = None
        trip.offered_at = None
        trip.offer_expires_at = None
        trip.driver_eta_minutes = None

    def _append_event(self, kind, old_status, driver_id, at, payload) -> TripEvent:
        trip = self.trip
        record = TripEvent.objects.create(
            trip=trip,
            sequence=trip.event_sequence,
            kind=kind,
            old_status=old_status or "",
            new_status=trip.status,
            driver_id=driver_id,
            payload=payload,
            created_at=at,
        )
        notify_trip_event(trip, record)
        return record
