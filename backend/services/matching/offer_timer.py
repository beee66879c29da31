"""
Accept-timeout timers.

Each proposal schedules a Celery task keyed by (trip id, assignment
generation). The task re-checks the generation under the trip lock, so a
timer that outlives its assignment does nothing. Accepting revokes it.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

logger = logging.getLogger(__name__)


def offer_timeout_seconds() -> int:
    return int(getattr(settings, "TRIP_ACCEPT_TIMEOUT_SECONDS", 30))


def offer_deadline(now=None):
    return (now or timezone.now()) + timedelta(seconds=offer_timeout_seconds())


def offer_task_id(trip_id: int, generation: int) -> str:
    return f"trip-offer-{trip_id}-{generation}"


def schedule_offer_expiry(trip_id: int, generation: int) -> None:
    """Schedule the accept-timeout once the proposal commits."""
    if not getattr(settings, "ENABLE_OFFER_EXPIRY_TASKS", True):
        return

    def _enqueue():
        from trips.tasks import expire_trip_offer_task
        try:
            expire_trip_offer_task.apply_async(
                (trip_id, generation),
                countdown=offer_timeout_seconds(),
                task_id=offer_task_id(trip_id, generation),
            )
        except Exception:
            # The periodic sweep picks the offer up from offer_expires_at
            logger.exception("Failed to schedule offer expiry for trip %s", trip_id)

    transaction.on_commit(_enqueue)


def cancel_offer_expiry(trip_id: int, generation: int) -> None:
    """Revoke the accept-timeout once the acceptance commits."""
    if not getattr(settings, "ENABLE_OFFER_EXPIRY_TASKS", True):
        return

    def _revoke():
        from dispatch_backend.celery import app
        try:
            app.control.revoke(offer_task_id(trip_id, generation))
        except Exception:
            # Harmless: the task finds the generation advanced and exits
            logger.exception("Failed to revoke offer expiry for trip %s", trip_id)

    transaction.on_commit(_revoke)
