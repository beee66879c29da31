"""
Driver session management.

The only writer of driver online/offline/busy status. Every mutation goes
through the geo index and announces a presence event once committed.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from common.exceptions import InvalidArgument
from common.utils.geo import Position
from drivers.geo_index import get_geo_index
from drivers.models import DriverLocation
from realtime.notifications import notify_driver_presence

logger = logging.getLogger(__name__)


def _has_active_trip(driver_id: str) -> bool:
    from trips.models import Trip, ACTIVE_DRIVER_STATUSES
    return Trip.objects.filter(
        assigned_driver_id=driver_id,
        status__in=ACTIVE_DRIVER_STATUSES,
    ).exists()


def _schedule_waiting_trip_redispatch():
    """Ask Celery to offer waiting trips to the newly available driver."""
    if not getattr(settings, "ENABLE_PRESENCE_REDISPATCH", True):
        return

    def _enqueue():
        from trips.tasks import redispatch_waiting_trips_task
        try:
            redispatch_waiting_trips_task.delay()
        except Exception:
            logger.exception("Failed to enqueue waiting trip re-dispatch")

    transaction.on_commit(_enqueue)


# DRIVER ONLINE / OFFLINE
@transaction.atomic
def go_online(driver_id: str, position: Position, metadata: Optional[Dict[str, Any]] = None) -> DriverLocation:
    """
    Put a driver online at `position`.

    Metadata (name, phone, vehicle, plate, rating) is copied at this point.
    A driver reconnecting in the middle of a trip stays busy.
    """
    if not driver_id:
        raise InvalidArgument("driver_id is required")

    # Hold the driver row so a concurrent dispatch claim cannot slip in
    # between the active-trip check and the write.
    DriverLocation.objects.select_for_update().filter(driver_id=driver_id).first()
    busy = _has_active_trip(driver_id)

    location = get_geo_index().upsert(
        driver_id,
        position,
        is_online=True,
        is_busy=busy,
        metadata=metadata,
        updated_at=timezone.now(),
    )
    location.went_online_at = location.last_updated_at
    location.save(update_fields=["went_online_at"])

    logger.info("Driver %s online at (%s, %s)", driver_id, position.latitude, position.longitude)
    notify_driver_presence(location, reason="online")

    if not busy:
        _schedule_waiting_trip_redispatch()
    return location


@transaction.atomic
def go_offline(driver_id: str) -> Optional[DriverLocation]:
    """
    Take a driver offline. Silently does nothing if they already are.

    Returns:
        The updated DriverLocation, or None if nothing changed
    """
    if not get_geo_index().remove(driver_id):
        return None

    if _has_active_trip(driver_id):
        logger.warning("Driver %s went offline with an active trip", driver_id)

    location = DriverLocation.objects.get(driver_id=driver_id)
    logger.info("Driver %s offline", driver_id)
    notify_driver_presence(location, reason="offline")
    return location


# DRIVER LOCATION UPDATE
@transaction.atomic
def update_position(driver_id: str, position: Position, at=None) -> DriverLocation:
    """
    Move a driver. Used by the HTTP fallback and the driver WebSocket.
    """
    geo = get_geo_index()
    if geo.get(driver_id) is None:
        raise InvalidArgument(f"Driver {driver_id} has no session; go online first")

    geo.move(driver_id, position, updated_at=at)
    location = DriverLocation.objects.get(driver_id=driver_id)
    notify_driver_presence(location, reason="moved")
    return location


# DRIVER BUSY STATUS
def set_busy(driver_id: str, busy: bool) -> bool:
    """Mark a driver busy/free. Called by dispatch on assignment and completion."""
    changed = get_geo_index().set_busy(driver_id, busy)
    if changed:
        location = DriverLocation.objects.get(driver_id=driver_id)
        notify_driver_presence(location, reason="busy" if busy else "free")
    return changed


def claim_for_trip(driver_id: str) -> bool:
    """
    Atomically mark an idle online driver busy.

    Returns False if someone else claimed them first or they went offline.
    """
    claimed = get_geo_index().set_busy(driver_id, True, only_if_idle=True)
    if claimed:
        location = DriverLocation.objects.get(driver_id=driver_id)
        notify_driver_presence(location, reason="busy")
    return claimed


# SESSION TIMEOUT
def expire_stale_sessions(ttl_seconds: Optional[int] = None) -> List[str]:
    """
    Take offline every idle driver that has not reported in `ttl_seconds`.

    Returns:
        Driver ids that were taken offline
    """
    ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.DRIVER_SESSION_TTL_SECONDS
    cutoff = timezone.now() - timedelta(seconds=ttl_seconds)

    stale_ids = list(
        DriverLocation.objects.filter(
            is_online=True,
            is_busy=False,
            last_updated_at__lt=cutoff,
        ).values_list("driver_id", flat=True)
    )

    expired = []
    for driver_id in stale_ids:
        if go_offline(driver_id) is not None:
            expired.append(driver_id)

    if expired:
        logger.info("Expired %d stale driver session(s)", len(expired))
    return expired
