"""
Driver geo index.

This module provides:
- Upserting driver positions and presence flags (last writer wins)
- Removing drivers from matching eligibility
- Nearest / nearby eligible driver queries using the Haversine formula
- The conditional busy "claim" used by dispatch

The DriverLocation table is the index. Eligible means online, not busy and
not in the caller's exclusion set. Candidates are scanned in registration
order and sorted by distance with a stable sort, so distance ties are won by
the driver that registered first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from common.exceptions import InvalidArgument
from common.utils.geo import Position, calculate_distance, estimate_eta_minutes
from drivers.models import DriverLocation

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("name", "phone", "vehicle", "plate", "rating")


@dataclass
class NearbyDriver:
    """An eligible driver and their distance from a query point."""
    driver_id: str
    latitude: float
    longitude: float
    distance_km: float
    eta_minutes: int
    name: str = ""
    vehicle: str = ""
    plate: str = ""
    phone: str = ""
    rating: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "driver_id": self.driver_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "distance_km": round(self.distance_km, 3),
            "eta_minutes": self.eta_minutes,
            "name": self.name,
            "vehicle": self.vehicle,
            "plate": self.plate,
            "phone": self.phone,
            "rating": self.rating,
        }


class GeoIndex:
    """
    Driver location index backed by the DriverLocation table.

    Only the driver session manager should call the write methods
    (upsert, remove, set_busy).
    """

    # ---------------------- Writes ----------------------

    def upsert(
        self,
        driver_id: str,
        position: Position,
        is_online: bool,
        is_busy: bool,
        metadata: Optional[Dict[str, Any]] = None,
        updated_at: Optional[datetime] = None,
    ) -> DriverLocation:
        """
        Replace the record for driver_id.

        A write older than the stored last_updated_at is ignored.
        """
        if is_busy and not is_online:
            raise InvalidArgument("A busy driver must be online")

        updated_at = updated_at or timezone.now()
        metadata = {k: v for k, v in (metadata or {}).items() if k in METADATA_FIELDS}

        with transaction.atomic():
            location, created = DriverLocation.objects.select_for_update().get_or_create(
                driver_id=driver_id,
                defaults={
                    "latitude": position.latitude,
                    "longitude": position.longitude,
                    "is_online": is_online,
                    "is_busy": is_busy,
                    "last_updated_at": updated_at,
                    **metadata,
                },
            )
            if created:
                return location

            if location.last_updated_at > updated_at:
                logger.debug("Ignoring stale upsert for driver %s", driver_id)
                return location

            location.latitude = position.latitude
            location.longitude = position.longitude
            location.is_online = is_online
            location.is_busy = is_busy
            location.last_updated_at = updated_at
            for key, value in metadata.items():
                setattr(location, key, value)
            location.save()

        return location

    def move(self, driver_id: str, position: Position, updated_at: Optional[datetime] = None) -> bool:
        """
        Update only the position. Presence flags are left alone so a
        concurrent busy claim is never overwritten. Stale writes are ignored.
        """
        updated_at = updated_at or timezone.now()
        updated = DriverLocation.objects.filter(
            driver_id=driver_id,
            last_updated_at__lte=updated_at,
        ).update(
            latitude=position.latitude,
            longitude=position.longitude,
            last_updated_at=updated_at,
        )
        return updated > 0

    def remove(self, driver_id: str) -> bool:
        """Take the driver out of matching. Returns False if already offline."""
        updated = DriverLocation.objects.filter(driver_id=driver_id, is_online=True).update(
            is_online=False,
            is_busy=False,
            last_updated_at=timezone.now(),
        )
        return updated > 0

    def set_busy(self, driver_id: str, busy: bool, only_if_idle: bool = False) -> bool:
        """
        Flip the busy flag with a single conditional UPDATE.

        With only_if_idle the update only applies to an online, non-busy
        driver, so two concurrent dispatches can never both claim them.
        """
        qs = DriverLocation.objects.filter(driver_id=driver_id)
        if busy:
            qs = qs.filter(is_online=True)
            if only_if_idle:
                qs = qs.filter(is_busy=False)
        return qs.update(is_busy=busy) > 0

    # ---------------------- Queries ----------------------

    def get(self, driver_id: str) -> Optional[DriverLocation]:
        return DriverLocation.objects.filter(driver_id=driver_id).first()

    def eligible(self, excluding: Iterable[str] = ()):
        """Online, non-busy drivers not in `excluding`, in registration order."""
        qs = DriverLocation.objects.filter(is_online=True, is_busy=False)
        excluding = list(excluding)
        if excluding:
            qs = qs.exclude(driver_id__in=excluding)
        return qs.order_by("id")

    def nearby(
        self,
        point: Position,
        radius_km: Optional[float] = None,
        limit: Optional[int] = None,
        excluding: Iterable[str] = (),
    ) -> List[NearbyDriver]:
        """
        Eligible drivers sorted closest first.

        Args:
            point: Query position
            radius_km: Only keep drivers within this distance (None = any)
            limit: Max drivers to return (None = all)
            excluding: Driver ids to leave out

        Returns:
            List of NearbyDriver sorted by distance, ties by registration order
        """
        candidates: List[NearbyDriver] = []
        for location in self.eligible(excluding):
            distance = calculate_distance(
                point.latitude,
                point.longitude,
                float(location.latitude),
                float(location.longitude),
            )
            if radius_km is not None and distance > radius_km:
                continue
            candidates.append(NearbyDriver(
                driver_id=location.driver_id,
                latitude=float(location.latitude),
                longitude=float(location.longitude),
                distance_km=distance,
                eta_minutes=estimate_eta_minutes(distance),
                name=location.name,
                vehicle=location.vehicle,
                plate=location.plate,
                phone=location.phone,
                rating=float(location.rating) if location.rating is not None else None,
            ))

        # Stable sort keeps registration order for equal distances
        candidates.sort(key=lambda c: c.distance_km)

        if limit is not None:
            candidates = candidates[:limit]
        return candidates

    def nearest(self, point: Position, excluding: Iterable[str] = ()) -> Optional[NearbyDriver]:
        """Closest eligible driver to `point`, or None."""
        matches = self.nearby(point, limit=1, excluding=excluding)
        return matches[0] if matches else None


# ---------------------- Singleton Instance ----------------------

_geo_index: Optional[GeoIndex] = None


def get_geo_index() -> GeoIndex:
    """Get singleton GeoIndex instance."""
    global _geo_index
    if _geo_index is None:
        _geo_index = GeoIndex()
    return _geo_index
