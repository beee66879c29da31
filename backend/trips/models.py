from decimal import Decimal

from django.conf import settings
from django.db import models
from django.utils import timezone

from common.utils.geo import Position


class TripStatus(models.TextChoices):
    REQUESTED = 'requested', 'Requested'
    DRIVER_ASSIGNED = 'driver_assigned', 'Driver Assigned'
    ACCEPTED = 'accepted', 'Accepted'
    IN_PROGRESS = 'in_progress', 'In Progress'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


TERMINAL_STATUSES = (TripStatus.COMPLETED, TripStatus.CANCELLED)

# A trip in one of these states holds its assigned driver
ACTIVE_DRIVER_STATUSES = (
    TripStatus.DRIVER_ASSIGNED,
    TripStatus.ACCEPTED,
    TripStatus.IN_PROGRESS,
)

ACTIVE_CUSTOMER_STATUSES = (TripStatus.REQUESTED,) + ACTIVE_DRIVER_STATUSES


class TripEventKind(models.TextChoices):
    CREATED = 'created', 'Created'
    DRIVER_PROPOSED = 'driver_proposed', 'Driver Proposed'
    DRIVER_ACCEPTED = 'driver_accepted', 'Driver Accepted'
    DRIVER_REJECTED = 'driver_rejected', 'Driver Rejected'
    OFFER_EXPIRED = 'offer_expired', 'Offer Expired'
    TRIP_STARTED = 'trip_started', 'Trip Started'
    TRIP_COMPLETED = 'trip_completed', 'Trip Completed'
    TRIP_CANCELLED = 'trip_cancelled', 'Trip Cancelled'
    # Notices that do not change status
    NO_DRIVERS_AVAILABLE = 'no_drivers_available', 'No Drivers Available'
    ROUTE_QUOTED = 'route_quoted', 'Route Quoted'


class Trip(models.Model):
    """One customer's ride request from pickup through its dropoffs."""

    # Customer (identity provider's user id, trusted as asserted)
    customer_id = models.CharField(max_length=128, db_index=True)
    customer_name = models.CharField(max_length=150, blank=True, default="")
    customer_phone = models.CharField(max_length=32, blank=True, default="")

    # Pickup location
    pickup_latitude = models.DecimalField(max_digits=10, decimal_places=6)
    pickup_longitude = models.DecimalField(max_digits=10, decimal_places=6)
    pickup_address = models.TextField(blank=True, default="")

    # Ordered dropoffs: [{"latitude", "longitude", "address"}, ...]
    dropoffs = models.JSONField(default=list)

    status = models.CharField(
        max_length=20,
        choices=TripStatus.choices,
        default=TripStatus.REQUESTED,
        db_index=True,
    )

    # Dispatch state
    assigned_driver_id = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    rejected_driver_ids = models.JSONField(default=list, blank=True)
    assignment_generation = models.PositiveIntegerField(default=0)
    offered_at = models.DateTimeField(null=True, blank=True)
    offer_expires_at = models.DateTimeField(null=True, blank=True)
    driver_eta_minutes = models.PositiveIntegerField(null=True, blank=True)

    # Driver snapshot copied on acceptance
    driver_name = models.CharField(max_length=150, blank=True, default="")
    driver_phone = models.CharField(max_length=32, blank=True, default="")
    vehicle = models.CharField(max_length=150, blank=True, default="")
    license_plate = models.CharField(max_length=32, blank=True, default="")
    driver_rating = models.DecimalField(max_digits=3, decimal_places=2, null=True, blank=True)

    # Route & fare (null until the route is known)
    distance_km = models.FloatField(null=True, blank=True)
    duration_minutes = models.FloatField(null=True, blank=True)
    cost = models.PositiveIntegerField(null=True, blank=True)

    # Timestamps
    requested_at = models.DateTimeField(default=timezone.now)
    accepted_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    cancelled_by = models.CharField(max_length=128, blank=True, default="")
    cancellation_reason = models.TextField(blank=True, default="")

    # Last TripEvent sequence number
    event_sequence = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'trips'
        ordering = ['-requested_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['customer_id'],
                condition=models.Q(status__in=list(ACTIVE_CUSTOMER_STATUSES)),
                name='one_active_trip_per_customer',
            ),
        ]

    def __str__(self):
        return f"Trip #{self.id} - {self.customer_id} - {self.status}"

    @property
    def pickup(self) -> Position:
        return Position(float(self.pickup_latitude), float(self.pickup_longitude))

    @property
    def dropoff_positions(self):
        return [Position(float(d["latitude"]), float(d["longitude"])) for d in self.dropoffs]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TripEvent(models.Model):
    """Append-only log of everything that happened to a trip."""

    trip = models.ForeignKey(Trip, on_delete=models.CASCADE, related_name='events')
    sequence = models.PositiveIntegerField()
    kind = models.CharField(max_length=32, choices=TripEventKind.choices)
    old_status = models.CharField(max_length=20, blank=True, default="")
    new_status = models.CharField(max_length=20)
    driver_id = models.CharField(max_length=128, null=True, blank=True)
    payload = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'trip_events'
        ordering = ['sequence', 'id']
        constraints = [
            models.UniqueConstraint(fields=['trip', 'sequence'], name='unique_trip_event_sequence'),
        ]

    def __str__(self):
        return f"Trip #{self.trip_id} event {self.sequence}: {self.kind}"


def _default_base_fare():
    return Decimal(str(settings.FARE_DEFAULTS["BASE_FARE"]))


def _default_per_km_rate():
    return Decimal(str(settings.FARE_DEFAULTS["PER_KM_RATE"]))


class FareSettings(models.Model):
    """Singleton fare configuration edited by administrators."""

    SINGLETON_ID = 1

    base_fare = models.DecimalField(max_digits=10, decimal_places=2, default=_default_base_fare)
    per_km_rate = models.DecimalField(max_digits=10, decimal_places=2, default=_default_per_km_rate)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'fare_settings'
        verbose_name_plural = 'fare settings'

    def __str__(self):
        return f"Base {self.base_fare} + {self.per_km_rate}/km"

    @classmethod
    def load(cls) -> "FareSettings":
        settings_row, _ = cls.objects.get_or_create(pk=cls.SINGLETON_ID)
        return settings_row
