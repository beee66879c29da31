from django.db import models
from django.db.models import Q
from django.utils import timezone

from common.utils.geo import Position


class DriverLocation(models.Model):
    """Driver presence, position and the metadata copied when they go online"""

    # Identity provider's user id; trusted as asserted by the caller
    driver_id = models.CharField(max_length=128, unique=True)

    # Status & location
    latitude = models.DecimalField(max_digits=10, decimal_places=6)
    longitude = models.DecimalField(max_digits=10, decimal_places=6)
    is_online = models.BooleanField(default=False)
    is_busy = models.BooleanField(default=False)
    last_updated_at = models.DateTimeField(default=timezone.now)
    went_online_at = models.DateTimeField(null=True, blank=True)

    # Descriptive fields shown to customers
    name = models.CharField(max_length=150, blank=True, default="")
    phone = models.CharField(max_length=32, blank=True, default="")
    vehicle = models.CharField(max_length=150, blank=True, default="")
    plate = models.CharField(max_length=32, blank=True, default="")
    rating = models.DecimalField(max_digits=3, decimal_places=2, null=True, blank=True)

    class Meta:
        db_table = 'driver_locations'
        # Primary key order is registration order, used to break distance ties
        ordering = ['id']
        constraints = [
            models.CheckConstraint(
                condition=~Q(is_busy=True, is_online=False),
                name='driver_busy_implies_online',
            ),
        ]
        indexes = [
            models.Index(fields=['is_online', 'is_busy'], name='driver_eligibility_idx'),
        ]

    def __str__(self):
        state = "busy" if self.is_busy else ("online" if self.is_online else "offline")
        return f"{self.driver_id} ({state})"

    @property
    def position(self) -> Position:
        return Position(float(self.latitude), float(self.longitude))

    @property
    def is_eligible(self) -> bool:
        return self.is_online and not self.is_busy

    def metadata(self) -> dict:
        return {
            "name": self.name,
            "phone": self.phone,
            "vehicle": self.vehicle,
            "plate": self.plate,
            "rating": float(self.rating) if self.rating is not None else None,
        }
