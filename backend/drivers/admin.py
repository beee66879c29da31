from django.contrib import admin
from drivers.models import DriverLocation


@admin.register(DriverLocation)
class DriverLocationAdmin(admin.ModelAdmin):
    """Admin panel for driver sessions and positions"""

    list_display = [
        "driver_id",
        "name",
        "plate",
        "is_online",
        "is_busy",
        "latitude",
        "longitude",
        "last_updated_at",
    ]

    list_filter = [
        "is_online",
        "is_busy",
    ]

    search_fields = [
        "driver_id",
        "name",
        "plate",
    ]

    readonly_fields = [
        "last_updated_at",
        "went_online_at",
    ]

    ordering = ("id",)
