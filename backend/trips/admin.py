from django.contrib import admin

from trips.models import FareSettings, Trip, TripEvent


class TripEventInline(admin.TabularInline):
    model = TripEvent
    extra = 0
    can_delete = False
    readonly_fields = ["sequence", "kind", "old_status", "new_status", "driver_id", "payload", "created_at"]


@admin.register(Trip)
class TripAdmin(admin.ModelAdmin):
    list_display = ["id", "customer_id", "assigned_driver_id", "status", "cost", "requested_at"]
    list_filter = ["status", "requested_at"]
    search_fields = ["customer_id", "assigned_driver_id", "pickup_address"]
    readonly_fields = ["event_sequence", "assignment_generation", "rejected_driver_ids",
                       "requested_at", "accepted_at", "started_at", "completed_at", "cancelled_at"]
    inlines = [TripEventInline]


@admin.register(FareSettings)
class FareSettingsAdmin(admin.ModelAdmin):
    list_display = ["base_fare", "per_km_rate", "updated_at"]

    def has_add_permission(self, request):
        return not FareSettings.objects.exists()
