from django.conf import settings
from rest_framework import serializers

from .models import FareSettings, Trip, TripEvent


class PositionSerializer(serializers.Serializer):
    """A WGS-84 point, optionally with a street address"""
    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)
    address = serializers.CharField(required=False, allow_blank=True, default="")


class TripSerializer(serializers.ModelSerializer):
    """Serializer for Trips"""
    pickup = serializers.SerializerMethodField()
    driver = serializers.SerializerMethodField()

    class Meta:
        model = Trip
        fields = ['id', 'customer_id', 'customer_name', 'customer_phone',
                  'pickup', 'dropoffs', 'status', 'assigned_driver_id',
                  'driver', 'driver_eta_minutes', 'offer_expires_at',
                  'distance_km', 'duration_minutes', 'cost',
                  'requested_at', 'accepted_at', 'started_at', 'completed_at',
                  'cancelled_at', 'cancelled_by', 'cancellation_reason',
                  'event_sequence']
        read_only_fields = fields

    def get_pickup(self, obj):
        return {
            'latitude': float(obj.pickup_latitude),
            'longitude': float(obj.pickup_longitude),
            'address': obj.pickup_address,
        }

    def get_driver(self, obj):
        # Snapshot is only filled in once the driver accepts
        if not obj.accepted_at:
            return None
        return {
            'driver_id': obj.assigned_driver_id,
            'name': obj.driver_name,
            'phone': obj.driver_phone,
            'vehicle': obj.vehicle,
            'plate': obj.license_plate,
            'rating': float(obj.driver_rating) if obj.driver_rating is not None else None,
        }


class TripCreateSerializer(serializers.Serializer):
    """Serializer for creating trips"""
    pickup = PositionSerializer()
    dropoffs = PositionSerializer(many=True)
    customer_name = serializers.CharField(required=False, allow_blank=True, default="")
    customer_phone = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_dropoffs(self, value):
        max_dropoffs = getattr(settings, 'MAX_DROPOFFS', 5)
        if not value:
            raise serializers.ValidationError("At least one dropoff is required.")
        if len(value) > max_dropoffs:
            raise serializers.ValidationError(f"At most {max_dropoffs} dropoffs are allowed.")
        return value


class RouteQuoteSerializer(serializers.Serializer):
    """Serializer for previewing a route before requesting"""
    pickup = PositionSerializer()
    dropoffs = PositionSerializer(many=True)

    validate_dropoffs = TripCreateSerializer.validate_dropoffs


class DropoffUpdateSerializer(serializers.Serializer):
    dropoffs = PositionSerializer(many=True)

    validate_dropoffs = TripCreateSerializer.validate_dropoffs


class TripCancelSerializer(serializers.Serializer):
    """Serializer for trip cancellation"""
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class TripEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = TripEvent
        fields = ['sequence', 'kind', 'old_status', 'new_status', 'driver_id',
                  'payload', 'created_at']
        read_only_fields = fields


class FareSettingsSerializer(serializers.ModelSerializer):
    """Serializer for the fare configuration"""

    class Meta:
        model = FareSettings
        fields = ['base_fare', 'per_km_rate', 'updated_at']
        read_only_fields = ['updated_at']

    def validate_base_fare(self, value):
        if value < 0:
            raise serializers.ValidationError("Base fare cannot be negative.")
        return value

    def validate_per_km_rate(self, value):
        if value < 0:
            raise serializers.ValidationError("Per-km rate cannot be negative.")
        return value
