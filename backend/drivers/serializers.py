from rest_framework import serializers

from drivers.models import DriverLocation


class DriverLocationSerializer(serializers.ModelSerializer):
    """
    Full driver session serializer
    """
    latitude = serializers.FloatField()
    longitude = serializers.FloatField()

    class Meta:
        model = DriverLocation
        fields = [
            "driver_id",
            "latitude",
            "longitude",
            "is_online",
            "is_busy",
            "last_updated_at",
            "went_online_at",
            "name",
            "phone",
            "vehicle",
            "plate",
            "rating",
        ]
        read_only_fields = fields


class GoOnlineSerializer(serializers.Serializer):
    """
    Serializer for putting a driver online with their vehicle details.
    """
    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)
    name = serializers.CharField(required=False, allow_blank=True, max_length=150)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=32)
    vehicle = serializers.CharField(required=False, allow_blank=True, max_length=150)
    plate = serializers.CharField(required=False, allow_blank=True, max_length=32)
    rating = serializers.DecimalField(required=False, allow_null=True, max_digits=3,
                                      decimal_places=2, min_value=0, max_value=5)


class LocationUpdateSerializer(serializers.Serializer):
    """
    Serializer for updating driver GPS location.
    """
    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)


class NearbyQuerySerializer(LocationUpdateSerializer):
    radius_km = serializers.FloatField(required=False, min_value=0)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=100, default=20)
