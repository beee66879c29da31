from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.exceptions import DispatchError
from common.utils.geo import Position
from drivers import services
from drivers.geo_index import get_geo_index
from drivers.serializers import (
    DriverLocationSerializer,
    GoOnlineSerializer,
    LocationUpdateSerializer,
    NearbyQuerySerializer,
)
from services import trip_management
from trips.permissions import IsDriver
from trips.serializers import TripSerializer
from trips.views import _error_response


class DriverOnlineView(APIView):
    permission_classes = [IsDriver]

    def post(self, request):
        serializer = GoOnlineSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)

        position = Position(data.pop("latitude"), data.pop("longitude"))
        try:
            location = services.go_online(str(request.user.id), position, metadata=data)
        except DispatchError as e:
            return _error_response(e)

        return Response({
            "message": "You are online",
            "driver": DriverLocationSerializer(location).data,
        })


class DriverOfflineView(APIView):
    permission_classes = [IsDriver]

    def post(self, request):
        location = services.go_offline(str(request.user.id))
        return Response({
            "message": "You are offline",
            "changed": location is not None,
        })


#    A candidate to move fully to WS. Keep HTTP fallback.
class DriverLocationUpdateView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        location = get_geo_index().get(str(request.user.id))
        if location is None:
            return Response({"message": "No driver session"}, status=404)
        return Response(DriverLocationSerializer(location).data)

    def post(self, request):
        serializer = LocationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        position = Position(
            serializer.validated_data["latitude"],
            serializer.validated_data["longitude"],
        )
        try:
            location = services.update_position(str(request.user.id), position)
        except DispatchError as e:
            return _error_response(e)

        return Response({
            "message": "Location updated",
            "latitude": position.latitude,
            "longitude": position.longitude,
            "is_busy": location.is_busy,
        })


class DriverCurrentTripView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        trip = trip_management.get_current_driver_trip(str(request.user.id))
        if not trip:
            return Response({"message": "No active trip"}, status=404)

        return Response(TripSerializer(trip).data)


class DriverTripHistoryView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        finished = trip_management.list_driver_trips(str(request.user.id))
        serializer = TripSerializer(finished, many=True)

        return Response({"count": len(serializer.data), "trips": serializer.data})


class NearbyDriversView(APIView):
    """Online, free drivers around a point (customer map)."""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        serializer = NearbyQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        drivers = get_geo_index().nearby(
            Position(data["latitude"], data["longitude"]),
            radius_km=data.get("radius_km"),
            limit=data["limit"],
        )
        return Response({
            "count": len(drivers),
            "drivers": [d.as_dict() for d in drivers],
        })
