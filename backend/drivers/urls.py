from django.urls import path
from .views import (
    DriverOnlineView,
    DriverOfflineView,
    DriverLocationUpdateView,
    DriverCurrentTripView,
    DriverTripHistoryView,
    NearbyDriversView,
)

urlpatterns = [
    path("online/", DriverOnlineView.as_view(), name="driver-online"),
    path("offline/", DriverOfflineView.as_view(), name="driver-offline"),
    path("location/", DriverLocationUpdateView.as_view(), name="driver-location"),
    path("current-trip/", DriverCurrentTripView.as_view(), name="driver-current-trip"),
    path("history/", DriverTripHistoryView.as_view(), name="driver-history"),
    path("nearby/", NearbyDriversView.as_view(), name="drivers-nearby"),
]
