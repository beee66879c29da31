from django.contrib import admin
from django.urls import path, include

from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check),  # Health check endpoint

    # Driver APIs (online/offline, location, current trip, history, nearby)
    path('api/driver/', include('drivers.urls')),

    # Trip APIs (customer requests, driver actions, admin)
    path('api/trips/', include('trips.urls')),
]
