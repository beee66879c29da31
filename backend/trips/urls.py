from django.urls import path
from . import views

app_name = 'trips'

urlpatterns = [
    # Customer APIs
    path('quote/', views.quote_route, name='quote-route'),
    path('', views.trips, name='trips'),
    path('current/', views.current_trip, name='current-trip'),
    path('<int:trip_id>/', views.trip_detail, name='trip-detail'),
    path('<int:trip_id>/events/', views.trip_events, name='trip-events'),
    path('<int:trip_id>/dropoffs/', views.update_dropoffs, name='update-dropoffs'),
    path('<int:trip_id>/dispatch/', views.dispatch_trip, name='dispatch-trip'),
    path('<int:trip_id>/cancel/', views.cancel_trip, name='cancel-trip'),

    # Driver Trip Actions
    path('<int:trip_id>/accept/', views.accept_trip, name='accept-trip'),
    path('<int:trip_id>/reject/', views.reject_trip, name='reject-trip'),
    path('<int:trip_id>/start/', views.start_trip, name='start-trip'),
    path('<int:trip_id>/end/', views.end_trip, name='end-trip'),

    # Admin
    path('admin/trips/', views.admin_trips, name='admin-trips'),
    path('admin/fare-settings/', views.fare_settings, name='fare-settings'),
]
