import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.exceptions import (
    DispatchError,
    InvalidArgument,
    InvalidTransition,
    NoDriversAvailable,
    StaleAssignment,
    TripNotFound,
    UpstreamUnavailable,
)
from services import matching, trip_management
from services.pricing import get_fare_settings, update_fare_settings
from services.results import TripResult

from .models import TripStatus
from .permissions import IsAdminRole, IsCustomer, IsCustomerOrAdmin, IsDriver
from .serializers import (
    DropoffUpdateSerializer,
    FareSettingsSerializer,
    RouteQuoteSerializer,
    TripCancelSerializer,
    TripCreateSerializer,
    TripEventSerializer,
    TripSerializer,
)

logger = logging.getLogger(__name__)

# Most specific first: ActiveTripExists is an InvalidArgument
ERROR_STATUS = (
    (TripNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidArgument, status.HTTP_400_BAD_REQUEST),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (StaleAssignment, status.HTTP_409_CONFLICT),
    (UpstreamUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (NoDriversAvailable, status.HTTP_200_OK),
)


def _error_response(exc: DispatchError, **extra):
    """Translate a service-layer error into the API's error body."""
    http_status = status.HTTP_400_BAD_REQUEST
    for exc_class, code in ERROR_STATUS:
        if isinstance(exc, exc_class):
            http_status = code
            break
    body = {
        'success': False,
        'error': exc.error_code,
        'message': exc.message,
        **extra,
    }
    if isinstance(exc, InvalidTransition) and exc.context.get('current_status'):
        body['status'] = exc.context['current_status']
    return Response(body, status=http_status)


def _result_response(result, http_status=status.HTTP_200_OK):
    body = {
        'success': result.success,
        'message': result.message,
        'trip': TripSerializer(result.trip).data if result.trip is not None else None,
    }
    if result.error_code:
        body['error_code'] = result.error_code
    if result.extra:
        body.update(result.extra)
    return Response(body, status=http_status)


def _user_id(request) -> str:
    return str(request.user.id)


def _load_visible_trip(request, trip_id):
    """Trip the caller may see; other people's trips look like missing ones."""
    trip = trip_management.get_trip(trip_id)
    if not trip_management.is_participant(trip, _user_id(request), request.user.role):
        raise TripNotFound(f"Trip {trip_id} not found", trip_id=trip_id)
    return trip


# ==================== Customer Trip APIs ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def quote_route(request):
    """Preview distance, duration and cost before requesting a trip"""
    serializer = RouteQuoteSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        quote = trip_management.quote_route(
            serializer.validated_data['pickup'],
            serializer.validated_data['dropoffs'],
        )
    except DispatchError as e:
        return _error_response(e)
    return Response(quote)


@api_view(['GET', 'POST'])
@permission_classes([IsCustomer])
def trips(request):
    """
    GET: the customer's trips, most recent first
    POST: request a new trip; it is offered to the nearest driver right away
    """
    customer_id = _user_id(request)

    if request.method == 'GET':
        qs = trip_management.list_customer_trips(
            customer_id,
            finished_only=request.query_params.get('finished') in ('1', 'true'),
        )
        return Response({'trips': TripSerializer(qs, many=True).data})

    serializer = TripCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = serializer.validated_data
    try:
        result = trip_management.create_trip(
            customer_id,
            data['pickup'],
            data['dropoffs'],
            customer_name=data.get('customer_name', ''),
            customer_phone=data.get('customer_phone', ''),
        )
    except DispatchError as e:
        return _error_response(e)
    return _result_response(result, status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsCustomer])
def current_trip(request):
    """
    Get customer's current active trip (POLLING ENDPOINT)
    """
    trip = trip_management.get_current_customer_trip(_user_id(request))
    if not trip:
        return Response({
            'has_active_trip': False,
            'message': 'No active trip found',
        })

    response_data = {
        'has_active_trip': True,
        'trip': TripSerializer(trip).data,
        'status': trip.status,
    }
    if trip.status == TripStatus.REQUESTED:
        response_data['message'] = 'Searching for nearby drivers...'
    elif trip.status == TripStatus.DRIVER_ASSIGNED:
        response_data['message'] = 'Waiting for the driver to accept...'
    elif trip.status == TripStatus.ACCEPTED:
        response_data['message'] = 'Driver is on the way!'
    elif trip.status == TripStatus.IN_PROGRESS:
        response_data['message'] = 'Enjoy your ride!'
    return Response(response_data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def trip_detail(request, trip_id):
    try:
        trip = _load_visible_trip(request, trip_id)
    except DispatchError as e:
        return _error_response(e)
    return Response(TripSerializer(trip).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def trip_events(request, trip_id):
    """Events after ?after=<sequence>, for clients without a WebSocket"""
    try:
        after = int(request.query_params.get('after', 0))
    except (TypeError, ValueError):
        return _error_response(InvalidArgument("'after' must be an integer"))

    try:
        _load_visible_trip(request, trip_id)
        events = trip_management.get_trip_events(trip_id, after=after)
    except DispatchError as e:
        return _error_response(e)
    return Response({'events': TripEventSerializer(events, many=True).data})


@api_view(['PUT'])
@permission_classes([IsCustomer])
def update_dropoffs(request, trip_id):
    serializer = DropoffUpdateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = trip_management.update_dropoffs(
            trip_id, _user_id(request), serializer.validated_data['dropoffs'],
        )
    except DispatchError as e:
        return _error_response(e)
    return _result_response(result)


@api_view(['POST'])
@permission_classes([IsCustomerOrAdmin])
def dispatch_trip(request, trip_id):
    """Try again to find a driver for a waiting trip"""
    try:
        _load_visible_trip(request, trip_id)
        result = matching.dispatch(trip_id)
    except NoDriversAvailable as e:
        # Not an error: the trip stays requested and is offered again later
        return _result_response(TripResult(
            success=False,
            trip=trip_management.get_trip(trip_id),
            message=e.message,
            error_code=e.error_code,
        ))
    except DispatchError as e:
        return _error_response(e)
    return _result_response(result)


@api_view(['POST'])
@permission_classes([IsCustomerOrAdmin])
def cancel_trip(request, trip_id):
    """Cancel a trip before a driver accepted it"""
    serializer = TripCancelSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = trip_management.cancel_trip(
            trip_id,
            _user_id(request),
            actor_role=request.user.role,
            reason=serializer.validated_data.get('reason', ''),
        )
    except DispatchError as e:
        return _error_response(e)
    return _result_response(result)


# ==================== Driver Trip Actions ====================

@api_view(['POST'])
@permission_classes([IsDriver])
def accept_trip(request, trip_id):
    """Accept the trip offered to this driver"""
    try:
        result = matching.accept_trip(trip_id, _user_id(request))
    except DispatchError as e:
        return _error_response(e, trip_id=trip_id)
    return _result_response(result)


@api_view(['POST'])
@permission_classes([IsDriver])
def reject_trip(request, trip_id):
    """Decline the offer; the trip goes to the next nearest driver"""
    try:
        result = matching.reject_trip(trip_id, _user_id(request))
    except DispatchError as e:
        return _error_response(e, trip_id=trip_id)
    return _result_response(result)


@api_view(['POST'])
@permission_classes([IsDriver])
def start_trip(request, trip_id):
    try:
        result = trip_management.start_trip(trip_id, _user_id(request))
    except DispatchError as e:
        return _error_response(e, trip_id=trip_id)
    return _result_response(result)


@api_view(['POST'])
@permission_classes([IsDriver])
def end_trip(request, trip_id):
    try:
        result = trip_management.end_trip(trip_id, _user_id(request))
    except DispatchError as e:
        return _error_response(e, trip_id=trip_id)
    return _result_response(result)


# ==================== Admin APIs ====================

@api_view(['GET'])
@permission_classes([IsAdminRole])
def admin_trips(request):
    try:
        qs = trip_management.list_trips(request.query_params.get('status'))
    except DispatchError as e:
        return _error_response(e)
    return Response({'trips': TripSerializer(qs, many=True).data})


@api_view(['GET', 'PUT'])
@permission_classes([IsAdminRole])
def fare_settings(request):
    if request.method == 'GET':
        return Response(FareSettingsSerializer(get_fare_settings()).data)

    serializer = FareSettingsSerializer(data=request.data, partial=True)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        updated = update_fare_settings(
            base_fare=serializer.validated_data.get('base_fare'),
            per_km_rate=serializer.validated_data.get('per_km_rate'),
        )
    except DispatchError as e:
        return _error_response(e)
    return Response(FareSettingsSerializer(updated).data)
