"""Error taxonomy shared by the dispatch services and the API layer."""


class DispatchError(Exception):
    """Base class for all expected dispatch/trip failures."""
    error_code = "dispatch_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.context = context


class InvalidTransition(DispatchError):
    """Raised when a trip transition is attempted from an incompatible state."""
    error_code = "invalid_transition"


class StaleAssignment(DispatchError):
    """Raised when a driver acts on an assignment that was superseded."""
    error_code = "ride_no_longer_available"


class NoDriversAvailable(DispatchError):
    """Raised when no eligible driver is near the pickup point."""
    error_code = "no_drivers_available"


class InvalidArgument(DispatchError):
    """Raised for malformed input."""
    error_code = "invalid_argument"


class ActiveTripExists(InvalidArgument):
    """Raised when a customer already has an active trip."""
    error_code = "active_trip_exists"


class TripNotFound(DispatchError):
    """Raised when a trip cannot be found."""
    error_code = "trip_not_found"


class UpstreamUnavailable(DispatchError):
    """Raised when the routing oracle or store fails or times out."""
    error_code = "upstream_unavailable"
