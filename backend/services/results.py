"""Result object shared by the service layer."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from trips.models import Trip


@dataclass
class TripResult:
    """Result object for trip operations."""
    success: bool
    trip: Optional[Trip] = None
    message: str = ""
    error_code: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None
