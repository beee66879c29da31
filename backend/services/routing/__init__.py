"""
Routing service - Road distance and duration for a trip's legs.
"""

from .oracle import (
    RouteEstimate,
    RoutingOracle,
    OSRMRoutingOracle,
    StraightLineRoutingOracle,
    get_routing_oracle,
    reset_routing_oracle,
)

__all__ = [
    "RouteEstimate",
    "RoutingOracle",
    "OSRMRoutingOracle",
    "StraightLineRoutingOracle",
    "get_routing_oracle",
    "reset_routing_oracle",
]
