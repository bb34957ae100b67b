"""
Directions provider integration.

Wraps Mapbox Directions or a self-hosted OSRM behind one fetch() call that
either returns a route or raises RouteUnavailable.
"""

from tripline.api.routing.gateway import (
    Coordinate,
    DirectionsGateway,
    MapboxDirectionsGateway,
    OSRMGateway,
    RouteResult,
    build_gateway,
)

__all__ = [
    "Coordinate",
    "DirectionsGateway",
    "MapboxDirectionsGateway",
    "OSRMGateway",
    "RouteResult",
    "build_gateway",
]
