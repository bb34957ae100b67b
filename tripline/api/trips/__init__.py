"""
Trip consistency engine.

Keeps each trip's stops in a contiguous 0..N-1 order and the cached route
segments between adjacent stops in step with that order.
"""

from tripline.api.trips.engine import RouteGenerationReport, TripMutationEngine
from tripline.api.trips.locations import (
    StopLocation,
    TimelineEntryRef,
    Waypoint,
    location_from_fields,
)
from tripline.api.trips.segment_cache import SegmentCache, SegmentRecord
from tripline.api.trips.stop_store import ResolvedStop, StopStore

__all__ = [
    "RouteGenerationReport",
    "TripMutationEngine",
    "StopLocation",
    "TimelineEntryRef",
    "Waypoint",
    "location_from_fields",
    "SegmentCache",
    "SegmentRecord",
    "ResolvedStop",
    "StopStore",
]
