"""
Stop location sources.

A stop is located either by a reference to a timeline entry (the coordinate
is looked up, not owned) or by an inline waypoint it owns. Never both, never
neither. The variant is a plain union of two frozen dataclasses; the schema
backs it with a CHECK constraint on trip_stops.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from tripline.api.db.models import TripStop
from tripline.api.errors import ValidationError


@dataclass(frozen=True)
class TimelineEntryRef:
    timeline_entry_id: int

    kind = "timeline_entry"


@dataclass(frozen=True)
class Waypoint:
    lng: float
    lat: float
    name: Optional[str] = None

    kind = "waypoint"

    def __post_init__(self) -> None:
        if not -180.0 <= self.lng <= 180.0 or not -90.0 <= self.lat <= 90.0:
            raise ValidationError(
                "Waypoint coordinate out of range.", lng=self.lng, lat=self.lat
            )


StopLocation = Union[TimelineEntryRef, Waypoint]


def location_from_fields(
    timeline_entry_id: Optional[int] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    name: Optional[str] = None,
) -> StopLocation:
    """Build the location variant from loose request fields.

    Raises ValidationError when no source or both sources are supplied, or
    when only half of a coordinate is given.
    """
    has_entry = timeline_entry_id is not None
    has_any_coord = lat is not None or lng is not None

    if has_entry and has_any_coord:
        raise ValidationError("Provide either timeline_entry_id or lat/lng, not both.")
    if has_entry:
        return TimelineEntryRef(timeline_entry_id=timeline_entry_id)
    if lat is None or lng is None:
        if has_any_coord:
            raise ValidationError("lat and lng must be provided together.")
        raise ValidationError("Provide timeline_entry_id or lat/lng.")
    return Waypoint(lng=lng, lat=lat, name=name or None)


def location_of(stop: TripStop) -> StopLocation:
    """Decode the location variant stored on a stop row."""
    if stop.timeline_entry_id is not None:
        return TimelineEntryRef(timeline_entry_id=stop.timeline_entry_id)
    return Waypoint(lng=stop.waypoint_lng, lat=stop.waypoint_lat, name=stop.waypoint_name)
