"""
Trip detail document: trip fields, stops with resolved coordinates, and the
cached route assembled as a GeoJSON FeatureCollection (one LineString feature
per segment, in stop order).
"""

from __future__ import annotations

from itertools import pairwise
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tripline.api.db.models import Trip, TripRouteSegment
from tripline.api.trips.segment_cache import SegmentCache
from tripline.api.trips.stop_store import ResolvedStop, StopStore

ROUTE_CLEAN = "clean"
ROUTE_DIRTY = "dirty"


def serialize_trip(trip: Trip) -> dict[str, Any]:
    return {
        "id": trip.id,
        "name": trip.name,
        "description": trip.description,
        "color": trip.color,
        "created_at": trip.created_at.isoformat() if trip.created_at else None,
        "updated_at": trip.updated_at.isoformat() if trip.updated_at else None,
    }


def _segment_feature(segment: TripRouteSegment) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "LineString", "coordinates": segment.route_geometry},
        "properties": {
            "from_stop_id": segment.from_stop_id,
            "to_stop_id": segment.to_stop_id,
            "distance_meters": segment.distance_meters,
            "duration_seconds": segment.duration_seconds,
            "profile": segment.profile,
            "fetched_at": segment.fetched_at.isoformat() if segment.fetched_at else None,
        },
    }


def route_state(stops: list[ResolvedStop], segments: list[TripRouteSegment]) -> tuple[str, list[list[int]]]:
    """Return ("clean" | "dirty", missing pairs) for the current stop order."""
    cached = {(s.from_stop_id, s.to_stop_id) for s in segments}
    missing = [[a.id, b.id] for a, b in pairwise(stops) if (a.id, b.id) not in cached]
    return (ROUTE_DIRTY if missing else ROUTE_CLEAN), missing


async def build_trip_detail(session: AsyncSession, trip_id: int) -> dict[str, Any]:
    """Assemble the detail document. Raises NotFoundError for an unknown trip."""
    store = StopStore(session)
    trip = await store.require_trip(trip_id)
    stops = await store.load_resolved(trip_id)
    segments = await SegmentCache(session).ordered_for_trip(trip_id)

    state, missing = route_state(stops, segments)

    return {
        **serialize_trip(trip),
        "stop_count": len(stops),
        "stops": [stop.to_dict() for stop in stops],
        "route": {
            "type": "FeatureCollection",
            "features": [_segment_feature(s) for s in segments],
            "summary": {
                "state": state,
                "missing_pairs": missing,
                "segment_count": len(segments),
                "distance_meters": sum(s.distance_meters for s in segments),
                "duration_seconds": sum(s.duration_seconds for s in segments),
            },
        },
    }
