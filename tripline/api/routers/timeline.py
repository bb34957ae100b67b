"""
Timeline router -- read access to imported location history, plus manual
relocation of an entry.

Endpoints (mounted under /api):
  GET   /timeline?start=YYYY-MM-DD&end=YYYY-MM-DD&limit=N  -- visits in range as a FeatureCollection
  GET   /timeline/bounds                                    -- date range, total and center of the history
  PATCH /timeline/{id}                                      -- move an entry (invalidates dependent routes)

Entries are written by the external import pipeline; this service never
creates or deletes them.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripline.api.config import settings
from tripline.api.db.models import TimelineEntry
from tripline.api.db.session import get_db
from tripline.api.errors import ValidationError
from tripline.api.routers._deps import Envelope, get_trip_engine, ok
from tripline.api.trips.engine import TripMutationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/timeline", tags=["timeline"])


class TimelineRelocate(BaseModel):
    lng: float = Field(ge=-180.0, le=180.0)
    lat: float = Field(ge=-90.0, le=90.0)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _visit_feature(entry: TimelineEntry) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [entry.longitude, entry.latitude]},
        "properties": {
            "id": entry.id,
            "type": entry.entry_type,
            "place_name": entry.place_name,
            "start_time": _iso(entry.start_time),
            "end_time": _iso(entry.end_time),
            "duration_seconds": (
                int((entry.end_time - entry.start_time).total_seconds())
                if entry.start_time and entry.end_time
                else None
            ),
            "semantic_type": entry.semantic_type,
            "activity_type": entry.activity_type,
            "distance_meters": entry.distance_meters,
            "edited": entry.edited,
        },
    }


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


@router.get("/bounds", response_model=Envelope)
async def timeline_bounds(request: Request, session: AsyncSession = Depends(get_db)) -> Envelope:
    stmt = select(
        func.min(TimelineEntry.start_time),
        func.max(TimelineEntry.end_time),
        func.count(TimelineEntry.id),
        func.avg(TimelineEntry.latitude),
        func.avg(TimelineEntry.longitude),
    )
    min_start, max_end, total, center_lat, center_lng = (await session.execute(stmt)).one()
    return ok(
        request,
        {
            "minDate": min_start.date().isoformat() if min_start else None,
            "maxDate": max_end.date().isoformat() if max_end else None,
            "total": total or 0,
            "center": [float(center_lng), float(center_lat)] if center_lat is not None else None,
        },
    )


@router.get("", response_model=Envelope)
async def list_visits(
    request: Request,
    start: date = Query(...),
    end: date = Query(...),
    limit: int = Query(default=5000, ge=1),
    session: AsyncSession = Depends(get_db),
) -> Envelope:
    if end < start:
        raise ValidationError("end must not be before start.", start=start.isoformat(), end=end.isoformat())

    stmt = (
        select(TimelineEntry)
        .where(
            TimelineEntry.entry_type == "visit",
            TimelineEntry.latitude.is_not(None),
            TimelineEntry.start_time >= _day_start(start),
            TimelineEntry.end_time <= _day_start(end) + timedelta(days=1),
        )
        .order_by(TimelineEntry.start_time)
        .limit(min(limit, settings.timeline_max_limit))
    )
    entries = (await session.execute(stmt)).scalars().all()
    return ok(
        request,
        {"type": "FeatureCollection", "features": [_visit_feature(e) for e in entries]},
    )


@router.patch("/{entry_id}", response_model=Envelope)
async def relocate_entry(
    entry_id: int,
    body: TimelineRelocate,
    request: Request,
    engine: TripMutationEngine = Depends(get_trip_engine),
) -> Envelope:
    entry = await engine.relocate_timeline_entry(entry_id, body.lng, body.lat)
    return ok(request, {"id": entry.id, "lng": entry.longitude, "lat": entry.latitude, "edited": entry.edited})
