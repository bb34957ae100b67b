"""
Trips router -- trip CRUD, stop mutations and route generation.

Endpoints (mounted under /api):
  GET    /trips                          -- list trips with stop counts, newest first
  POST   /trips                          -- create a trip
  GET    /trips/{id}                     -- trip detail (stops + assembled route)
  PUT    /trips/{id}                     -- partial update of name / description / color
  DELETE /trips/{id}                     -- delete trip, its stops and segments
  POST   /trips/{id}/stops               -- add a stop (timeline entry or lat/lng), optional position
  DELETE /trips/{id}/stops/{stop_id}     -- delete a stop
  PUT    /trips/{id}/stops/reorder       -- reorder with a full permutation of stop ids
  POST   /trips/{id}/routes              -- generate missing route segments (?force=true refetches all)

Stop and route mutations, and trip deletion, go through TripMutationEngine,
which owns position bookkeeping and segment invalidation. The rest of trip
CRUD talks to the session directly.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripline.api.config import settings
from tripline.api.db.models import Trip, TripStop
from tripline.api.db.session import get_db
from tripline.api.errors import NotFoundError
from tripline.api.routers._deps import Envelope, get_trip_engine, ok
from tripline.api.trips.detail import build_trip_detail, serialize_trip
from tripline.api.trips.engine import TripMutationEngine
from tripline.api.trips.locations import location_from_fields, location_of

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trips", tags=["trips"])

_COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TripCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, pattern=_COLOR_PATTERN)


class TripUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, pattern=_COLOR_PATTERN)


class StopCreate(BaseModel):
    timeline_entry_id: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    name: Optional[str] = Field(default=None, max_length=255)
    position: Optional[int] = None


class StopReorder(BaseModel):
    order: list[int]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _require_trip(session: AsyncSession, trip_id: int) -> Trip:
    trip = await session.get(Trip, trip_id)
    if trip is None:
        raise NotFoundError("Trip not found.", trip_id=trip_id)
    return trip


def _serialize_stop(stop: TripStop) -> dict:
    return {
        "id": stop.id,
        "trip_id": stop.trip_id,
        "position": stop.position,
        "type": location_of(stop).kind,
        "timeline_entry_id": stop.timeline_entry_id,
        "waypoint_lat": stop.waypoint_lat,
        "waypoint_lng": stop.waypoint_lng,
        "waypoint_name": stop.waypoint_name,
    }


# ---------------------------------------------------------------------------
# Trip CRUD
# ---------------------------------------------------------------------------


@router.get("", response_model=Envelope)
async def list_trips(request: Request, session: AsyncSession = Depends(get_db)) -> Envelope:
    stmt = (
        select(Trip, func.count(TripStop.id))
        .outerjoin(TripStop, TripStop.trip_id == Trip.id)
        .group_by(Trip.id)
        .order_by(Trip.created_at.desc(), Trip.id.desc())
    )
    rows = (await session.execute(stmt)).all()
    return ok(request, [{**serialize_trip(trip), "stop_count": count} for trip, count in rows])


@router.post("", response_model=Envelope, status_code=201)
async def create_trip(
    body: TripCreate,
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> Envelope:
    trip = Trip(
        name=body.name,
        description=body.description or None,
        color=body.color or settings.default_trip_color,
    )
    session.add(trip)
    await session.commit()

    logger.info("trip_created trip=%s", trip.id)
    return ok(request, {**serialize_trip(trip), "stop_count": 0})


@router.get("/{trip_id}", response_model=Envelope)
async def get_trip(trip_id: int, request: Request, session: AsyncSession = Depends(get_db)) -> Envelope:
    return ok(request, await build_trip_detail(session, trip_id))


@router.put("/{trip_id}", response_model=Envelope)
async def update_trip(
    trip_id: int,
    body: TripUpdate,
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> Envelope:
    trip = await _require_trip(session, trip_id)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    for key, value in changes.items():
        setattr(trip, key, value)
    if changes:
        trip.updated_at = datetime.now(timezone.utc)
    await session.commit()

    logger.info("trip_updated trip=%s fields=%s", trip_id, sorted(changes))
    return ok(request, serialize_trip(trip))


@router.delete("/{trip_id}", response_model=Envelope)
async def delete_trip(
    trip_id: int,
    request: Request,
    engine: TripMutationEngine = Depends(get_trip_engine),
) -> Envelope:
    await engine.delete_trip(trip_id)
    return ok(request, {"id": trip_id, "deleted": True})


# ---------------------------------------------------------------------------
# Stops
# ---------------------------------------------------------------------------


@router.post("/{trip_id}/stops", response_model=Envelope, status_code=201)
async def add_stop(
    trip_id: int,
    body: StopCreate,
    request: Request,
    engine: TripMutationEngine = Depends(get_trip_engine),
) -> Envelope:
    location = location_from_fields(
        timeline_entry_id=body.timeline_entry_id,
        lat=body.lat,
        lng=body.lng,
        name=body.name,
    )
    stop = await engine.add_stop(trip_id, location, body.position)
    return ok(request, _serialize_stop(stop))


@router.put("/{trip_id}/stops/reorder", response_model=Envelope)
async def reorder_stops(
    trip_id: int,
    body: StopReorder,
    request: Request,
    engine: TripMutationEngine = Depends(get_trip_engine),
) -> Envelope:
    order = await engine.reorder_stops(trip_id, body.order)
    return ok(request, {"trip_id": trip_id, "order": order})


@router.delete("/{trip_id}/stops/{stop_id}", response_model=Envelope)
async def delete_stop(
    trip_id: int,
    stop_id: int,
    request: Request,
    engine: TripMutationEngine = Depends(get_trip_engine),
) -> Envelope:
    await engine.remove_stop(trip_id, stop_id)
    return ok(request, {"trip_id": trip_id, "stop_id": stop_id, "deleted": True})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/{trip_id}/routes", response_model=Envelope)
async def generate_routes(
    trip_id: int,
    request: Request,
    force: bool = Query(default=False),
    profile: Optional[str] = Query(default=None),
    engine: TripMutationEngine = Depends(get_trip_engine),
    session: AsyncSession = Depends(get_db),
) -> Envelope:
    report = await engine.generate_routes(trip_id, force=force, profile=profile)
    detail = await build_trip_detail(session, trip_id)
    return ok(request, {**detail, "generation": report.to_dict()})
