"""
Segment cache -- durable route segments between adjacent stops.

Key:    (trip_id, from_stop_id, to_stop_id)
Value:  GeoJSON LineString coordinates, distance (m), duration (s),
        travel profile, fetched_at

A segment is only valid while from_stop sits directly before to_stop. There is
no staleness flag: the trip mutation engine deletes entries the moment their
adjacency changes, so whatever is in the table can be served as-is.

Methods run inside the caller's transaction and never commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from tripline.api.db.models import TripRouteSegment, TripStop

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class SegmentRecord:
    trip_id: int
    from_stop_id: int
    to_stop_id: int
    geometry: list[list[float]]
    distance_meters: float
    duration_seconds: float
    profile: str


class SegmentCache:
    """Route segment cache operations bound to one session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, trip_id: int, from_stop_id: int, to_stop_id: int) -> TripRouteSegment | None:
        """Return the cached segment for this exact pair, or None on a miss."""
        stmt = select(TripRouteSegment).where(
            TripRouteSegment.trip_id == trip_id,
            TripRouteSegment.from_stop_id == from_stop_id,
            TripRouteSegment.to_stop_id == to_stop_id,
        )
        return (await self._session.execute(stmt)).scalars().first()

    async def keys(self, trip_id: int) -> dict[tuple[int, int], str]:
        """Map every cached (from, to) pair of the trip to its profile."""
        stmt = select(
            TripRouteSegment.from_stop_id,
            TripRouteSegment.to_stop_id,
            TripRouteSegment.profile,
        ).where(TripRouteSegment.trip_id == trip_id)
        return {(f, t): profile for f, t, profile in (await self._session.execute(stmt)).all()}

    async def ordered_for_trip(self, trip_id: int) -> list[TripRouteSegment]:
        """Segments of a trip ordered by the position of their origin stop."""
        origin = aliased(TripStop)
        stmt = (
            select(TripRouteSegment)
            .join(origin, origin.id == TripRouteSegment.from_stop_id)
            .where(TripRouteSegment.trip_id == trip_id)
            .order_by(origin.position)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def invalidate(self, trip_id: int, stop_id: int) -> int:
        """Drop every segment that has `stop_id` as an endpoint."""
        return await self._delete(
            trip_id,
            or_(
                TripRouteSegment.from_stop_id == stop_id,
                TripRouteSegment.to_stop_id == stop_id,
            ),
        )

    async def invalidate_pair(self, trip_id: int, from_stop_id: int, to_stop_id: int) -> int:
        """Drop the single segment joining from_stop -> to_stop."""
        return await self._delete(
            trip_id,
            TripRouteSegment.from_stop_id == from_stop_id,
            TripRouteSegment.to_stop_id == to_stop_id,
        )

    async def invalidate_all(self, trip_id: int) -> int:
        return await self._delete(trip_id)

    async def upsert(self, record: SegmentRecord) -> None:
        """Insert or replace the segment keyed by (trip, from, to)."""
        dialect = self._session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Segment upsert is not supported on dialect {dialect!r}")

        stmt = insert(TripRouteSegment).values(
            trip_id=record.trip_id,
            from_stop_id=record.from_stop_id,
            to_stop_id=record.to_stop_id,
            route_geometry=record.geometry,
            distance_meters=record.distance_meters,
            duration_seconds=record.duration_seconds,
            profile=record.profile,
            fetched_at=datetime.now(timezone.utc),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["trip_id", "from_stop_id", "to_stop_id"],
            set_={
                "route_geometry": stmt.excluded.route_geometry,
                "distance_meters": stmt.excluded.distance_meters,
                "duration_seconds": stmt.excluded.duration_seconds,
                "profile": stmt.excluded.profile,
                "fetched_at": stmt.excluded.fetched_at,
            },
        )
        await self._session.execute(stmt)

    async def _delete(self, trip_id: int, *criteria) -> int:
        result = await self._session.execute(
            delete(TripRouteSegment)
            .where(TripRouteSegment.trip_id == trip_id, *criteria)
            .execution_options(synchronize_session=False)
        )
        removed = result.rowcount or 0
        if removed:
            logger.debug("segments_invalidated trip=%s count=%d", trip_id, removed)
        return removed
