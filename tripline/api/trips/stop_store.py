"""
Stop store -- the ordered list of stops for a trip.

Positions are unique per trip (UNIQUE(trip_id, position)) and contiguous
(0..N-1). Both PostgreSQL and SQLite check a non-deferred unique constraint
row by row, so a plain `position = position + 1` can collide with a
neighbour half-way through the statement. Every multi-row position change
therefore goes through the negative range first:

    stage:   p  ->  -(p + 1)            disjoint from 0..N-1, still unique
    commit:  s  ->  -s - 1 + delta      back into the non-negative range

Each step is one set-based UPDATE. Reorder uses the same staging, with the
staged value taken from the requested order instead of the old position.

All methods expect to run inside a transaction opened by the caller (the
trip mutation engine) and never commit themselves.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripline.api.db.models import TimelineEntry, Trip, TripStop
from tripline.api.errors import NotFoundError, PositionInvariantError, ValidationError
from tripline.api.trips.locations import StopLocation, TimelineEntryRef, Waypoint

logger = logging.getLogger(__name__)

_DEFAULT_WAYPOINT_NAME = "Waypoint"


@dataclass(frozen=True)
class ResolvedStop:
    """A stop joined with its location source, ready for routing or display."""

    id: int
    position: int
    type: str
    name: str
    lng: Optional[float]
    lat: Optional[float]
    timeline_entry_id: Optional[int] = None

    @property
    def has_coordinate(self) -> bool:
        return self.lng is not None and self.lat is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position,
            "timeline_entry_id": self.timeline_entry_id,
            "name": self.name,
            "lng": self.lng,
            "lat": self.lat,
            "type": self.type,
        }


class StopStore:
    """Ordered stop collection operations bound to one session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def lock_trip(self, trip_id: int) -> Trip:
        """Load the trip row FOR UPDATE, serializing writers on this trip.

        SQLite has no row locks; the clause is dropped by the dialect there.
        """
        stmt = select(Trip).where(Trip.id == trip_id).with_for_update()
        trip = (await self._session.execute(stmt)).scalars().first()
        if trip is None:
            raise NotFoundError("Trip not found.", trip_id=trip_id)
        return trip

    async def require_trip(self, trip_id: int) -> Trip:
        trip = await self._session.get(Trip, trip_id)
        if trip is None:
            raise NotFoundError("Trip not found.", trip_id=trip_id)
        return trip

    async def count(self, trip_id: int) -> int:
        stmt = select(func.count(TripStop.id)).where(TripStop.trip_id == trip_id)
        return (await self._session.execute(stmt)).scalar() or 0

    async def ordered_ids(self, trip_id: int) -> list[int]:
        stmt = (
            select(TripStop.id)
            .where(TripStop.trip_id == trip_id)
            .order_by(TripStop.position)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def get(self, trip_id: int, stop_id: int) -> TripStop:
        stmt = select(TripStop).where(TripStop.id == stop_id, TripStop.trip_id == trip_id)
        stop = (await self._session.execute(stmt)).scalars().first()
        if stop is None:
            raise NotFoundError("Stop not found.", trip_id=trip_id, stop_id=stop_id)
        return stop

    async def neighbors(self, trip_id: int, position: int) -> tuple[Optional[int], Optional[int]]:
        """Return the stop ids at position-1 and position+1 (None where absent)."""
        stmt = select(TripStop.position, TripStop.id).where(
            TripStop.trip_id == trip_id,
            TripStop.position.in_((position - 1, position + 1)),
        )
        by_position = dict((await self._session.execute(stmt)).all())
        return by_position.get(position - 1), by_position.get(position + 1)

    async def load_resolved(self, trip_id: int) -> list[ResolvedStop]:
        """Stops in position order with coordinates resolved from their source."""
        stmt = _resolved_query(trip_id).order_by(TripStop.position)
        return [_resolve(stop, entry) for stop, entry in (await self._session.execute(stmt)).all()]

    async def resolve(self, trip_id: int, stop_ids: Iterable[int]) -> dict[int, ResolvedStop]:
        """Current resolved state of the given stops, keyed by id. Missing stops are absent."""
        stmt = _resolved_query(trip_id).where(TripStop.id.in_(list(stop_ids)))
        return {
            stop.id: _resolve(stop, entry)
            for stop, entry in (await self._session.execute(stmt)).all()
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def insert(
        self,
        trip_id: int,
        location: StopLocation,
        position: Optional[int] = None,
    ) -> TripStop:
        """
        Insert a stop at `position`, or append when position is None.

        Stops at or after the target move up by one first. A position past the
        end is clamped to an append so the sequence never gets a gap.
        """
        if position is not None and position < 0:
            raise ValidationError("Position must be zero or greater.", trip_id=trip_id, position=position)

        stop = TripStop(trip_id=trip_id)
        if isinstance(location, TimelineEntryRef):
            entry = await self._session.get(TimelineEntry, location.timeline_entry_id)
            if entry is None:
                raise NotFoundError(
                    "Timeline entry not found.",
                    timeline_entry_id=location.timeline_entry_id,
                )
            stop.timeline_entry_id = location.timeline_entry_id
        elif isinstance(location, Waypoint):
            stop.waypoint_lng = location.lng
            stop.waypoint_lat = location.lat
            stop.waypoint_name = location.name
        else:
            raise ValidationError("Unsupported stop location.", trip_id=trip_id)

        count = await self.count(trip_id)
        if position is None or position >= count:
            position = count
        else:
            await self._shift(trip_id, from_position=position, delta=1)

        stop.position = position
        self._session.add(stop)
        await self._session.flush()
        await self.check_contiguous(trip_id)
        return stop

    async def remove(self, trip_id: int, stop_id: int) -> TripStop:
        """Delete a stop and close the gap it leaves. Returns the removed row."""
        stop = await self.get(trip_id, stop_id)
        removed_position = stop.position

        await self._session.execute(
            delete(TripStop)
            .where(TripStop.id == stop_id)
            .execution_options(synchronize_session=False)
        )
        self._session.expunge(stop)
        await self._shift(trip_id, from_position=removed_position + 1, delta=-1)
        await self.check_contiguous(trip_id)
        return stop

    async def reorder(self, trip_id: int, ordered_ids: list[int]) -> list[int]:
        """Assign positions so the trip's stops follow `ordered_ids` exactly."""
        current = await self.ordered_ids(trip_id)
        _require_permutation(trip_id, current, ordered_ids)

        if not ordered_ids:
            return []

        staged = {stop_id: -(index + 1) for index, stop_id in enumerate(ordered_ids)}
        await self._session.execute(
            update(TripStop)
            .where(TripStop.trip_id == trip_id)
            .values(position=case(staged, value=TripStop.id))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(
            update(TripStop)
            .where(TripStop.trip_id == trip_id, TripStop.position < 0)
            .values(position=-TripStop.position - 1)
            .execution_options(synchronize_session=False)
        )
        await self.check_contiguous(trip_id)
        return list(ordered_ids)

    async def check_contiguous(self, trip_id: int) -> None:
        """Raise PositionInvariantError unless positions are exactly 0..N-1."""
        stmt = select(TripStop.position).where(TripStop.trip_id == trip_id)
        positions = sorted((await self._session.execute(stmt)).scalars().all())
        if positions != list(range(len(positions))):
            logger.error("position_invariant_broken trip=%s positions=%s", trip_id, positions)
            raise PositionInvariantError(
                "Stop positions are not contiguous.", trip_id=trip_id
            )

    async def _shift(self, trip_id: int, *, from_position: int, delta: int) -> None:
        """Move every stop at position >= from_position by delta, staged through negatives."""
        await self._session.execute(
            update(TripStop)
            .where(TripStop.trip_id == trip_id, TripStop.position >= from_position)
            .values(position=-(TripStop.position + 1))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(
            update(TripStop)
            .where(TripStop.trip_id == trip_id, TripStop.position < 0)
            .values(position=-TripStop.position - 1 + delta)
            .execution_options(synchronize_session=False)
        )


def _require_permutation(trip_id: int, current: list[int], requested: list[int]) -> None:
    if len(requested) != len(current):
        raise ValidationError(
            f"Order must list all {len(current)} stops, got {len(requested)}.",
            trip_id=trip_id,
        )
    duplicates = sorted(stop_id for stop_id, n in Counter(requested).items() if n > 1)
    if duplicates:
        raise ValidationError(
            "Order contains duplicate stop ids.", trip_id=trip_id, duplicate_ids=duplicates
        )
    foreign = sorted(set(requested) - set(current))
    if foreign:
        raise ValidationError(
            "Order contains stops that do not belong to this trip.",
            trip_id=trip_id,
            foreign_ids=foreign,
        )


def _resolved_query(trip_id: int):
    return (
        select(TripStop, TimelineEntry)
        .outerjoin(TimelineEntry, TripStop.timeline_entry_id == TimelineEntry.id)
        .where(TripStop.trip_id == trip_id)
    )


def _resolve(stop: TripStop, entry: Optional[TimelineEntry]) -> ResolvedStop:
    if stop.timeline_entry_id is not None:
        return ResolvedStop(
            id=stop.id,
            position=stop.position,
            type=TimelineEntryRef.kind,
            name=(entry.place_name if entry else None) or _DEFAULT_WAYPOINT_NAME,
            lng=entry.longitude if entry else None,
            lat=entry.latitude if entry else None,
            timeline_entry_id=stop.timeline_entry_id,
        )
    return ResolvedStop(
        id=stop.id,
        position=stop.position,
        type=Waypoint.kind,
        name=stop.waypoint_name or _DEFAULT_WAYPOINT_NAME,
        lng=stop.waypoint_lng,
        lat=stop.waypoint_lat,
    )
