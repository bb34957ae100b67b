"""
Trip mutation engine.

Orchestrates stop insert / delete / reorder against the stop store, decides
which cached route segments stop being valid, and drives the route gateway to
fill in missing segments.

Cache invalidation rules (segments are keyed by stop id, not position):

  insert at P   -- segments touching the new stop, plus the one segment that
                   joined the former neighbours now at P-1 and P+1.
  delete        -- segments touching the removed stop. The neighbours that
                   become adjacent never had a valid cached segment, so
                   compaction cannot revive a stale hit.
  reorder       -- every segment of the trip. A permutation can change all
                   adjacencies at once; no diffing.
  relocate      -- segments touching any stop that references the moved
                   timeline entry.

Each mutation runs in one transaction holding the trip row lock, plus an
in-process asyncio.Lock per trip. Route generation never holds a transaction
across a provider call: it snapshots the stops, fetches pair by pair, and
stores every result in its own short transaction after re-checking that the
pair is still adjacent and both endpoints still sit where the snapshot had
them. The first stale result ends the run; the caller re-runs to pick up the
new stop order.

Per-trip locks live only while someone holds or waits on them.

Per-trip state is implicit -- "clean" when every adjacent pair has a cached
segment, "dirty" otherwise (see detail.route_state).
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import pairwise
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from tripline.api.db.models import TimelineEntry, Trip, TripRouteSegment, TripStop
from tripline.api.errors import NotFoundError, RouteUnavailable, ValidationError
from tripline.api.routing.gateway import Coordinate, DirectionsGateway
from tripline.api.trips.locations import StopLocation
from tripline.api.trips.segment_cache import SegmentCache, SegmentRecord
from tripline.api.trips.stop_store import ResolvedStop, StopStore

logger = logging.getLogger(__name__)


@dataclass
class RouteGenerationReport:
    trip_id: int
    profile: str
    force: bool
    pairs: int = 0
    fetched: int = 0
    skipped: int = 0
    discarded: list[tuple[int, int]] = field(default_factory=list)
    stale: bool = False

    def to_dict(self) -> dict:
        return {
            "trip_id": self.trip_id,
            "profile": self.profile,
            "force": self.force,
            "pairs": self.pairs,
            "fetched": self.fetched,
            "skipped": self.skipped,
            "discarded": [list(pair) for pair in self.discarded],
            "stale": self.stale,
        }


class TripMutationEngine:
    """
    Usage:
        engine = TripMutationEngine(session_factory, build_gateway(settings))
        stop = await engine.add_stop(trip_id, Waypoint(lng=-121.3, lat=44.05))
        await engine.reorder_stops(trip_id, [c, a, b])
        report = await engine.generate_routes(trip_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: DirectionsGateway,
        *,
        default_profile: str = "driving",
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._default_profile = default_profile
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: Counter[int] = Counter()

    @asynccontextmanager
    async def _trip_lock(self, trip_id: int):
        """Per-trip mutual exclusion. The lock is dropped once nobody holds or waits on it."""
        lock = self._locks.setdefault(trip_id, asyncio.Lock())
        self._lock_users[trip_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[trip_id] -= 1
            if not self._lock_users[trip_id]:
                del self._lock_users[trip_id]
                del self._locks[trip_id]

    # ------------------------------------------------------------------
    # Stop mutations
    # ------------------------------------------------------------------

    async def add_stop(
        self,
        trip_id: int,
        location: StopLocation,
        position: Optional[int] = None,
    ) -> TripStop:
        async with self._trip_lock(trip_id):
            async with self._session_factory() as session, session.begin():
                stops = StopStore(session)
                cache = SegmentCache(session)
                await stops.lock_trip(trip_id)

                stop = await stops.insert(trip_id, location, position)
                removed = await cache.invalidate(trip_id, stop.id)

                before_id, after_id = await stops.neighbors(trip_id, stop.position)
                if before_id is not None and after_id is not None:
                    removed += await cache.invalidate_pair(trip_id, before_id, after_id)

        logger.info(
            "stop_added trip=%s stop=%s position=%s source=%s segments_invalidated=%d",
            trip_id,
            stop.id,
            stop.position,
            location.kind,
            removed,
        )
        return stop

    async def remove_stop(self, trip_id: int, stop_id: int) -> TripStop:
        async with self._trip_lock(trip_id):
            async with self._session_factory() as session, session.begin():
                stops = StopStore(session)
                cache = SegmentCache(session)
                await stops.lock_trip(trip_id)

                # FK cascade would drop these too; deleting here keeps the
                # count observable and does not depend on the backend.
                removed = await cache.invalidate(trip_id, stop_id)
                stop = await stops.remove(trip_id, stop_id)

        logger.info(
            "stop_removed trip=%s stop=%s position=%s segments_invalidated=%d",
            trip_id,
            stop_id,
            stop.position,
            removed,
        )
        return stop

    async def reorder_stops(self, trip_id: int, ordered_ids: list[int]) -> list[int]:
        async with self._trip_lock(trip_id):
            async with self._session_factory() as session, session.begin():
                stops = StopStore(session)
                cache = SegmentCache(session)
                await stops.lock_trip(trip_id)

                removed = await cache.invalidate_all(trip_id)
                order = await stops.reorder(trip_id, ordered_ids)

        logger.info(
            "stops_reordered trip=%s count=%d segments_invalidated=%d",
            trip_id,
            len(order),
            removed,
        )
        return order

    async def delete_trip(self, trip_id: int) -> None:
        async with self._trip_lock(trip_id):
            async with self._session_factory() as session, session.begin():
                await StopStore(session).lock_trip(trip_id)
                # Explicit child deletes so the cascade does not depend on backend FK support.
                segments = await session.execute(
                    delete(TripRouteSegment).where(TripRouteSegment.trip_id == trip_id)
                )
                stops = await session.execute(delete(TripStop).where(TripStop.trip_id == trip_id))
                await session.execute(delete(Trip).where(Trip.id == trip_id))

        logger.info(
            "trip_deleted trip=%s stops=%d segments=%d",
            trip_id,
            stops.rowcount,
            segments.rowcount,
        )

    # ------------------------------------------------------------------
    # Timeline relocation
    # ------------------------------------------------------------------

    async def relocate_timeline_entry(self, entry_id: int, lng: float, lat: float) -> TimelineEntry:
        """Move a timeline entry and drop cached routes that used its old spot."""
        if not -180.0 <= lng <= 180.0 or not -90.0 <= lat <= 90.0:
            raise ValidationError("Coordinate out of range.", lng=lng, lat=lat)

        async with self._session_factory() as session, session.begin():
            entry = await session.get(TimelineEntry, entry_id)
            if entry is None:
                raise NotFoundError("Timeline entry not found.", timeline_entry_id=entry_id)

            entry.longitude = lng
            entry.latitude = lat
            entry.edited = True
            entry.updated_at = datetime.now(timezone.utc)

            stmt = (
                select(TripStop.trip_id, TripStop.id)
                .where(TripStop.timeline_entry_id == entry_id)
                .order_by(TripStop.trip_id)
            )
            referencing = (await session.execute(stmt)).all()

            cache = SegmentCache(session)
            stops = StopStore(session)
            removed = 0
            for trip_id in sorted({trip_id for trip_id, _ in referencing}):
                await stops.lock_trip(trip_id)
            for trip_id, stop_id in referencing:
                removed += await cache.invalidate(trip_id, stop_id)

        logger.info(
            "timeline_entry_relocated entry=%s stops=%d segments_invalidated=%d",
            entry_id,
            len(referencing),
            removed,
        )
        return entry

    # ------------------------------------------------------------------
    # Route generation
    # ------------------------------------------------------------------

    async def generate_routes(
        self,
        trip_id: int,
        *,
        force: bool = False,
        profile: Optional[str] = None,
    ) -> RouteGenerationReport:
        """
        Fill the segment cache for every adjacent stop pair, in position order.

        Cached pairs with a matching profile are skipped unless `force`. The
        first provider failure aborts with RouteUnavailable naming the pair;
        segments stored before it stay cached, so retrying resumes there.
        """
        profile = profile or self._default_profile
        self._gateway.check_profile(profile)

        async with self._trip_lock(trip_id):
            resolved, cached = await self._snapshot(trip_id)

            if len(resolved) < 2:
                raise ValidationError(
                    "Need at least 2 stops to generate routes.",
                    trip_id=trip_id,
                    stop_count=len(resolved),
                )
            missing = [stop.id for stop in resolved if not stop.has_coordinate]
            if missing:
                raise ValidationError(
                    "Some stops have no coordinate.", trip_id=trip_id, stop_ids=missing
                )

            report = RouteGenerationReport(trip_id=trip_id, profile=profile, force=force)
            for origin, destination in pairwise(resolved):
                report.pairs += 1
                if not force and cached.get((origin.id, destination.id)) == profile:
                    report.skipped += 1
                    continue

                route = await self._fetch_pair(trip_id, origin, destination, profile, report)
                stored = await self._store_segment(
                    origin,
                    destination,
                    SegmentRecord(
                        trip_id=trip_id,
                        from_stop_id=origin.id,
                        to_stop_id=destination.id,
                        geometry=route.geometry,
                        distance_meters=route.distance_meters,
                        duration_seconds=route.duration_seconds,
                        profile=route.profile,
                    ),
                )
                if not stored:
                    # The rest of the snapshot is suspect too
                    report.discarded.append((origin.id, destination.id))
                    report.stale = True
                    break
                report.fetched += 1

        logger.info(
            "routes_generated trip=%s pairs=%d fetched=%d skipped=%d discarded=%d stale=%s force=%s",
            trip_id,
            report.pairs,
            report.fetched,
            report.skipped,
            len(report.discarded),
            report.stale,
            force,
        )
        return report

    async def _snapshot(self, trip_id: int) -> tuple[list[ResolvedStop], dict[tuple[int, int], str]]:
        async with self._session_factory() as session:
            stops = StopStore(session)
            await stops.require_trip(trip_id)
            resolved = await stops.load_resolved(trip_id)
            cached = await SegmentCache(session).keys(trip_id)
        return resolved, cached

    async def _fetch_pair(
        self,
        trip_id: int,
        origin: ResolvedStop,
        destination: ResolvedStop,
        profile: str,
        report: RouteGenerationReport,
    ):
        try:
            return await self._gateway.fetch(
                Coordinate(lng=origin.lng, lat=origin.lat),
                Coordinate(lng=destination.lng, lat=destination.lat),
                profile,
            )
        except RouteUnavailable as exc:
            logger.warning(
                "route_unavailable trip=%s from=%s to=%s reason=%s",
                trip_id,
                origin.id,
                destination.id,
                exc.message,
            )
            raise RouteUnavailable(
                exc.message,
                **{
                    **exc.context,
                    "trip_id": trip_id,
                    "from_stop_id": origin.id,
                    "to_stop_id": destination.id,
                    "fetched": report.fetched,
                },
            ) from exc

    async def _store_segment(
        self, origin: ResolvedStop, destination: ResolvedStop, record: SegmentRecord
    ) -> bool:
        """
        Upsert one segment in its own transaction.

        The result is dropped when the pair is no longer adjacent or when
        either endpoint no longer sits where it was when the route was fetched.
        """
        async with self._session_factory() as session, session.begin():
            stops = StopStore(session)
            await stops.lock_trip(record.trip_id)
            current = await stops.resolve(record.trip_id, (origin.id, destination.id))
            reason = _stale_reason(origin, destination, current)
            if reason:
                logger.warning(
                    "segment_discarded trip=%s from=%s to=%s reason=%s",
                    record.trip_id,
                    record.from_stop_id,
                    record.to_stop_id,
                    reason,
                )
                return False
            await SegmentCache(session).upsert(record)
        return True


def _stale_reason(
    origin: ResolvedStop, destination: ResolvedStop, current: dict[int, ResolvedStop]
) -> Optional[str]:
    now_origin = current.get(origin.id)
    now_destination = current.get(destination.id)
    if now_origin is None or now_destination is None:
        return "no_longer_adjacent"
    if now_destination.position != now_origin.position + 1:
        return "no_longer_adjacent"
    for before, after in ((origin, now_origin), (destination, now_destination)):
        if (before.lng, before.lat) != (after.lng, after.lat):
            return "moved"
    return None
