"""
Tests for StopStore -- position bookkeeping for a trip's ordered stops.

Every multi-row move is staged through negative positions, so these tests
lean on the UNIQUE(trip_id, position) constraint: a collision would raise
IntegrityError out of SQLite before the contiguity check ever runs.
"""

import pytest

from tripline.api.errors import NotFoundError, PositionInvariantError, ValidationError
from tripline.api.trips.locations import TimelineEntryRef, Waypoint
from tripline.api.trips.stop_store import StopStore, _require_permutation
from tripline.api.tests.conftest import make_timeline_entry, make_trip


async def _insert(session_factory, trip_id, position=None, name=None):
    async with session_factory() as session, session.begin():
        stop = await StopStore(session).insert(
            trip_id, Waypoint(lng=-121.3, lat=44.05, name=name), position
        )
    return stop


async def _positions(session_factory, trip_id):
    async with session_factory() as session:
        return [(s.name, s.position) for s in await StopStore(session).load_resolved(trip_id)]


class TestInsert:
    async def test_append_to_empty_trip_gets_position_zero(self, session_factory):
        trip = await make_trip(session_factory)
        stop = await _insert(session_factory, trip.id)
        assert stop.position == 0

    async def test_append_goes_to_end(self, session_factory):
        trip = await make_trip(session_factory)
        for name in "ABC":
            await _insert(session_factory, trip.id, name=name)
        assert await _positions(session_factory, trip.id) == [("A", 0), ("B", 1), ("C", 2)]

    async def test_insert_in_middle_shifts_followers(self, session_factory):
        trip = await make_trip(session_factory)
        for name in "ABC":
            await _insert(session_factory, trip.id, name=name)

        await _insert(session_factory, trip.id, position=1, name="D")

        assert await _positions(session_factory, trip.id) == [("A", 0), ("D", 1), ("B", 2), ("C", 3)]

    async def test_insert_at_front(self, session_factory):
        trip = await make_trip(session_factory)
        for name in "AB":
            await _insert(session_factory, trip.id, name=name)

        await _insert(session_factory, trip.id, position=0, name="Z")

        assert await _positions(session_factory, trip.id) == [("Z", 0), ("A", 1), ("B", 2)]

    async def test_position_past_end_is_clamped_to_append(self, session_factory):
        trip = await make_trip(session_factory)
        await _insert(session_factory, trip.id, name="A")

        stop = await _insert(session_factory, trip.id, position=40, name="B")

        assert stop.position == 1

    async def test_negative_position_rejected(self, session_factory):
        trip = await make_trip(session_factory)
        with pytest.raises(ValidationError):
            await _insert(session_factory, trip.id, position=-1)

    async def test_missing_timeline_entry_rejected_without_shifting(self, session_factory):
        trip = await make_trip(session_factory)
        for name in "AB":
            await _insert(session_factory, trip.id, name=name)

        with pytest.raises(NotFoundError):
            async with session_factory() as session, session.begin():
                await StopStore(session).insert(trip.id, TimelineEntryRef(9999), 0)

        assert await _positions(session_factory, trip.id) == [("A", 0), ("B", 1)]

    async def test_timeline_entry_stop_resolves_entry_coordinate(self, session_factory):
        trip = await make_trip(session_factory)
        entry = await make_timeline_entry(session_factory, place_name="Smith Rock", latitude=44.36, longitude=-121.14)

        async with session_factory() as session, session.begin():
            await StopStore(session).insert(trip.id, TimelineEntryRef(entry.id))

        async with session_factory() as session:
            (stop,) = await StopStore(session).load_resolved(trip.id)
        assert stop.type == "timeline_entry"
        assert stop.name == "Smith Rock"
        assert (stop.lng, stop.lat) == (-121.14, 44.36)
        assert stop.timeline_entry_id == entry.id


class TestRemove:
    async def test_remove_middle_closes_gap(self, session_factory):
        trip = await make_trip(session_factory)
        stops = [await _insert(session_factory, trip.id, name=name) for name in "ABCD"]

        async with session_factory() as session, session.begin():
            removed = await StopStore(session).remove(trip.id, stops[1].id)

        assert removed.position == 1
        assert await _positions(session_factory, trip.id) == [("A", 0), ("C", 1), ("D", 2)]

    async def test_remove_last_stop_leaves_empty_trip(self, session_factory):
        trip = await make_trip(session_factory)
        stop = await _insert(session_factory, trip.id)

        async with session_factory() as session, session.begin():
            await StopStore(session).remove(trip.id, stop.id)

        assert await _positions(session_factory, trip.id) == []

    async def test_remove_stop_of_another_trip_is_not_found(self, session_factory):
        trip = await make_trip(session_factory)
        other = await make_trip(session_factory, name="Other")
        stop = await _insert(session_factory, other.id)

        with pytest.raises(NotFoundError):
            async with session_factory() as session, session.begin():
                await StopStore(session).remove(trip.id, stop.id)


class TestReorder:
    async def test_reorder_assigns_positions_in_list_order(self, session_factory):
        trip = await make_trip(session_factory)
        a, b, c = [await _insert(session_factory, trip.id, name=name) for name in "ABC"]

        async with session_factory() as session, session.begin():
            order = await StopStore(session).reorder(trip.id, [c.id, a.id, b.id])

        assert order == [c.id, a.id, b.id]
        assert await _positions(session_factory, trip.id) == [("C", 0), ("A", 1), ("B", 2)]

    async def test_reorder_identity_is_a_no_op(self, session_factory):
        trip = await make_trip(session_factory)
        stops = [await _insert(session_factory, trip.id, name=name) for name in "AB"]

        async with session_factory() as session, session.begin():
            await StopStore(session).reorder(trip.id, [s.id for s in stops])

        assert await _positions(session_factory, trip.id) == [("A", 0), ("B", 1)]

    async def test_reorder_of_empty_trip(self, session_factory):
        trip = await make_trip(session_factory)
        async with session_factory() as session, session.begin():
            assert await StopStore(session).reorder(trip.id, []) == []


class TestRequirePermutation:
    def test_accepts_permutation(self):
        _require_permutation(1, [1, 2, 3], [3, 1, 2])

    def test_rejects_missing_id(self):
        with pytest.raises(ValidationError):
            _require_permutation(1, [1, 2, 3], [1, 2])

    def test_rejects_duplicates(self):
        with pytest.raises(ValidationError) as exc_info:
            _require_permutation(1, [1, 2, 3], [1, 1, 2])
        assert exc_info.value.context["duplicate_ids"] == [1]

    def test_rejects_foreign_ids(self):
        with pytest.raises(ValidationError) as exc_info:
            _require_permutation(1, [1, 2, 3], [1, 2, 99])
        assert exc_info.value.context["foreign_ids"] == [99]


class TestNeighbors:
    async def test_neighbors(self, session_factory):
        trip = await make_trip(session_factory)
        a, b, c = [await _insert(session_factory, trip.id, name=name) for name in "ABC"]

        async with session_factory() as session:
            store = StopStore(session)
            assert await store.neighbors(trip.id, 1) == (a.id, c.id)
            assert await store.neighbors(trip.id, 0) == (None, b.id)
            assert await store.neighbors(trip.id, 2) == (b.id, None)

    async def test_resolve_reads_current_entry_coordinates(self, session_factory):
        trip = await make_trip(session_factory)
        entry = await make_timeline_entry(session_factory, longitude=-122.68, latitude=45.52)
        a = await _insert(session_factory, trip.id, name="A")
        async with session_factory() as session, session.begin():
            b = await StopStore(session).insert(trip.id, TimelineEntryRef(entry.id))

        async with session_factory() as session:
            resolved = await StopStore(session).resolve(trip.id, (a.id, b.id, 999))

        assert set(resolved) == {a.id, b.id}
        assert resolved[a.id].position == 0
        assert resolved[b.id].position == 1
        assert (resolved[b.id].lng, resolved[b.id].lat) == (-122.68, 45.52)
        assert resolved[b.id].timeline_entry_id == entry.id


class TestContiguity:
    async def test_gap_is_detected(self, session_factory):
        from sqlalchemy import update

        from tripline.api.db.models import TripStop

        trip = await make_trip(session_factory)
        for name in "AB":
            await _insert(session_factory, trip.id, name=name)

        with pytest.raises(PositionInvariantError):
            async with session_factory() as session, session.begin():
                await session.execute(
                    update(TripStop).where(TripStop.position == 1).values(position=5)
                )
                await StopStore(session).check_contiguous(trip.id)

        # Rolled back with the failed transaction
        assert await _positions(session_factory, trip.id) == [("A", 0), ("B", 1)]

    async def test_lock_trip_unknown_trip(self, session_factory):
        with pytest.raises(NotFoundError):
            async with session_factory() as session, session.begin():
                await StopStore(session).lock_trip(4242)
