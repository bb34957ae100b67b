"""
Shared test fixtures for the Tripline API test suite.

Provides:
- an in-memory SQLite database (aiosqlite, foreign keys on) per test
- a recording fake directions gateway (no network)
- the trip mutation engine wired to both
- async FastAPI test client with app.state injected (lifespan does not run)
- factory helpers for trips, timeline entries and stops
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker

# Ensure test env vars before any app imports
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SENTRY_DSN", "")
os.environ.setdefault("MAPBOX_TOKEN", "pk.test-token")

from tripline.api.db.engine import create_engine, create_schema  # noqa: E402
from tripline.api.db.models import TimelineEntry, Trip  # noqa: E402
from tripline.api.errors import RouteUnavailable  # noqa: E402
from tripline.api.routing.gateway import Coordinate, DirectionsGateway, RouteResult  # noqa: E402
from tripline.api.trips.engine import TripMutationEngine  # noqa: E402
from tripline.api.trips.locations import Waypoint  # noqa: E402
from tripline.api.trips.segment_cache import SegmentCache  # noqa: E402


# ---------------------------------------------------------------------------
# Fake directions provider
# ---------------------------------------------------------------------------

class FakeGateway(DirectionsGateway):
    """
    Directions gateway that never touches the network.

    Returns a straight two-point line per pair and records every call.
    `fail_on_call` makes the Nth call (1-based) raise RouteUnavailable;
    `on_fetch` runs before each result is returned, to simulate edits that
    land while a provider request is in flight.
    """

    name = "fake"
    profiles = frozenset({"driving", "walking", "cycling"})

    def __init__(self) -> None:
        super().__init__(timeout_s=1.0)
        self.calls: list[tuple[Coordinate, Coordinate, str]] = []
        self.fail_on_call: Optional[int] = None
        self.on_fetch: Optional[Callable[[int], Awaitable[None]]] = None

    async def fetch(self, origin: Coordinate, destination: Coordinate, profile: str = "driving") -> RouteResult:
        self.check_profile(profile)
        self.calls.append((origin, destination, profile))
        call_number = len(self.calls)
        if self.fail_on_call == call_number:
            raise RouteUnavailable("fake provider down", provider_code="NoRoute")
        if self.on_fetch is not None:
            await self.on_fetch(call_number)
        return RouteResult(
            geometry=[[origin.lng, origin.lat], [destination.lng, destination.lat]],
            distance_meters=1000.0,
            duration_seconds=60.0,
            profile=profile,
        )


# ---------------------------------------------------------------------------
# Database + engine
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_engine():
    engine = create_engine("sqlite://")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def trip_engine(session_factory, gateway):
    return TripMutationEngine(session_factory, gateway, default_profile="driving")


# ---------------------------------------------------------------------------
# FastAPI test client
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_redis():
    """In-memory mock Redis client for rate limiter tests."""
    redis = AsyncMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[None, 0, None, None])
    redis.pipeline = MagicMock(return_value=pipe)
    redis.ping = AsyncMock()
    return redis


@pytest.fixture
async def app(db_engine, session_factory, trip_engine):
    """The FastAPI app with state injected in place of the lifespan."""
    from tripline.api.config import settings
    from tripline.api.main import app as _app

    _app.state.redis = None
    _app.state.settings = settings
    _app.state.db_engine = db_engine
    _app.state.db_session_factory = session_factory
    _app.state.trip_engine = trip_engine
    return _app


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

async def make_trip(session_factory, **overrides: Any) -> Trip:
    trip = Trip(
        name=overrides.pop("name", "Cascades loop"),
        description=overrides.pop("description", None),
        color=overrides.pop("color", "#e11d48"),
        **overrides,
    )
    async with session_factory() as session, session.begin():
        session.add(trip)
    return trip


async def make_timeline_entry(session_factory, **overrides: Any) -> TimelineEntry:
    start = overrides.pop("start_time", datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc))
    entry = TimelineEntry(
        entry_type=overrides.pop("entry_type", "visit"),
        start_time=start,
        end_time=overrides.pop("end_time", start + timedelta(hours=1)),
        latitude=overrides.pop("latitude", 44.0582),
        longitude=overrides.pop("longitude", -121.3153),
        place_name=overrides.pop("place_name", "Bend"),
        semantic_type=overrides.pop("semantic_type", "UNKNOWN"),
        **overrides,
    )
    async with session_factory() as session, session.begin():
        session.add(entry)
    return entry


async def add_waypoints(engine: TripMutationEngine, trip_id: int, count: int) -> list[int]:
    """Append `count` waypoints and return their stop ids in order."""
    ids = []
    for i in range(count):
        stop = await engine.add_stop(
            trip_id, Waypoint(lng=-121.0 + i * 0.1, lat=44.0 + i * 0.1, name=f"Stop {i}")
        )
        ids.append(stop.id)
    return ids


async def ordered_stop_ids(session_factory, trip_id: int) -> list[int]:
    from tripline.api.trips.stop_store import StopStore

    async with session_factory() as session:
        return await StopStore(session).ordered_ids(trip_id)


async def stop_positions(session_factory, trip_id: int) -> dict[int, int]:
    from tripline.api.trips.stop_store import StopStore

    async with session_factory() as session:
        return {stop.id: stop.position for stop in await StopStore(session).load_resolved(trip_id)}


async def cached_pairs(session_factory, trip_id: int) -> set[tuple[int, int]]:
    async with session_factory() as session:
        return set(await SegmentCache(session).keys(trip_id))
