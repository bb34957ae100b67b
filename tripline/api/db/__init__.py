"""
SQLAlchemy async database module.

Re-exports engine, session, and model utilities for the FastAPI service.
"""

from tripline.api.db.engine import create_engine, create_schema
from tripline.api.db.session import get_db, get_session_factory
from tripline.api.db.models import (
    Base,
    TimelineEntry,
    Trip,
    TripStop,
    TripRouteSegment,
)

__all__ = [
    "create_engine",
    "create_schema",
    "get_db",
    "get_session_factory",
    "Base",
    "TimelineEntry",
    "Trip",
    "TripStop",
    "TripRouteSegment",
]
