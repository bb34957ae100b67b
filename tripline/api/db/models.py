"""
SQLAlchemy DeclarativeBase models for trips, their ordered stops, the cached
route segments between adjacent stops, and the timeline entries stops may
point at.

Invariants carried by the schema itself:
  - UNIQUE(trip_id, position) on trip_stops. Positions are also contiguous
    (0..N-1), which the stop store checks after every mutation.
  - A stop has exactly one location source: a timeline entry reference or an
    inline waypoint coordinate (CHECK constraint).
  - Segments are keyed by (trip_id, from_stop_id, to_stop_id) and cascade
    away with either endpoint stop or the trip.

timeline_entries is written by the external import pipeline. The service only
reads it, apart from relocating an entry.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TimelineEntry(Base):
    __tablename__ = "timeline_entries"
    __table_args__ = (
        CheckConstraint("entry_type IN ('visit', 'activity')", name="ck_timeline_entries_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_type: Mapped[str] = mapped_column(String(20))
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Visits carry a point; activities may not.
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    place_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    place_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    semantic_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    activity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    distance_meters: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    edited: Mapped[bool] = mapped_column(Boolean, default=False)
    edit_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(String(16), default="#e11d48")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class TripStop(Base):
    __tablename__ = "trip_stops"
    __table_args__ = (
        UniqueConstraint("trip_id", "position", name="uq_trip_stops_trip_position"),
        CheckConstraint(
            "(timeline_entry_id IS NULL) <> (waypoint_lat IS NULL)",
            name="ck_trip_stops_one_source",
        ),
        CheckConstraint(
            "(waypoint_lat IS NULL) = (waypoint_lng IS NULL)",
            name="ck_trip_stops_waypoint_pair",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trip_id: Mapped[int] = mapped_column(ForeignKey("trips.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer)
    timeline_entry_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("timeline_entries.id"), nullable=True, index=True
    )
    waypoint_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    waypoint_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    waypoint_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class TripRouteSegment(Base):
    __tablename__ = "trip_route_segments"
    __table_args__ = (
        UniqueConstraint("trip_id", "from_stop_id", "to_stop_id", name="uq_trip_route_segments_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trip_id: Mapped[int] = mapped_column(ForeignKey("trips.id", ondelete="CASCADE"), index=True)
    from_stop_id: Mapped[int] = mapped_column(ForeignKey("trip_stops.id", ondelete="CASCADE"))
    to_stop_id: Mapped[int] = mapped_column(ForeignKey("trip_stops.id", ondelete="CASCADE"))
    # GeoJSON LineString coordinates: [[lng, lat], ...]
    route_geometry: Mapped[list] = mapped_column(JSON)
    distance_meters: Mapped[float] = mapped_column(Float)
    duration_seconds: Mapped[float] = mapped_column(Float)
    profile: Mapped[str] = mapped_column(String(32), default="driving")
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
