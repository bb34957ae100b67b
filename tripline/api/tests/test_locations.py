"""Tests for stop location variants."""

import pytest

from tripline.api.db.models import TripStop
from tripline.api.errors import ValidationError
from tripline.api.trips.locations import (
    TimelineEntryRef,
    Waypoint,
    location_from_fields,
    location_of,
)


class TestLocationFromFields:
    def test_timeline_entry(self):
        assert location_from_fields(timeline_entry_id=7) == TimelineEntryRef(7)

    def test_waypoint_keeps_name(self):
        location = location_from_fields(lat=44.05, lng=-121.3, name="Pilot Butte")
        assert location == Waypoint(lng=-121.3, lat=44.05, name="Pilot Butte")

    def test_blank_name_becomes_none(self):
        assert location_from_fields(lat=1.0, lng=2.0, name="").name is None

    @pytest.mark.parametrize(
        "fields",
        [
            {},
            {"lat": 1.0},
            {"lng": 1.0},
            {"timeline_entry_id": 3, "lng": 1.0},
        ],
    )
    def test_rejects_ambiguous_or_missing_source(self, fields):
        with pytest.raises(ValidationError):
            location_from_fields(**fields)

    def test_zero_coordinate_is_valid(self):
        assert location_from_fields(lat=0.0, lng=0.0) == Waypoint(lng=0.0, lat=0.0)


class TestWaypoint:
    @pytest.mark.parametrize("lng,lat", [(181.0, 0.0), (-181.0, 0.0), (0.0, 90.5), (0.0, -91.0)])
    def test_out_of_range(self, lng, lat):
        with pytest.raises(ValidationError):
            Waypoint(lng=lng, lat=lat)


class TestLocationOf:
    def test_entry_stop(self):
        stop = TripStop(trip_id=1, position=0, timeline_entry_id=5)
        assert location_of(stop) == TimelineEntryRef(5)

    def test_waypoint_stop(self):
        stop = TripStop(trip_id=1, position=0, waypoint_lng=-121.0, waypoint_lat=44.0, waypoint_name="X")
        assert location_of(stop) == Waypoint(lng=-121.0, lat=44.0, name="X")
