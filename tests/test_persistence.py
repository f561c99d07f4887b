import pytest
from datetime import datetime, timedelta
from triptracker import persistence
from triptracker.models import LocationPoint, Trip, new_trip_id

T0 = datetime(2024, 12, 22, 8, 0, 0)


def new_trip(start, end=None, user_id="driver_1", distance=1000.0, duration=600, fuel_cost=None):
    return Trip(
        id=new_trip_id(),
        user_id=user_id,
        start_time=start,
        end_time=end,
        distance=distance,
        duration=duration,
        avg_speed=6.0,
        max_speed=40.0,
        fuel_cost=fuel_cost,
        created_at=start,
        updated_at=start,
        modified_at=end or start,
    )


def new_point(trip_id, seconds, synced_at=None):
    ts = T0 + timedelta(seconds=seconds)
    return LocationPoint(trip_id=trip_id, latitude=0.0, longitude=seconds * 0.0001,
                         timestamp=ts, created_at=ts, synced_at=synced_at)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


class TestTripStorage:
    """Test trip persistence operations."""

    def test_insert_and_get(self, db):
        """Test storing and reading a trip."""
        trip = persistence.insert_trip(db, new_trip(T0, T0 + timedelta(minutes=10)))
        fetched = persistence.get_trip(db, trip.id)
        assert fetched.distance == 1000.0
        assert persistence.get_trip(db, "missing") is None

    def test_list_most_recent_first(self, db):
        """Test ordering and pagination of the trip list."""
        ids = [persistence.insert_trip(db, new_trip(T0 + timedelta(hours=h))).id for h in range(3)]
        persistence.insert_trip(db, new_trip(T0, user_id="other"))

        assert [t.id for t in persistence.get_trips(db, "driver_1")] == ids[::-1]
        assert [t.id for t in persistence.get_trips(db, "driver_1", limit=1, offset=1)] == [ids[1]]

    def test_active_trip(self, db):
        """Test finding the open trip."""
        persistence.insert_trip(db, new_trip(T0, T0 + timedelta(minutes=5)))
        assert persistence.get_active_trip(db, "driver_1") is None

        open_trip = persistence.insert_trip(db, new_trip(T0 + timedelta(hours=1)))
        assert persistence.get_active_trip(db, "driver_1").id == open_trip.id

    def test_update_stamps_modified(self, db):
        """Test that updating marks the trip modified."""
        trip = persistence.insert_trip(db, new_trip(T0, T0 + timedelta(minutes=5)))
        persistence.mark_trip_synced(db, trip.id, T0 + timedelta(minutes=6))

        trip.distance = 2000.0
        trip.synced_at = T0 + timedelta(minutes=6)
        updated = persistence.update_trip(db, trip, now=T0 + timedelta(minutes=7))

        assert updated.modified_at == T0 + timedelta(minutes=7)
        assert updated.updated_at == T0 + timedelta(minutes=7)
        assert updated.needs_sync

    def test_delete_cascades(self, db, session_factory):
        """Test that deleting a trip removes its points."""
        trip = persistence.insert_trip(db, new_trip(T0))
        persistence.insert_locations_batch(db, [new_point(trip.id, s) for s in range(3)])

        assert persistence.delete_trip(db, trip.id) is True
        with session_factory() as fresh:
            assert persistence.get_trip(fresh, trip.id) is None
            assert persistence.get_location_count(fresh, trip.id) == 0
            assert persistence.delete_trip(fresh, trip.id) is False

    def test_unsynced_trips(self, db):
        """Test which trips need sync."""
        never = persistence.insert_trip(db, new_trip(T0, T0 + timedelta(minutes=1)))
        clean = persistence.insert_trip(db, new_trip(T0 + timedelta(hours=1), T0 + timedelta(hours=1, minutes=1)))
        dirty = persistence.insert_trip(db, new_trip(T0 + timedelta(hours=2), T0 + timedelta(hours=2, minutes=1)))

        persistence.mark_trip_synced(db, clean.id, T0 + timedelta(hours=3))
        persistence.mark_trip_synced(db, dirty.id, T0 + timedelta(hours=2))

        assert [t.id for t in persistence.get_unsynced_trips(db, "driver_1")] == [dirty.id, never.id]

    def test_mark_synced_only_pushed_version(self, db, session_factory):
        """Test that a trip changed after the upload is not stamped synced."""
        trip = persistence.insert_trip(db, new_trip(T0, T0 + timedelta(minutes=5)))
        pushed = trip.modified_at

        trip.distance = 1500.0
        persistence.update_trip(db, trip, now=T0 + timedelta(minutes=7))

        assert persistence.mark_trip_synced(db, trip.id, T0 + timedelta(minutes=8), pushed) is False
        with session_factory() as fresh:
            assert persistence.get_trip(fresh, trip.id).synced_at is None

        latest = trip.modified_at
        assert persistence.mark_trip_synced(db, trip.id, T0 + timedelta(minutes=8), latest) is True
        with session_factory() as fresh:
            assert not persistence.get_trip(fresh, trip.id).needs_sync

    def test_statistics(self, db):
        """Test per-user totals."""
        persistence.insert_trip(db, new_trip(T0, distance=1000.0, duration=600, fuel_cost=0.12))
        persistence.insert_trip(db, new_trip(T0 + timedelta(hours=1), distance=500.0, duration=300))

        stats = persistence.get_trip_statistics(db, "driver_1")
        assert stats == {
            "trips_count": 2,
            "total_distance": 1500.0,
            "total_duration": 900,
            "total_fuel_cost": pytest.approx(0.12),
        }

    def test_statistics_no_trips(self, db):
        """Test totals for a user without trips."""
        stats = persistence.get_trip_statistics(db, "nobody")
        assert stats["trips_count"] == 0
        assert stats["total_distance"] == 0.0


class TestLocationStorage:
    """Test location point persistence operations."""

    def test_points_in_time_order(self, db):
        """Test that points come back ordered by timestamp."""
        trip = persistence.insert_trip(db, new_trip(T0))
        for seconds in (20, 0, 10):
            persistence.insert_location(db, new_point(trip.id, seconds))

        points = persistence.get_locations_by_trip(db, trip.id)
        assert [p.timestamp for p in points] == [T0 + timedelta(seconds=s) for s in (0, 10, 20)]
        assert persistence.get_location_count(db, trip.id) == 3

    def test_mark_exact_points_synced(self, db):
        """Test that only the given points are marked synced."""
        trip = persistence.insert_trip(db, new_trip(T0))
        persistence.insert_locations_batch(db, [new_point(trip.id, s) for s in range(4)])
        points = persistence.get_unsynced_locations(db, trip.id)

        marked = persistence.mark_locations_synced(db, [p.id for p in points[:2]], T0)

        assert marked == 2
        assert [p.id for p in persistence.get_unsynced_locations(db, trip.id)] == [p.id for p in points[2:]]
        assert persistence.mark_locations_synced(db, [], T0) == 0

    def test_trips_with_unsynced_points(self, db):
        """Test finding finished trips whose points still wait for upload."""
        done = persistence.insert_trip(db, new_trip(T0, T0 + timedelta(minutes=1)))
        uploaded = persistence.insert_trip(db, new_trip(T0 + timedelta(hours=1), T0 + timedelta(hours=1, minutes=1)))
        active = persistence.insert_trip(db, new_trip(T0 + timedelta(hours=2)))
        persistence.insert_locations_batch(db, [new_point(done.id, s) for s in range(3)])
        persistence.insert_locations_batch(db, [new_point(uploaded.id, s, synced_at=T0) for s in range(2)])
        persistence.insert_locations_batch(db, [new_point(active.id, s) for s in range(2)])

        assert [t.id for t in persistence.get_trips_with_unsynced_locations(db, "driver_1")] == [done.id]
        assert persistence.get_trips_with_unsynced_locations(db, "other") == []

    def test_delete_points(self, db):
        """Test clearing the points of a trip."""
        trip = persistence.insert_trip(db, new_trip(T0))
        persistence.insert_locations_batch(db, [new_point(trip.id, s) for s in range(3)])

        assert persistence.delete_locations_by_trip(db, trip.id) == 3
        assert persistence.get_location_count(db, trip.id) == 0
        assert persistence.get_trip(db, trip.id) is not None


if __name__ == "__main__":
    pytest.main([__file__])
