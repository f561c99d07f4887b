import pytest
import pandas as pd
from fastapi.testclient import TestClient
from triptracker.config import config
from triptracker.main import create_app
from triptracker.services import Services

USER = "driver_1"


@pytest.fixture
def services(session_factory, remote, clock):
    return Services(session_factory, remote=remote, user_id=USER, clock=clock)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def record_trip(client, clock):
    """Record the 10 second equator trip and return the stopped trip."""
    assert client.post("/api/recording/start").status_code == 200
    client.post("/api/recording/points", json={"latitude": 0.0, "longitude": 0.0, "speed": 5.0})
    clock.advance(10)
    client.post("/api/recording/points", json={"latitude": 0.0, "longitude": 0.001, "speed": 12.0})
    response = client.post("/api/recording/stop")
    assert response.status_code == 200
    return response.json()["trip"]


class TestHealth:
    """Test service endpoints."""

    def test_root(self, client):
        """Test the root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["docs"] == "/docs"

    def test_health(self, client):
        """Test the health endpoint reports the recorder state."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "recording": "idle"}


class TestRecordingApi:
    """Test the recording endpoints."""

    def test_full_recording(self, client, clock, backend, monkeypatch):
        """Test start, samples and stop over HTTP."""
        monkeypatch.setattr(config, "sync_enabled", True)
        trip = record_trip(client, clock)

        assert trip["distance"] == pytest.approx(111.19, abs=0.01)
        assert trip["duration"] == 10
        assert trip["max_speed"] == pytest.approx(43.2)
        assert trip["in_progress"] is False
        assert trip["fuel_consumption"] == config.default_fuel_consumption

        # the stop schedules a sync pass
        assert trip["id"] in backend.trips
        assert client.get("/api/sync/pending").json() == []

    def test_start_twice(self, client):
        """Test that a second start is a conflict."""
        assert client.post("/api/recording/start").status_code == 200
        assert client.post("/api/recording/start").status_code == 409

    def test_stop_when_idle(self, client):
        """Test stopping without a recording."""
        response = client.post("/api/recording/stop")
        assert response.status_code == 200
        assert response.json()["trip"] is None

    def test_points_ignored_when_idle(self, client):
        """Test that samples without a recording are not accepted."""
        response = client.post("/api/recording/points", json={"latitude": 1.0, "longitude": 1.0})
        assert response.status_code == 200
        assert response.json()["accepted"] is False

    def test_invalid_point(self, client):
        """Test that impossible coordinates are rejected."""
        client.post("/api/recording/start")
        response = client.post("/api/recording/points", json={"latitude": 95.0, "longitude": 0.0})
        assert response.status_code == 422

    def test_pause_resume(self, client):
        """Test pausing over HTTP."""
        client.post("/api/recording/start")
        assert client.post("/api/recording/pause").json()["paused"] is True
        response = client.post("/api/recording/points", json={"latitude": 1.0, "longitude": 1.0})
        assert response.json()["accepted"] is False
        assert client.post("/api/recording/resume").json()["resumed"] is True
        assert client.get("/api/recording").json()["state"] == "recording"

    def test_skip(self, client):
        """Test reporting an unavailable location."""
        client.post("/api/recording/start")
        response = client.post("/api/recording/skip", params={"reason": "gps off"})
        assert response.status_code == 200
        assert response.json()["recording"]["point_count"] == 0

    def test_websocket_events(self, client):
        """Test that connected clients get a snapshot then recorder events."""
        with client.websocket_connect("/ws/data") as websocket:
            first = websocket.receive_json()
            assert first["type"] == "snapshot"
            assert first["payload"]["state"] == "idle"

            client.post("/api/recording/start")
            event = websocket.receive_json()
            assert event["type"] == "started"


class TestTripsApi:
    """Test trip history endpoints."""

    def test_list_and_get(self, client, clock):
        """Test listing and fetching trips."""
        trip = record_trip(client, clock)

        trips = client.get("/api/trips").json()
        assert [t["id"] for t in trips] == [trip["id"]]

        response = client.get(f"/api/trips/{trip['id']}")
        assert response.status_code == 200
        assert response.json()["duration"] == 10

    def test_missing_trip(self, client):
        """Test fetching an unknown trip."""
        assert client.get("/api/trips/does-not-exist").status_code == 404
        assert client.get("/api/trips/does-not-exist/points").status_code == 404
        assert client.get("/api/trips/does-not-exist/stats").status_code == 404

    def test_points(self, client, clock):
        """Test the points of a trip come back in order."""
        trip = record_trip(client, clock)
        points = client.get(f"/api/trips/{trip['id']}/points").json()
        assert [p["longitude"] for p in points] == [0.0, 0.001]

    def test_stats_computed_locally(self, client, clock):
        """Test trip stats when the backend has no aggregation."""
        trip = record_trip(client, clock)
        stats = client.get(f"/api/trips/{trip['id']}/stats").json()
        assert stats["source"] == "local"
        assert stats["total_distance"] == pytest.approx(111.19, abs=0.01)

    def test_statistics(self, client, clock):
        """Test totals across trips."""
        record_trip(client, clock)
        clock.advance(60)
        record_trip(client, clock)

        totals = client.get("/api/statistics").json()
        assert totals["trips_count"] == 2
        assert totals["total_duration"] == 20
        assert totals["total_distance"] == pytest.approx(222.38, abs=0.02)

    def test_delete(self, client, clock):
        """Test deleting a finished trip."""
        trip = record_trip(client, clock)
        assert client.delete(f"/api/trips/{trip['id']}").status_code == 200
        assert client.get(f"/api/trips/{trip['id']}").status_code == 404
        assert client.delete(f"/api/trips/{trip['id']}").status_code == 404

    def test_delete_active_trip(self, client):
        """Test that the trip being recorded cannot be deleted."""
        trip = client.post("/api/recording/start").json()["trip"]
        assert client.delete(f"/api/trips/{trip['id']}").status_code == 409

    def test_delete_drops_sync_state(self, client, clock, services, backend):
        """Test that deleting a trip clears its sync bookkeeping."""
        trip = record_trip(client, clock)
        backend.fail_with = 503
        client.post(f"/api/trips/{trip['id']}/sync")
        assert trip["id"] in services.sync._sync_info

        assert client.delete(f"/api/trips/{trip['id']}").status_code == 200
        assert trip["id"] not in services.sync._sync_info
        assert trip["id"] not in services.sync._locks


class TestSettingsApi:
    """Test vehicle settings endpoints."""

    def test_defaults(self, client):
        """Test the default profile."""
        response = client.get("/api/settings/vehicle")
        assert response.status_code == 200
        assert response.json() == config.get_vehicle_defaults()

    def test_update(self, client, clock):
        """Test that a new profile prices the next trip."""
        payload = {"fuel_consumption": 6.0, "fuel_type": "Diesel", "fuel_price": 2.0, "currency": "eur"}
        response = client.put("/api/settings/vehicle", json=payload)
        assert response.status_code == 200
        assert response.json()["currency"] == "EUR"

        trip = record_trip(client, clock)
        assert trip["fuel_type"] == "Diesel"
        assert trip["fuel_cost"] == pytest.approx(trip["distance"] / 100_000 * 6.0 * 2.0)

    def test_invalid_update(self, client):
        """Test that invalid settings are rejected and not saved."""
        response = client.put("/api/settings/vehicle", json={"fuel_consumption": -1})
        assert response.status_code == 422
        assert client.get("/api/settings/vehicle").json() == config.get_vehicle_defaults()

    def test_reset(self, client):
        """Test restoring defaults."""
        client.put("/api/settings/vehicle", json={"fuel_price": 9.99})
        response = client.post("/api/settings/vehicle/reset")
        assert response.json() == config.get_vehicle_defaults()


class TestSyncApi:
    """Test manual sync endpoints."""

    @pytest.fixture(autouse=True)
    def no_auto_sync(self, monkeypatch):
        monkeypatch.setattr(config, "sync_enabled", False)

    def test_sync_one(self, client, clock, backend):
        """Test syncing a single trip and its points."""
        trip = record_trip(client, clock)
        assert client.get(f"/api/trips/{trip['id']}/sync").json()["status"] == "pending"

        response = client.post(f"/api/trips/{trip['id']}/sync")
        assert response.status_code == 200
        body = response.json()
        assert body["locations_uploaded"] == 2
        assert body["sync"]["status"] == "synced"
        assert len(backend.locations) == 2

        assert client.get(f"/api/trips/{trip['id']}/sync").json()["status"] == "synced"

    def test_sync_failure(self, client, clock, backend):
        """Test that a backend failure is a bad gateway and the trip stays pending."""
        trip = record_trip(client, clock)
        backend.fail_with = 503

        response = client.post(f"/api/trips/{trip['id']}/sync")
        assert response.status_code == 502
        pending = client.get("/api/sync/pending").json()
        assert [t["id"] for t in pending] == [trip["id"]]
        assert client.get(f"/api/trips/{trip['id']}/sync").json()["status"] == "failed"

    def test_sync_all(self, client, clock):
        """Test a full sync pass."""
        trip = record_trip(client, clock)
        client.post("/api/recording/start")

        report = client.post("/api/sync").json()
        assert report["synced"] == [trip["id"]]
        assert len(report["skipped"]) == 1
        assert report["locations_uploaded"] == 2

    def test_sync_config(self, client):
        """Test that the backend settings are exposed without the key."""
        settings = client.get("/api/sync/config").json()
        assert settings["trips_table"] == config.remote_trips_table
        assert settings["enabled"] is False
        assert "api_key" not in settings

    def test_sync_trip_being_recorded(self, client, backend):
        """Test that the trip being recorded cannot be synced."""
        trip = client.post("/api/recording/start").json()["trip"]

        assert client.post(f"/api/trips/{trip['id']}/sync").status_code == 409
        assert backend.requests == []

    def test_sync_unknown_trip(self, client):
        """Test syncing a trip that does not exist."""
        assert client.post("/api/trips/nope/sync").status_code == 404


class TestSimulationApi:
    """Test replaying a CSV track through the API."""

    def create_test_csv(self, tmp_path):
        test_data = [
            {"latitude": 14.5995, "longitude": 120.9842, "track_id": "T1", "time": "2025-08-01T08:00:00Z", "speed": 10.0},
            {"latitude": 14.5996, "longitude": 120.9843, "track_id": "T1", "time": "2025-08-01T08:00:01Z", "speed": 12.0},
            {"latitude": 14.5997, "longitude": 120.9844, "track_id": "T1", "time": "2025-08-01T08:00:02Z", "speed": 15.0},
            {"latitude": 14.6100, "longitude": 120.9900, "track_id": "T2", "time": "2025-08-01T09:00:00Z", "speed": 8.0},
        ]
        path = tmp_path / "trackpoints.csv"
        pd.DataFrame(test_data).to_csv(path, index=False)
        return str(path)

    def test_replay_records_trip(self, client, tmp_path, monkeypatch):
        """Test that a replayed track becomes a finished trip."""
        monkeypatch.setattr(config, "trackspoints_csv", self.create_test_csv(tmp_path))

        response = client.post("/api/start_simulation", json={"track_id": "T1", "interval": 0})
        assert response.status_code == 200

        assert client.get("/api/simulation_status").json() == {"is_running": False}
        trips = client.get("/api/trips").json()
        assert len(trips) == 1
        assert trips[0]["in_progress"] is False
        points = client.get(f"/api/trips/{trips[0]['id']}/points").json()
        assert len(points) == 3

    def test_replay_while_recording(self, client):
        """Test that a replay cannot start over a live recording."""
        client.post("/api/recording/start")
        assert client.post("/api/start_simulation").status_code == 409

    def test_stop_simulation(self, client):
        """Test stopping when nothing is replaying."""
        response = client.post("/api/stop_simulation")
        assert response.json() == {"message": "simulation stopped"}


if __name__ == "__main__":
    pytest.main([__file__])
