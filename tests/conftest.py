import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import httpx
import pytest
from triptracker.db import create_session_factory, init_db
from triptracker.remote import RemoteStore

T0 = datetime(2024, 12, 22, 8, 0, 0)


class FakeClock:
    """Manually advanced clock for the recorder and sync service."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeBackend:
    """In-memory PostgREST-style backend served through httpx.MockTransport."""

    def __init__(self):
        self.trips: Dict[str, dict] = {}
        self.locations: List[dict] = []
        self.requests: List[httpx.Request] = []
        self.stats: Optional[dict] = None
        self.fail_with: Optional[int] = None
        self.fail_tables: set = set()

    def _eq(self, request: httpx.Request, key: str) -> Optional[str]:
        value = request.url.params.get(key)
        return value[len("eq."):] if value else None

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        table = path.rsplit("/", 1)[-1]

        if self.fail_with is not None or table in self.fail_tables:
            return httpx.Response(self.fail_with or 500, json={"message": "backend unavailable"})

        if "/rpc/" in path:
            if self.stats is None:
                return httpx.Response(404, json={"message": "function not found"})
            return httpx.Response(200, json=[self.stats])

        if table == "maxcar_trips":
            return self._handle_trips(request)
        if table == "maxcar_locations" and request.method == "POST":
            rows = json.loads(request.content)
            self.locations.extend(rows)
            return httpx.Response(201)
        return httpx.Response(404, json={"message": "not found"})

    def _handle_trips(self, request: httpx.Request) -> httpx.Response:
        trip_id = self._eq(request, "id")
        if request.method == "GET":
            if trip_id is not None:
                row = self.trips.get(trip_id)
                return httpx.Response(200, json=[row] if row else [])
            user_id = self._eq(request, "user_id")
            rows = [r for r in self.trips.values() if r["user_id"] == user_id]
            for bound in request.url.params.get_list("start_time"):
                op, value = bound.split(".", 1)
                if op == "gte":
                    rows = [r for r in rows if r["start_time"] >= value]
                else:
                    rows = [r for r in rows if r["start_time"] <= value]
            rows.sort(key=lambda r: r["start_time"], reverse=True)
            return httpx.Response(200, json=rows)
        if request.method == "POST":
            row = json.loads(request.content)
            self.trips[row["id"]] = row
            return httpx.Response(201, json=[row])
        if request.method == "PATCH":
            row = json.loads(request.content)
            self.trips[trip_id] = row
            return httpx.Response(200, json=[row])
        if request.method == "DELETE":
            self.trips.pop(trip_id, None)
            return httpx.Response(204)
        return httpx.Response(405)

    def methods(self) -> List[str]:
        return [r.method for r in self.requests]


@pytest.fixture
def session_factory():
    """Fresh in-memory Local Store per test."""
    factory = create_session_factory("sqlite://")
    init_db(factory)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def remote(backend):
    return RemoteStore(
        base_url="http://backend.test",
        api_key="test-key",
        timeout=5.0,
        transport=httpx.MockTransport(backend.handle),
    )
