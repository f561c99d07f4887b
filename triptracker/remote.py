import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import httpx
from .config import config
from .errors import RemoteSyncError
from .models import Trip, LocationPoint, trip_from_remote

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429}


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _to_trip(row: Any) -> Trip:
    try:
        return trip_from_remote(row)
    except (KeyError, TypeError, ValueError) as e:
        raise RemoteSyncError(f"Malformed trip row from backend: {e!r}", retryable=False) from e


class RemoteStore:
    """Client for the remote trip backend (PostgREST-style REST API).

    Trips are keyed by the client-generated id on both sides.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        trips_table: Optional[str] = None,
        locations_table: Optional[str] = None,
        stats_function: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.remote_api_url).rstrip("/")
        self.trips_table = trips_table or config.remote_trips_table
        self.locations_table = locations_table or config.remote_locations_table
        self.stats_function = stats_function or config.remote_stats_function
        self.timeout = timeout if timeout is not None else config.sync_timeout_seconds

        api_key = api_key if api_key is not None else config.remote_api_key
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            headers=headers,
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
            transport=transport,
        )

    async def __aenter__(self) -> "RemoteStore":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RemoteSyncError(f"{method} {path} timed out") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            retryable = status_code >= 500 or status_code in RETRYABLE_STATUS_CODES
            raise RemoteSyncError(
                f"{method} {path} failed with {status_code}: {e.response.text[:200]}",
                status_code=status_code,
                retryable=retryable,
            ) from e
        except httpx.HTTPError as e:
            raise RemoteSyncError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteSyncError(
                f"{method} {path} returned a non-JSON body: {response.text[:200]}",
                status_code=response.status_code,
            ) from e

    # ==================== TRIPS ====================

    async def get_trip(self, trip_id: str) -> Optional[Trip]:
        rows = await self._request("GET", f"/{self.trips_table}", params={"id": f"eq.{trip_id}", "select": "*"})
        if not rows:
            return None
        return _to_trip(rows[0])

    async def create_trip(self, trip: Trip) -> Trip:
        rows = await self._request(
            "POST", f"/{self.trips_table}",
            json=trip.to_remote(),
            headers={"Prefer": "return=representation"},
        )
        return _to_trip(rows[0]) if rows else trip

    async def update_trip(self, trip: Trip) -> Trip:
        rows = await self._request(
            "PATCH", f"/{self.trips_table}",
            params={"id": f"eq.{trip.id}"},
            json=trip.to_remote(),
            headers={"Prefer": "return=representation"},
        )
        return _to_trip(rows[0]) if rows else trip

    async def delete_trip(self, trip_id: str):
        await self._request("DELETE", f"/{self.trips_table}", params={"id": f"eq.{trip_id}"})

    async def list_trips(
        self,
        user_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Trip]:
        """Trips of a user, most recent first, optionally within a start-time range."""
        params = [("user_id", f"eq.{user_id}"), ("select", "*"), ("order", "start_time.desc")]
        if start_date is not None:
            params.append(("start_time", f"gte.{_iso(start_date)}"))
        if end_date is not None:
            params.append(("start_time", f"lte.{_iso(end_date)}"))
        rows = await self._request("GET", f"/{self.trips_table}", params=params)
        return [_to_trip(row) for row in rows or []]

    # ==================== LOCATIONS ====================

    async def add_locations(self, points: Sequence[LocationPoint]) -> int:
        """Upload points in a single batched insert."""
        if not points:
            return 0
        await self._request("POST", f"/{self.locations_table}", json=[p.to_remote() for p in points])
        return len(points)

    # ==================== STATISTICS ====================

    async def calculate_trip_stats(self, trip_id: str) -> Optional[Dict[str, Any]]:
        """Server-side aggregation; None when the function is missing or fails."""
        try:
            result = await self._request("POST", f"/rpc/{self.stats_function}", json={"trip_uuid": trip_id})
        except RemoteSyncError as e:
            logger.info("Remote trip stats unavailable for %s: %s", trip_id, e)
            return None

        if isinstance(result, list):
            result = result[0] if result else None
        if not isinstance(result, dict):
            return None
        return result
