import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from . import persistence
from .accumulator import compute_trip_stats
from .config import config
from .errors import PersistenceError, RemoteSyncError, SyncInProgressError, TripNotFoundError
from .models import Trip, LocationPoint, utcnow
from .remote import RemoteStore
from .sync_status import SyncInfo, SyncStatus

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    synced: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    locations_uploaded: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
            "locations_uploaded": self.locations_uploaded,
        }


class SyncService:
    """Local -> remote push sync for trips and their location points.

    The local record wins: a trip found remotely is overwritten, never merged.
    Failures leave the local record pending and are reported to the caller.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        remote: RemoteStore,
        clock: Callable[[], datetime] = utcnow,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.remote = remote
        self.clock = clock
        self.timeout = timeout if timeout is not None else config.sync_timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sync_info: Dict[str, SyncInfo] = {}

    def _lock_for(self, trip_id: str) -> asyncio.Lock:
        lock = self._locks.get(trip_id)
        if lock is None:
            lock = self._locks[trip_id] = asyncio.Lock()
        return lock

    async def _bounded(self, awaitable: Awaitable[Any], what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise RemoteSyncError(f"{what} timed out after {self.timeout}s") from e

    def sync_info(self, trip: Trip) -> SyncInfo:
        """Tracked bookkeeping for a trip, or one derived from its timestamps."""
        info = self._sync_info.get(trip.id)
        if info is None:
            return SyncInfo.for_trip(trip)
        if info.status is SyncStatus.SYNCED and trip.needs_sync:
            info = self._sync_info[trip.id] = info.mark_modified()
        return info

    def pending_trips(self, user_id: str) -> List[Trip]:
        """Local trips that need sync, most recent first."""
        try:
            with self.session_factory() as db:
                return persistence.get_unsynced_trips(db, user_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list unsynced trips: {e}") from e

    async def sync_trip(self, trip: Trip) -> Trip:
        """Create or overwrite the trip remotely, then stamp it synced locally.

        Any failure moves the trip's bookkeeping to failed before propagating.
        """
        info = self.sync_info(trip)
        # No await between the check and the transition, so this is atomic on the loop
        self._sync_info[trip.id] = info.begin(self.clock(), trip.id)
        try:
            return await self._push_trip(trip)
        except asyncio.CancelledError:
            self._record_failure(trip.id, "cancelled")
            raise
        except RemoteSyncError as e:
            self._record_failure(trip.id, str(e))
            logger.warning("Sync of trip %s failed: %s", trip.id, e)
            raise
        except Exception as e:
            self._record_failure(trip.id, f"{type(e).__name__}: {e}")
            logger.exception("Sync of trip %s failed unexpectedly", trip.id)
            raise

    def _record_failure(self, trip_id: str, message: str):
        self._sync_info[trip_id] = self._sync_info[trip_id].fail(message, self.clock())

    async def _push_trip(self, trip: Trip) -> Trip:
        pushed_modified_at = trip.modified_at
        async with self._lock_for(trip.id):
            existing = await self._bounded(self.remote.get_trip(trip.id), f"lookup of trip {trip.id}")
            if existing is None:
                await self._bounded(self.remote.create_trip(trip), f"create of trip {trip.id}")
                logger.info("Created trip %s remotely", trip.id)
            else:
                await self._bounded(self.remote.update_trip(trip), f"update of trip {trip.id}")
                logger.info("Overwrote remote trip %s", trip.id)

            now = self.clock()
            try:
                with self.session_factory() as db:
                    current = persistence.mark_trip_synced(db, trip.id, now, pushed_modified_at)
            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to mark trip {trip.id} synced: {e}") from e

            info = self._sync_info[trip.id].succeed(now)
            if not current:
                # Changed locally while uploading; the pushed copy is already stale
                logger.info("Trip %s was modified during sync, keeping it pending", trip.id)
                self._sync_info[trip.id] = info.mark_modified()
                return trip

            trip.synced_at = now
            self._sync_info[trip.id] = info
            return trip

    async def sync_locations(self, points: Sequence[LocationPoint]) -> int:
        """Upload points as one all-or-nothing batch, in sample order."""
        if not points:
            return 0
        ordered = sorted(points, key=lambda p: p.timestamp)
        return await self._bounded(self.remote.add_locations(ordered), f"upload of {len(ordered)} points")

    async def sync_trip_locations(self, trip_id: str) -> int:
        """Upload a trip's not-yet-synced points and mark exactly those synced."""
        async with self._lock_for(trip_id):
            try:
                with self.session_factory() as db:
                    points = persistence.get_unsynced_locations(db, trip_id)
            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to read points of trip {trip_id}: {e}") from e

            uploaded = await self.sync_locations(points)
            if not uploaded:
                return 0

            try:
                with self.session_factory() as db:
                    persistence.mark_locations_synced(db, [p.id for p in points], self.clock())
            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to mark points of trip {trip_id} synced: {e}") from e

            logger.info("Uploaded %d points for trip %s", uploaded, trip_id)
            return uploaded

    def trips_with_unsynced_points(self, user_id: str) -> List[Trip]:
        """Finished trips whose points still wait for upload, synced or not."""
        try:
            with self.session_factory() as db:
                return persistence.get_trips_with_unsynced_locations(db, user_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list trips with unsynced points: {e}") from e

    async def sync_pending(self, user_id: str) -> SyncReport:
        """Push every pending finished trip and its points; failures don't stop the pass.

        Trips already synced whose points failed to upload on an earlier pass
        get their points retried here as well.
        """
        report = SyncReport()
        pending = self.pending_trips(user_id)
        pending_ids = {trip.id for trip in pending}
        leftover = [t for t in self.trips_with_unsynced_points(user_id) if t.id not in pending_ids]

        for trip in pending:
            if trip.is_in_progress:
                report.skipped.append(trip.id)
                continue
            try:
                synced = await self.sync_trip(trip)
                report.locations_uploaded += await self.sync_trip_locations(trip.id)
            except (RemoteSyncError, PersistenceError, SyncInProgressError) as e:
                report.failed[trip.id] = str(e)
                continue
            if synced.synced_at is None:
                report.failed[trip.id] = "modified during sync"
            else:
                report.synced.append(trip.id)

        for trip in leftover:
            try:
                report.locations_uploaded += await self.sync_trip_locations(trip.id)
                report.synced.append(trip.id)
            except (RemoteSyncError, PersistenceError) as e:
                report.failed[trip.id] = str(e)

        logger.info("Sync pass for %s: %d synced, %d failed, %d skipped",
                    user_id, len(report.synced), len(report.failed), len(report.skipped))
        return report

    def forget(self, trip_id: str):
        """Drop the bookkeeping of a deleted trip."""
        self._sync_info.pop(trip_id, None)
        lock = self._locks.get(trip_id)
        if lock is not None and not lock.locked():
            del self._locks[trip_id]

    async def trip_statistics(self, trip_id: str) -> Dict[str, Any]:
        """Remote aggregation when available, otherwise computed from local points."""
        try:
            remote_stats = await self._bounded(self.remote.calculate_trip_stats(trip_id), "trip stats")
        except RemoteSyncError as e:
            logger.info("Falling back to local stats for %s: %s", trip_id, e)
            remote_stats = None

        if remote_stats is not None:
            return {**remote_stats, "source": "remote"}

        try:
            with self.session_factory() as db:
                trip = persistence.get_trip(db, trip_id)
                if trip is None:
                    raise TripNotFoundError(trip_id)
                points = persistence.get_locations_by_trip(db, trip_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read trip {trip_id}: {e}") from e

        return compute_trip_stats(points, trip.start_time, trip.end_time)
