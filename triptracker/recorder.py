import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from . import persistence
from .accumulator import TripAccumulator
from .config import config
from .errors import PersistenceError, RecordingStateError
from .models import Trip, LocationPoint, new_trip_id, utcnow
from .schemas import LocationSample
from .vehicle import VehicleSettings, load_vehicle_settings

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]


class RecordingState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"


class TripRecorder:
    """Recording state machine for a single user's trips.

    Owns the in-progress Trip and its accumulator. Only one trip can be
    recording at a time; samples must be fed sequentially from a single task.
    State changes are published to subscribers as ``{"type", "payload"}`` dicts.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        user_id: Optional[str] = None,
        settings_provider: Optional[Callable[[], VehicleSettings]] = None,
        clock: Callable[[], datetime] = utcnow,
        transport_type: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.user_id = user_id or config.default_user_id
        self.clock = clock
        self.transport_type = transport_type or config.default_transport_type
        self._settings_provider = settings_provider or self._load_settings

        self.state = RecordingState.IDLE
        self.current_trip: Optional[Trip] = None
        self.accumulator: Optional[TripAccumulator] = None
        self.last_error: Optional[str] = None
        self._listeners: List[Listener] = []

    # ----- subscriptions -----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: str, payload: Dict[str, Any]):
        event = {"type": event_type, "payload": payload}
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Recorder listener failed on %s event", event_type)

    def _fail(self, message: str, error: Exception) -> PersistenceError:
        self.last_error = f"{message}: {error}"
        logger.error(self.last_error)
        self._emit("error", {"message": self.last_error})
        return PersistenceError(self.last_error)

    # ----- state helpers -----

    @property
    def is_idle(self) -> bool:
        return self.state is RecordingState.IDLE

    @property
    def is_recording(self) -> bool:
        return self.state is RecordingState.RECORDING

    @property
    def is_paused(self) -> bool:
        return self.state is RecordingState.PAUSED

    def _load_settings(self) -> VehicleSettings:
        with self.session_factory() as db:
            return load_vehicle_settings(db, self.user_id)

    # ----- transitions -----

    def start(self) -> Trip:
        """idle -> recording: create and persist a fresh trip."""
        if not self.is_idle:
            raise RecordingStateError(f"Cannot start while {self.state.value}")

        now = self.clock()
        trip = Trip(
            id=new_trip_id(),
            user_id=self.user_id,
            start_time=now,
            end_time=None,
            distance=0.0,
            duration=0,
            avg_speed=0.0,
            max_speed=0.0,
            transport_type=self.transport_type,
            created_at=now,
            updated_at=now,
            synced_at=None,
            modified_at=now,
        )

        try:
            with self.session_factory() as db:
                trip = persistence.insert_trip(db, trip)
        except SQLAlchemyError as e:
            raise self._fail("Failed to start tracking", e) from e

        self.current_trip = trip
        self.accumulator = TripAccumulator(now)
        self.state = RecordingState.RECORDING
        self.last_error = None

        logger.info("Started trip %s for %s", trip.id, self.user_id)
        self._emit("started", {"trip_id": trip.id, "start_time": now.isoformat()})
        return trip

    def accept(self, sample: LocationSample) -> Optional[LocationPoint]:
        """Persist a sample and fold it into the running totals.

        Ignored unless recording. On a persistence failure the totals are left
        untouched so the same sample can be retried.
        """
        if not self.is_recording or self.current_trip is None:
            return None

        now = self.clock()
        point = LocationPoint(
            trip_id=self.current_trip.id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            accuracy=sample.accuracy,
            altitude=sample.altitude,
            speed=sample.speed,
            bearing=sample.bearing,
            timestamp=sample.timestamp or now,
            created_at=now,
        )

        try:
            with self.session_factory() as db:
                point = persistence.insert_location(db, point)
        except SQLAlchemyError as e:
            raise self._fail("Failed to add point", e) from e

        added = self.accumulator.accept(point, now)
        self._emit("sample", {
            "trip_id": self.current_trip.id,
            "lat": point.latitude,
            "lon": point.longitude,
            "speed": point.speed,
            "added_distance": added,
            **self.accumulator.to_dict(),
        })
        return point

    def skip(self, reason: str):
        """Record that a sample could not be obtained; the trip keeps recording."""
        logger.warning("Sample skipped: %s", reason)
        self._emit("sample_skipped", {
            "trip_id": self.current_trip.id if self.current_trip else None,
            "reason": reason,
        })

    def pause(self) -> bool:
        if not self.is_recording:
            return False
        self.state = RecordingState.PAUSED
        self._emit("paused", {"trip_id": self.current_trip.id})
        return True

    def resume(self) -> bool:
        if not self.is_paused:
            return False
        self.state = RecordingState.RECORDING
        self._emit("resumed", {"trip_id": self.current_trip.id})
        return True

    def stop(self) -> Optional[Trip]:
        """recording|paused -> idle: finalize stats and fuel, then persist.

        A no-op returning None when idle.
        """
        if self.is_idle or self.current_trip is None:
            return None

        now = self.clock()
        previous_duration = self.accumulator.duration
        self.accumulator.tick(now)
        settings = self._settings_provider()
        distance = self.accumulator.total_distance

        try:
            with self.session_factory() as db:
                # merge() copies into the session; the in-memory trip stays as is on failure
                stored = db.merge(self.current_trip)
                stored.end_time = now
                stored.distance = distance
                stored.duration = self.accumulator.duration_seconds
                stored.avg_speed = self.accumulator.average_speed_kmh()
                stored.max_speed = self.accumulator.max_speed_kmh()
                stored.fuel_used = settings.calculate_fuel_used(distance)
                stored.fuel_cost = settings.calculate_fuel_cost(distance)
                stored.fuel_consumption = settings.fuel_consumption
                stored.fuel_type = settings.fuel_type
                stored.fuel_price = settings.fuel_price
                stored.currency = settings.currency
                finished = persistence.update_trip(db, stored, now=now)
        except SQLAlchemyError as e:
            self.accumulator.duration = previous_duration
            raise self._fail("Failed to stop tracking", e) from e

        self.state = RecordingState.IDLE
        self.current_trip = None
        self.accumulator = None
        self.last_error = None

        logger.info("Stopped trip %s: %.1f m in %s s", finished.id, finished.distance, finished.duration)
        self._emit("stopped", {"trip": finished.to_dict()})
        return finished

    def recover(self) -> Optional[Trip]:
        """Re-attach an in-progress trip left in the Local Store, e.g. after a restart."""
        if not self.is_idle:
            raise RecordingStateError(f"Cannot recover while {self.state.value}")

        try:
            with self.session_factory() as db:
                trip = persistence.get_active_trip(db, self.user_id)
                points = persistence.get_locations_by_trip(db, trip.id) if trip else []
        except SQLAlchemyError as e:
            raise self._fail("Failed to recover trip", e) from e

        if trip is None:
            return None

        accumulator = TripAccumulator(trip.start_time)
        for point in points:
            accumulator.accept(point, point.timestamp)
        accumulator.tick(self.clock())

        self.current_trip = trip
        self.accumulator = accumulator
        self.state = RecordingState.RECORDING
        logger.info("Recovered trip %s with %d points", trip.id, len(points))
        self._emit("started", {"trip_id": trip.id, "start_time": trip.start_time.isoformat(), "recovered": True})
        return trip

    # ----- views -----

    def route_points(self) -> List[Tuple[float, float]]:
        if self.accumulator is None:
            return []
        return [(p.latitude, p.longitude) for p in self.accumulator.route]

    def snapshot(self) -> Dict[str, Any]:
        data = {
            "state": self.state.value,
            "user_id": self.user_id,
            "trip_id": self.current_trip.id if self.current_trip else None,
            "start_time": self.current_trip.start_time.isoformat() if self.current_trip else None,
            "distance": 0.0,
            "duration": 0,
            "avg_speed_kmh": 0.0,
            "max_speed_kmh": 0.0,
            "point_count": 0,
            "error": self.last_error,
        }
        if self.accumulator is not None:
            data.update(self.accumulator.to_dict())
        return data
