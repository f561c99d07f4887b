import asyncio
import logging
import math
from typing import Iterator, Optional
import pandas as pd
from pydantic import ValidationError
from .config import config
from .errors import PersistenceError, RecordingStateError
from .geo import haversine_m
from .recorder import TripRecorder
from .schemas import LocationSample

logger = logging.getLogger(__name__)

OPTIONAL_COLUMNS = ("speed", "accuracy", "altitude", "bearing")


def calculate_speed_mps(lat1, lon1, time1, lat2, lon2, time2) -> float:
    """Calculate speed in m/s between two GPS points."""
    time_diff_s = (time2 - time1).total_seconds()

    # Avoid division by zero
    if time_diff_s <= 0:
        return 0.0

    return haversine_m(lat1, lon1, lat2, lon2) / time_diff_s


def load_track(csv_path: str, track_id: Optional[str] = None) -> pd.DataFrame:
    """Read recorded GPS points, keeping one track ordered by time.

    Without a track_id the first track in the file is used.
    """
    df = pd.read_csv(csv_path)
    df['time'] = pd.to_datetime(df['time'], utc=True)

    if 'track_id' in df.columns:
        df['track_id'] = df['track_id'].astype(str)
        if track_id is None:
            track_id = df['track_id'].iloc[0] if len(df) else None
        df = df[df['track_id'] == str(track_id)]

    return df.sort_values('time').reset_index(drop=True)


def _optional(row, column: str) -> Optional[float]:
    if column not in row or pd.isna(row[column]):
        return None
    return float(row[column])


def iter_samples(df: pd.DataFrame) -> Iterator[dict]:
    """Yield sample payloads; speed is derived from consecutive points when the file has none."""
    prev = None
    for _, row in df.iterrows():
        payload = {
            "latitude": float(row['latitude']),
            "longitude": float(row['longitude']),
            "timestamp": row['time'].to_pydatetime(),
        }
        for column in OPTIONAL_COLUMNS:
            payload[column] = _optional(row, column)

        if payload["speed"] is None and prev is not None and not any(
                math.isnan(v) for v in (prev["latitude"], prev["longitude"], payload["latitude"], payload["longitude"])):
            payload["speed"] = calculate_speed_mps(
                prev["latitude"], prev["longitude"], prev["timestamp"],
                payload["latitude"], payload["longitude"], payload["timestamp"]
            )

        yield payload
        prev = payload


class TrackReplayer:
    """Feeds a recorded CSV track into a TripRecorder as if it came from a device."""

    def __init__(self, recorder: TripRecorder):
        self.recorder = recorder
        self.running = False
        self.current_task: Optional[asyncio.Task] = None

    def is_running(self) -> bool:
        return self.running

    async def start(self, csv_path: Optional[str] = None, interval: Optional[float] = None,
                    track_id: Optional[str] = None):
        """Replay one track as a full recording session."""
        if self.running:
            logger.info("Replay already running")
            return

        csv_path = csv_path or config.trackspoints_csv
        interval = config.emit_interval_seconds if interval is None else interval

        self.running = True
        logger.info("Starting replay of %s (track=%s, interval=%ss)", csv_path, track_id, interval)
        try:
            self.current_task = asyncio.create_task(self._run(csv_path, interval, track_id))
            await self.current_task
        except asyncio.CancelledError:
            logger.info("Replay cancelled")
        finally:
            self.running = False
            self.current_task = None

    def stop(self):
        """Stop the replay; the recording is finalized by the replay task."""
        self.running = False

        if self.current_task and not self.current_task.done():
            self.current_task.cancel()

        return {"message": "simulation stopped"}

    async def _run(self, csv_path: str, interval: float, track_id: Optional[str]):
        try:
            df = load_track(csv_path, track_id)
        except (OSError, KeyError, ValueError) as e:
            logger.error("Could not load track from %s: %s", csv_path, e)
            return

        logger.info("Loaded %d points", len(df))

        try:
            self.recorder.start()
        except (RecordingStateError, PersistenceError) as e:
            logger.error("Could not start recording for replay: %s", e)
            return

        accepted = 0
        try:
            for payload in iter_samples(df):
                if not self.running:
                    break

                try:
                    sample = LocationSample(**payload)
                except ValidationError as e:
                    self.recorder.skip(f"invalid sample: {e.errors()[0]['msg']}")
                    continue

                try:
                    if self.recorder.accept(sample) is not None:
                        accepted += 1
                except PersistenceError:
                    # Already reported by the recorder; keep recording
                    continue

                if accepted % 10 == 0:
                    logger.debug("Replayed %d/%d points", accepted, len(df))

                await asyncio.sleep(interval)
        finally:
            try:
                self.recorder.stop()
            except PersistenceError as e:
                logger.error("Could not finalize replayed trip: %s", e)
            logger.info("Replay finished after %d points", accepted)
