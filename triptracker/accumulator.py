from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from .geo import haversine_m, mps_to_kmh


class TripAccumulator:
    """Running distance, duration and max speed of one recording session.

    Samples are anything exposing ``latitude``, ``longitude`` and ``speed``
    (m/s, may be None). Must be fed strictly in arrival order, one call per
    sample.
    """

    def __init__(self, start_time: datetime):
        self.start_time = start_time
        self.total_distance = 0.0  # meters
        self.duration = timedelta(0)
        self.max_speed: Optional[float] = None  # m/s
        self.route: List[Any] = []

    def accept(self, sample: Any, now: datetime) -> float:
        """Fold one sample into the totals; returns the distance it added."""
        additional_distance = 0.0
        if self.route:
            last = self.route[-1]
            additional_distance = haversine_m(last.latitude, last.longitude, sample.latitude, sample.longitude)

        speed = sample.speed
        if speed is not None:
            if self.max_speed is None or speed > self.max_speed:
                self.max_speed = speed

        self.total_distance += additional_distance
        self.route.append(sample)
        self.tick(now)
        return additional_distance

    def tick(self, now: datetime):
        """Recompute duration against the session start."""
        self.duration = max(timedelta(0), now - self.start_time)

    @property
    def duration_seconds(self) -> int:
        return int(self.duration.total_seconds())

    @property
    def point_count(self) -> int:
        return len(self.route)

    def average_speed(self) -> float:
        """Distance over duration in m/s.

        Duration is counted in whole seconds, so a session shorter than one
        second reports 0 whatever distance it covered.
        """
        seconds = self.duration_seconds
        if seconds == 0:
            return 0.0
        return self.total_distance / seconds

    def average_speed_kmh(self) -> float:
        return mps_to_kmh(self.average_speed())

    def max_speed_kmh(self) -> float:
        return mps_to_kmh(self.max_speed or 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distance": self.total_distance,
            "duration": self.duration_seconds,
            "avg_speed_kmh": self.average_speed_kmh(),
            "max_speed_kmh": self.max_speed_kmh(),
            "point_count": self.point_count,
        }


def compute_trip_stats(points: Iterable[Any], start_time: datetime, end_time: Optional[datetime] = None) -> Dict[str, Any]:
    """Replay stored points through the accumulator.

    Points must be ordered by timestamp. Without an end time the duration runs
    to the last point.
    """
    accumulator = TripAccumulator(start_time)
    for point in points:
        accumulator.accept(point, point.timestamp)
    if end_time is not None:
        accumulator.tick(end_time)

    return {
        "total_distance": accumulator.total_distance,
        "total_duration": accumulator.duration_seconds,
        "avg_speed": accumulator.average_speed_kmh(),
        "max_speed": accumulator.max_speed_kmh(),
        "source": "local",
    }
