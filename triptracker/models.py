import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC now; all stored timestamps are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_trip_id() -> str:
    return str(uuid.uuid4())


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return to_naive_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))


def _float_or_none(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


class Trip(Base):
    __tablename__ = "trips"
    id = Column(String(36), primary_key=True, default=new_trip_id)
    user_id = Column(String(128), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime)

    # Statistics
    distance = Column(Float)  # meters
    duration = Column(Integer)  # seconds
    avg_speed = Column(Float)  # km/h
    max_speed = Column(Float)  # km/h
    transport_type = Column(String(32), default="car")

    # Fuel snapshot taken when the trip is finalized
    fuel_used = Column(Float)  # liters
    fuel_cost = Column(Float)
    fuel_consumption = Column(Float)  # L/100km
    fuel_type = Column(String(64))
    fuel_price = Column(Float)  # per liter
    currency = Column(String(8))

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    # Local sync bookkeeping
    synced_at = Column(DateTime, index=True)
    modified_at = Column(DateTime)

    points = relationship(
        "LocationPoint",
        back_populates="trip",
        order_by="LocationPoint.timestamp",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_in_progress(self) -> bool:
        return self.end_time is None

    @property
    def needs_sync(self) -> bool:
        """True until synced, and again whenever modified after the last sync."""
        if self.synced_at is None:
            return True
        return self.modified_at is not None and self.modified_at > self.synced_at

    def to_remote(self) -> Dict[str, Any]:
        """Row payload for the remote backend (no local sync bookkeeping)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "distance": self.distance,
            "duration": self.duration,
            "avg_speed": self.avg_speed,
            "max_speed": self.max_speed,
            "transport_type": self.transport_type,
            "fuel_used": self.fuel_used,
            "fuel_cost": self.fuel_cost,
            "fuel_consumption": self.fuel_consumption,
            "fuel_type": self.fuel_type,
            "fuel_price": self.fuel_price,
            "currency": self.currency,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_remote()
        data.update({
            "synced_at": _iso(self.synced_at),
            "modified_at": _iso(self.modified_at),
            "in_progress": self.is_in_progress,
            "needs_sync": self.needs_sync,
        })
        return data

    def __repr__(self):
        return (f"Trip(id={self.id!r}, start_time={self.start_time}, end_time={self.end_time}, "
                f"distance={self.distance}, duration={self.duration})")


class LocationPoint(Base):
    __tablename__ = "location_points"
    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(String(36), ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float)  # meters
    altitude = Column(Float)  # meters
    speed = Column(Float)  # m/s
    bearing = Column(Float)  # degrees from north
    timestamp = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    synced_at = Column(DateTime, index=True)
    trip = relationship("Trip", back_populates="points")

    def to_remote(self) -> Dict[str, Any]:
        # Remote ids are assigned server-side; only the trip id is shared.
        return {
            "trip_id": self.trip_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "altitude": self.altitude,
            "speed": self.speed,
            "bearing": self.bearing,
            "timestamp": _iso(self.timestamp),
            "created_at": _iso(self.created_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_remote()
        data["id"] = self.id
        data["synced_at"] = _iso(self.synced_at)
        return data


class VehicleSettingsRecord(Base):
    __tablename__ = "vehicle_settings"
    user_id = Column(String(128), primary_key=True)
    fuel_consumption = Column(Float, nullable=False)
    fuel_type = Column(String(64), nullable=False)
    fuel_price = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


def trip_from_remote(data: Dict[str, Any]) -> Trip:
    """Build a detached Trip from a remote backend row."""
    now = utcnow()
    return Trip(
        id=data["id"],
        user_id=data["user_id"],
        start_time=_parse_iso(data["start_time"]),
        end_time=_parse_iso(data.get("end_time")),
        distance=_float_or_none(data.get("distance")),
        duration=int(data["duration"]) if data.get("duration") is not None else None,
        avg_speed=_float_or_none(data.get("avg_speed")),
        max_speed=_float_or_none(data.get("max_speed")),
        transport_type=data.get("transport_type"),
        fuel_used=_float_or_none(data.get("fuel_used")),
        fuel_cost=_float_or_none(data.get("fuel_cost")),
        fuel_consumption=_float_or_none(data.get("fuel_consumption")),
        fuel_type=data.get("fuel_type"),
        fuel_price=_float_or_none(data.get("fuel_price")),
        currency=data.get("currency"),
        created_at=_parse_iso(data.get("created_at")) or now,
        updated_at=_parse_iso(data.get("updated_at")) or now,
    )
