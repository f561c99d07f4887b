from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator
from .models import to_naive_utc


class LocationSample(BaseModel):
    """One position fix from the geolocation source."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = None  # meters
    altitude: Optional[float] = None  # meters
    speed: Optional[float] = None  # m/s
    bearing: Optional[float] = None  # degrees
    timestamp: Optional[datetime] = None

    @field_validator("speed", "accuracy")
    @classmethod
    def _negative_is_unknown(cls, value: Optional[float]) -> Optional[float]:
        # Devices report -1 when the value is unavailable
        if value is not None and value < 0:
            return None
        return value

    @field_validator("bearing")
    @classmethod
    def _normalize_bearing(cls, value: Optional[float]) -> Optional[float]:
        if value is None or value < 0:
            return None
        return value % 360.0

    @field_validator("timestamp")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None


class SimulationRequest(BaseModel):
    track_id: Optional[str] = None
    interval: Optional[float] = Field(None, ge=0)
