import logging
from typing import Any, Dict
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from .config import config
from .errors import InvalidSettingsError, PersistenceError
from .fuel import fuel_cost, fuel_used, format_price
from .models import VehicleSettingsRecord

logger = logging.getLogger(__name__)


class VehicleSettings(BaseModel):
    """Vehicle profile used to price a trip's fuel."""

    fuel_consumption: float = Field(config.default_fuel_consumption, gt=0, description="L/100km")
    fuel_type: str = Field(config.default_fuel_type, min_length=1)
    fuel_price: float = Field(config.default_fuel_price, gt=0, description="Price per liter")
    currency: str = Field(config.default_currency, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("fuel_type")
    @classmethod
    def _strip_fuel_type(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("fuel_type must not be blank")
        return value

    def calculate_fuel_used(self, distance_m: float) -> float:
        return fuel_used(distance_m, self.fuel_consumption)

    def calculate_fuel_cost(self, distance_m: float) -> float:
        return fuel_cost(distance_m, self.fuel_consumption, self.fuel_price)

    def format_cost(self, amount: float) -> str:
        return format_price(amount, self.currency)


def default_settings() -> VehicleSettings:
    return VehicleSettings(**config.get_vehicle_defaults())


def validate_settings(data: Dict[str, Any]) -> VehicleSettings:
    """Validate raw input, raising InvalidSettingsError instead of persisting bad values."""
    try:
        return VehicleSettings(**data)
    except ValidationError as e:
        raise InvalidSettingsError(str(e)) from e


def load_vehicle_settings(db: Session, user_id: str) -> VehicleSettings:
    """Read the user's profile, falling back to defaults when missing or unreadable."""
    try:
        record = db.get(VehicleSettingsRecord, user_id)
    except SQLAlchemyError as e:
        logger.warning("Could not read vehicle settings for %s, using defaults: %s", user_id, e)
        return default_settings()

    if record is None:
        return default_settings()

    try:
        return VehicleSettings(
            fuel_consumption=record.fuel_consumption,
            fuel_type=record.fuel_type,
            fuel_price=record.fuel_price,
            currency=record.currency
        )
    except ValidationError as e:
        logger.warning("Stored vehicle settings for %s are invalid, using defaults: %s", user_id, e)
        return default_settings()


def save_vehicle_settings(db: Session, user_id: str, settings: VehicleSettings) -> VehicleSettings:
    """Replace the user's profile wholesale."""
    try:
        record = db.get(VehicleSettingsRecord, user_id)
        if record is None:
            record = VehicleSettingsRecord(user_id=user_id)
            db.add(record)
        record.fuel_consumption = settings.fuel_consumption
        record.fuel_type = settings.fuel_type
        record.fuel_price = settings.fuel_price
        record.currency = settings.currency
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to save vehicle settings: {e}") from e

    logger.info("Saved vehicle settings for %s: %s", user_id, settings.model_dump())
    return settings


def reset_vehicle_settings(db: Session, user_id: str) -> VehicleSettings:
    return save_vehicle_settings(db, user_id, default_settings())
