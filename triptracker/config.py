import os
import logging
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///triptracker.db")

# Recording configuration
DEFAULT_USER_ID = os.getenv("DEFAULT_USER_ID", "local_user")
DEFAULT_TRANSPORT_TYPE = os.getenv("DEFAULT_TRANSPORT_TYPE", "car")

# Vehicle profile defaults
DEFAULT_FUEL_CONSUMPTION = float(os.getenv("DEFAULT_FUEL_CONSUMPTION", "8.0"))  # L/100km
DEFAULT_FUEL_TYPE = os.getenv("DEFAULT_FUEL_TYPE", "Petrol")
DEFAULT_FUEL_PRICE = float(os.getenv("DEFAULT_FUEL_PRICE", "1.5"))  # per liter
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

# Remote backend configuration
REMOTE_API_URL = os.getenv("REMOTE_API_URL", "http://localhost:8000")
REMOTE_API_KEY = os.getenv("REMOTE_API_KEY", "")
REMOTE_TRIPS_TABLE = os.getenv("REMOTE_TRIPS_TABLE", "maxcar_trips")
REMOTE_LOCATIONS_TABLE = os.getenv("REMOTE_LOCATIONS_TABLE", "maxcar_locations")
REMOTE_STATS_FUNCTION = os.getenv("REMOTE_STATS_FUNCTION", "maxcar_calculate_trip_stats")
SYNC_TIMEOUT_SECONDS = float(os.getenv("SYNC_TIMEOUT_SECONDS", "30"))
SYNC_ENABLED = os.getenv("SYNC_ENABLED", "true").lower() == "true"

# Replay configuration
EMIT_INTERVAL_SECONDS = float(os.getenv("EMIT_INTERVAL_SECONDS", "1.0"))

# API configuration
API_DEFAULT_LIMIT = int(os.getenv("API_DEFAULT_LIMIT", "50"))
API_MAX_LIMIT = int(os.getenv("API_MAX_LIMIT", "500"))

# Data paths
DATA_DIR = os.getenv("DATA_DIR", "data")
TRACKSPOINTS_CSV = os.path.join(DATA_DIR, "trackpoints.csv")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "triptracker.log")

# Development configuration
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

class Config:
    """Configuration class with runtime overrides."""

    def __init__(self):
        self.database_url = DATABASE_URL
        self.default_user_id = DEFAULT_USER_ID
        self.default_transport_type = DEFAULT_TRANSPORT_TYPE

        # Vehicle defaults
        self.default_fuel_consumption = DEFAULT_FUEL_CONSUMPTION
        self.default_fuel_type = DEFAULT_FUEL_TYPE
        self.default_fuel_price = DEFAULT_FUEL_PRICE
        self.default_currency = DEFAULT_CURRENCY

        # Remote backend
        self.remote_api_url = REMOTE_API_URL
        self.remote_api_key = REMOTE_API_KEY
        self.remote_trips_table = REMOTE_TRIPS_TABLE
        self.remote_locations_table = REMOTE_LOCATIONS_TABLE
        self.remote_stats_function = REMOTE_STATS_FUNCTION
        self.sync_timeout_seconds = SYNC_TIMEOUT_SECONDS
        self.sync_enabled = SYNC_ENABLED

        # Replay
        self.emit_interval_seconds = EMIT_INTERVAL_SECONDS
        self.trackspoints_csv = TRACKSPOINTS_CSV

        # API settings
        self.api_default_limit = API_DEFAULT_LIMIT
        self.api_max_limit = API_MAX_LIMIT

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        # Development
        self.debug = DEBUG

    def get_vehicle_defaults(self) -> dict:
        """Get the out-of-the-box vehicle profile as a dictionary."""
        return {
            "fuel_consumption": self.default_fuel_consumption,
            "fuel_type": self.default_fuel_type,
            "fuel_price": self.default_fuel_price,
            "currency": self.default_currency
        }

    def get_remote_config(self) -> dict:
        """Get remote backend configuration as dictionary (without the key)."""
        return {
            "api_url": self.remote_api_url,
            "trips_table": self.remote_trips_table,
            "locations_table": self.remote_locations_table,
            "stats_function": self.remote_stats_function,
            "timeout_seconds": self.sync_timeout_seconds,
            "enabled": self.sync_enabled
        }

# Global configuration instance
config = Config()

def setup_logging():
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format=config.log_format,
        handlers=[
            logging.FileHandler(config.log_file),
            logging.StreamHandler()
        ]
    )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logging.getLogger(__name__)

# Initialize logger
logger = setup_logging()
