from typing import Optional


class TripTrackerError(Exception):
    """Base class for recoverable trip tracker errors."""


class PersistenceError(TripTrackerError):
    """A Local Store read or write failed."""


class RecordingStateError(TripTrackerError):
    """The requested transition is not allowed from the current recording state."""


class TripNotFoundError(TripTrackerError):
    def __init__(self, trip_id: str):
        super().__init__(f"Trip {trip_id} not found")
        self.trip_id = trip_id


class RemoteSyncError(TripTrackerError):
    """Pushing to the remote backend failed. Local data is untouched."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class SyncInProgressError(TripTrackerError):
    def __init__(self, trip_id: Optional[str] = None):
        super().__init__(f"Sync already in progress for trip {trip_id}" if trip_id else "Sync already in progress")
        self.trip_id = trip_id


class InvalidSettingsError(TripTrackerError):
    """Vehicle settings failed validation and were not saved."""
