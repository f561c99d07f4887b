from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from .errors import SyncInProgressError


class SyncStatus(Enum):
    PENDING = "pending"  # not yet synced to remote
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"
    MODIFIED = "modified"  # edited locally after a sync

    @property
    def needs_sync(self) -> bool:
        if self is SyncStatus.PENDING or self is SyncStatus.FAILED or self is SyncStatus.MODIFIED:
            return True
        if self is SyncStatus.SYNCED or self is SyncStatus.SYNCING:
            return False
        raise ValueError(f"Unhandled sync status: {self!r}")

    @property
    def can_sync(self) -> bool:
        if self is SyncStatus.SYNCING:
            return False
        if (self is SyncStatus.PENDING or self is SyncStatus.SYNCED
                or self is SyncStatus.FAILED or self is SyncStatus.MODIFIED):
            return True
        raise ValueError(f"Unhandled sync status: {self!r}")

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    def to_int(self) -> int:
        return _STATUS_CODES[self]

    @classmethod
    def from_int(cls, value: int) -> "SyncStatus":
        for status, code in _STATUS_CODES.items():
            if code == value:
                return status
        return cls.PENDING


_STATUS_CODES = {
    SyncStatus.PENDING: 0,
    SyncStatus.SYNCING: 1,
    SyncStatus.SYNCED: 2,
    SyncStatus.FAILED: 3,
    SyncStatus.MODIFIED: 4,
}

_DISPLAY_NAMES = {
    SyncStatus.PENDING: "Pending",
    SyncStatus.SYNCING: "Syncing...",
    SyncStatus.SYNCED: "Synced",
    SyncStatus.FAILED: "Failed",
    SyncStatus.MODIFIED: "Modified",
}


@dataclass(frozen=True)
class SyncInfo:
    """Per-record sync bookkeeping. Transitions return a new SyncInfo."""

    status: SyncStatus = SyncStatus.PENDING
    last_sync_attempt: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    @property
    def needs_sync(self) -> bool:
        return self.status.needs_sync

    @property
    def can_sync(self) -> bool:
        return self.status.can_sync

    def begin(self, now: datetime, record_id: Optional[str] = None) -> "SyncInfo":
        """pending|failed|modified|synced -> syncing."""
        if not self.status.can_sync:
            raise SyncInProgressError(record_id)
        retry_count = self.retry_count + 1 if self.status is SyncStatus.FAILED else self.retry_count
        return replace(self, status=SyncStatus.SYNCING, last_sync_attempt=now, retry_count=retry_count)

    def succeed(self, now: datetime) -> "SyncInfo":
        return replace(self, status=SyncStatus.SYNCED, last_sync_success=now, error_message=None, retry_count=0)

    def fail(self, error: str, now: datetime) -> "SyncInfo":
        return replace(self, status=SyncStatus.FAILED, last_sync_attempt=now, error_message=error)

    def mark_modified(self) -> "SyncInfo":
        if self.status is SyncStatus.SYNCED:
            return replace(self, status=SyncStatus.MODIFIED)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "display_name": self.status.display_name,
            "needs_sync": self.needs_sync,
            "can_sync": self.can_sync,
            "last_sync_attempt": self.last_sync_attempt.isoformat() if self.last_sync_attempt else None,
            "last_sync_success": self.last_sync_success.isoformat() if self.last_sync_success else None,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
        }

    @classmethod
    def for_trip(cls, trip) -> "SyncInfo":
        """Derive the starting bookkeeping of a stored trip from its timestamps."""
        if trip.synced_at is None:
            return cls(status=SyncStatus.PENDING)
        if trip.needs_sync:
            return cls(status=SyncStatus.MODIFIED, last_sync_success=trip.synced_at)
        return cls(status=SyncStatus.SYNCED, last_sync_success=trip.synced_at)
