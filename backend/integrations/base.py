"""
Store Integration — Shared Types and Error Taxonomy

Every upstream connector raises from the same small hierarchy so the
sync workers can decide uniformly what is retried, what skips a single
record, and what aborts a whole run:

    UpstreamError
      ├── RateLimited             retry with backoff (429 / THROTTLED)
      ├── TransientUpstreamError  retry once after a short delay
      └── UpstreamAuthError       fatal, surfaced to the caller
    MalformedRecord               skip the record, count it
    PersistenceError              skip the record, count it
    SyncAlreadyRunning            single-flight rejection
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()


# ── Errors ─────────────────────────────────────────────────────────────────


class UpstreamError(Exception):
    """Base class for failures talking to the upstream store API."""


class RateLimited(UpstreamError):
    """Upstream asked us to slow down. `retry_after` is its hint in seconds, if any."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientUpstreamError(UpstreamError):
    """Non-rate-limit HTTP or transport failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(UpstreamError):
    """Credentials rejected. Never retried."""


class MalformedRecord(ValueError):
    """An upstream record is missing fields required to persist it."""


class PersistenceError(Exception):
    """Writing a single record failed at the storage layer."""


class SyncAlreadyRunning(RuntimeError):
    """A sync of this type is already in progress in this process."""


# ── Credentials ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StoreCredentials:
    shop_domain: str
    access_token: str

    def __post_init__(self):
        if not self.shop_domain or not self.access_token:
            raise UpstreamAuthError("Store credentials are not configured")

    def __repr__(self) -> str:
        return f"StoreCredentials(shop_domain={self.shop_domain!r}, access_token='***')"


# ── Sync state ─────────────────────────────────────────────────────────────


class SyncPhase(str, Enum):
    """Lifecycle of a sync job: IDLE → RUNNING → (COMPLETED | FAILED)."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Standardized outcome of one sync run."""

    sync_type: str
    status: SyncPhase = SyncPhase.RUNNING
    records_processed: int = 0
    items_processed: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    pages_fetched: int = 0
    window_start: datetime | None = None
    message: str = ""
    error: str | None = None
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == SyncPhase.COMPLETED

    def complete(self, message: str) -> "SyncResult":
        self.status = SyncPhase.COMPLETED
        self.message = message
        self.completed_at = datetime.utcnow()
        return self

    def fail(self, error: BaseException, message: str) -> "SyncResult":
        self.status = SyncPhase.FAILED
        self.error = f"{type(error).__name__}: {error}"
        self.message = message
        self.completed_at = datetime.utcnow()
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "sync_type": self.sync_type,
            "status": self.status.value,
            "success": self.success,
            "records_processed": self.records_processed,
            "items_processed": self.items_processed,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "pages_fetched": self.pages_fetched,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "message": self.message,
            "error": self.error,
            "errors": list(self.errors),
            "metadata": dict(self.metadata),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
