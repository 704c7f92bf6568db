"""Data models for practice-management billing sync."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any


class TimeEntryStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    BILLED = "billed"


class ClientStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class MatterStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"


class SyncStatus(str, Enum):
    """Lifecycle of a billing entry, owned by the sync engine."""

    PENDING = "pending"
    APPROVED = "approved"
    SYNCED = "synced"
    FAILED = "failed"
    REJECTED = "rejected"


class ConflictOutcome(str, Enum):
    AUTO_MERGED = "auto-merged"
    REMOTE_WINS = "remote-wins"
    LOCAL_WINS = "local-wins"
    PENDING_MANUAL = "pending-manual"


class ConflictReason(str, Enum):
    REMOTE_MODIFIED = "remote_modified"  # vendor last-modified moved
    CONTENT_CHANGED = "content_changed"  # content hash moved
    VENDOR_CONFLICT = "vendor_conflict"  # vendor answered 409


# ============================================================================
# Canonical entities
# ============================================================================


@dataclass
class TimeEntry:
    """A unit of billable time, vendor neutral."""

    client_id: str
    date: str  # YYYY-MM-DD
    hours: float
    description: str
    id: str | None = None
    matter_id: str | None = None
    billable_rate: float | None = None
    billable: bool = True
    activity_code: str | None = None
    task_code: str | None = None
    user_id: str | None = None
    status: str = TimeEntryStatus.DRAFT.value
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Client:
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    status: str = ClientStatus.ACTIVE.value
    default_rate: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Matter:
    """A client matter. Cannot exist without its client."""

    id: str
    client_id: str
    name: str
    open_date: str
    status: str = MatterStatus.ACTIVE.value
    description: str | None = None
    close_date: str | None = None
    practice_area: str | None = None
    responsible_attorney: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class User:
    id: str
    name: str
    email: str
    role: str = "user"
    is_active: bool = True
    default_rate: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Candidate:
    """A billing-entry candidate produced upstream (e.g. from an email)."""

    origin_id: str
    subject: str
    participants: list[str]
    timestamp: datetime
    suggested_hours: float
    suggested_description: str
    suggested_client: str | None = None
    suggested_matter: str | None = None


@dataclass
class BillingEntry:
    """The unit of synchronization: a time entry plus its resolved context."""

    id: str
    time_entry: TimeEntry
    client: Client
    platform: str
    origin_id: str | None = None
    matter: Matter | None = None
    user: User | None = None
    owner_id: str | None = None
    status: SyncStatus = SyncStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None
    approved_at: datetime | None = None
    synced_at: datetime | None = None
    external_id: str | None = None
    retry_count: int = 0
    max_attempts: int = 3
    retryable: bool = False
    last_error: str | None = None
    last_error_code: str | None = None
    next_retry_at: datetime | None = None
    synced_hash: str | None = None
    remote_updated_at: datetime | None = None
    history: list["SyncAttempt"] = field(default_factory=list)

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.retry_count, 0)


@dataclass
class SyncAttempt:
    """One vendor write made for a billing entry."""

    operation: str
    started_at: datetime
    completed_at: datetime | None = None
    success: bool = False
    code: str | None = None
    error: str | None = None
    external_id: str | None = None


@dataclass
class SyncConflict:
    """Divergence between the local entry and its vendor copy."""

    id: str
    entry_id: str
    platform: str
    local: TimeEntry
    remote: TimeEntry | None
    reason: ConflictReason
    owner_id: str | None = None
    fields: list[str] = field(default_factory=list)
    outcome: ConflictOutcome = ConflictOutcome.PENDING_MANUAL
    detected_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass
class PlatformCredential:
    """Credential material for one platform. Mutated only by the auth manager."""

    platform: str
    api_key: str | None = None
    api_secret: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    needs_refresh: bool = False


@dataclass
class AuthToken:
    token: str
    expires_at: datetime
    refresh_token: str | None = None


# ============================================================================
# Envelopes and filters
# ============================================================================


@dataclass
class Pagination:
    limit: int
    offset: int
    total: int | None = None
    has_more: bool = False


@dataclass
class ApiResponse:
    """Result envelope returned by every adapter call."""

    success: bool
    data: Any = None
    error: str | None = None
    code: str | None = None
    status_code: int | None = None
    retry_after: float | None = None
    pagination: Pagination | None = None

    @classmethod
    def ok(cls, data: Any = None, pagination: Pagination | None = None) -> "ApiResponse":
        return cls(success=True, data=data, pagination=pagination)

    @classmethod
    def fail(cls, error: Exception) -> "ApiResponse":
        """Wrap a PracticeManagementError (or any exception) as a failed result."""
        return cls(
            success=False,
            error=str(error),
            code=getattr(error, "code", "UNKNOWN_ERROR"),
            status_code=getattr(error, "status_code", None),
            retry_after=getattr(error, "retry_after", None),
        )


@dataclass
class BulkError:
    entry: TimeEntry
    error: str
    code: str | None = None


@dataclass
class BulkResult:
    created: int = 0
    updated: int = 0
    errors: list[BulkError] = field(default_factory=list)
    entries: list[TimeEntry] = field(default_factory=list)


@dataclass
class TimeEntryFilters:
    start_date: str | None = None
    end_date: str | None = None
    client_id: str | None = None
    matter_id: str | None = None
    user_id: str | None = None
    billable: bool | None = None
    status: str | None = None
    limit: int = 50
    offset: int = 0


@dataclass
class ClientFilters:
    search: str | None = None
    status: str | None = None
    limit: int = 50
    offset: int = 0


@dataclass
class MatterFilters:
    search: str | None = None
    status: str | None = None
    practice_area: str | None = None
    responsible_attorney: str | None = None
    limit: int = 50
    offset: int = 0


# ============================================================================
# Configuration
# ============================================================================


@dataclass
class PlatformConfig:
    """Static configuration for one adapter instance."""

    platform: str
    subdomain: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    api_secret: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    timeout_s: float = 30.0

    @classmethod
    def from_dict(cls, platform: str, data: dict) -> "PlatformConfig":
        known = {f.name for f in fields(cls)}
        return cls(platform=platform, **{k: v for k, v in data.items() if k in known and k != "platform"})


@dataclass
class SyncConfig:
    """Configuration for sync behavior."""

    max_attempts: int = 3
    base_delay_s: float = 5.0
    multiplier: float = 2.0
    max_delay_s: float = 300.0
    request_timeout_s: float = 30.0
    max_concurrency: int = 2
    auto_retry: bool = True
    background_sync: bool = False
    sync_interval_s: float = 30.0

    @classmethod
    def from_dict(cls, data: dict | None) -> "SyncConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class HealthConfig:
    interval_s: float = 300.0
    backoff_base_s: float = 30.0
    max_backoff_s: float = 3600.0
    probe_timeout_s: float = 10.0

    @classmethod
    def from_dict(cls, data: dict | None) -> "HealthConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


# ============================================================================
# Results
# ============================================================================


@dataclass
class SyncResult:
    """Outcome of one synchronization attempt for one entry."""

    entry_id: str
    success: bool
    status: SyncStatus | None = None
    external_id: str | None = None
    error: str | None = None
    code: str | None = None
    skipped: bool = False
    conflict_id: str | None = None


@dataclass
class SyncRunSummary:
    platform: str
    synced_count: int = 0
    error_count: int = 0
    total_processed: int = 0
    skipped_count: int = 0
    results: list[SyncResult] = field(default_factory=list)


@dataclass
class EntrySyncStatus:
    """Sync state of one entry with its most recent attempts first."""

    entry_id: str
    platform: str
    status: SyncStatus
    external_id: str | None = None
    retry_count: int = 0
    retryable: bool = False
    last_error: str | None = None
    next_retry_at: datetime | None = None
    synced_at: datetime | None = None
    retry_scheduled: bool = False
    in_flight: bool = False
    history: list[SyncAttempt] = field(default_factory=list)
    open_conflicts: list[str] = field(default_factory=list)


@dataclass
class CleanupResult:
    history_removed: int = 0
    entries_removed: int = 0
    conflicts_removed: int = 0


@dataclass
class SyncStats:
    total_entries: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    retryable: int = 0
    sync_rate: float = 0.0
    platforms: dict[str, int] = field(default_factory=dict)
    conflicts_total: int = 0
    conflicts_pending: int = 0
    conflicts_by_outcome: dict[str, int] = field(default_factory=dict)


# ============================================================================
# Serialization
# ============================================================================


def _dump(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _load_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def to_dict(record: Any) -> dict:
    """Convert a dataclass record into JSON-ready primitives."""
    return _dump(asdict(record))


def time_entry_from_dict(data: dict) -> TimeEntry:
    return TimeEntry(**data)


def attempt_from_dict(data: dict) -> SyncAttempt:
    data = dict(data)
    data["started_at"] = _load_datetime(data.get("started_at"))
    data["completed_at"] = _load_datetime(data.get("completed_at"))
    return SyncAttempt(**data)


def billing_entry_from_dict(data: dict) -> BillingEntry:
    data = dict(data)
    data["time_entry"] = TimeEntry(**data["time_entry"])
    data["client"] = Client(**data["client"])
    data["matter"] = Matter(**data["matter"]) if data.get("matter") else None
    data["user"] = User(**data["user"]) if data.get("user") else None
    data["status"] = SyncStatus(data["status"])
    for key in ("created_at", "updated_at", "approved_at", "synced_at", "next_retry_at", "remote_updated_at"):
        data[key] = _load_datetime(data.get(key))
    data["history"] = [attempt_from_dict(a) for a in data.get("history", [])]
    return BillingEntry(**data)


def conflict_from_dict(data: dict) -> SyncConflict:
    data = dict(data)
    data["local"] = TimeEntry(**data["local"])
    data["remote"] = TimeEntry(**data["remote"]) if data.get("remote") else None
    data["reason"] = ConflictReason(data["reason"])
    data["outcome"] = ConflictOutcome(data["outcome"])
    data["detected_at"] = _load_datetime(data.get("detected_at"))
    data["resolved_at"] = _load_datetime(data.get("resolved_at"))
    return SyncConflict(**data)


def credential_from_dict(data: dict) -> PlatformCredential:
    data = dict(data)
    data["expires_at"] = _load_datetime(data.get("expires_at"))
    return PlatformCredential(**data)
