"""
Pure data models — no HTTP or sqlite imports.
"""

from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/caldav-calendar-sync.db"
DEFAULT_CONFIG = Path.home() / ".config/caldav-calendar-sync.conf"

DEFAULT_SYNC_INTERVAL_MINUTES = 15
DEFAULT_ROW_RETENTION_DAYS = 183  # ~6 months
DEFAULT_TOMBSTONE_RETENTION_DAYS = 30

ALL_DAY_SENTINEL = "All Day"
ALL_DAY_DURATION = "PT24H0M"


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class TransportError(CalendarSyncError):
    """A single remote call failed (network error or unexpected HTTP status)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CodecError(CalendarSyncError):
    """An event could not be encoded, or a wire payload could not be decoded."""

    pass


class CacheError(CalendarSyncError):
    """A local cache transaction failed and was rolled back."""

    pass


class UnknownCalendarError(CalendarSyncError):
    """A logical calendar name is not in the calendar directory."""

    pass


class ConfigError(CalendarSyncError):
    """Configuration is missing or invalid."""

    pass


class EventStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    TENTATIVE = "TENTATIVE"
    CANCELLED = "CANCELLED"


class EventVisibility(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    CONFIDENTIAL = "CONFIDENTIAL"


class EventTransparency(str, Enum):
    OPAQUE = "OPAQUE"
    TRANSPARENT = "TRANSPARENT"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float


@dataclass
class Event:
    """Canonical calendar event.

    Optional attributes use ``None`` for "not present on the remote side";
    an empty string means the field is present but cleared.  ``time`` is an
    ``HH:MM`` string, or empty / ``"All Day"`` for all-day events.
    """

    id: str
    title: str
    date: str
    time: str = ""
    dtend: str | None = None
    duration: str | None = None
    description: str | None = None
    location: str | None = None
    organizer: str | None = None
    attendees: list[str] | None = None
    categories: list[str] | None = None
    priority: int | None = None
    status: EventStatus | None = None
    visibility: EventVisibility | None = None
    transparency: EventTransparency | None = None
    rrule: str | None = None
    geo: GeoPoint | None = None
    url: str | None = None
    attachments: list[str] | None = None
    timezone: str | None = None
    sequence: int | None = None
    created: str | None = None
    last_modified: str | None = None
    is_vacation: bool = False


@dataclass
class CachedEvent:
    """An Event plus the cache-only bookkeeping stored alongside it."""

    event: Event
    calendar_name: str | None = None
    calendar_path: str | None = None
    caldav_filename: str | None = None
    sync_status: SyncStatus = SyncStatus.SYNCED
    local_modified: float | None = None
    synced_at: float | None = None

    @property
    def id(self) -> str:
        return self.event.id


@dataclass
class Tombstone:
    """A locally deleted id awaiting (or past) remote propagation."""

    id: str
    deleted_at: float
    synced_to_remote: bool = False
    calendar_name: str | None = None
    calendar_path: str | None = None
    caldav_filename: str | None = None


@dataclass(frozen=True)
class Calendar:
    """One logical calendar: a named remote collection."""

    name: str
    path: str
    display_name: str
    count: int = 0


@dataclass
class CalDAVCredentials:
    username: str
    password: str
    hostname: str
    collections_base_path: str = ""


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    credentials: CalDAVCredentials
    db_path: Path = DEFAULT_STATE_DB
    calendars: list[Calendar] = field(default_factory=list)
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES
    default_calendar: str = "shared"
    row_retention_days: int = DEFAULT_ROW_RETENTION_DAYS
    tombstone_retention_days: int = DEFAULT_TOMBSTONE_RETENTION_DAYS
    request_timeout: float | None = None
    verbose: bool = False


@dataclass
class SyncReport:
    """Statistics for one reconciliation pass."""

    deletions_pushed: int = 0
    pulled: int = 0
    merged: int = 0
    skipped_tombstoned: int = 0
    skipped_pending: int = 0
    remote_deleted: int = 0
    writes_pushed: int = 0
    write_failures: int = 0
    errors: int = 0
    calendar_counts: dict[str, int] = field(default_factory=dict)
    failed_calendars: list[str] = field(default_factory=list)
