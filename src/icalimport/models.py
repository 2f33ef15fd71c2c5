"""Data models for iCalendar feed import."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, validator
import pytz


class FetchErrorKind(str, Enum):
    """Reasons a feed could not be retrieved."""

    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    EMPTY_BODY = "empty_body"


class ImportOperation(str, Enum):
    """Per-event import operation types."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class ImportLogLevel(str, Enum):
    """Verbosity of the persisted import log."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    DEBUG = "debug"

    @property
    def rank(self) -> int:
        return _LOG_LEVEL_RANK[self]

    def allows(self, level: "ImportLogLevel") -> bool:
        """Whether an entry at ``level`` passes this threshold."""
        return ImportLogLevel(level).rank <= self.rank


_LOG_LEVEL_RANK = {
    ImportLogLevel.ERROR: 0,
    ImportLogLevel.WARNING: 1,
    ImportLogLevel.INFO: 2,
    ImportLogLevel.DEBUG: 3,
}


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return ``dt`` as an aware UTC datetime (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


@dataclass
class RawFeedDocument:
    """Raw feed bytes as returned by the fetcher."""

    content: bytes
    encoding: str = "utf-8"
    url: Optional[str] = None
    transport: Optional[str] = None

    def text(self) -> str:
        """Decode the payload, dropping a leading byte order mark."""
        try:
            decoded = self.content.decode(self.encoding or "utf-8", errors="replace")
        except LookupError:
            decoded = self.content.decode("utf-8", errors="replace")
        return decoded.lstrip("\ufeff")


@dataclass
class FetchFailure:
    """Explicit fetch error value; the fetcher never raises."""

    kind: FetchErrorKind
    message: str
    url: Optional[str] = None
    attempts: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class ParsedEvent(BaseModel):
    """One VEVENT as read from a feed."""

    model_config = ConfigDict(frozen=True)

    uid: str = Field("", description="iCalendar UID (may be empty)")
    summary: str = Field("", description="Event title")
    description: str = Field("", description="Event description")
    location: str = Field("", description="Event location")
    start: Optional[datetime] = Field(None, description="Start, aware in source_timezone")
    end: Optional[datetime] = Field(None, description="End, aware in source_timezone")
    all_day: bool = Field(False, description="DTSTART carried a bare date")
    source_timezone: str = Field("UTC", description="IANA timezone of start/end")
    last_modified: Optional[datetime] = Field(None, description="LAST-MODIFIED, UTC")

    @property
    def is_valid(self) -> bool:
        return bool(self.uid) and self.start is not None


class StoredEvent(BaseModel):
    """Event row owned by the event store."""

    id: int = Field(..., description="Opaque event identifier")
    subject: str = Field("")
    body: str = Field("")
    location: str = Field("")
    start: datetime
    end: datetime
    all_day: bool = Field(False)
    timezone: str = Field("UTC", description="Display timezone of the event")
    original_start: Optional[datetime] = Field(None, description="Start as intended before storage")
    participation_end: Optional[datetime] = Field(None)
    last_modified: Optional[datetime] = Field(None)
    disabled: bool = Field(False)
    thread_id: Optional[int] = Field(None)
    import_source_id: Optional[int] = Field(None)

    @validator('start', 'end', 'original_start', 'participation_end', 'last_modified', pre=True)
    def ensure_timezone_aware(cls, v):
        """Stored timestamps are always UTC."""
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class EventFields(BaseModel):
    """Mutable event fields written by create/update."""

    subject: str = ""
    body: str = ""
    location: str = ""
    start: datetime
    end: datetime
    all_day: bool = False
    timezone: str = "UTC"
    original_start: Optional[datetime] = None
    participation_end: Optional[datetime] = None
    calendar_id: int = 0
    import_source_id: Optional[int] = None

    def differs_from(self, stored: StoredEvent) -> bool:
        """Whether applying these fields would change ``stored``."""
        return (
            self.subject != stored.subject
            or self.body != stored.body
            or self.location != stored.location
            or ensure_utc(self.start) != stored.start
            or ensure_utc(self.end) != stored.end
            or self.all_day != stored.all_day
            or self.timezone != stored.timezone
        )


class UidMapping(BaseModel):
    """Link between an iCalendar UID and a stored event."""

    event_id: int
    ical_uid: str
    import_source_id: Optional[int] = None
    last_updated: Optional[datetime] = None

    @validator('last_updated', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class ImportConfiguration(BaseModel):
    """Typed import settings, resolved once per run."""

    feed_url: Optional[str] = Field(None, description="Default feed for ad-hoc runs")
    calendar_id: int = Field(0, ge=0, description="Target calendar/category")
    board_id: int = Field(0, description="Target board for discussion threads")
    convert_timezone: bool = Field(True)
    target_timezone: str = Field("UTC", description="IANA timezone events are normalized to")
    create_threads: bool = Field(False)
    auto_mark_past_read: bool = Field(True)
    mark_updated_unread: bool = Field(True)
    max_events_per_run: int = Field(100, ge=1)
    log_level: ImportLogLevel = Field(ImportLogLevel.INFO)
    match_window_minutes: int = Field(30, ge=0)
    title_similarity_threshold: float = Field(0.7, ge=0.0, le=1.0)
    participation_hours_before: Optional[int] = Field(None)
    thread_title_prefix: str = Field("Event: ")
    past_read_lookback_days: int = Field(30, ge=1)
    daemon_interval_minutes: int = Field(60, ge=1)

    @validator('target_timezone')
    def validate_target_timezone(cls, v):
        """Reject unknown IANA timezone names."""
        try:
            pytz.timezone(v)
        except pytz.exceptions.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @validator('log_level', pre=True)
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.lower()
        return v

    @property
    def threads_enabled(self) -> bool:
        return self.create_threads and self.board_id > 0


class ImportSource(BaseModel):
    """A configured feed import."""

    id: int
    title: str = ""
    feed_url: str
    calendar_id: int = 0
    board_id: int = 0
    is_active: bool = True
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None


class LogEntry(BaseModel):
    """One entry of a run's import log."""

    level: ImportLogLevel
    message: str
    event_uid: Optional[str] = None
    event_id: Optional[int] = None
    action: str = "import"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))


class ImportResult(BaseModel):
    """Outcome for a single event of a run."""

    operation: ImportOperation
    event_uid: str
    success: bool
    event_id: Optional[int] = None
    event_summary: Optional[str] = None
    matched_by: Optional[str] = None
    error_message: Optional[str] = None


class RunSummary(BaseModel):
    """Result of one reconciliation run."""

    run_id: UUID = Field(default_factory=uuid4)
    import_source_id: Optional[int] = None
    feed_url: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = None

    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)

    events_in_feed: int = 0
    duplicates_removed: int = 0
    results: List[ImportResult] = Field(default_factory=list)
    log: List[LogEntry] = Field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.imported + self.updated + self.skipped

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': str(self.run_id),
            'import_source_id': self.import_source_id,
            'imported': self.imported,
            'updated': self.updated,
            'skipped': self.skipped,
            'errors': list(self.errors),
        }
