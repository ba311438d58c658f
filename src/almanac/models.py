"""Canonical data model shared by the recurrence engine, adapters and the sync engine.

Timestamps on events are epoch milliseconds (UTC); connection and log
timestamps are timezone-aware datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CalendarProvider(StrEnum):
    """Remote provider families a connection can point at."""

    GOOGLE = "google"
    APPLE = "apple"
    NOTION = "notion"


class EventSource(StrEnum):
    LOCAL = "local"
    GOOGLE = "google"
    APPLE = "apple"
    NOTION = "notion"


class SyncStatus(StrEnum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class SyncDirection(StrEnum):
    NONE = "none"
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"

    @property
    def pulls(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL)

    @property
    def pushes(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL)


class SyncAction(StrEnum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"
    CONFLICT_RESOLVED = "conflict_resolved"


class SyncRunStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# Canonical event column holding the external id for each provider family.
EXTERNAL_ID_FIELDS: dict[CalendarProvider, str] = {
    CalendarProvider.GOOGLE: "google_event_id",
    CalendarProvider.APPLE: "caldav_uid",
    CalendarProvider.NOTION: "notion_page_id",
}

PROVIDER_COLORS: dict[str, str] = {
    CalendarProvider.GOOGLE: "#4285F4",
    CalendarProvider.APPLE: "#007AFF",
    CalendarProvider.NOTION: "#000000",
    EventSource.LOCAL: "#34C759",
}
DEFAULT_EVENT_COLOR = "#007AFF"


def to_millis(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds; naive values are taken as UTC."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return int(normalized.timestamp() * 1000)


def from_millis(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def now_millis() -> int:
    return to_millis(datetime.now(UTC))


class CanonicalEventFields(BaseModel):
    """Provider-neutral event fields produced by an adapter from a native event."""

    model_config = ConfigDict(extra="forbid")

    source: EventSource
    google_event_id: str | None = None
    caldav_uid: str | None = None
    notion_page_id: str | None = None
    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    start_time: int
    end_time: int
    is_all_day: bool = False
    recurrence_rule: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    def external_id(self) -> str | None:
        if self.source == EventSource.LOCAL:
            return None
        return getattr(self, EXTERNAL_ID_FIELDS[CalendarProvider(self.source.value)])


class CanonicalEvent(CanonicalEventFields):
    """The unified stored representation of a calendar event."""

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    user_id: int
    connection_id: int | None = None
    source: EventSource = EventSource.LOCAL
    sync_status: SyncStatus = SyncStatus.PENDING
    last_sync_error: str | None = None
    color: str = DEFAULT_EVENT_COLOR
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _require_source_external_id(self) -> CanonicalEvent:
        if self.source != EventSource.LOCAL and not self.external_id():
            field_name = EXTERNAL_ID_FIELDS[CalendarProvider(self.source.value)]
            raise ValueError(f"{self.source} events must carry {field_name}")
        return self

    def external_id_for(self, provider: CalendarProvider) -> str | None:
        return getattr(self, EXTERNAL_ID_FIELDS[provider])


def mark_local_edit(event: CanonicalEvent, **changes: object) -> CanonicalEvent:
    """Apply a local edit: any change resets the event to ``pending``."""
    return event.model_copy(
        update={**changes, "sync_status": SyncStatus.PENDING, "last_sync_error": None}
    )


class CalendarConnection(BaseModel):
    """One user's link to a remote calendar, with opaque credentials."""

    model_config = ConfigDict(extra="ignore")

    id: int
    user_id: int
    provider: CalendarProvider
    is_connected: bool = False
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    caldav_url: str | None = None
    caldav_username: str | None = None
    caldav_password: str | None = Field(default=None, repr=False)
    notion_database_id: str | None = None
    notion_access_token: str | None = Field(default=None, repr=False)
    calendar_id: str | None = None
    calendar_name: str | None = None
    color: str | None = None
    last_sync_at: datetime | None = None

    @property
    def is_sync_enabled(self) -> bool:
        return self.is_connected and self.sync_direction != SyncDirection.NONE

    @property
    def is_push_enabled(self) -> bool:
        return self.is_connected and self.sync_direction.pushes


class SyncLogEntry(BaseModel):
    """Write-once record of a single ``sync_connection`` run."""

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    user_id: int
    connection_id: int
    action: SyncAction
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    status: SyncRunStatus = SyncRunStatus.SUCCESS
    error_message: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


class SyncResult(BaseModel):
    """Outcome of one connection's sync, returned as data rather than raised."""

    model_config = ConfigDict(extra="forbid")

    connection_id: int
    provider: CalendarProvider
    status: SyncRunStatus = SyncRunStatus.SUCCESS
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    errors: list[str] = Field(default_factory=list)

    def resolve_status(self, *, structural_failure: bool = False) -> SyncRunStatus:
        """Derive the final status from collected errors and processed counts."""
        if structural_failure:
            self.status = SyncRunStatus.FAILED
        elif not self.errors:
            self.status = SyncRunStatus.SUCCESS
        elif self.events_processed == 0:
            self.status = SyncRunStatus.FAILED
        else:
            self.status = SyncRunStatus.PARTIAL
        return self.status


class SyncWindow(BaseModel):
    """Time range a sync run considers on both sides."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> SyncWindow:
        if self.end <= self.start:
            raise ValueError("window end must be after window start")
        return self

    @classmethod
    def around(
        cls,
        now: datetime | None = None,
        *,
        past_days: int = 30,
        future_days: int = 365,
    ) -> SyncWindow:
        anchor = now or datetime.now(UTC)
        return cls(
            start=anchor - timedelta(days=past_days),
            end=anchor + timedelta(days=future_days),
        )

    @property
    def start_millis(self) -> int:
        return to_millis(self.start)

    @property
    def end_millis(self) -> int:
        return to_millis(self.end)
