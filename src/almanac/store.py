"""Persistence contract for canonical events, connections and sync logs.

The sync engine only talks to :class:`CalendarStore`. Production code backs it
with :class:`PostgresCalendarStore` over an asyncpg pool; tests use in-memory
doubles.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol

from almanac.models import (
    EXTERNAL_ID_FIELDS,
    CalendarConnection,
    CalendarProvider,
    CanonicalEvent,
    EventSource,
    SyncLogEntry,
    SyncStatus,
)

logger = logging.getLogger(__name__)

# Columns the engine and API layer may write on an event row.
EVENT_WRITABLE_COLUMNS = frozenset(
    {
        "connection_id",
        "google_event_id",
        "caldav_uid",
        "notion_page_id",
        "title",
        "description",
        "location",
        "start_time",
        "end_time",
        "is_all_day",
        "recurrence_rule",
        "source",
        "sync_status",
        "last_sync_error",
        "color",
    }
)

_EVENT_INSERT_COLUMNS = ("user_id", *sorted(EVENT_WRITABLE_COLUMNS))


class CalendarStore(Protocol):
    """Persistence operations the sync engine depends on."""

    async def list_connections(self, user_id: int) -> list[CalendarConnection]:
        """All connections owned by *user_id*."""
        ...

    async def get_connection(self, user_id: int, connection_id: int) -> CalendarConnection | None:
        """One connection, or None if it does not exist for this user."""
        ...

    async def update_connection_last_sync(self, connection_id: int, synced_at: datetime) -> None:
        """Record the completion time of the latest sync run."""
        ...

    async def get_event(self, user_id: int, event_id: int) -> CanonicalEvent | None:
        """One event, or None."""
        ...

    async def get_event_by_external_id(
        self,
        user_id: int,
        provider: CalendarProvider,
        external_id: str,
    ) -> CanonicalEvent | None:
        """Look up an event by the external id column for *provider*."""
        ...

    async def list_events(
        self,
        user_id: int,
        start_time: int,
        end_time: int,
        *,
        source: EventSource | None = None,
        statuses: Iterable[SyncStatus] | None = None,
    ) -> list[CanonicalEvent]:
        """Events starting at or after *start_time* and ending at or before *end_time*."""
        ...

    async def create_event(self, event: CanonicalEvent) -> CanonicalEvent:
        """Insert *event* and return it with its assigned id."""
        ...

    async def update_event(self, user_id: int, event_id: int, changes: Mapping[str, Any]) -> None:
        """Apply column *changes* to one event."""
        ...

    async def delete_event(self, user_id: int, event_id: int) -> None:
        """Remove one event."""
        ...

    async def create_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        """Insert an open log entry and return it with its id."""
        ...

    async def complete_sync_log(self, entry: SyncLogEntry) -> None:
        """Persist the final counts/status of a completed log entry."""
        ...


def _check_columns(changes: Mapping[str, Any]) -> None:
    unknown = set(changes) - EVENT_WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown event column(s): {', '.join(sorted(unknown))}")


def _serialize_value(value: Any) -> Any:
    # StrEnum members are str subclasses; store their plain value.
    if isinstance(value, str):
        return str(value)
    return value


class PostgresCalendarStore:
    """asyncpg-backed :class:`CalendarStore`.

    ``pool`` is anything exposing ``fetch``/``fetchrow``/``fetchval``/``execute``
    (an asyncpg pool or :class:`almanac.db.Database`).
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    # -- connections --------------------------------------------------------

    async def list_connections(self, user_id: int) -> list[CalendarConnection]:
        rows = await self._pool.fetch(
            "SELECT * FROM calendar_connections WHERE user_id = $1 ORDER BY id",
            user_id,
        )
        return [CalendarConnection(**dict(row)) for row in rows]

    async def get_connection(self, user_id: int, connection_id: int) -> CalendarConnection | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM calendar_connections WHERE id = $1 AND user_id = $2",
            connection_id,
            user_id,
        )
        return CalendarConnection(**dict(row)) if row is not None else None

    async def update_connection_last_sync(self, connection_id: int, synced_at: datetime) -> None:
        await self._pool.execute(
            "UPDATE calendar_connections SET last_sync_at = $2, updated_at = now() WHERE id = $1",
            connection_id,
            synced_at,
        )

    # -- events -------------------------------------------------------------

    async def get_event(self, user_id: int, event_id: int) -> CanonicalEvent | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM events WHERE id = $1 AND user_id = $2",
            event_id,
            user_id,
        )
        return CanonicalEvent(**dict(row)) if row is not None else None

    async def get_event_by_external_id(
        self,
        user_id: int,
        provider: CalendarProvider,
        external_id: str,
    ) -> CanonicalEvent | None:
        column = EXTERNAL_ID_FIELDS[CalendarProvider(provider)]
        row = await self._pool.fetchrow(
            f"SELECT * FROM events WHERE user_id = $1 AND {column} = $2 LIMIT 1",
            user_id,
            external_id,
        )
        return CanonicalEvent(**dict(row)) if row is not None else None

    async def list_events(
        self,
        user_id: int,
        start_time: int,
        end_time: int,
        *,
        source: EventSource | None = None,
        statuses: Iterable[SyncStatus] | None = None,
    ) -> list[CanonicalEvent]:
        clauses = ["user_id = $1", "start_time >= $2", "end_time <= $3"]
        args: list[Any] = [user_id, start_time, end_time]
        if source is not None:
            args.append(str(source))
            clauses.append(f"source = ${len(args)}")
        if statuses is not None:
            args.append([str(status) for status in statuses])
            clauses.append(f"sync_status = ANY(${len(args)}::text[])")
        rows = await self._pool.fetch(
            f"SELECT * FROM events WHERE {' AND '.join(clauses)} ORDER BY start_time, id",
            *args,
        )
        return [CanonicalEvent(**dict(row)) for row in rows]

    async def create_event(self, event: CanonicalEvent) -> CanonicalEvent:
        values = [_serialize_value(getattr(event, column)) for column in _EVENT_INSERT_COLUMNS]
        placeholders = ", ".join(f"${index}" for index in range(1, len(values) + 1))
        row = await self._pool.fetchrow(
            f"INSERT INTO events ({', '.join(_EVENT_INSERT_COLUMNS)}) "
            f"VALUES ({placeholders}) RETURNING *",
            *values,
        )
        return CanonicalEvent(**dict(row))

    async def update_event(self, user_id: int, event_id: int, changes: Mapping[str, Any]) -> None:
        if not changes:
            return
        _check_columns(changes)
        columns = sorted(changes)
        assignments = ", ".join(f"{column} = ${index}" for index, column in enumerate(columns, 3))
        await self._pool.execute(
            f"UPDATE events SET {assignments}, updated_at = now() WHERE id = $1 AND user_id = $2",
            event_id,
            user_id,
            *(_serialize_value(changes[column]) for column in columns),
        )

    async def delete_event(self, user_id: int, event_id: int) -> None:
        await self._pool.execute(
            "DELETE FROM events WHERE id = $1 AND user_id = $2",
            event_id,
            user_id,
        )

    # -- sync logs ----------------------------------------------------------

    async def create_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        log_id = await self._pool.fetchval(
            """
            INSERT INTO sync_logs (user_id, connection_id, action, status, started_at)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING id
            """,
            entry.user_id,
            entry.connection_id,
            str(entry.action),
            str(entry.status),
            entry.started_at,
        )
        return entry.model_copy(update={"id": log_id})

    async def complete_sync_log(self, entry: SyncLogEntry) -> None:
        if entry.id is None:
            raise ValueError("Cannot complete a sync log entry that was never created")
        await self._pool.execute(
            """
            UPDATE sync_logs
            SET events_processed = $2,
                events_created = $3,
                events_updated = $4,
                events_deleted = $5,
                status = $6,
                error_message = $7,
                completed_at = $8
            WHERE id = $1 AND completed_at IS NULL
            """,
            entry.id,
            entry.events_processed,
            entry.events_created,
            entry.events_updated,
            entry.events_deleted,
            str(entry.status),
            entry.error_message,
            entry.completed_at,
        )
