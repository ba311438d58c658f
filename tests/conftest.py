"""Shared test doubles for the almanac test suite."""

from __future__ import annotations

import itertools
import shutil
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import pytest

from almanac.errors import AlmanacError
from almanac.models import (
    EXTERNAL_ID_FIELDS,
    CalendarConnection,
    CalendarProvider,
    CanonicalEvent,
    CanonicalEventFields,
    EventSource,
    SyncLogEntry,
    SyncStatus,
    SyncWindow,
    to_millis,
)
from almanac.store import EVENT_WRITABLE_COLUMNS

docker_available = shutil.which("docker") is not None

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


def millis(*args: int) -> int:
    """Epoch millis for a UTC wall-clock time, e.g. ``millis(2025, 1, 20, 10)``."""
    return to_millis(datetime(*args, tzinfo=UTC))


class InMemoryCalendarStore:
    """Dict-backed CalendarStore for engine tests."""

    def __init__(self) -> None:
        self.connections: dict[int, CalendarConnection] = {}
        self.events: dict[int, CanonicalEvent] = {}
        self.sync_logs: dict[int, SyncLogEntry] = {}
        self.last_sync: dict[int, datetime] = {}
        self._event_ids = itertools.count(1)
        self._log_ids = itertools.count(1)

    def add_connection(self, connection: CalendarConnection) -> CalendarConnection:
        self.connections[connection.id] = connection
        return connection

    def add_event(self, event: CanonicalEvent) -> CanonicalEvent:
        stored = event.model_copy(update={"id": next(self._event_ids)})
        self.events[stored.id] = stored
        return stored

    async def list_connections(self, user_id: int) -> list[CalendarConnection]:
        return [c for c in self.connections.values() if c.user_id == user_id]

    async def get_connection(self, user_id: int, connection_id: int) -> CalendarConnection | None:
        connection = self.connections.get(connection_id)
        return connection if connection is not None and connection.user_id == user_id else None

    async def update_connection_last_sync(self, connection_id: int, synced_at: datetime) -> None:
        self.last_sync[connection_id] = synced_at

    async def get_event(self, user_id: int, event_id: int) -> CanonicalEvent | None:
        event = self.events.get(event_id)
        return event if event is not None and event.user_id == user_id else None

    async def get_event_by_external_id(
        self, user_id: int, provider: CalendarProvider, external_id: str
    ) -> CanonicalEvent | None:
        column = EXTERNAL_ID_FIELDS[provider]
        for event in self.events.values():
            if event.user_id == user_id and getattr(event, column) == external_id:
                return event
        return None

    async def list_events(
        self,
        user_id: int,
        start_time: int,
        end_time: int,
        *,
        source: EventSource | None = None,
        statuses: Iterable[SyncStatus] | None = None,
    ) -> list[CanonicalEvent]:
        wanted = set(statuses) if statuses is not None else None
        return [
            event
            for event in sorted(self.events.values(), key=lambda e: (e.start_time, e.id))
            if event.user_id == user_id
            and event.start_time >= start_time
            and event.end_time <= end_time
            and (source is None or event.source == source)
            and (wanted is None or event.sync_status in wanted)
        ]

    async def create_event(self, event: CanonicalEvent) -> CanonicalEvent:
        return self.add_event(event)

    async def update_event(self, user_id: int, event_id: int, changes: Mapping[str, Any]) -> None:
        unknown = set(changes) - EVENT_WRITABLE_COLUMNS
        assert not unknown, f"unexpected columns {unknown}"
        event = self.events[event_id]
        assert event.user_id == user_id
        self.events[event_id] = event.model_copy(update=dict(changes))

    async def delete_event(self, user_id: int, event_id: int) -> None:
        self.events.pop(event_id, None)

    async def create_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        stored = entry.model_copy(update={"id": next(self._log_ids)})
        self.sync_logs[stored.id] = stored
        return stored

    async def complete_sync_log(self, entry: SyncLogEntry) -> None:
        assert self.sync_logs[entry.id].completed_at is None
        self.sync_logs[entry.id] = entry


class FakeAdapter:
    """ProviderAdapter double holding remote events as plain dicts.

    A native event is ``{"id", "title", "start", "end"}``.
    """

    def __init__(self, provider: CalendarProvider = CalendarProvider.GOOGLE) -> None:
        self.provider = provider
        self.remote: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.updated: list[tuple[str, dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.fetch_error: Exception | None = None
        self.prepare_error: Exception | None = None
        self.failing_titles: set[str] = set()
        self.prepared = False
        self.closed = False
        self._ids = itertools.count(1)

    def add_remote(self, external_id: str, title: str, start: int, end: int) -> None:
        self.remote[external_id] = {"id": external_id, "title": title, "start": start, "end": end}

    async def prepare(self) -> None:
        if self.prepare_error is not None:
            raise self.prepare_error
        self.prepared = True

    async def fetch_events(self, window: SyncWindow) -> list[dict[str, Any]]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.remote.values())

    async def create_event(self, native: dict[str, Any]) -> str:
        if native["title"] in self.failing_titles:
            raise AlmanacError(f"remote rejected {native['title']}")
        external_id = f"{self.provider}-{next(self._ids)}"
        self.created.append(native)
        self.remote[external_id] = {**native, "id": external_id}
        return external_id

    async def update_event(self, external_id: str, native: dict[str, Any]) -> None:
        if native["title"] in self.failing_titles:
            raise AlmanacError(f"remote rejected {native['title']}")
        self.updated.append((external_id, native))
        self.remote[external_id] = {**native, "id": external_id}

    async def delete_event(self, external_id: str) -> None:
        self.deleted.append(external_id)
        self.remote.pop(external_id, None)

    def to_canonical(self, native: dict[str, Any]) -> CanonicalEventFields:
        return CanonicalEventFields(
            source=EventSource(self.provider.value),
            title=native["title"],
            start_time=native["start"],
            end_time=native["end"],
            **{EXTERNAL_ID_FIELDS[self.provider]: native["id"]},
        )

    def from_canonical(self, event: CanonicalEvent) -> dict[str, Any]:
        return {"title": event.title, "start": event.start_time, "end": event.end_time}

    async def aclose(self) -> None:
        self.closed = True


class AdapterFactoryDouble:
    """Adapter factory keyed by connection id; records every construction."""

    def __init__(self) -> None:
        self.adapters: dict[int, FakeAdapter] = {}
        self.errors: dict[int, Exception] = {}
        self.calls: list[int] = []

    def adapter_for(self, connection: CalendarConnection) -> FakeAdapter:
        adapter = self.adapters.get(connection.id)
        if adapter is None:
            adapter = FakeAdapter(connection.provider)
            self.adapters[connection.id] = adapter
        return adapter

    def __call__(self, connection: CalendarConnection) -> FakeAdapter:
        self.calls.append(connection.id)
        if connection.id in self.errors:
            raise self.errors[connection.id]
        return self.adapter_for(connection)


@pytest.fixture
def store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


@pytest.fixture
def adapters() -> AdapterFactoryDouble:
    return AdapterFactoryDouble()


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW
