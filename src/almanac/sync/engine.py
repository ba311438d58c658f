"""Sync engine: reconcile canonical events with each remote provider.

Runs are sequential. Connections are processed one at a time and events one at
a time within a connection. Provider failures are collected into the returned
:class:`SyncResult`; they never escape ``sync_connection``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from functools import partial
from typing import Any

from almanac.config import AlmanacConfig, ConflictPolicy, SyncSettings
from almanac.core.logging import connection_context
from almanac.core.telemetry import get_tracer, tag_sync_span
from almanac.errors import AlmanacError, sanitize_error
from almanac.models import (
    EXTERNAL_ID_FIELDS,
    PROVIDER_COLORS,
    CalendarConnection,
    CalendarProvider,
    CanonicalEvent,
    CanonicalEventFields,
    EventSource,
    SyncResult,
    SyncRunStatus,
    SyncStatus,
    SyncWindow,
)
from almanac.providers import AdapterFactory, ProviderAdapter, build_adapter
from almanac.store import CalendarStore
from almanac.sync.log import SyncLog

logger = logging.getLogger(__name__)


def _connection_label(connection: CalendarConnection) -> str:
    return f"{connection.provider}:{connection.id}"


def _pulled_columns(fields: CanonicalEventFields, provider: CalendarProvider) -> dict[str, Any]:
    """Columns a pull may overwrite: everything but other providers' external ids."""
    own_field = EXTERNAL_ID_FIELDS[provider]
    foreign = {name for name in EXTERNAL_ID_FIELDS.values() if name != own_field}
    return fields.model_dump(exclude=foreign)


class SyncEngine:
    """Pull and push canonical events through the matching provider adapter."""

    def __init__(
        self,
        store: CalendarStore,
        *,
        adapter_factory: AdapterFactory | None = None,
        settings: SyncSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or SyncSettings()
        self._adapter_factory = adapter_factory or partial(
            build_adapter, config=AlmanacConfig(sync=self._settings)
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._inflight: dict[int, asyncio.Task[SyncResult]] = {}
        if self._settings.conflict_policy != ConflictPolicy.REMOTE_WINS:
            logger.warning(
                "Conflict policy %r is not enforced; pulls overwrite local fields",
                str(self._settings.conflict_policy),
            )

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    def window(self) -> SyncWindow:
        return SyncWindow.around(
            self._clock(),
            past_days=self._settings.past_days,
            future_days=self._settings.future_days,
        )

    # ------------------------------------------------------------------
    # Whole-connection sync
    # ------------------------------------------------------------------

    async def sync_all(self, user_id: int) -> list[SyncResult]:
        """Sync every connected connection of *user_id* whose direction is not ``none``."""
        results: list[SyncResult] = []
        for connection in await self._store.list_connections(user_id):
            if not connection.is_sync_enabled:
                logger.debug("Skipping connection %s (disabled)", connection.id)
                continue
            try:
                results.append(await self.sync_connection(connection))
            except Exception as exc:
                logger.exception("Sync of connection %s failed unexpectedly", connection.id)
                results.append(
                    SyncResult(
                        connection_id=connection.id,
                        provider=connection.provider,
                        status=SyncRunStatus.FAILED,
                        errors=[sanitize_error(exc)],
                    )
                )
        return results

    async def sync_connection(self, connection: CalendarConnection) -> SyncResult:
        """Run one sync for *connection*; concurrent callers share a single run.

        A disconnected connection, or one whose direction is ``none``, is not
        synced: a ``failed`` result is returned and no sync log is written.
        """
        if not connection.is_sync_enabled:
            logger.info("Connection %s is not enabled for sync", connection.id)
            return SyncResult(
                connection_id=connection.id,
                provider=connection.provider,
                status=SyncRunStatus.FAILED,
                errors=["Sync is disabled for this connection"],
            )

        running = self._inflight.get(connection.id)
        if running is not None:
            logger.info("Joining in-flight sync for connection %s", connection.id)
            return await asyncio.shield(running)

        task = asyncio.ensure_future(self._run_connection(connection))
        self._inflight[connection.id] = task
        task.add_done_callback(lambda _: self._inflight.pop(connection.id, None))
        return await asyncio.shield(task)

    async def _run_connection(self, connection: CalendarConnection) -> SyncResult:
        result = SyncResult(connection_id=connection.id, provider=connection.provider)
        window = self.window()
        direction = connection.sync_direction

        with (
            connection_context(_connection_label(connection)),
            get_tracer().start_as_current_span("almanac.sync_connection") as span,
        ):
            tag_sync_span(
                span,
                connection_id=connection.id,
                provider=str(connection.provider),
                direction=str(direction),
            )
            sync_log = await SyncLog.open(
                self._store,
                user_id=connection.user_id,
                connection_id=connection.id,
                direction=direction,
            )
            logger.info("Sync started (direction=%s)", direction)

            structural_failure = False
            try:
                await self._exchange(connection, window, result)
            except AlmanacError as exc:
                structural_failure = True
                result.errors.append(sanitize_error(exc))
                logger.warning("Sync aborted: %s", result.errors[-1])
            except Exception as exc:
                structural_failure = True
                result.errors.append(sanitize_error(exc))
                logger.exception("Sync aborted")

            status = result.resolve_status(structural_failure=structural_failure)
            await sync_log.complete(result)
            if not structural_failure:
                await self._store.update_connection_last_sync(connection.id, self._clock())
            span.set_attribute("almanac.sync_status", str(status))
            logger.info(
                "Sync finished: status=%s processed=%d created=%d updated=%d errors=%d",
                status,
                result.events_processed,
                result.events_created,
                result.events_updated,
                len(result.errors),
            )
        return result

    async def _exchange(
        self,
        connection: CalendarConnection,
        window: SyncWindow,
        result: SyncResult,
    ) -> None:
        """Build and prepare the adapter, then pull and push in the connection's direction."""
        async with self._open_adapter(connection) as adapter:
            if connection.sync_direction.pulls:
                await self._pull(connection, adapter, window, result)
            if connection.sync_direction.pushes:
                await self._push(connection, adapter, window, result)

    async def _pull(
        self,
        connection: CalendarConnection,
        adapter: ProviderAdapter,
        window: SyncWindow,
        result: SyncResult,
    ) -> None:
        try:
            natives = await adapter.fetch_events(window)
        except AlmanacError as exc:
            result.errors.append(f"Pull failed: {sanitize_error(exc)}")
            logger.warning("%s", result.errors[-1])
            return

        color = connection.color or PROVIDER_COLORS[connection.provider]
        for native in natives:
            result.events_processed += 1
            try:
                fields = adapter.to_canonical(native)
                external_id = fields.external_id()
                existing = (
                    await self._store.get_event_by_external_id(
                        connection.user_id, connection.provider, external_id
                    )
                    if external_id
                    else None
                )
                if existing is not None and existing.id is not None:
                    await self._store.update_event(
                        connection.user_id,
                        existing.id,
                        {
                            **_pulled_columns(fields, connection.provider),
                            "sync_status": SyncStatus.SYNCED,
                            "last_sync_error": None,
                        },
                    )
                    result.events_updated += 1
                else:
                    await self._store.create_event(
                        CanonicalEvent(
                            **fields.model_dump(),
                            user_id=connection.user_id,
                            connection_id=connection.id,
                            sync_status=SyncStatus.SYNCED,
                            color=color,
                        )
                    )
                    result.events_created += 1
            except Exception as exc:
                message = sanitize_error(exc)
                result.errors.append(f"Failed to pull event: {message}")
                logger.warning("Failed to pull remote event: %s", message)

    async def _push(
        self,
        connection: CalendarConnection,
        adapter: ProviderAdapter,
        window: SyncWindow,
        result: SyncResult,
    ) -> None:
        statuses = [SyncStatus.PENDING]
        if self._settings.retry_errored:
            statuses.append(SyncStatus.ERROR)
        events = await self._store.list_events(
            connection.user_id,
            window.start_millis,
            window.end_millis,
            source=EventSource.LOCAL,
            statuses=statuses,
        )
        for event in events:
            if event.id is None:
                continue
            result.events_processed += 1
            try:
                await self._push_one(connection, adapter, event, event.id)
                result.events_updated += 1
            except Exception as exc:
                message = sanitize_error(exc)
                await self._store.update_event(
                    connection.user_id,
                    event.id,
                    {"sync_status": SyncStatus.ERROR, "last_sync_error": message},
                )
                result.errors.append(f"Failed to sync event {event.id}: {message}")
                logger.warning("Failed to push event %s: %s", event.id, message)

    async def _push_one(
        self,
        connection: CalendarConnection,
        adapter: ProviderAdapter,
        event: CanonicalEvent,
        event_id: int,
    ) -> None:
        """Create or update the remote copy of *event* and mark row *event_id* ``synced``."""
        native = adapter.from_canonical(event)
        changes: dict[str, Any] = {"sync_status": SyncStatus.SYNCED, "last_sync_error": None}
        external_id = event.external_id_for(connection.provider)
        if external_id:
            await adapter.update_event(external_id, native)
        else:
            new_id = await adapter.create_event(native)
            changes[EXTERNAL_ID_FIELDS[connection.provider]] = new_id
        await self._store.update_event(connection.user_id, event_id, changes)

    # ------------------------------------------------------------------
    # Single-event operations
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _open_adapter(self, connection: CalendarConnection) -> AsyncIterator[ProviderAdapter]:
        adapter = self._adapter_factory(connection)
        try:
            await adapter.prepare()
            yield adapter
        finally:
            await adapter.aclose()

    async def _push_connections(self, user_id: int) -> list[CalendarConnection]:
        return [c for c in await self._store.list_connections(user_id) if c.is_push_enabled]

    async def sync_event(self, user_id: int, event_id: int) -> list[SyncResult]:
        """Push one event to every connected, push-enabled connection.

        The event ends ``synced`` when every attempt succeeded and ``error``
        when any failed. It is left untouched when no connection applies.
        """
        event = await self._store.get_event(user_id, event_id)
        if event is None:
            logger.info("sync_event: event %s not found for user %s", event_id, user_id)
            return []

        results: list[SyncResult] = []
        failures: list[str] = []
        for connection in await self._push_connections(user_id):
            result = SyncResult(connection_id=connection.id, provider=connection.provider)
            with connection_context(_connection_label(connection)):
                try:
                    async with self._open_adapter(connection) as adapter:
                        external_id = event.external_id_for(connection.provider)
                        native = adapter.from_canonical(event)
                        if external_id:
                            await adapter.update_event(external_id, native)
                        else:
                            new_id = await adapter.create_event(native)
                            await self._store.update_event(
                                user_id,
                                event_id,
                                {EXTERNAL_ID_FIELDS[connection.provider]: new_id},
                            )
                    result.events_processed = 1
                    result.events_updated = 1
                except Exception as exc:
                    message = sanitize_error(exc)
                    result.errors.append(message)
                    failures.append(f"{connection.provider}: {message}")
                    logger.warning("Failed to sync event %s: %s", event_id, message)
            result.resolve_status()
            results.append(result)

        if not results:
            return results
        if failures:
            changes = {"sync_status": SyncStatus.ERROR, "last_sync_error": "; ".join(failures)}
        else:
            changes = {"sync_status": SyncStatus.SYNCED, "last_sync_error": None}
        await self._store.update_event(user_id, event_id, changes)
        return results

    async def delete_event_from_all(self, event: CanonicalEvent) -> list[SyncResult]:
        """Delete the remote copies of *event* on every push-enabled connection holding one."""
        results: list[SyncResult] = []
        for connection in await self._push_connections(event.user_id):
            external_id = event.external_id_for(connection.provider)
            if not external_id:
                continue
            result = SyncResult(connection_id=connection.id, provider=connection.provider)
            with connection_context(_connection_label(connection)):
                try:
                    async with self._open_adapter(connection) as adapter:
                        await adapter.delete_event(external_id)
                    result.events_processed = 1
                    result.events_deleted = 1
                except Exception as exc:
                    result.errors.append(sanitize_error(exc))
                    logger.warning(
                        "Failed to delete event %s remotely: %s", event.id, result.errors[-1]
                    )
            result.resolve_status()
            results.append(result)
        return results
