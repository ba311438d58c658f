"""Write-once sync log: one entry per ``sync_connection`` run."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from almanac.errors import AlmanacError
from almanac.models import SyncAction, SyncDirection, SyncLogEntry, SyncResult
from almanac.store import CalendarStore

logger = logging.getLogger(__name__)

_ACTIONS = {
    SyncDirection.PULL: SyncAction.PULL,
    SyncDirection.PUSH: SyncAction.PUSH,
    SyncDirection.BIDIRECTIONAL: SyncAction.BIDIRECTIONAL,
}


class SyncLogClosedError(AlmanacError):
    """Raised on an attempt to complete a log entry a second time."""


def action_for(direction: SyncDirection) -> SyncAction:
    try:
        return _ACTIONS[direction]
    except KeyError:
        raise ValueError(f"No sync action for direction {direction!r}") from None


class SyncLog:
    """Handle on one open :class:`SyncLogEntry`."""

    def __init__(self, store: CalendarStore, entry: SyncLogEntry) -> None:
        self._store = store
        self._entry = entry

    @classmethod
    async def open(
        cls,
        store: CalendarStore,
        *,
        user_id: int,
        connection_id: int,
        direction: SyncDirection,
    ) -> SyncLog:
        entry = await store.create_sync_log(
            SyncLogEntry(
                user_id=user_id,
                connection_id=connection_id,
                action=action_for(direction),
            )
        )
        return cls(store, entry)

    @property
    def entry(self) -> SyncLogEntry:
        return self._entry

    async def complete(self, result: SyncResult) -> SyncLogEntry:
        """Copy the final counts and status from *result* and persist them once."""
        if self._entry.is_completed:
            raise SyncLogClosedError(f"Sync log {self._entry.id} is already completed")

        completed = self._entry.model_copy(
            update={
                "events_processed": result.events_processed,
                "events_created": result.events_created,
                "events_updated": result.events_updated,
                "events_deleted": result.events_deleted,
                "status": result.status,
                "error_message": "; ".join(result.errors) or None,
                "completed_at": datetime.now(UTC),
            }
        )
        await self._store.complete_sync_log(completed)
        self._entry = completed
        logger.debug("Completed sync log %s with status %s", completed.id, completed.status)
        return completed
