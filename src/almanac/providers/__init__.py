"""Provider adapters and dispatch on ``CalendarConnection.provider``.

Each adapter is an independent class satisfying :class:`ProviderAdapter`;
there is no shared base class.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import httpx

from almanac.config import AlmanacConfig
from almanac.errors import CredentialError
from almanac.models import (
    CalendarConnection,
    CalendarProvider,
    CanonicalEvent,
    CanonicalEventFields,
    SyncWindow,
)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability set every provider adapter implements.

    ``Any`` stands for the provider-native event shape: a JSON dict for the
    REST providers, a ``CalDavEvent`` for CalDAV.
    """

    provider: CalendarProvider

    async def prepare(self) -> None:
        """Run one-off discovery (schema, capabilities) before any other call."""
        ...

    async def fetch_events(self, window: SyncWindow) -> list[Any]: ...

    async def create_event(self, native: Any) -> str:
        """Create a remote event and return its external id."""
        ...

    async def update_event(self, external_id: str, native: Any) -> None: ...

    async def delete_event(self, external_id: str) -> None:
        """Delete a remote event; an already-missing event is not an error."""
        ...

    def to_canonical(self, native: Any) -> CanonicalEventFields: ...

    def from_canonical(self, event: CanonicalEvent) -> Any: ...

    async def aclose(self) -> None: ...


AdapterFactory = Callable[[CalendarConnection], ProviderAdapter]

from almanac.providers.caldav import CalDavAdapter  # noqa: E402
from almanac.providers.google import GoogleCalendarAdapter  # noqa: E402
from almanac.providers.notion import NotionDatabaseAdapter  # noqa: E402

ADAPTERS: dict[CalendarProvider, type] = {
    CalendarProvider.GOOGLE: GoogleCalendarAdapter,
    CalendarProvider.APPLE: CalDavAdapter,
    CalendarProvider.NOTION: NotionDatabaseAdapter,
}


def build_adapter(
    connection: CalendarConnection,
    config: AlmanacConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderAdapter:
    """Construct the adapter for ``connection.provider``.

    Raises
    ------
    CredentialError
        If the connection lacks the secrets its provider needs.
    """
    adapter_cls = ADAPTERS.get(connection.provider)
    if adapter_cls is None:
        raise CredentialError(f"No adapter registered for provider {connection.provider!r}")
    return adapter_cls(connection, config or AlmanacConfig(), http_client)


__all__ = [
    "ADAPTERS",
    "AdapterFactory",
    "CalDavAdapter",
    "GoogleCalendarAdapter",
    "NotionDatabaseAdapter",
    "ProviderAdapter",
    "build_adapter",
]
