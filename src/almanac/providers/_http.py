"""HTTP plumbing shared by the provider adapters."""

from __future__ import annotations

import time
from collections.abc import Callable, Collection
from typing import Any

import httpx

from almanac.config import SyncSettings
from almanac.errors import FormatError, ProviderRejection, TransportError, safe_error_message


class ResponseCache:
    """Small TTL cache owned by a single adapter instance."""

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock() + self._ttl_seconds, value)

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def build_timeout(settings: SyncSettings) -> httpx.Timeout:
    return httpx.Timeout(settings.http_timeout_seconds, connect=settings.connect_timeout_seconds)


def is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


async def send(
    client: httpx.AsyncClient,
    provider: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request, translating client-side failures into :class:`TransportError`."""
    try:
        return await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise TransportError(f"{provider} {method} request failed: {exc}") from exc


def raise_for_rejection(
    provider: str,
    response: httpx.Response,
    *,
    tolerated: Collection[int] = (),
) -> None:
    """Raise :class:`ProviderRejection` unless the status is 2xx or in *tolerated*."""
    if is_success(response) or response.status_code in tolerated:
        return
    raise ProviderRejection(
        provider=provider,
        status_code=response.status_code,
        message=safe_error_message(response),
    )


def json_object(provider: str, response: httpx.Response) -> dict[str, Any]:
    """Decode a successful response body that must be a JSON object."""
    if response.status_code == 204 or not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as exc:
        raise FormatError(f"{provider} returned invalid JSON for a successful response") from exc
    if not isinstance(payload, dict):
        raise FormatError(f"{provider} returned an unexpected JSON payload shape")
    return payload
