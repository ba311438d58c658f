"""Google Calendar adapter (bearer-token JSON REST)."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, time
from typing import Any
from urllib.parse import quote

import httpx

from almanac.config import AlmanacConfig
from almanac.errors import CredentialError, FormatError
from almanac.models import (
    CalendarConnection,
    CalendarProvider,
    CanonicalEvent,
    CanonicalEventFields,
    EventSource,
    SyncWindow,
    from_millis,
    to_millis,
)
from almanac.providers._http import (
    ResponseCache,
    build_timeout,
    json_object,
    raise_for_rejection,
    send,
)

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"
UNTITLED_EVENT = "Untitled Event"
PAGE_SIZE = 2500
_CALENDAR_LIST_TTL_SECONDS = 300.0
_ALL_DAY_END_OF_DAY = time(23, 59, 59)


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise FormatError(f"Google Calendar returned an invalid dateTime value: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_boundary(payload: Any, *, end_of_day: bool) -> tuple[int, bool]:
    """Return ``(epoch_millis, is_all_day)`` for an event ``start``/``end`` object.

    All-day boundaries are UTC: starts at 00:00:00 of their date, ends at
    23:59:59 of theirs.
    """
    if not isinstance(payload, dict):
        raise FormatError("Google Calendar event is missing start/end values")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return to_millis(_parse_google_datetime(date_time)), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise FormatError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        clock = _ALL_DAY_END_OF_DAY if end_of_day else time(0, 0)
        return to_millis(datetime.combine(parsed_date, clock, tzinfo=UTC)), True

    raise FormatError("Google Calendar event is missing start/end dateTime or date values")


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class _GoogleOAuthClient:
    """Refresh-token OAuth helper that starts from the connection's stored access token."""

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        access_token: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._access_token = access_token
        self._http_client = http_client
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh:
            return self._access_token
        async with self._refresh_lock:
            await self._refresh_access_token()
            return self._access_token

    async def _refresh_access_token(self) -> None:
        response = await send(
            self._http_client,
            "Google OAuth",
            "POST",
            self._token_url,
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": self._refresh_token,
                "grant_type": "refresh_token",
            },
            headers={"Accept": "application/json"},
        )
        raise_for_rejection("Google OAuth", response)
        payload = json_object("Google OAuth", response)

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise CredentialError("Google OAuth token response is missing a non-empty access_token")
        self._access_token = access_token.strip()
        logger.info("Refreshed Google access token")


class GoogleCalendarAdapter:
    """Google Calendar events under ``/calendars/{id}/events``."""

    provider = CalendarProvider.GOOGLE

    def __init__(
        self,
        connection: CalendarConnection,
        config: AlmanacConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        access_token = (connection.access_token or "").strip()
        if not access_token:
            raise CredentialError("Google Calendar access token is required")

        google = config.providers.google
        self._base_url = google.api_base_url.rstrip("/")
        self._calendar_id = connection.calendar_id or DEFAULT_CALENDAR_ID
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=build_timeout(config.sync))
        self._cache = ResponseCache(_CALENDAR_LIST_TTL_SECONDS)

        self._oauth: _GoogleOAuthClient | None = None
        self._access_token = access_token
        if connection.refresh_token and google.client_id and google.client_secret:
            self._oauth = _GoogleOAuthClient(
                token_url=google.oauth_token_url,
                client_id=google.client_id,
                client_secret=google.client_secret,
                refresh_token=connection.refresh_token,
                access_token=access_token,
                http_client=self._http_client,
            )

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self._calendar_id, safe='')}/events"

    async def _token(self, *, force_refresh: bool) -> str:
        if self._oauth is None:
            return self._access_token
        return await self._oauth.get_access_token(force_refresh=force_refresh)

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._token(force_refresh=force_refresh)
        return await send(
            self._http_client,
            "Google Calendar",
            method,
            url,
            params=params,
            json=json_body,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def _request_with_bearer(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        response = await self._request_once(
            method, url, params=params, json_body=json_body, force_refresh=False
        )
        if response.status_code == 401 and self._oauth is not None:
            response = await self._request_once(
                method, url, params=params, json_body=json_body, force_refresh=True
            )
        return response

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(method, path, params=params, json_body=json_body)
        raise_for_rejection("Google Calendar", response)
        return json_object("Google Calendar", response)

    # -- adapter protocol ---------------------------------------------------

    async def prepare(self) -> None:
        return None

    async def list_calendars(self) -> list[dict[str, Any]]:
        """Calendars visible to the token, cached for a few minutes."""
        cached = self._cache.get("calendar_list")
        if cached is not None:
            return cached
        payload = await self._request_json("GET", "/users/me/calendarList")
        items = payload.get("items")
        if not isinstance(items, list):
            items = []
        calendars = [item for item in items if isinstance(item, dict)]
        self._cache.set("calendar_list", calendars)
        return calendars

    async def fetch_events(self, window: SyncWindow) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(window.start),
            "timeMax": _google_rfc3339(window.end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": PAGE_SIZE,
        }
        events: list[dict[str, Any]] = []
        while True:
            payload = await self._request_json("GET", self._events_path, params=params)
            items = payload.get("items")
            if isinstance(items, list):
                events.extend(item for item in items if isinstance(item, dict))
            next_page = payload.get("nextPageToken")
            if not isinstance(next_page, str) or not next_page:
                break
            params = {**params, "pageToken": next_page}
        logger.debug("Fetched %d Google events from %s", len(events), self._calendar_id)
        return events

    async def create_event(self, native: dict[str, Any]) -> str:
        payload = await self._request_json("POST", self._events_path, json_body=native)
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise FormatError("Google Calendar create response is missing the event id")
        return event_id

    async def update_event(self, external_id: str, native: dict[str, Any]) -> None:
        await self._request_json(
            "PUT",
            f"{self._events_path}/{quote(external_id, safe='')}",
            json_body=native,
        )

    async def delete_event(self, external_id: str) -> None:
        response = await self._request_with_bearer(
            "DELETE", f"{self._events_path}/{quote(external_id, safe='')}"
        )
        if response.status_code in (404, 410):
            logger.debug("Google event %s already gone; treating delete as success", external_id)
            return
        raise_for_rejection("Google Calendar", response)

    def to_canonical(self, native: dict[str, Any]) -> CanonicalEventFields:
        event_id = native.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise FormatError("Google Calendar event is missing its id")

        start_time, is_all_day = _parse_boundary(native.get("start"), end_of_day=False)
        end_time, _ = _parse_boundary(native.get("end"), end_of_day=is_all_day)

        recurrence = native.get("recurrence")
        recurrence_rule = None
        if isinstance(recurrence, list) and recurrence and isinstance(recurrence[0], str):
            recurrence_rule = recurrence[0]

        return CanonicalEventFields(
            source=EventSource.GOOGLE,
            google_event_id=event_id,
            title=_optional_text(native.get("summary")) or UNTITLED_EVENT,
            description=_optional_text(native.get("description")),
            location=_optional_text(native.get("location")),
            start_time=start_time,
            end_time=end_time,
            is_all_day=is_all_day,
            recurrence_rule=recurrence_rule,
        )

    def from_canonical(self, event: CanonicalEvent) -> dict[str, Any]:
        start = from_millis(event.start_time)
        end = from_millis(event.end_time)
        body: dict[str, Any] = {"summary": event.title}
        if event.is_all_day:
            body["start"] = {"date": start.date().isoformat()}
            body["end"] = {"date": end.date().isoformat()}
        else:
            body["start"] = {"dateTime": _google_rfc3339(start)}
            body["end"] = {"dateTime": _google_rfc3339(end)}
        if event.description:
            body["description"] = event.description
        if event.location:
            body["location"] = event.location
        if event.recurrence_rule:
            body["recurrence"] = [event.recurrence_rule]
        return body

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
