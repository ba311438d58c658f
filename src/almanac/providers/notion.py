"""Notion database adapter: pages of a calendar database as events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

import httpx

from almanac.config import AlmanacConfig
from almanac.errors import AlmanacError, CredentialError, FormatError
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

UNTITLED = "Untitled"
_HOUR_MS = 60 * 60 * 1000
_DAY_MS = 24 * _HOUR_MS
_DESCRIPTION_HINTS = ("description", "notes")
_LOCATION_HINTS = ("location", "place")


@dataclass(frozen=True)
class NotionSchema:
    """Property names of the target database that map to event fields."""

    title_property: str = "Name"
    date_property: str = "Date"
    description_property: str | None = None
    location_property: str | None = None

    @classmethod
    def from_database(cls, payload: dict[str, Any]) -> NotionSchema:
        properties = payload.get("properties")
        if not isinstance(properties, dict):
            raise FormatError("Notion database payload is missing its properties")

        title_property = "Name"
        date_property = "Date"
        description_property: str | None = None
        location_property: str | None = None
        for name, prop in properties.items():
            kind = prop.get("type") if isinstance(prop, dict) else None
            lowered = name.lower()
            if kind == "title":
                title_property = name
            elif kind == "date":
                date_property = name
            elif kind == "rich_text":
                if any(hint in lowered for hint in _DESCRIPTION_HINTS):
                    description_property = name
                elif any(hint in lowered for hint in _LOCATION_HINTS):
                    location_property = name
        return cls(
            title_property=title_property,
            date_property=date_property,
            description_property=description_property,
            location_property=location_property,
        )


def _plain_text(prop: Any, kind: str) -> str | None:
    if not isinstance(prop, dict):
        return None
    fragments = prop.get(kind)
    if not isinstance(fragments, list) or not fragments:
        return None
    first = fragments[0]
    text = first.get("plain_text") if isinstance(first, dict) else None
    return text if isinstance(text, str) and text else None


def _rich_text(content: str | None) -> list[dict[str, Any]]:
    if not content:
        return []
    return [{"text": {"content": content}}]


def _parse_notion_date(value: str) -> tuple[int, bool]:
    """Return ``(epoch_millis, is_all_day)``; date-only values are midnight UTC."""
    normalized = value.strip()
    try:
        if "T" not in normalized:
            parsed_date = date.fromisoformat(normalized)
            midnight = datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=UTC)
            return to_millis(midnight), True
        if normalized.endswith("Z"):
            normalized = normalized[:-1] + "+00:00"
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise FormatError(f"Notion returned an invalid date value: {value}") from exc
    return to_millis(parsed), False


def _isoformat_utc(millis: int) -> str:
    return from_millis(millis).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class NotionDatabaseAdapter:
    """Events stored as pages of one Notion database."""

    provider = CalendarProvider.NOTION

    def __init__(
        self,
        connection: CalendarConnection,
        config: AlmanacConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not (connection.notion_access_token and connection.notion_database_id):
            raise CredentialError("Notion credentials are required")

        notion = config.providers.notion
        self._base_url = notion.api_base_url.rstrip("/")
        self._database_id = connection.notion_database_id
        self._headers = {
            "Authorization": f"Bearer {connection.notion_access_token}",
            "Notion-Version": notion.api_version,
        }
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=build_timeout(config.sync))
        self._cache = ResponseCache(notion.schema_cache_ttl_seconds)
        self._schema: NotionSchema | None = None

    @property
    def schema(self) -> NotionSchema:
        if self._schema is None:
            raise AlmanacError("Notion database schema not discovered; call prepare() first")
        return self._schema

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        tolerated: tuple[int, ...] = (),
    ) -> dict[str, Any]:
        response = await send(
            self._http_client,
            "Notion",
            method,
            f"{self._base_url}{path}",
            json=json_body,
            headers=self._headers,
        )
        raise_for_rejection("Notion", response, tolerated=tolerated)
        if response.status_code in tolerated:
            return {}
        return json_object("Notion", response)

    async def prepare(self) -> None:
        """Discover the database schema, reusing a cached copy while it is fresh."""
        cached = self._cache.get("schema")
        if cached is not None:
            self._schema = cached
            return
        payload = await self._request_json("GET", f"/databases/{self._database_id}")
        self._schema = NotionSchema.from_database(payload)
        self._cache.set("schema", self._schema)
        logger.debug("Discovered Notion schema for %s: %s", self._database_id, self._schema)

    def _query_body(self, window: SyncWindow) -> dict[str, Any]:
        date_property = self.schema.date_property
        on_or_after = window.start.date().isoformat()
        on_or_before = window.end.date().isoformat()
        return {
            "filter": {
                "and": [
                    {"property": date_property, "date": {"is_not_empty": True}},
                    {"property": date_property, "date": {"on_or_after": on_or_after}},
                    {"property": date_property, "date": {"on_or_before": on_or_before}},
                ]
            },
            "sorts": [{"property": date_property, "direction": "ascending"}],
        }

    async def fetch_events(self, window: SyncWindow) -> list[dict[str, Any]]:
        body = self._query_body(window)
        pages: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            request_body = {**body, "start_cursor": cursor} if cursor else body
            payload = await self._request_json(
                "POST", f"/databases/{self._database_id}/query", json_body=request_body
            )
            results = payload.get("results")
            if isinstance(results, list):
                pages.extend(page for page in results if isinstance(page, dict))
            next_cursor = payload.get("next_cursor")
            if not payload.get("has_more") or not isinstance(next_cursor, str) or not next_cursor:
                break
            cursor = next_cursor
        logger.debug("Fetched %d Notion pages from %s", len(pages), self._database_id)
        return pages

    async def create_event(self, native: dict[str, Any]) -> str:
        payload = await self._request_json(
            "POST",
            "/pages",
            json_body={"parent": {"database_id": self._database_id}, "properties": native},
        )
        page_id = payload.get("id")
        if not isinstance(page_id, str) or not page_id:
            raise FormatError("Notion create response is missing the page id")
        return page_id

    async def update_event(self, external_id: str, native: dict[str, Any]) -> None:
        await self._request_json("PATCH", f"/pages/{external_id}", json_body={"properties": native})

    async def delete_event(self, external_id: str) -> None:
        """Archive the page; a page that no longer exists counts as deleted."""
        await self._request_json(
            "PATCH",
            f"/pages/{external_id}",
            json_body={"archived": True},
            tolerated=(404,),
        )

    def to_canonical(self, native: dict[str, Any]) -> CanonicalEventFields:
        page_id = native.get("id")
        if not isinstance(page_id, str) or not page_id:
            raise FormatError("Notion page is missing its id")

        schema = self.schema
        properties = native.get("properties")
        if not isinstance(properties, dict):
            properties = {}

        date_prop = properties.get(schema.date_property)
        date_value = date_prop.get("date") if isinstance(date_prop, dict) else None
        start_raw = date_value.get("start") if isinstance(date_value, dict) else None
        if not isinstance(start_raw, str) or not start_raw.strip():
            raise FormatError(f"Notion page {page_id} has no start date")

        start_time, is_all_day = _parse_notion_date(start_raw)
        end_raw = date_value.get("end")
        if isinstance(end_raw, str) and end_raw.strip():
            end_time, _ = _parse_notion_date(end_raw)
        elif is_all_day:
            end_time = start_time + _DAY_MS - 1
        else:
            end_time = start_time + _HOUR_MS

        description = None
        if schema.description_property:
            description = _plain_text(properties.get(schema.description_property), "rich_text")
        location = None
        if schema.location_property:
            location = _plain_text(properties.get(schema.location_property), "rich_text")

        return CanonicalEventFields(
            source=EventSource.NOTION,
            notion_page_id=page_id,
            title=_plain_text(properties.get(schema.title_property), "title") or UNTITLED,
            description=description,
            location=location,
            start_time=start_time,
            end_time=end_time,
            is_all_day=is_all_day,
        )

    def from_canonical(self, event: CanonicalEvent) -> dict[str, Any]:
        schema = self.schema
        if event.is_all_day:
            start = from_millis(event.start_time).date().isoformat()
            end = from_millis(event.end_time).date().isoformat()
            date_value: dict[str, Any] = {"start": start, "end": end if end != start else None}
        else:
            date_value = {
                "start": _isoformat_utc(event.start_time),
                "end": _isoformat_utc(event.end_time),
            }

        properties: dict[str, Any] = {
            schema.title_property: {"title": [{"text": {"content": event.title}}]},
            schema.date_property: {"date": date_value},
        }
        if schema.description_property:
            properties[schema.description_property] = {"rich_text": _rich_text(event.description)}
        if schema.location_property:
            properties[schema.location_property] = {"rich_text": _rich_text(event.location)}
        return properties

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
