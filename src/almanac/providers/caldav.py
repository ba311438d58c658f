"""CalDAV adapter: WebDAV XML via lxml, iCalendar documents via icalendar."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from urllib.parse import urljoin

import httpx
from icalendar import Calendar, Event, vRecur
from lxml import etree

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
    now_millis,
    to_millis,
)
from almanac.providers._http import (
    ResponseCache,
    build_timeout,
    raise_for_rejection,
    send,
)

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
CALENDARSERVER_NS = "http://calendarserver.org/ns/"
APPLE_ICAL_NS = "http://apple.com/ns/ical/"
_NSMAP = {"d": DAV_NS, "c": CALDAV_NS}

DEFAULT_CALENDAR_HREF = "/"
PRODID = "-//Almanac//EN"
RRULE_PREFIX = "RRULE:"
_DISCOVERY_TTL_SECONDS = 300.0
_XML_CONTENT_TYPE = "application/xml; charset=utf-8"
_ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"
_XML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


@dataclass
class CalDavEvent:
    """The VEVENT properties the adapter reads and writes.

    ``dtstart``/``dtend`` keep the raw iCalendar value (``20250120`` or
    ``20250120T100000Z``); ``rrule`` is the value after ``RRULE:``.
    """

    uid: str | None
    summary: str
    dtstart: str
    dtend: str
    description: str | None = None
    location: str | None = None
    rrule: str | None = None
    all_day: bool = False


@dataclass(frozen=True)
class CalDavCalendar:
    href: str
    display_name: str
    color: str | None = None


# ---------------------------------------------------------------------------
# iCalendar documents
# ---------------------------------------------------------------------------


def _text_property(component: Event, name: str) -> str | None:
    value = component.get(name)
    return str(value) if value is not None else None


def _raw_property(component: Event, name: str) -> str:
    """The serialized value of *name* without its parameters (``20250120``, ``FREQ=...``)."""
    value = component.get(name)
    if value is None:
        return ""
    return value.to_ical().decode()


def parse_ical_event(text: str) -> CalDavEvent | None:
    """Parse the first VEVENT in *text*; None when UID, SUMMARY, DTSTART or DTEND is missing."""
    try:
        calendar = Calendar.from_ical(text)
    except ValueError as exc:
        logger.debug("Skipping unparsable calendar-data block: %s", exc)
        return None

    vevents = calendar.walk("VEVENT")
    if not vevents:
        return None
    vevent = vevents[0]

    uid = (_text_property(vevent, "UID") or "").strip()
    summary = (_text_property(vevent, "SUMMARY") or "").strip()
    dtstart = _raw_property(vevent, "DTSTART")
    dtend = _raw_property(vevent, "DTEND")
    if not (uid and summary and dtstart and dtend):
        return None
    return CalDavEvent(
        uid=uid,
        summary=summary,
        dtstart=dtstart,
        dtend=dtend,
        description=_text_property(vevent, "DESCRIPTION"),
        location=_text_property(vevent, "LOCATION"),
        rrule=_raw_property(vevent, "RRULE") or None,
        all_day=len(dtstart) == 8,
    )


def _format_utc(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def _parse_ical_value(value: str) -> date | datetime:
    """A date for 8-character values, otherwise a UTC datetime."""
    try:
        if len(value) == 8:
            return date(int(value[:4]), int(value[4:6]), int(value[6:8]))
        parsed = datetime.strptime(value.rstrip("Z"), "%Y%m%dT%H%M%S")
    except ValueError as exc:
        raise FormatError(f"CalDAV returned an invalid date value: {value}") from exc
    # Floating and TZID-qualified times are read as UTC.
    return parsed.replace(tzinfo=UTC)


def _parse_ical_instant(value: str) -> int:
    """Epoch millis for an 8-character date (start of day, UTC) or a date-time."""
    parsed = _parse_ical_value(value)
    if not isinstance(parsed, datetime):
        parsed = datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)
    return to_millis(parsed)


def build_ical(event: CalDavEvent, uid: str, *, stamp: datetime | None = None) -> str:
    """Render a VCALENDAR document holding one VEVENT."""
    vevent = Event()
    vevent.add("uid", uid)
    vevent.add("dtstamp", stamp or datetime.now(UTC))
    vevent.add("dtstart", _parse_ical_value(event.dtstart))
    vevent.add("dtend", _parse_ical_value(event.dtend))
    vevent.add("summary", event.summary)
    if event.description:
        vevent.add("description", event.description)
    if event.location:
        vevent.add("location", event.location)
    if event.rrule:
        vevent.add("rrule", vRecur.from_ical(event.rrule))

    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add_component(vevent)
    return calendar.to_ical().decode()


def generate_uid() -> str:
    return f"{now_millis()}-{uuid.uuid4().hex[:9]}@almanac"


# ---------------------------------------------------------------------------
# WebDAV XML
# ---------------------------------------------------------------------------


def _xml_bytes(root: etree._Element) -> bytes:
    return etree.tostring(root, xml_declaration=True, encoding="utf-8")


def propfind_body() -> bytes:
    root = etree.Element(
        etree.QName(DAV_NS, "propfind"),
        nsmap={"d": DAV_NS, "c": CALDAV_NS, "cs": CALENDARSERVER_NS, "ic": APPLE_ICAL_NS},
    )
    prop = etree.SubElement(root, etree.QName(DAV_NS, "prop"))
    etree.SubElement(prop, etree.QName(DAV_NS, "displayname"))
    etree.SubElement(prop, etree.QName(APPLE_ICAL_NS, "calendar-color"))
    etree.SubElement(prop, etree.QName(DAV_NS, "resourcetype"))
    return _xml_bytes(root)


def calendar_query_body(window: SyncWindow) -> bytes:
    root = etree.Element(etree.QName(CALDAV_NS, "calendar-query"), nsmap=_NSMAP)
    prop = etree.SubElement(root, etree.QName(DAV_NS, "prop"))
    etree.SubElement(prop, etree.QName(DAV_NS, "getetag"))
    etree.SubElement(prop, etree.QName(CALDAV_NS, "calendar-data"))
    query_filter = etree.SubElement(root, etree.QName(CALDAV_NS, "filter"))
    calendar_filter = etree.SubElement(
        query_filter, etree.QName(CALDAV_NS, "comp-filter"), name="VCALENDAR"
    )
    event_filter = etree.SubElement(
        calendar_filter, etree.QName(CALDAV_NS, "comp-filter"), name="VEVENT"
    )
    etree.SubElement(
        event_filter,
        etree.QName(CALDAV_NS, "time-range"),
        start=_format_utc(window.start),
        end=_format_utc(window.end),
    )
    return _xml_bytes(root)


def _parse_multistatus(content: bytes) -> etree._Element:
    try:
        return etree.fromstring(content, parser=_XML_PARSER)
    except etree.XMLSyntaxError as exc:
        raise FormatError(f"CalDAV server returned malformed XML: {exc}") from exc


def parse_calendar_data(content: bytes) -> list[CalDavEvent]:
    """Extract and parse every ``calendar-data`` block of a REPORT response."""
    root = _parse_multistatus(content)
    events: list[CalDavEvent] = []
    for node in root.iterfind(".//c:calendar-data", _NSMAP):
        event = parse_ical_event((node.text or "").strip())
        if event is None:
            logger.debug("Skipping calendar-data block without UID/SUMMARY/DTSTART/DTEND")
            continue
        events.append(event)
    return events


def parse_calendars(content: bytes) -> list[CalDavCalendar]:
    root = _parse_multistatus(content)
    calendars: list[CalDavCalendar] = []
    for response in root.iterfind("d:response", _NSMAP):
        href = (response.findtext("d:href", default="", namespaces=_NSMAP) or "").strip()
        if not href:
            continue
        is_calendar = (
            response.find(".//d:resourcetype/c:calendar", _NSMAP) is not None
            or "/calendars/" in href
            or "/calendar/" in href
        )
        if not is_calendar:
            continue
        name = response.findtext(".//d:displayname", default="", namespaces=_NSMAP) or ""
        color = response.findtext(
            f".//{{{APPLE_ICAL_NS}}}calendar-color", default=None
        ) or response.findtext(f".//{{{CALENDARSERVER_NS}}}calendar-color", default=None)
        calendars.append(
            CalDavCalendar(href=href, display_name=name.strip() or "Calendar", color=color)
        )
    return calendars


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class CalDavAdapter:
    """Apple/iCloud-style CalDAV calendar collection."""

    provider = CalendarProvider.APPLE

    def __init__(
        self,
        connection: CalendarConnection,
        config: AlmanacConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        username, password = connection.caldav_username, connection.caldav_password
        if not (connection.caldav_url and username and password):
            raise CredentialError("CalDAV credentials are required for Apple Calendar")

        self._base_url = connection.caldav_url
        self._calendar_href = connection.calendar_id or DEFAULT_CALENDAR_HREF
        self._auth = httpx.BasicAuth(username, password)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=build_timeout(config.sync))
        self._cache = ResponseCache(_DISCOVERY_TTL_SECONDS)

    @property
    def calendar_url(self) -> str:
        return urljoin(self._base_url, self._calendar_href)

    def event_url(self, uid: str) -> str:
        return urljoin(self._base_url, f"{self._calendar_href}{uid}.ics")

    async def _request(
        self,
        method: str,
        url: str,
        *,
        body: bytes | str | None = None,
        content_type: str = _XML_CONTENT_TYPE,
        depth: str | None = None,
    ) -> httpx.Response:
        headers = {"Content-Type": content_type}
        if depth is not None:
            headers["Depth"] = depth
        return await send(
            self._http_client,
            "CalDAV",
            method,
            url,
            content=body,
            headers=headers,
            auth=self._auth,
        )

    async def prepare(self) -> None:
        return None

    async def discover_calendars(self) -> list[CalDavCalendar]:
        cached = self._cache.get("calendars")
        if cached is not None:
            return cached
        response = await self._request("PROPFIND", self._base_url, body=propfind_body(), depth="1")
        raise_for_rejection("CalDAV", response)
        calendars = parse_calendars(response.content)
        self._cache.set("calendars", calendars)
        return calendars

    async def fetch_events(self, window: SyncWindow) -> list[CalDavEvent]:
        response = await self._request(
            "REPORT", self.calendar_url, body=calendar_query_body(window), depth="1"
        )
        raise_for_rejection("CalDAV", response)
        events = parse_calendar_data(response.content)
        logger.debug("Fetched %d CalDAV events from %s", len(events), self.calendar_url)
        return events

    async def _put(self, uid: str, native: CalDavEvent) -> None:
        response = await self._request(
            "PUT",
            self.event_url(uid),
            body=build_ical(native, uid),
            content_type=_ICS_CONTENT_TYPE,
        )
        raise_for_rejection("CalDAV", response)

    async def create_event(self, native: CalDavEvent) -> str:
        uid = native.uid or generate_uid()
        await self._put(uid, native)
        return uid

    async def update_event(self, external_id: str, native: CalDavEvent) -> None:
        await self._put(external_id, native)

    async def delete_event(self, external_id: str) -> None:
        response = await self._request("DELETE", self.event_url(external_id))
        if response.status_code == 404:
            logger.debug("CalDAV event %s already gone; treating delete as success", external_id)
            return
        raise_for_rejection("CalDAV", response)

    def to_canonical(self, native: CalDavEvent) -> CanonicalEventFields:
        if not native.uid:
            raise FormatError("CalDAV event is missing its UID")
        rrule = native.rrule.strip() if native.rrule else None
        return CanonicalEventFields(
            source=EventSource.APPLE,
            caldav_uid=native.uid,
            title=native.summary,
            description=native.description,
            location=native.location,
            start_time=_parse_ical_instant(native.dtstart),
            end_time=_parse_ical_instant(native.dtend),
            is_all_day=native.all_day,
            recurrence_rule=f"{RRULE_PREFIX}{rrule}" if rrule else None,
        )

    def from_canonical(self, event: CanonicalEvent) -> CalDavEvent:
        start = from_millis(event.start_time)
        end = from_millis(event.end_time)
        if event.is_all_day:
            dtstart, dtend = start.strftime("%Y%m%d"), end.strftime("%Y%m%d")
        else:
            dtstart, dtend = _format_utc(start), _format_utc(end)
        rrule = event.recurrence_rule
        if rrule and rrule.upper().startswith(RRULE_PREFIX):
            rrule = rrule[len(RRULE_PREFIX) :]
        return CalDavEvent(
            uid=event.caldav_uid,
            summary=event.title,
            dtstart=dtstart,
            dtend=dtend,
            description=event.description,
            location=event.location,
            rrule=rrule or None,
            all_day=event.is_all_day,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
