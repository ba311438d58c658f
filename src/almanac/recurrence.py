"""Recurrence rules: RRULE-subset codec, occurrence expansion and descriptions.

Supported grammar is the ``RRULE:`` prefixed subset of iCalendar recurrence
rules with the ``FREQ``, ``INTERVAL``, ``COUNT``, ``UNTIL``, ``BYDAY``,
``BYMONTHDAY`` and ``BYMONTH`` parts.

Behaviour worth knowing before relying on it:

- ``parse_rrule`` never raises. Malformed input yields ``None``; a missing
  ``FREQ`` part falls back to ``daily``.
- A rule never carries both ``COUNT`` and ``UNTIL``: when text or a caller
  supplies both, ``COUNT`` is kept and ``UNTIL`` is dropped, so
  ``parse_rrule(serialize_rrule(rule))`` reproduces the rule.
- ``UNTIL`` keeps date precision only and means midnight UTC of that date;
  a rule built with a later time of day is floored to that midnight.
- Expansion steps from the anchor by the rule interval. ``BYDAY``,
  ``BYMONTHDAY`` and ``BYMONTH`` filter stepped candidates; they do not
  generate extra candidates inside a period.
- Monthly and yearly steps roll over short months (Jan 31 + 1 month lands on
  Mar 3 in a non-leap year) instead of clamping or skipping.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from datetime import UTC, date, datetime, timedelta, tzinfo
from enum import StrEnum
from typing import NamedTuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from almanac.models import CanonicalEvent, from_millis, to_millis

logger = logging.getLogger(__name__)

RRULE_PREFIX = "RRULE:"
DEFAULT_MAX_OCCURRENCES = 100
# Upper bound on stepped candidates for one expansion, filtered or not.
MAX_CANDIDATES = 100_000

_UNTIL_TIME_SUFFIX = re.compile(r"^(T\d{6}Z?)?$")
_DAY_MS = 86_400_000


class Frequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Weekday(StrEnum):
    SU = "SU"
    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"

    @property
    def iso_index(self) -> int:
        """Python ``date.weekday()`` index (Monday is 0)."""
        return _WEEKDAY_INDEX[self]

    @property
    def full_name(self) -> str:
        return _WEEKDAY_NAMES[self]

    @classmethod
    def of(cls, value: date) -> Weekday:
        return _WEEKDAY_BY_INDEX[value.weekday()]


_WEEKDAY_INDEX = {
    Weekday.MO: 0,
    Weekday.TU: 1,
    Weekday.WE: 2,
    Weekday.TH: 3,
    Weekday.FR: 4,
    Weekday.SA: 5,
    Weekday.SU: 6,
}
_WEEKDAY_BY_INDEX = {index: day for day, index in _WEEKDAY_INDEX.items()}
_WEEKDAY_NAMES = {
    Weekday.SU: "Sunday",
    Weekday.MO: "Monday",
    Weekday.TU: "Tuesday",
    Weekday.WE: "Wednesday",
    Weekday.TH: "Thursday",
    Weekday.FR: "Friday",
    Weekday.SA: "Saturday",
}


class RecurrenceRule(BaseModel):
    """Structured recurrence rule. Never persisted on its own."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    frequency: Frequency = Frequency.DAILY
    interval: int = Field(default=1, ge=1)
    count: int | None = Field(default=None, ge=1)
    until: int | None = None
    by_day: tuple[Weekday, ...] | None = None
    by_month_day: tuple[int, ...] | None = None
    by_month: tuple[int, ...] | None = None

    @model_validator(mode="before")
    @classmethod
    def _count_wins_over_until(cls, data: object) -> object:
        """A rule carries at most one of ``count``/``until``; ``count`` is kept."""
        if not isinstance(data, dict):
            return data
        if data.get("count") is not None and data.get("until") is not None:
            return {**data, "until": None}
        return data

    @field_validator("until")
    @classmethod
    def _until_at_midnight(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return value - value % _DAY_MS

    @field_validator("by_day", "by_month_day", "by_month", mode="before")
    @classmethod
    def _empty_as_absent(cls, value: object) -> object:
        if value is not None and not value:
            return None
        return value

    @field_validator("by_month_day")
    @classmethod
    def _check_month_days(cls, value: tuple[int, ...] | None) -> tuple[int, ...] | None:
        if value is not None and any(day < 1 or day > 31 for day in value):
            raise ValueError("by_month_day values must be within 1..31")
        return value

    @field_validator("by_month")
    @classmethod
    def _check_months(cls, value: tuple[int, ...] | None) -> tuple[int, ...] | None:
        if value is not None and any(month < 1 or month > 12 for month in value):
            raise ValueError("by_month values must be within 1..12")
        return value

    @property
    def has_filters(self) -> bool:
        return bool(self.by_day or self.by_month_day or self.by_month)


class Occurrence(NamedTuple):
    """One concrete (start, end) instance in epoch milliseconds."""

    start: int
    end: int


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


def _parse_int_list(value: str) -> tuple[int, ...]:
    return tuple(int(item) for item in value.split(",") if item.strip())


def _parse_until(value: str) -> int:
    digits, suffix = value[:8], value[8:]
    if len(digits) != 8 or not digits.isdigit() or not _UNTIL_TIME_SUFFIX.match(suffix):
        raise ValueError(f"invalid UNTIL value: {value!r}")
    parsed = date(int(digits[:4]), int(digits[4:6]), int(digits[6:8]))
    return to_millis(datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC))


def _parse_by_day(value: str) -> tuple[Weekday, ...]:
    return tuple(Weekday(item.strip().upper()) for item in value.split(",") if item.strip())


def parse_rrule(text: object) -> RecurrenceRule | None:
    """Parse ``RRULE:`` text into a :class:`RecurrenceRule`, or ``None`` when malformed."""
    if not isinstance(text, str):
        return None
    normalized = text.strip()
    if not normalized.startswith(RRULE_PREFIX):
        return None

    fields: dict[str, object] = {}
    for part in normalized[len(RRULE_PREFIX) :].split(";"):
        if not part.strip():
            continue
        key, separator, value = part.partition("=")
        if not separator:
            return None
        key = key.strip().upper()
        value = value.strip()
        try:
            if key == "FREQ":
                fields["frequency"] = Frequency(value.lower())
            elif key == "INTERVAL":
                fields["interval"] = int(value)
            elif key == "COUNT":
                fields["count"] = int(value)
            elif key == "UNTIL":
                fields["until"] = _parse_until(value)
            elif key == "BYDAY":
                fields["by_day"] = _parse_by_day(value)
            elif key == "BYMONTHDAY":
                fields["by_month_day"] = _parse_int_list(value)
            elif key == "BYMONTH":
                fields["by_month"] = _parse_int_list(value)
        except ValueError:
            logger.debug("Rejecting malformed recurrence rule part %r in %r", part, text)
            return None

    try:
        return RecurrenceRule(**fields)
    except ValidationError:
        logger.debug("Rejecting out-of-range recurrence rule %r", text)
        return None


def serialize_rrule(rule: RecurrenceRule) -> str:
    """Serialize a rule to ``RRULE:`` text. ``COUNT`` wins over ``UNTIL``."""
    parts = [f"FREQ={rule.frequency.value.upper()}"]
    if rule.interval != 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.count is not None:
        parts.append(f"COUNT={rule.count}")
    elif rule.until is not None:
        parts.append(f"UNTIL={from_millis(rule.until).strftime('%Y%m%d')}")
    if rule.by_day:
        parts.append(f"BYDAY={','.join(day.value for day in rule.by_day)}")
    if rule.by_month_day:
        parts.append(f"BYMONTHDAY={','.join(str(day) for day in rule.by_month_day)}")
    if rule.by_month:
        parts.append(f"BYMONTH={','.join(str(month) for month in rule.by_month)}")
    return f"{RRULE_PREFIX}{';'.join(parts)}"


def describe_rule(rule: RecurrenceRule) -> str:
    """Human-readable summary, e.g. ``"Every 2 weeks on Monday, Friday, 10 times"``."""
    interval = rule.interval
    if rule.frequency == Frequency.DAILY:
        description = "Daily" if interval == 1 else f"Every {interval} days"
    elif rule.frequency == Frequency.WEEKLY:
        description = "Weekly" if interval == 1 else f"Every {interval} weeks"
        if rule.by_day:
            description += f" on {', '.join(day.full_name for day in rule.by_day)}"
    elif rule.frequency == Frequency.MONTHLY:
        description = "Monthly" if interval == 1 else f"Every {interval} months"
        if rule.by_month_day:
            description += f" on day {', '.join(str(day) for day in rule.by_month_day)}"
    else:
        description = "Yearly" if interval == 1 else f"Every {interval} years"

    if rule.count is not None:
        description += f", {rule.count} times"
    elif rule.until is not None:
        description += f", until {from_millis(rule.until).date().isoformat()}"
    return description


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------


def _as_millis(value: int | datetime) -> int:
    return to_millis(value) if isinstance(value, datetime) else int(value)


def _add_months(value: datetime, months: int) -> datetime:
    """Calendar-month addition that rolls a missing day over into the next month."""
    total = value.month - 1 + months
    first_of_month = value.replace(year=value.year + total // 12, month=total % 12 + 1, day=1)
    return first_of_month + timedelta(days=value.day - 1)


def _step(value: datetime, rule: RecurrenceRule) -> datetime:
    if rule.frequency == Frequency.DAILY:
        return value + timedelta(days=rule.interval)
    if rule.frequency == Frequency.WEEKLY:
        return value + timedelta(weeks=rule.interval)
    if rule.frequency == Frequency.MONTHLY:
        return _add_months(value, rule.interval)
    return _add_months(value, 12 * rule.interval)


def _passes_filters(value: datetime, rule: RecurrenceRule) -> bool:
    if rule.by_day and Weekday.of(value) not in rule.by_day:
        return False
    if rule.by_month_day and value.day not in rule.by_month_day:
        return False
    if rule.by_month and value.month not in rule.by_month:
        return False
    return True


def _candidates(anchor: datetime, rule: RecurrenceRule) -> Iterator[datetime]:
    candidate = anchor
    for _ in range(MAX_CANDIDATES):
        yield candidate
        try:
            candidate = _step(candidate, rule)
        except (OverflowError, ValueError):
            return
    logger.warning("Recurrence expansion stopped after %d candidates", MAX_CANDIDATES)


def generate_occurrences(
    anchor_start: int | datetime,
    anchor_end: int | datetime,
    rule: RecurrenceRule,
    window_start: int | datetime,
    window_end: int | datetime,
    max_count: int = DEFAULT_MAX_OCCURRENCES,
    *,
    tz: tzinfo = UTC,
) -> list[Occurrence]:
    """Expand *rule* anchored at the given event boundaries into occurrences.

    Candidates are evaluated in *tz* (day-of-week, day-of-month and month
    filters, and calendar stepping). The rule's own ``count`` counts every
    candidate that survives the filters, including those before
    *window_start*, so it reflects the absolute occurrence index.

    The result is ascending by start, free of duplicates and never longer than
    ``min(max_count, rule.count)``. Every emitted start lies inside
    ``[window_start, window_end]``.
    """
    start_ms = _as_millis(anchor_start)
    duration = _as_millis(anchor_end) - start_ms
    lower = _as_millis(window_start)
    upper = _as_millis(window_end)

    occurrences: list[Occurrence] = []
    if max_count <= 0 or upper < lower:
        return occurrences

    matched = 0
    for candidate in _candidates(from_millis(start_ms).astimezone(tz), rule):
        candidate_ms = to_millis(candidate)
        if candidate_ms > upper:
            break
        if rule.until is not None and candidate_ms > rule.until:
            break
        if rule.count is not None and matched >= rule.count:
            break
        if not _passes_filters(candidate, rule):
            continue
        matched += 1
        if candidate_ms >= lower:
            occurrences.append(Occurrence(candidate_ms, candidate_ms + duration))
            if len(occurrences) >= max_count:
                break
    return occurrences


def is_occurrence(
    anchor_start: int | datetime,
    rule: RecurrenceRule,
    instant: int | datetime,
    *,
    tz: tzinfo = UTC,
) -> bool:
    """Return True when the calendar day of *instant* is an occurrence day of *rule*.

    Day-granular check: the time of day of *instant* is not compared, and the
    rule's ``count`` is not enforced.
    """
    anchor_ms = _as_millis(anchor_start)
    instant_ms = _as_millis(instant)
    if instant_ms < anchor_ms:
        return False
    if rule.until is not None and instant_ms > rule.until:
        return False

    anchor = from_millis(anchor_ms).astimezone(tz)
    checked = from_millis(instant_ms).astimezone(tz)
    if not _passes_filters(checked, rule):
        return False

    diff_days = (instant_ms - anchor_ms) // 86_400_000
    if rule.frequency == Frequency.DAILY:
        return diff_days % rule.interval == 0
    if rule.frequency == Frequency.WEEKLY:
        return (diff_days // 7) % rule.interval == 0
    months = (checked.year - anchor.year) * 12 + (checked.month - anchor.month)
    if rule.frequency == Frequency.MONTHLY:
        return months % rule.interval == 0 and checked.day == anchor.day
    years = checked.year - anchor.year
    return (
        years % rule.interval == 0
        and checked.month == anchor.month
        and checked.day == anchor.day
    )


def expand_event(
    event: CanonicalEvent,
    window_start: int | datetime,
    window_end: int | datetime,
    max_count: int = DEFAULT_MAX_OCCURRENCES,
    *,
    tz: tzinfo = UTC,
) -> list[Occurrence]:
    """Occurrences of a canonical event inside a window.

    Events without a usable rule yield their single stored instance when it
    overlaps the window.
    """
    rule = parse_rrule(event.recurrence_rule) if event.recurrence_rule else None
    if rule is None:
        if event.recurrence_rule:
            logger.debug("Event %s has an unparsable recurrence rule; not expanding", event.id)
        if event.end_time >= _as_millis(window_start) and event.start_time <= _as_millis(
            window_end
        ):
            return [Occurrence(event.start_time, event.end_time)]
        return []
    return generate_occurrences(
        event.start_time,
        event.end_time,
        rule,
        window_start,
        window_end,
        max_count,
        tz=tz,
    )
