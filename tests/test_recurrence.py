"""Tests for almanac.recurrence: RRULE codec, occurrence expansion and descriptions."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from almanac.models import CanonicalEvent, from_millis
from almanac.recurrence import (
    Frequency,
    RecurrenceRule,
    Weekday,
    describe_rule,
    expand_event,
    generate_occurrences,
    is_occurrence,
    parse_rrule,
    serialize_rrule,
)
from tests.conftest import millis

pytestmark = pytest.mark.unit

DAY_MS = 86_400_000


def _rule(text: str) -> RecurrenceRule:
    rule = parse_rrule(text)
    assert rule is not None, text
    return rule


# ---------------------------------------------------------------------------
# parse_rrule
# ---------------------------------------------------------------------------


class TestParse:
    def test_daily_interval_one(self):
        assert parse_rrule("RRULE:FREQ=DAILY;INTERVAL=1") == RecurrenceRule(
            frequency=Frequency.DAILY, interval=1
        )

    def test_all_parts(self):
        rule = _rule("RRULE:FREQ=WEEKLY;INTERVAL=2;COUNT=10;BYDAY=MO,WE,FR;BYMONTH=1,2")
        assert rule.frequency == Frequency.WEEKLY
        assert rule.interval == 2
        assert rule.count == 10
        assert rule.by_day == (Weekday.MO, Weekday.WE, Weekday.FR)
        assert rule.by_month == (1, 2)

    def test_missing_freq_defaults_to_daily(self):
        assert _rule("RRULE:INTERVAL=3").frequency == Frequency.DAILY

    def test_unknown_parts_are_ignored(self):
        assert _rule("RRULE:FREQ=DAILY;WKST=MO") == RecurrenceRule(frequency=Frequency.DAILY)

    def test_until_keeps_only_the_date(self):
        rule = _rule("RRULE:FREQ=DAILY;UNTIL=20250105T235959Z")
        assert rule.until == millis(2025, 1, 5)

    @pytest.mark.parametrize(
        "text",
        [
            "garbage",
            "",
            "FREQ=DAILY",
            "RRULE:FREQ=HOURLY",
            "RRULE:FREQ=DAILY;INTERVAL=abc",
            "RRULE:FREQ=DAILY;INTERVAL=0",
            "RRULE:FREQ=DAILY;COUNT",
            "RRULE:FREQ=DAILY;BYDAY=XX",
            "RRULE:FREQ=DAILY;UNTIL=2025",
            "RRULE:FREQ=MONTHLY;BYMONTHDAY=0",
            "RRULE:FREQ=YEARLY;BYMONTH=13",
        ],
    )
    def test_malformed_text_yields_none(self, text):
        assert parse_rrule(text) is None

    @pytest.mark.parametrize("value", [None, 42, ["RRULE:FREQ=DAILY"]])
    def test_non_string_yields_none(self, value):
        assert parse_rrule(value) is None


# ---------------------------------------------------------------------------
# serialize_rrule / describe_rule
# ---------------------------------------------------------------------------


class TestSerialize:
    def test_interval_omitted_when_one(self):
        assert serialize_rrule(RecurrenceRule(frequency=Frequency.MONTHLY)) == "RRULE:FREQ=MONTHLY"

    def test_weekly_with_days(self):
        rule = RecurrenceRule(
            frequency=Frequency.WEEKLY, interval=2, by_day=(Weekday.MO, Weekday.FR)
        )
        assert serialize_rrule(rule) == "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,FR"

    def test_count_wins_over_until(self):
        rule = RecurrenceRule(count=2, until=millis(2025, 2, 1))
        assert serialize_rrule(rule) == "RRULE:FREQ=DAILY;COUNT=2"

    def test_until_written_as_date(self):
        assert serialize_rrule(RecurrenceRule(until=millis(2025, 2, 1))) == (
            "RRULE:FREQ=DAILY;UNTIL=20250201"
        )

    def test_round_trip(self):
        rule = RecurrenceRule(
            frequency=Frequency.MONTHLY,
            interval=3,
            until=millis(2026, 6, 30),
            by_month_day=(1, 15),
        )
        assert parse_rrule(serialize_rrule(rule)) == rule

    def test_until_time_of_day_is_floored_so_round_trip_holds(self):
        rule = RecurrenceRule(frequency=Frequency.WEEKLY, until=millis(2025, 3, 1, 17, 30))
        assert rule.until == millis(2025, 3, 1)
        assert parse_rrule(serialize_rrule(rule)) == rule

    def test_constructed_rule_with_count_and_until_round_trips(self):
        rule = RecurrenceRule(count=2, until=millis(2025, 2, 1))
        assert rule.until is None
        assert parse_rrule(serialize_rrule(rule)) == rule

    def test_parse_keeps_count_when_until_is_also_given(self):
        rule = _rule("RRULE:FREQ=DAILY;COUNT=3;UNTIL=20250201")
        assert (rule.count, rule.until) == (3, None)

    @pytest.mark.parametrize(
        "text",
        [
            "RRULE:FREQ=DAILY",
            "RRULE:FREQ=DAILY;COUNT=3;UNTIL=20250201",
            "RRULE:FREQ=WEEKLY;UNTIL=20250301T120000Z;BYDAY=mo,we",
            "RRULE:FREQ=MONTHLY;INTERVAL=1;BYMONTHDAY=1,15",
            "RRULE:FREQ=YEARLY;INTERVAL=2;BYMONTH=6;COUNT=4",
            "RRULE:INTERVAL=5",
            "RRULE:FREQ=weekly;BYDAY=SU;X-UNKNOWN=1",
        ],
    )
    def test_parse_serialize_parse_is_stable(self, text):
        parsed = _rule(text)
        assert parse_rrule(serialize_rrule(parsed)) == parsed


class TestDescribe:
    def test_monthly(self):
        assert "Monthly" in describe_rule(_rule("RRULE:FREQ=MONTHLY;INTERVAL=1"))

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("RRULE:FREQ=DAILY", "Daily"),
            ("RRULE:FREQ=DAILY;INTERVAL=3", "Every 3 days"),
            ("RRULE:FREQ=WEEKLY;BYDAY=MO,WE", "Weekly on Monday, Wednesday"),
            (
                "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,FR;COUNT=10",
                "Every 2 weeks on Monday, Friday, 10 times",
            ),
            ("RRULE:FREQ=MONTHLY;BYMONTHDAY=15", "Monthly on day 15"),
            ("RRULE:FREQ=YEARLY;UNTIL=20251231", "Yearly, until 2025-12-31"),
        ],
    )
    def test_descriptions(self, text, expected):
        assert describe_rule(_rule(text)) == expected


# ---------------------------------------------------------------------------
# generate_occurrences
# ---------------------------------------------------------------------------


class TestGenerateOccurrences:
    def test_daily_over_ten_days(self):
        occurrences = generate_occurrences(
            datetime(2025, 1, 1, 10, tzinfo=UTC),
            datetime(2025, 1, 1, 11, tzinfo=UTC),
            _rule("RRULE:FREQ=DAILY;INTERVAL=1"),
            datetime(2025, 1, 1, tzinfo=UTC),
            datetime(2025, 1, 10, 23, 59, 59, tzinfo=UTC),
        )

        assert len(occurrences) == 10
        assert occurrences[0].start == millis(2025, 1, 1, 10)
        assert occurrences[-1].start == millis(2025, 1, 10, 10)
        for previous, current in zip(occurrences, occurrences[1:], strict=False):
            assert current.start - previous.start == DAY_MS
        assert all(o.end - o.start == 3_600_000 for o in occurrences)

    def test_biweekly_by_day_skips_every_other_week(self):
        anchor = datetime(2025, 1, 6, 9, tzinfo=UTC)  # a Monday
        occurrences = generate_occurrences(
            anchor,
            anchor + timedelta(hours=1),
            _rule("RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE,FR"),
            datetime(2025, 1, 1, tzinfo=UTC),
            datetime(2025, 3, 31, 23, 59, tzinfo=UTC),
        )

        assert len(occurrences) == 7
        for occurrence in occurrences:
            start = from_millis(occurrence.start)
            assert start.weekday() in (0, 2, 4)
            assert ((start - anchor).days // 7) % 2 == 0

    def test_until_is_midnight_of_its_date(self):
        occurrences = generate_occurrences(
            millis(2025, 1, 1, 10),
            millis(2025, 1, 1, 11),
            _rule("RRULE:FREQ=DAILY;UNTIL=20250105T235959Z"),
            millis(2025, 1, 1),
            millis(2025, 1, 31),
        )
        assert [from_millis(o.start).day for o in occurrences] == [1, 2, 3, 4]

    def test_count_includes_occurrences_before_window(self):
        occurrences = generate_occurrences(
            millis(2025, 1, 1, 10),
            millis(2025, 1, 1, 11),
            _rule("RRULE:FREQ=DAILY;COUNT=5"),
            millis(2025, 1, 3),
            millis(2025, 1, 31),
        )
        assert [from_millis(o.start).day for o in occurrences] == [3, 4, 5]

    def test_filtered_candidates_do_not_consume_count(self):
        occurrences = generate_occurrences(
            millis(2025, 1, 6, 8),
            millis(2025, 1, 6, 9),
            _rule("RRULE:FREQ=DAILY;BYDAY=MO,FR;COUNT=3"),
            millis(2025, 1, 1),
            millis(2025, 2, 28),
        )
        assert [from_millis(o.start).day for o in occurrences] == [6, 10, 13]

    def test_monthly_rolls_over_short_months(self):
        occurrences = generate_occurrences(
            millis(2025, 1, 31, 10),
            millis(2025, 1, 31, 11),
            _rule("RRULE:FREQ=MONTHLY"),
            millis(2025, 1, 1),
            millis(2025, 4, 30),
        )
        starts = [from_millis(o.start).date().isoformat() for o in occurrences]
        assert starts == ["2025-01-31", "2025-03-03", "2025-04-03"]

    def test_max_count_caps_output(self):
        occurrences = generate_occurrences(
            millis(2025, 1, 1, 10),
            millis(2025, 1, 1, 11),
            _rule("RRULE:FREQ=DAILY"),
            millis(2025, 1, 1),
            millis(2025, 12, 31),
            max_count=5,
        )
        assert len(occurrences) == 5

    def test_default_cap_is_one_hundred(self):
        occurrences = generate_occurrences(
            millis(2025, 1, 1, 10),
            millis(2025, 1, 1, 11),
            _rule("RRULE:FREQ=DAILY"),
            millis(2025, 1, 1),
            millis(2026, 12, 31),
        )
        assert len(occurrences) == 100

    def test_inverted_window_yields_nothing(self):
        assert (
            generate_occurrences(
                millis(2025, 1, 1, 10),
                millis(2025, 1, 1, 11),
                _rule("RRULE:FREQ=DAILY"),
                millis(2025, 2, 1),
                millis(2025, 1, 1),
            )
            == []
        )

    def test_results_are_sorted_unique_and_inside_window(self):
        lower, upper = millis(2025, 2, 10), millis(2025, 6, 1)
        occurrences = generate_occurrences(
            millis(2025, 1, 1, 7),
            millis(2025, 1, 1, 8),
            _rule("RRULE:FREQ=WEEKLY;BYDAY=WE,TH"),
            lower,
            upper,
        )
        starts = [o.start for o in occurrences]
        assert starts == sorted(set(starts))
        assert all(lower <= start <= upper for start in starts)

    def test_weekday_filter_evaluated_in_given_timezone(self):
        # 23:30 UTC on Monday is already Tuesday morning at UTC+9.
        tokyo = timezone(timedelta(hours=9))
        rule = _rule("RRULE:FREQ=DAILY;BYDAY=TU")
        args = (millis(2025, 1, 6, 23, 30), millis(2025, 1, 7, 0, 30), rule)
        window = (millis(2025, 1, 1), millis(2025, 1, 31))

        in_utc = generate_occurrences(*args, *window)
        in_tokyo = generate_occurrences(*args, *window, tz=tokyo)

        assert in_utc[0].start == millis(2025, 1, 7, 23, 30)
        assert in_tokyo[0].start == millis(2025, 1, 6, 23, 30)


# ---------------------------------------------------------------------------
# is_occurrence / expand_event
# ---------------------------------------------------------------------------


class TestIsOccurrence:
    def test_interval_boundaries(self):
        rule = _rule("RRULE:FREQ=DAILY;INTERVAL=2")
        anchor = millis(2025, 1, 1, 10)
        assert is_occurrence(anchor, rule, millis(2025, 1, 3, 15))
        assert not is_occurrence(anchor, rule, millis(2025, 1, 2, 10))

    def test_before_anchor_is_never_an_occurrence(self):
        assert not is_occurrence(
            millis(2025, 1, 1, 10), _rule("RRULE:FREQ=DAILY"), millis(2024, 12, 31, 10)
        )

    def test_after_until_is_not_an_occurrence(self):
        rule = _rule("RRULE:FREQ=DAILY;UNTIL=20250110")
        assert not is_occurrence(millis(2025, 1, 1, 10), rule, millis(2025, 1, 12, 10))

    def test_monthly_requires_same_day_of_month(self):
        rule = _rule("RRULE:FREQ=MONTHLY")
        anchor = millis(2025, 1, 15, 10)
        assert is_occurrence(anchor, rule, millis(2025, 3, 15, 10))
        assert not is_occurrence(anchor, rule, millis(2025, 3, 16, 10))


class TestExpandEvent:
    def _event(self, rule: str | None) -> CanonicalEvent:
        return CanonicalEvent(
            id=7,
            user_id=1,
            title="Standup",
            start_time=millis(2025, 1, 6, 9),
            end_time=millis(2025, 1, 6, 9, 15),
            recurrence_rule=rule,
        )

    def test_recurring_event(self):
        occurrences = expand_event(
            self._event("RRULE:FREQ=DAILY;COUNT=3"), millis(2025, 1, 1), millis(2025, 1, 31)
        )
        assert [from_millis(o.start).day for o in occurrences] == [6, 7, 8]

    def test_single_event_inside_window(self):
        occurrences = expand_event(self._event(None), millis(2025, 1, 1), millis(2025, 1, 31))
        assert occurrences == [(millis(2025, 1, 6, 9), millis(2025, 1, 6, 9, 15))]

    def test_single_event_outside_window(self):
        assert expand_event(self._event(None), millis(2025, 2, 1), millis(2025, 2, 28)) == []

    def test_unparsable_rule_falls_back_to_stored_instance(self):
        occurrences = expand_event(self._event("garbage"), millis(2025, 1, 1), millis(2025, 1, 31))
        assert len(occurrences) == 1
