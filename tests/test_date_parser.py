from datetime import timedelta
from unittest.mock import patch

import pytest

from clinicdesk.date_parser import (
    format_range,
    part_of_day,
    preferred_hour,
    resolve,
    speakable_time,
    time_preference_window,
)
from conftest import TZ, local

# Tuesday 14 May 2030, 9am Brisbane
TUESDAY_MORNING = local(2030, 5, 14, 9)
TUESDAY_AFTERNOON = local(2030, 5, 14, 13)


class TestRelativeDays:
    def test_today_starts_now(self):
        r = resolve("today", TZ, now=TUESDAY_MORNING)
        assert r.start == TUESDAY_MORNING
        assert r.end.date() == TUESDAY_MORNING.date()

    def test_tomorrow(self):
        r = resolve("tomorrow", TZ, now=TUESDAY_MORNING)
        assert r.start == local(2030, 5, 15)
        assert r.single_day

    def test_next_week_is_monday_to_friday(self):
        r = resolve("next week", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 5, 20).date()
        assert r.end.date() == local(2030, 5, 24).date()
        assert "May 20 - May 24" in r.description

    def test_this_week_runs_to_friday(self):
        r = resolve("this week", TZ, now=TUESDAY_MORNING)
        assert r.start == TUESDAY_MORNING
        assert r.end.date() == local(2030, 5, 17).date()

    def test_trailing_punctuation_and_on_prefix(self):
        r = resolve("On tomorrow?", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 5, 15).date()


class TestWeekdays:
    def test_bare_weekday(self):
        r = resolve("saturday", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 5, 18).date()

    def test_next_saturday_is_seven_days_after_this_saturday(self):
        this = resolve("this saturday", TZ, now=TUESDAY_MORNING)
        nxt = resolve("next saturday", TZ, now=TUESDAY_MORNING)
        assert nxt.start - this.start == timedelta(days=7)

    def test_abbreviation(self):
        r = resolve("thurs", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 5, 16).date()

    def test_same_weekday_morning_means_today(self):
        r = resolve("tuesday", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == TUESDAY_MORNING.date()

    def test_same_weekday_afternoon_means_next_week(self):
        r = resolve("tuesday", TZ, now=TUESDAY_AFTERNOON)
        assert r.start.date() == local(2030, 5, 21).date()


class TestCalendarDates:
    def test_slash_date_is_day_month(self):
        r = resolve("23/5", TZ, now=TUESDAY_MORNING)
        assert (r.start.month, r.start.day) == (5, 23)

    def test_slash_date_with_year(self):
        r = resolve("3/6/31", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2031, 6, 3).date()

    def test_day_of_month_name(self):
        r = resolve("23rd of May", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 5, 23).date()

    def test_month_name_day(self):
        r = resolve("june 2nd", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 6, 2).date()

    def test_past_month_day_rolls_to_next_year(self):
        r = resolve("march 3", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2031, 3, 3).date()

    def test_ordinal_later_this_month(self):
        r = resolve("the 20th", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 5, 20).date()

    def test_ordinal_already_passed_rolls_to_next_month(self):
        r = resolve("the 10th", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 6, 10).date()

    def test_bare_number_is_not_a_date(self):
        r = resolve("15", TZ, now=TUESDAY_MORNING)
        assert r.matched is False


class TestFallback:
    def test_unparseable_falls_back_to_two_weeks(self):
        r = resolve("whenever suits", TZ, now=TUESDAY_MORNING)
        assert r.matched is False
        assert r.end - r.start == timedelta(days=14)
        assert "couldn't parse" in r.description

    def test_empty_expression(self):
        r = resolve("", TZ, now=TUESDAY_MORNING)
        assert r.matched is True
        assert r.end - r.start == timedelta(days=14)

    def test_uses_current_clock_when_now_not_given(self):
        with patch("clinicdesk.date_parser._now", return_value=TUESDAY_MORNING):
            r = resolve("tomorrow", TZ)
        assert r.start.date() == local(2030, 5, 15).date()


class TestTimeOfDay:
    @pytest.mark.parametrize("text,expected", [
        ("saturday morning", "morning"),
        ("tomorrow arvo", "afternoon"),
        ("after work", "evening"),
        ("tuesday", None),
    ])
    def test_part_of_day(self, text, expected):
        assert part_of_day(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("4pm", 16.0),
        ("10:30 a.m.", 10.5),
        ("12pm", 12.0),
        ("around noon", 12.0),
        ("monday", None),
        ("half past ten", 10.5),
        ("quarter past nine am", 9.25),
        ("quarter to three", 14.75),
        ("10:30", 10.5),
        ("ten thirty", 10.5),
        ("two o'clock", 14.0),
        ("around 11", 11.0),
        ("at 3", 15.0),
        ("16:45", 16.75),
        ("in about two weeks", None),
    ])
    def test_preferred_hour(self, text, expected):
        assert preferred_hour(text) == expected


class TestTimePreferenceWindow:
    def test_spoken_time_on_a_day(self):
        r = time_preference_window("tomorrow at half past ten", TZ, now=TUESDAY_MORNING)
        assert r.start == local(2030, 5, 15, 9, 30)
        assert r.end == local(2030, 5, 15, 12, 30)

    def test_specific_hour_on_a_day(self):
        r = time_preference_window("tomorrow at 4pm", TZ, now=TUESDAY_MORNING)
        assert r.start == local(2030, 5, 15, 15)
        assert r.end == local(2030, 5, 15, 18)

    def test_part_of_day_on_a_weekday(self):
        r = time_preference_window("saturday morning", TZ, now=TUESDAY_MORNING)
        assert r.start == local(2030, 5, 18, 8)
        assert r.end == local(2030, 5, 18, 12)

    def test_passed_part_of_day_moves_to_tomorrow(self):
        r = time_preference_window("morning", TZ, now=TUESDAY_AFTERNOON)
        assert r.start == local(2030, 5, 15, 8)

    def test_window_never_starts_in_the_past(self):
        r = time_preference_window("this afternoon", TZ, now=TUESDAY_AFTERNOON)
        assert r.start == TUESDAY_AFTERNOON
        assert r.end == local(2030, 5, 14, 17)

    def test_multi_day_range_returned_as_resolved(self):
        r = time_preference_window("next week", TZ, now=TUESDAY_MORNING)
        assert r.start.date() == local(2030, 5, 20).date()
        assert not r.single_day


class TestFormatting:
    def test_speakable_time_with_minutes(self):
        assert speakable_time(local(2030, 5, 14, 10, 30), TZ) == "Tuesday 14 May at 10:30am"

    def test_speakable_time_on_the_hour(self):
        assert speakable_time(local(2030, 5, 14, 9), TZ) == "Tuesday 14 May at 9am"

    def test_format_range_includes_description(self):
        r = resolve("tomorrow", TZ, now=TUESDAY_MORNING)
        assert "(tomorrow)" in format_range(r)
