"""
Unit tests for delivery/schedule_parser.py

Tests cover:
- Free-text parsing (weekday, time, interval rules and their precedence)
- Ambiguity warnings
- Cron rendering and the accepted cron subset
- Next fire time (weekly / daily / monthly, timezones, strictly-after-now)
- Display formatting
"""

import unittest
from datetime import datetime, timedelta
from unittest.mock import patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from delivery.schedule_parser import (
    INTERVAL_DAILY,
    INTERVAL_MONTHLY,
    INTERVAL_WEEKLY,
    ScheduleSpec,
    format_schedule_for_display,
    get_next_run_time,
    parse_cron_expression,
    parse_schedule,
    parse_schedule_text,
    schedule_text_to_cron,
    spec_to_cron,
)

# 2024-01-15 is a Monday
MONDAY_10AM = datetime(2024, 1, 15, 10, 0)


class TestParseScheduleText(unittest.TestCase):
    """Test the ordered extraction rules."""

    def test_weekday_and_pm_time(self):
        spec = parse_schedule_text("every tuesday at 3pm")
        self.assertEqual(spec.day_of_week, 2)
        self.assertEqual(spec.hour, 15)
        self.assertEqual(spec.minute, 0)
        self.assertEqual(spec.interval, INTERVAL_WEEKLY)
        self.assertEqual(spec.warnings, ())

    def test_daily_with_minutes(self):
        spec = parse_schedule_text("daily 9:30am")
        self.assertIsNone(spec.day_of_week)
        self.assertEqual((spec.hour, spec.minute), (9, 30))
        self.assertEqual(spec.interval, INTERVAL_DAILY)

    def test_24_hour_time(self):
        spec = parse_schedule_text("every day at 17:45")
        self.assertEqual((spec.hour, spec.minute), (17, 45))

    def test_12am_is_midnight(self):
        self.assertEqual(parse_schedule_text("daily 12am").hour, 0)

    def test_12pm_is_noon(self):
        self.assertEqual(parse_schedule_text("daily 12pm").hour, 12)

    def test_space_before_period(self):
        spec = parse_schedule_text("Friday 4:15 PM")
        self.assertEqual(spec.day_of_week, 5)
        self.assertEqual((spec.hour, spec.minute), (16, 15))

    def test_abbreviated_weekdays(self):
        self.assertEqual(parse_schedule_text("sun 8am").day_of_week, 0)
        self.assertEqual(parse_schedule_text("thurs 8am").day_of_week, 4)
        self.assertEqual(parse_schedule_text("sat 8am").day_of_week, 6)

    def test_month_is_not_monday(self):
        spec = parse_schedule_text("every month at 9am")
        self.assertIsNone(spec.day_of_week)
        self.assertEqual(spec.interval, INTERVAL_MONTHLY)

    def test_explicit_interval_overrides_weekday(self):
        spec = parse_schedule_text("tuesday, monthly at 9am")
        self.assertEqual(spec.day_of_week, 2)
        self.assertEqual(spec.interval, INTERVAL_MONTHLY)

    def test_first_weekday_wins_with_warning(self):
        spec = parse_schedule_text("monday and friday at 9am")
        self.assertEqual(spec.day_of_week, 1)
        self.assertEqual(len(spec.warnings), 1)
        self.assertIn("friday", spec.warnings[0])

    def test_repeated_same_weekday_is_not_ambiguous(self):
        spec = parse_schedule_text("monday (mon) at 9am")
        self.assertEqual(spec.day_of_week, 1)
        self.assertEqual(spec.warnings, ())

    def test_qualified_time_preferred_over_bare_number(self):
        spec = parse_schedule_text("every 2 weeks on tuesday at 3pm")
        self.assertEqual(spec.hour, 15)

    def test_out_of_range_time_left_unset(self):
        spec = parse_schedule_text("daily at 25:00")
        self.assertIsNone(spec.hour)
        self.assertIsNone(spec.minute)

    def test_unparseable_text_is_not_an_error(self):
        spec = parse_schedule_text("whenever you like")
        self.assertEqual(spec, ScheduleSpec())

    def test_empty_and_none(self):
        self.assertEqual(parse_schedule_text(""), ScheduleSpec())
        self.assertEqual(parse_schedule_text(None), ScheduleSpec())


class TestCron(unittest.TestCase):
    """Test cron rendering and parsing."""

    def test_weekly_cron(self):
        self.assertEqual(schedule_text_to_cron("every tuesday at 3pm"), "0 15 * * 2")

    def test_daily_cron(self):
        self.assertEqual(schedule_text_to_cron("daily 9:30am"), "30 9 * * *")

    def test_monthly_cron(self):
        self.assertEqual(schedule_text_to_cron("every month at 8am"), "0 8 1 * *")

    def test_unset_interval_renders_daily(self):
        self.assertEqual(schedule_text_to_cron("at 7am"), "0 7 * * *")

    def test_no_time_gives_none(self):
        self.assertIsNone(schedule_text_to_cron("every tuesday"))
        self.assertIsNone(schedule_text_to_cron("weekly"))
        self.assertIsNone(spec_to_cron(ScheduleSpec()))

    def test_cron_defined_iff_time_parsed(self):
        for text in ["every tuesday at 3pm", "daily 9am", "monthly", "friday", "noon-ish", "18:05"]:
            spec = parse_schedule_text(text)
            cron = spec_to_cron(spec)
            if spec.has_time:
                self.assertIsNotNone(cron, text)
            else:
                self.assertIsNone(cron, text)

    def test_parse_weekly_cron(self):
        spec = parse_cron_expression("30 9 * * 1")
        self.assertEqual(spec.day_of_week, 1)
        self.assertEqual((spec.hour, spec.minute), (9, 30))
        self.assertEqual(spec.interval, INTERVAL_WEEKLY)

    def test_parse_sunday_as_seven(self):
        self.assertEqual(parse_cron_expression("0 9 * * 7").day_of_week, 0)

    def test_parse_monthly_cron(self):
        spec = parse_cron_expression("0 8 1 * *")
        self.assertEqual(spec.interval, INTERVAL_MONTHLY)

    def test_rendered_cron_parses_back(self):
        for text in ["every tuesday at 3pm", "daily 9:30am", "monthly at 6pm"]:
            spec = parse_schedule_text(text)
            again = parse_cron_expression(spec_to_cron(spec))
            self.assertEqual((again.hour, again.minute), (spec.hour, spec.minute))

    def test_unsupported_cron_raises(self):
        with self.assertRaises(ValueError):
            parse_cron_expression("*/5 * * * *")
        with self.assertRaises(ValueError):
            parse_cron_expression("0 9 * 6 *")
        with self.assertRaises(ValueError):
            parse_cron_expression("0 24 * * *")

    def test_parse_schedule_dispatches(self):
        self.assertEqual(parse_schedule("0 15 * * 2").day_of_week, 2)
        self.assertEqual(parse_schedule("every tuesday at 3pm").day_of_week, 2)


class TestGetNextRunTime(unittest.TestCase):
    """Test next fire time calculation."""

    def test_tuesday_3pm_from_monday_morning(self):
        result = get_next_run_time("every tuesday at 3pm", "UTC", MONDAY_10AM)
        self.assertEqual(result, datetime(2024, 1, 16, 15, 0))

    def test_tuesday_3pm_in_new_york(self):
        # Monday 10:00 EST == 15:00 UTC
        now = datetime(2024, 1, 15, 15, 0)
        result = get_next_run_time("every tuesday at 3pm", "America/New_York", now)
        self.assertEqual(result, datetime(2024, 1, 16, 20, 0))

    def test_new_york_summer_time(self):
        # 2024-07-15 is a Monday, EDT is UTC-4
        now = datetime(2024, 7, 15, 14, 0)
        result = get_next_run_time("every tuesday at 3pm", "America/New_York", now)
        self.assertEqual(result, datetime(2024, 7, 16, 19, 0))

    def test_same_weekday_later_today(self):
        now = datetime(2024, 1, 15, 8, 0)
        result = get_next_run_time("every monday at 9am", "UTC", now)
        self.assertEqual(result, datetime(2024, 1, 15, 9, 0))

    def test_same_weekday_already_passed(self):
        result = get_next_run_time("every monday at 9am", "UTC", MONDAY_10AM)
        self.assertEqual(result, datetime(2024, 1, 22, 9, 0))

    def test_earlier_weekday_wraps(self):
        result = get_next_run_time("sunday 9am", "UTC", MONDAY_10AM)
        self.assertEqual(result, datetime(2024, 1, 21, 9, 0))

    def test_daily_later_today(self):
        now = datetime(2024, 1, 15, 8, 0)
        self.assertEqual(get_next_run_time("daily 9am", "UTC", now), datetime(2024, 1, 15, 9, 0))

    def test_daily_exactly_now_rolls_to_tomorrow(self):
        now = datetime(2024, 1, 15, 9, 0)
        self.assertEqual(get_next_run_time("daily 9am", "UTC", now), datetime(2024, 1, 16, 9, 0))

    def test_unset_interval_behaves_daily(self):
        self.assertEqual(get_next_run_time("9am", "UTC", MONDAY_10AM), datetime(2024, 1, 16, 9, 0))

    def test_monthly_next_month(self):
        result = get_next_run_time("monthly at 8am", "UTC", MONDAY_10AM)
        self.assertEqual(result, datetime(2024, 2, 1, 8, 0))

    def test_monthly_year_rollover(self):
        now = datetime(2024, 12, 15, 10, 0)
        self.assertEqual(get_next_run_time("monthly at 8am", "UTC", now), datetime(2025, 1, 1, 8, 0))

    def test_monthly_first_not_yet_passed(self):
        now = datetime(2024, 3, 1, 7, 0)
        self.assertEqual(get_next_run_time("monthly at 8am", "UTC", now), datetime(2024, 3, 1, 8, 0))

    def test_cron_schedule(self):
        self.assertEqual(get_next_run_time("0 15 * * 2", "UTC", MONDAY_10AM), datetime(2024, 1, 16, 15, 0))

    def test_unknown_timezone_falls_back_to_default(self):
        with patch("config.DEFAULT_TIMEZONE", "America/New_York"):
            now = datetime(2024, 1, 15, 12, 0)
            result = get_next_run_time("daily 9am", "Not/AZone", now)
        self.assertEqual(result, datetime(2024, 1, 15, 14, 0))

    def test_dst_gap_still_after_now(self):
        # 02:30 does not exist in New York on 2024-03-10
        now = datetime(2024, 3, 10, 6, 0)
        result = get_next_run_time("daily 2:30am", "America/New_York", now)
        self.assertGreater(result, now)

    def test_weekly_results_match_spec_and_are_after_now(self):
        days = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]
        nows = [MONDAY_10AM + timedelta(hours=h) for h in range(0, 24 * 7, 5)]
        for day in days:
            spec = parse_schedule_text(f"every {day} at 6:15pm")
            for now in nows:
                result = get_next_run_time(f"every {day} at 6:15pm", "UTC", now)
                self.assertGreater(result, now)
                self.assertLessEqual(result - now, timedelta(days=7))
                self.assertEqual((result.weekday() + 1) % 7, spec.day_of_week)
                self.assertEqual((result.hour, result.minute), (18, 15))

    def test_unsupported_cron_raises(self):
        with self.assertRaises(ValueError):
            get_next_run_time("*/5 * * * *", "UTC", MONDAY_10AM)


class TestFormatForDisplay(unittest.TestCase):
    """Test human-readable rendering."""

    def test_weekly(self):
        spec = parse_schedule_text("every tuesday at 3pm")
        self.assertEqual(format_schedule_for_display(spec), "Every Tuesday at 3:00 PM")

    def test_daily(self):
        spec = parse_schedule_text("daily 9:30am")
        self.assertEqual(format_schedule_for_display(spec), "Every day at 9:30 AM")

    def test_midnight(self):
        spec = parse_schedule_text("daily 12am")
        self.assertEqual(format_schedule_for_display(spec), "Every day at 12:00 AM")

    def test_monthly_without_time(self):
        self.assertEqual(format_schedule_for_display(parse_schedule_text("monthly")), "Every month")

    def test_weekly_without_day(self):
        self.assertEqual(format_schedule_for_display(parse_schedule_text("weekly")), "Every week")

    def test_nothing_parsed(self):
        self.assertEqual(format_schedule_for_display(ScheduleSpec()), "Not scheduled")


if __name__ == "__main__":
    unittest.main()
