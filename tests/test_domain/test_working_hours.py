"""Tests for timezone-aware working-hours arithmetic"""
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from followup.domain.preferences import SchedulingPreferences
from followup.domain.working_hours import (
    adjust_to_working_hours,
    as_utc,
    at_local_time,
    get_zone,
    is_within_quiet_hours,
    is_within_working_hours,
    local_day_bounds,
    next_working_day,
    quiet_hours_end_after,
)

UTC = ZoneInfo("UTC")
PREFS = SchedulingPreferences()
OVERNIGHT = SchedulingPreferences(quiet_hours_start=time(22, 0), quiet_hours_end=time(7, 0))


def _local(y, m, d, hh, mm=0, zone=UTC):
    return datetime(y, m, d, hh, mm, tzinfo=zone)


class TestQuietHours:
    def test_overnight_window_late_evening(self):
        assert is_within_quiet_hours(_local(2026, 1, 12, 23), OVERNIGHT)

    def test_overnight_window_early_morning(self):
        assert is_within_quiet_hours(_local(2026, 1, 12, 6, 59), OVERNIGHT)

    def test_end_is_exclusive(self):
        assert not is_within_quiet_hours(_local(2026, 1, 12, 7), OVERNIGHT)

    def test_start_is_inclusive(self):
        assert is_within_quiet_hours(_local(2026, 1, 12, 22), OVERNIGHT)

    def test_midday_outside(self):
        assert not is_within_quiet_hours(_local(2026, 1, 12, 12), OVERNIGHT)

    def test_same_day_window(self):
        prefs = SchedulingPreferences(quiet_hours_start=time(12, 0), quiet_hours_end=time(13, 0))
        assert is_within_quiet_hours(_local(2026, 1, 12, 12, 30), prefs)
        assert not is_within_quiet_hours(_local(2026, 1, 12, 13), prefs)

    def test_unset_never_quiet(self):
        assert not is_within_quiet_hours(_local(2026, 1, 12, 3), PREFS)

    def test_half_configured_is_unset(self):
        prefs = SchedulingPreferences(quiet_hours_start=time(22, 0))
        assert not is_within_quiet_hours(_local(2026, 1, 12, 23), prefs)


class TestWorkingHours:
    def test_start_inclusive(self):
        assert is_within_working_hours(_local(2026, 1, 12, 9), PREFS)

    def test_end_inclusive(self):
        assert is_within_working_hours(_local(2026, 1, 12, 17, 30), PREFS)

    def test_after_end(self):
        assert not is_within_working_hours(_local(2026, 1, 12, 17, 31), PREFS)

    def test_saturday_rejected_by_default(self):
        assert not is_within_working_hours(_local(2026, 1, 10, 10), PREFS)

    def test_saturday_allowed_with_weekends(self):
        prefs = SchedulingPreferences(allow_weekends=True, working_days=(0, 1, 2, 3, 4, 5))
        assert is_within_working_hours(_local(2026, 1, 10, 10), prefs)

    def test_weekend_flag_alone_needs_working_day(self):
        prefs = SchedulingPreferences(allow_weekends=True)
        assert not is_within_working_hours(_local(2026, 1, 10, 10), prefs)


class TestNextWorkingDay:
    def test_friday_rolls_to_monday(self):
        assert next_working_day(date(2026, 1, 9), PREFS) == date(2026, 1, 12)

    def test_midweek(self):
        assert next_working_day(date(2026, 1, 13), PREFS) == date(2026, 1, 14)

    def test_custom_days(self):
        prefs = SchedulingPreferences(working_days=(1, 3))  # Tue, Thu
        assert next_working_day(date(2026, 1, 13), prefs) == date(2026, 1, 15)

    def test_no_working_days_falls_back_to_tomorrow(self):
        prefs = SchedulingPreferences(working_days=())
        assert next_working_day(date(2026, 1, 13), prefs) == date(2026, 1, 14)


class TestAdjustToWorkingHours:
    def test_before_start_same_day(self):
        assert adjust_to_working_hours(_local(2026, 1, 12, 7), PREFS) == _local(2026, 1, 12, 9)

    def test_after_end_next_day(self):
        assert adjust_to_working_hours(_local(2026, 1, 12, 18), PREFS) == _local(2026, 1, 13, 9)

    def test_saturday_to_monday(self):
        assert adjust_to_working_hours(_local(2026, 1, 10, 10), PREFS) == _local(2026, 1, 12, 9)

    def test_inside_unchanged(self):
        dt = _local(2026, 1, 12, 10, 45)
        assert adjust_to_working_hours(dt, PREFS) == dt


class TestQuietHoursEnd:
    def test_late_evening_ends_next_morning(self):
        assert quiet_hours_end_after(_local(2026, 1, 12, 23), OVERNIGHT) == _local(2026, 1, 13, 7)

    def test_early_morning_ends_same_day(self):
        assert quiet_hours_end_after(_local(2026, 1, 13, 2), OVERNIGHT) == _local(2026, 1, 13, 7)


class TestZones:
    def test_unknown_zone_falls_back_to_utc(self):
        assert get_zone("Not/AZone") == UTC

    def test_empty_zone_falls_back(self):
        assert get_zone(None) == UTC

    def test_dst_start_shifts_utc_offset(self):
        ny = ZoneInfo("America/New_York")
        before = as_utc(at_local_time(date(2026, 3, 6), time(9, 0), ny))
        after = as_utc(at_local_time(date(2026, 3, 9), time(9, 0), ny))
        assert before == datetime(2026, 3, 6, 14, 0, tzinfo=timezone.utc)
        assert after == datetime(2026, 3, 9, 13, 0, tzinfo=timezone.utc)

    def test_naive_values_read_as_utc(self):
        assert as_utc(datetime(2026, 1, 12, 10)) == datetime(2026, 1, 12, 10, tzinfo=timezone.utc)

    def test_local_day_bounds(self):
        start, end = local_day_bounds(date(2026, 1, 12), ZoneInfo("Asia/Tokyo"))
        assert start == datetime(2026, 1, 11, 15, 0, tzinfo=timezone.utc)
        assert end == datetime(2026, 1, 12, 15, 0, tzinfo=timezone.utc)
