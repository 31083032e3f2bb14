"""
Tests for the suppression evaluator.

Covers:
- weekend reminder pushed to Monday working-hours start
- daily cap counted on the user's local day
- fixed precedence between overlapping rules
- category-disabled reminders dropped without reschedule
- cooldown scoped to contact, else category
- do-not-disturb with emergency contact and keyword overrides
"""
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from followup.domain.preferences import SchedulingPreferences
from followup.domain.suppression import (
    DeliveryRecord,
    ReminderSnapshot,
    SuppressionReason,
    evaluate_suppression,
)

UTC = ZoneInfo("UTC")
_tz = timezone.utc
PREFS = SchedulingPreferences()

MONDAY_10 = datetime(2026, 1, 12, 10, 0, tzinfo=_tz)
SATURDAY_10 = datetime(2026, 1, 10, 10, 0, tzinfo=_tz)


def _reminder(scheduled_at=MONDAY_10, category="follow_up", contact_id=None, message=None):
    return ReminderSnapshot(
        id=1, user_id=1, scheduled_at=scheduled_at, category=category, contact_id=contact_id, message=message,
    )


def _delivered(at, contact_id=None, category="follow_up"):
    return DeliveryRecord(delivered_at=at, contact_id=contact_id, category=category)


class TestAllowed:
    def test_inside_working_hours(self):
        decision = evaluate_suppression(_reminder(), PREFS, UTC, [], MONDAY_10)
        assert decision.allowed
        assert decision.reason_code is None
        assert decision.reason_value == "ALLOWED"
        assert decision.next_attempt_at is None
        assert not decision.dropped

    def test_deterministic(self):
        history = [_delivered(MONDAY_10 - timedelta(hours=1), contact_id=3)]
        first = evaluate_suppression(_reminder(contact_id=4), PREFS, UTC, history, MONDAY_10)
        second = evaluate_suppression(_reminder(contact_id=4), PREFS, UTC, history, MONDAY_10)
        assert first == second
        assert len(history) == 1


class TestWorkday:
    def test_saturday_rescheduled_to_monday_start(self):
        decision = evaluate_suppression(_reminder(SATURDAY_10), PREFS, UTC, [], SATURDAY_10)
        assert not decision.allowed
        assert decision.reason_code == SuppressionReason.WORKDAY_DISABLED
        assert decision.next_attempt_at == datetime(2026, 1, 12, 9, 0, tzinfo=_tz)

    def test_after_hours_moves_to_next_morning(self):
        evening = datetime(2026, 1, 12, 19, 0, tzinfo=_tz)
        decision = evaluate_suppression(_reminder(evening), PREFS, UTC, [], evening)
        assert decision.reason_code == SuppressionReason.WORKDAY_DISABLED
        assert decision.next_attempt_at == datetime(2026, 1, 13, 9, 0, tzinfo=_tz)

    def test_next_attempt_is_utc_for_local_zone(self):
        berlin = ZoneInfo("Europe/Berlin")
        # 07:00 UTC == 08:00 Berlin, before working hours
        scheduled = datetime(2026, 1, 12, 7, 0, tzinfo=_tz)
        decision = evaluate_suppression(_reminder(scheduled), PREFS, berlin, [], scheduled)
        assert decision.next_attempt_at == datetime(2026, 1, 12, 8, 0, tzinfo=_tz)
        assert decision.next_attempt_at.tzinfo == _tz


class TestDailyCap:
    def test_eleventh_reminder_capped(self):
        history = [_delivered(datetime(2026, 1, 12, 9, i, tzinfo=_tz), contact_id=100 + i) for i in range(10)]
        decision = evaluate_suppression(_reminder(contact_id=1), PREFS, UTC, history, MONDAY_10)
        assert decision.reason_code == SuppressionReason.DAILY_CAP
        assert decision.next_attempt_at == datetime(2026, 1, 13, 9, 0, tzinfo=_tz)

    def test_under_cap_allowed(self):
        history = [_delivered(datetime(2026, 1, 12, 9, i, tzinfo=_tz), contact_id=100 + i) for i in range(9)]
        decision = evaluate_suppression(_reminder(contact_id=1), PREFS, UTC, history, MONDAY_10)
        assert decision.allowed

    def test_counts_local_day_not_utc_day(self):
        ny = ZoneInfo("America/New_York")
        prefs = SchedulingPreferences(max_reminders_per_day=1)
        now = datetime(2026, 1, 12, 15, 0, tzinfo=_tz)  # 10:00 New York
        # 03:00 UTC is still Sunday evening in New York
        yesterday_local = [_delivered(datetime(2026, 1, 12, 3, 0, tzinfo=_tz), contact_id=9)]
        assert evaluate_suppression(_reminder(now, contact_id=1), prefs, ny, yesterday_local, now).allowed

        today_local = yesterday_local + [_delivered(datetime(2026, 1, 12, 14, 0, tzinfo=_tz), contact_id=9)]
        decision = evaluate_suppression(_reminder(now, contact_id=1), prefs, ny, today_local, now)
        assert decision.reason_code == SuppressionReason.DAILY_CAP

    def test_friday_cap_rolls_to_monday(self):
        friday = datetime(2026, 1, 9, 10, 0, tzinfo=_tz)
        prefs = SchedulingPreferences(max_reminders_per_day=1)
        history = [_delivered(datetime(2026, 1, 9, 9, 0, tzinfo=_tz), contact_id=9)]
        decision = evaluate_suppression(_reminder(friday, contact_id=1), prefs, UTC, history, friday)
        assert decision.next_attempt_at == datetime(2026, 1, 12, 9, 0, tzinfo=_tz)


class TestCooldown:
    def test_same_contact_within_cooldown(self):
        now = datetime(2026, 1, 12, 10, 10, tzinfo=_tz)
        history = [_delivered(MONDAY_10, contact_id=7)]
        decision = evaluate_suppression(_reminder(now, contact_id=7), PREFS, UTC, history, now)
        assert decision.reason_code == SuppressionReason.COOLDOWN_ACTIVE
        assert decision.next_attempt_at == datetime(2026, 1, 12, 10, 30, tzinfo=_tz)

    def test_other_contact_not_affected(self):
        now = datetime(2026, 1, 12, 10, 10, tzinfo=_tz)
        history = [_delivered(MONDAY_10, contact_id=7)]
        assert evaluate_suppression(_reminder(now, contact_id=8), PREFS, UTC, history, now).allowed

    def test_contactless_scoped_by_category(self):
        now = datetime(2026, 1, 12, 10, 10, tzinfo=_tz)
        history = [_delivered(MONDAY_10, category="generic")]
        same = evaluate_suppression(_reminder(now, category="generic"), PREFS, UTC, history, now)
        other = evaluate_suppression(_reminder(now, category="affirmation"), PREFS, UTC, history, now)
        assert same.reason_code == SuppressionReason.COOLDOWN_ACTIVE
        assert other.allowed

    def test_expired_cooldown_allows(self):
        now = datetime(2026, 1, 12, 10, 31, tzinfo=_tz)
        history = [_delivered(MONDAY_10, contact_id=7)]
        assert evaluate_suppression(_reminder(now, contact_id=7), PREFS, UTC, history, now).allowed

    def test_expiry_after_hours_clamped(self):
        now = datetime(2026, 1, 12, 17, 25, tzinfo=_tz)
        history = [_delivered(datetime(2026, 1, 12, 17, 20, tzinfo=_tz), contact_id=7)]
        decision = evaluate_suppression(_reminder(now, contact_id=7), PREFS, UTC, history, now)
        assert decision.reason_code == SuppressionReason.COOLDOWN_ACTIVE
        assert decision.next_attempt_at == datetime(2026, 1, 13, 9, 0, tzinfo=_tz)

    def test_zero_cooldown_disables_rule(self):
        prefs = SchedulingPreferences(cooldown_minutes=0)
        now = datetime(2026, 1, 12, 10, 1, tzinfo=_tz)
        history = [_delivered(MONDAY_10, contact_id=7)]
        assert evaluate_suppression(_reminder(now, contact_id=7), prefs, UTC, history, now).allowed


class TestPrecedence:
    def test_category_beats_everything(self):
        prefs = SchedulingPreferences(
            quiet_hours_start=time(22, 0),
            quiet_hours_end=time(7, 0),
            category_notifications={"follow_up": False},
        )
        late_saturday = datetime(2026, 1, 10, 23, 0, tzinfo=_tz)
        decision = evaluate_suppression(_reminder(late_saturday), prefs, UTC, [], late_saturday)
        assert decision.reason_code == SuppressionReason.CATEGORY_DISABLED
        assert decision.next_attempt_at is None
        assert decision.dropped

    def test_quiet_hours_beat_workday(self):
        prefs = SchedulingPreferences(quiet_hours_start=time(22, 0), quiet_hours_end=time(7, 0))
        late_saturday = datetime(2026, 1, 10, 23, 0, tzinfo=_tz)
        decision = evaluate_suppression(_reminder(late_saturday), prefs, UTC, [], late_saturday)
        assert decision.reason_code == SuppressionReason.QUIET_HOURS
        assert decision.next_attempt_at == datetime(2026, 1, 11, 7, 0, tzinfo=_tz)

    def test_workday_beats_cap(self):
        history = [_delivered(datetime(2026, 1, 10, 9, i, tzinfo=_tz), contact_id=100 + i) for i in range(10)]
        decision = evaluate_suppression(_reminder(SATURDAY_10), PREFS, UTC, history, SATURDAY_10)
        assert decision.reason_code == SuppressionReason.WORKDAY_DISABLED

    def test_cap_beats_cooldown(self):
        prefs = SchedulingPreferences(max_reminders_per_day=1)
        now = datetime(2026, 1, 12, 10, 10, tzinfo=_tz)
        history = [_delivered(MONDAY_10, contact_id=7)]
        decision = evaluate_suppression(_reminder(now, contact_id=7), prefs, UTC, history, now)
        assert decision.reason_code == SuppressionReason.DAILY_CAP

    def test_unknown_category_enabled_by_default(self):
        decision = evaluate_suppression(_reminder(category="custom"), PREFS, UTC, [], MONDAY_10)
        assert decision.allowed

    def test_cooldown_beats_dnd(self):
        prefs = SchedulingPreferences(dnd_enabled=True)
        now = datetime(2026, 1, 12, 10, 10, tzinfo=_tz)
        history = [_delivered(MONDAY_10, contact_id=7)]
        decision = evaluate_suppression(_reminder(now, contact_id=7), prefs, UTC, history, now)
        assert decision.reason_code == SuppressionReason.COOLDOWN_ACTIVE


class TestDoNotDisturb:
    DND = SchedulingPreferences(
        dnd_enabled=True,
        dnd_emergency_contacts=(42,),
        dnd_override_keywords=("urgent", "Contract"),
    )

    def test_suppressed_until_next_working_day(self):
        decision = evaluate_suppression(_reminder(contact_id=7, message="Check in"), self.DND, UTC, [], MONDAY_10)
        assert decision.reason_code == SuppressionReason.DND_ACTIVE
        assert decision.reason_value == "DND_ACTIVE"
        assert decision.next_attempt_at == datetime(2026, 1, 13, 9, 0, tzinfo=_tz)
        assert not decision.dropped

    def test_friday_defers_to_monday(self):
        friday = datetime(2026, 1, 16, 15, 0, tzinfo=_tz)
        decision = evaluate_suppression(_reminder(friday), self.DND, UTC, [], friday)
        assert decision.next_attempt_at == datetime(2026, 1, 19, 9, 0, tzinfo=_tz)

    def test_emergency_contact_bypasses(self):
        decision = evaluate_suppression(_reminder(contact_id=42, message="Check in"), self.DND, UTC, [], MONDAY_10)
        assert decision.allowed

    def test_keyword_bypasses_case_insensitively(self):
        decision = evaluate_suppression(_reminder(message="URGENT: call back"), self.DND, UTC, [], MONDAY_10)
        assert decision.allowed
        decision = evaluate_suppression(_reminder(message="send the contract draft"), self.DND, UTC, [], MONDAY_10)
        assert decision.allowed

    def test_reminder_without_message_suppressed(self):
        decision = evaluate_suppression(_reminder(), self.DND, UTC, [], MONDAY_10)
        assert decision.reason_code == SuppressionReason.DND_ACTIVE

    def test_disabled_dnd_ignores_rules(self):
        prefs = self.DND.with_changes(dnd_enabled=False)
        assert evaluate_suppression(_reminder(message="Check in"), prefs, UTC, [], MONDAY_10).allowed
