"""
Suppression evaluator: decides whether a due reminder may fire now.

Pure function of (reminder snapshot, preferences, zone, delivery history, now).
Precedence is fixed; the first matching rule is the decision:

    1. CATEGORY_DISABLED  category notifications off      → dropped, no reschedule
    2. QUIET_HOURS        scheduled time in quiet window  → end of quiet window
    3. WORKDAY_DISABLED   non-working day / outside hours → next working-hours start
    4. DAILY_CAP          delivered today ≥ max per day   → next working day start
    5. COOLDOWN_ACTIVE    same contact/category too soon  → cooldown expiry, clamped
    6. DND_ACTIVE         do-not-disturb on, no override   → next working day start

Rules 2-3 look at the reminder's scheduled time, rules 4-6 at `now`.
DND lets a reminder through when its contact is an emergency contact or
its message contains an override keyword.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from zoneinfo import ZoneInfo

from followup.domain.preferences import SchedulingPreferences
from followup.domain.working_hours import (
    adjust_to_working_hours,
    as_utc,
    is_within_quiet_hours,
    is_within_working_hours,
    next_working_day_start,
    quiet_hours_end_after,
    to_local,
)


class SuppressionReason(str, Enum):
    CATEGORY_DISABLED = "CATEGORY_DISABLED"
    QUIET_HOURS = "QUIET_HOURS"
    WORKDAY_DISABLED = "WORKDAY_DISABLED"
    DAILY_CAP = "DAILY_CAP"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    DND_ACTIVE = "DND_ACTIVE"


ALLOWED_REASON_CODE = "ALLOWED"


@dataclass(frozen=True)
class ReminderSnapshot:
    id: int
    user_id: int
    scheduled_at: datetime
    category: str
    contact_id: int | None = None
    message: str | None = None


@dataclass(frozen=True)
class DeliveryRecord:
    """One past reminder_triggered event."""
    delivered_at: datetime
    contact_id: int | None
    category: str | None


@dataclass(frozen=True)
class SuppressionDecision:
    allowed: bool
    reason_code: SuppressionReason | None = None
    next_attempt_at: datetime | None = None  # UTC

    @property
    def dropped(self) -> bool:
        return not self.allowed and self.next_attempt_at is None

    @property
    def reason_value(self) -> str:
        return self.reason_code.value if self.reason_code else ALLOWED_REASON_CODE


ALLOW = SuppressionDecision(allowed=True)


def _suppress(reason: SuppressionReason, next_attempt: datetime | None) -> SuppressionDecision:
    return SuppressionDecision(
        allowed=False,
        reason_code=reason,
        next_attempt_at=as_utc(next_attempt) if next_attempt is not None else None,
    )


def count_delivered_on_local_day(
    history: list[DeliveryRecord], now: datetime, zone: ZoneInfo
) -> int:
    today = to_local(now, zone).date()
    return sum(1 for rec in history if to_local(rec.delivered_at, zone).date() == today)


def last_delivery_in_scope(
    history: list[DeliveryRecord], reminder: ReminderSnapshot
) -> datetime | None:
    """Latest delivery to the same contact, or same category for contact-less reminders."""
    if reminder.contact_id is not None:
        scoped = [r for r in history if r.contact_id == reminder.contact_id]
    else:
        scoped = [r for r in history if r.contact_id is None and r.category == reminder.category]
    if not scoped:
        return None
    return max(as_utc(r.delivered_at) for r in scoped)


def evaluate_suppression(
    reminder: ReminderSnapshot,
    prefs: SchedulingPreferences,
    zone: ZoneInfo,
    history: list[DeliveryRecord],
    now: datetime,
) -> SuppressionDecision:
    """Apply the precedence chain and return the first matching decision."""
    now = as_utc(now)
    scheduled_local = to_local(reminder.scheduled_at, zone)

    if not prefs.category_enabled(reminder.category):
        return _suppress(SuppressionReason.CATEGORY_DISABLED, None)

    if is_within_quiet_hours(scheduled_local, prefs):
        return _suppress(SuppressionReason.QUIET_HOURS, quiet_hours_end_after(scheduled_local, prefs))

    if not is_within_working_hours(scheduled_local, prefs):
        return _suppress(SuppressionReason.WORKDAY_DISABLED, adjust_to_working_hours(scheduled_local, prefs))

    if count_delivered_on_local_day(history, now, zone) >= prefs.max_reminders_per_day:
        return _suppress(SuppressionReason.DAILY_CAP, next_working_day_start(to_local(now, zone), prefs))

    if prefs.cooldown_minutes > 0:
        last = last_delivery_in_scope(history, reminder)
        if last is not None:
            expiry = last + timedelta(minutes=prefs.cooldown_minutes)
            if now < expiry:
                clamped = adjust_to_working_hours(to_local(expiry, zone), prefs)
                return _suppress(SuppressionReason.COOLDOWN_ACTIVE, clamped)

    if prefs.dnd_enabled and not prefs.dnd_bypassed(reminder.contact_id, reminder.message):
        return _suppress(SuppressionReason.DND_ACTIVE, next_working_day_start(to_local(now, zone), prefs))

    return ALLOW
