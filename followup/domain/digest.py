"""
Weekly digest domain: schedule moment, week window, stats shape and variant choice.
"""
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from zoneinfo import ZoneInfo

from followup.domain.preferences import DigestPreferences
from followup.domain.working_hours import as_utc, at_local_time, to_local

MOMENT_TOLERANCE_MINUTES = 60
DIGEST_TIME_STEP_MINUTES = 15  # digest tick cadence; digest_time must sit on this grid
NEW_USER_GRACE_DAYS = 7
TOP_CONTACTS = 5


class DigestVariant(str, Enum):
    STANDARD = "standard"
    LIGHT = "light"
    RECOVERY = "recovery"
    NO_ACTIVITY = "no_activity"


@dataclass(frozen=True)
class WeekWindow:
    week_start: date  # Monday
    week_end: date  # Sunday
    start_utc: datetime  # Monday 00:00 local, as UTC
    end_utc: datetime  # following Monday 00:00 local, as UTC (exclusive)


def week_window(now: datetime, zone: ZoneInfo) -> WeekWindow:
    """Monday-to-Sunday local week containing `now`."""
    local_day = to_local(now, zone).date()
    monday = local_day - timedelta(days=local_day.weekday())
    next_monday = monday + timedelta(days=7)
    return WeekWindow(
        week_start=monday,
        week_end=monday + timedelta(days=6),
        start_utc=as_utc(at_local_time(monday, time(0, 0), zone)),
        end_utc=as_utc(at_local_time(next_monday, time(0, 0), zone)),
    )


def dedupe_key(user_id: int, week_start: date) -> str:
    return f"{user_id}_{week_start.isoformat()}"


def is_digest_moment(now: datetime, zone: ZoneInfo, prefs: DigestPreferences) -> bool:
    """
    Local weekday and hour match, minute within [m, m + 60).

    The tolerance absorbs tick jitter; it is not a precise trigger.
    """
    local = to_local(now, zone)
    if local.weekday() != prefs.digest_day:
        return False
    if local.hour != prefs.digest_time.hour:
        return False
    start = prefs.digest_time.minute
    return start <= local.minute < start + MOMENT_TOLERANCE_MINUTES


def is_schedulable_digest_time(value: time) -> bool:
    """A digest time the tick can hit: a whole multiple of the tick step."""
    return value.second == 0 and value.microsecond == 0 and value.minute % DIGEST_TIME_STEP_MINUTES == 0


def is_new_user_without_reminders(created_at: datetime | None, reminder_count: int, now: datetime) -> bool:
    if reminder_count > 0 or created_at is None:
        return False
    return as_utc(now) - as_utc(created_at) < timedelta(days=NEW_USER_GRACE_DAYS)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

@dataclass
class OverallStats:
    total_reminders_created: int = 0
    total_reminders_triggered: int = 0
    reminders_completed: int = 0
    reminders_snoozed: int = 0
    reminders_overdue: int = 0
    reminders_suppressed: int = 0
    completion_rate: int = 0
    snooze_rate: int = 0
    overdue_carry_over_start: int = 0
    overdue_carry_over_end: int = 0
    suppression_breakdown: dict[str, int] = field(default_factory=dict)

    @property
    def total_events(self) -> int:
        return self.total_reminders_created + self.total_reminders_triggered


@dataclass
class ContactStats:
    contact_id: int
    contact_name: str
    reminders_completed: int = 0
    reminders_overdue: int = 0
    last_interaction_at: datetime | None = None
    next_scheduled_followup: datetime | None = None

    @property
    def activity(self) -> int:
        return self.reminders_completed + self.reminders_overdue


@dataclass
class LongestOverdue:
    reminder_id: int
    message: str
    days_overdue: int
    contact_name: str | None = None


@dataclass
class ForwardLookingStats:
    upcoming_reminders_next_7_days: int = 0
    contacts_with_no_followup_scheduled: int = 0
    longest_overdue_reminder: LongestOverdue | None = None


@dataclass
class DigestStats:
    week_start: date
    week_end: date
    timezone: str
    overall: OverallStats
    per_contact: list[ContactStats] = field(default_factory=list)
    forward_looking: ForwardLookingStats = field(default_factory=ForwardLookingStats)

    def to_dict(self) -> dict:
        """JSON-ready snapshot stored on the digest job record."""
        def _convert(value):
            if isinstance(value, (date, datetime)):
                return value.isoformat()
            if isinstance(value, dict):
                return {k: _convert(v) for k, v in value.items()}
            if isinstance(value, list):
                return [_convert(v) for v in value]
            return value
        return _convert(asdict(self))


def rate(part: int, whole: int) -> int:
    """Rounded percentage; 0 when there is nothing to divide by."""
    if whole <= 0:
        return 0
    return int(round(part / whole * 100))


def rank_contacts(contacts: list[ContactStats], top_n: int = TOP_CONTACTS) -> list[ContactStats]:
    """Overdue risk first, then total activity."""
    ranked = sorted(contacts, key=lambda c: (-c.reminders_overdue, -c.activity))
    return ranked[:top_n]


# ---------------------------------------------------------------------------
# Variant selection
# ---------------------------------------------------------------------------

def select_variant(stats: DigestStats | None, detail_level: str | None = None) -> DigestVariant:
    """
    Deterministic decision tree, total over all inputs:

        light preference and total > 0           → light
        no stats or total == 0                   → no_activity
        total ≤ 3 and no completions             → light
        overdue ≥ 3 or snooze ≥ 50% or done < 30% → recovery
        otherwise                                 → standard
    """
    if stats is None:
        return DigestVariant.NO_ACTIVITY
    overall = stats.overall
    total = overall.total_events
    if detail_level == "light" and total > 0:
        return DigestVariant.LIGHT
    if total == 0:
        return DigestVariant.NO_ACTIVITY
    if total <= 3 and overall.reminders_completed == 0:
        return DigestVariant.LIGHT
    if overall.reminders_overdue >= 3 or overall.snooze_rate >= 50 or overall.completion_rate < 30:
        return DigestVariant.RECOVERY
    return DigestVariant.STANDARD
