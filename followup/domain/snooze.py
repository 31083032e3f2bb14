"""
Smart snooze: candidate reschedule times and their desirability scores.

Candidates (each gated by the user's snooze option flags):
  later_today       now + 2h, kept only if still the same local day after adjustment
  tomorrow_morning  next working day at working-hours start + 15 min
  next_working_day  next working day at working-hours start
  in_3_days         local date + 3, rolled forward to a working day, at start
  next_week         next Monday at working-hours start
  pick_a_time       manual, no time, fixed score 50

Scoring is additive and clamped to [0, 100]:
  working hours +30/-50, outside quiet hours +20/-40, weekend rule +15/-50,
  history match 0/15/25, engagement signal +15, daily cap +10/-30, unadjusted +5
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from followup.domain.preferences import SchedulingPreferences, SnoozeOptionType
from followup.domain.working_hours import (
    adjust_to_working_hours,
    as_utc,
    at_local_time,
    is_weekend,
    is_within_quiet_hours,
    is_within_working_hours,
    is_working_day,
    next_working_day,
    to_local,
)

MANUAL_SCORE = 50
MAX_RETURNED = 5
HISTORY_WINDOW = 20

_LABEL_PREFIX: dict[SnoozeOptionType, str] = {
    SnoozeOptionType.LATER_TODAY: "Today",
    SnoozeOptionType.TOMORROW_MORNING: "Tomorrow",
    SnoozeOptionType.NEXT_WORKING_DAY: "Next working day",
    SnoozeOptionType.IN_3_DAYS: "In 3 days",
    SnoozeOptionType.NEXT_WEEK: "Next week",
}


@dataclass(frozen=True)
class SnoozeCandidate:
    type: SnoozeOptionType
    scheduled_at: datetime | None
    label: str
    score: int = 0
    recommended: bool = False
    adjusted: bool = False

    @property
    def is_manual(self) -> bool:
        return self.type == SnoozeOptionType.PICK_A_TIME

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "label": self.label,
            "score": self.score,
            "recommended": self.recommended,
            "adjusted": self.adjusted,
        }


@dataclass(frozen=True)
class ScoringContext:
    """Behavioural inputs gathered by the caller from the event log."""
    delivered_today: int = 0
    recent_snooze_minutes: list[int] = field(default_factory=list)
    engagement_signal: str | None = None  # e.g. "email_opened"
    context_type: str | None = None

    @property
    def average_snooze_minutes(self) -> float | None:
        recent = self.recent_snooze_minutes[:HISTORY_WINDOW]
        if not recent:
            return None
        return sum(recent) / len(recent)


def format_label(local_dt: datetime, prefix: str) -> str:
    hour = local_dt.hour
    ampm = "pm" if hour >= 12 else "am"
    display_hour = hour % 12 or 12
    return f"{prefix} at {display_hour}:{local_dt.minute:02d}{ampm}"


def _manual_candidate() -> SnoozeCandidate:
    return SnoozeCandidate(
        type=SnoozeOptionType.PICK_A_TIME,
        scheduled_at=None,
        label="Pick a time",
        score=MANUAL_SCORE,
    )


def _timed_candidate(option: SnoozeOptionType, naive_local: datetime, prefs: SchedulingPreferences) -> SnoozeCandidate:
    adjusted = adjust_to_working_hours(naive_local, prefs)
    return SnoozeCandidate(
        type=option,
        scheduled_at=as_utc(adjusted),
        label=format_label(adjusted, _LABEL_PREFIX[option]),
        adjusted=adjusted != naive_local,
    )


def generate_candidates(
    prefs: SchedulingPreferences, zone: ZoneInfo, now: datetime
) -> list[SnoozeCandidate]:
    """Unscored candidates for every enabled option, in canonical order."""
    local_now = to_local(now, zone)
    today = local_now.date()
    start = prefs.working_hours_start
    candidates: list[SnoozeCandidate] = []

    if prefs.snooze_option_enabled(SnoozeOptionType.LATER_TODAY):
        naive = local_now + timedelta(hours=2)
        cand = _timed_candidate(SnoozeOptionType.LATER_TODAY, naive, prefs)
        if to_local(cand.scheduled_at, zone).date() == today:
            candidates.append(cand)

    if prefs.snooze_option_enabled(SnoozeOptionType.TOMORROW_MORNING):
        day = next_working_day(today, prefs)
        naive = at_local_time(day, start, zone) + timedelta(minutes=15)
        candidates.append(_timed_candidate(SnoozeOptionType.TOMORROW_MORNING, naive, prefs))

    if prefs.snooze_option_enabled(SnoozeOptionType.NEXT_WORKING_DAY):
        naive = at_local_time(next_working_day(today, prefs), start, zone)
        candidates.append(_timed_candidate(SnoozeOptionType.NEXT_WORKING_DAY, naive, prefs))

    if prefs.snooze_option_enabled(SnoozeOptionType.IN_3_DAYS):
        day = today + timedelta(days=3)
        if not is_working_day(day, prefs):
            day = next_working_day(day, prefs)
        naive = at_local_time(day, start, zone)
        candidates.append(_timed_candidate(SnoozeOptionType.IN_3_DAYS, naive, prefs))

    if prefs.snooze_option_enabled(SnoozeOptionType.NEXT_WEEK):
        days_until_monday = (7 - today.weekday()) % 7 or 7
        naive = at_local_time(today + timedelta(days=days_until_monday), start, zone)
        candidates.append(_timed_candidate(SnoozeOptionType.NEXT_WEEK, naive, prefs))

    if prefs.snooze_option_enabled(SnoozeOptionType.PICK_A_TIME):
        candidates.append(_manual_candidate())

    return candidates


def history_score(minutes_until: float, average_minutes: float | None) -> int:
    if not average_minutes:
        return 0
    diff = abs(minutes_until - average_minutes)
    if diff < average_minutes * 0.5:
        return 25
    if diff < average_minutes:
        return 15
    return 0


def score_candidate(
    candidate: SnoozeCandidate,
    prefs: SchedulingPreferences,
    zone: ZoneInfo,
    now: datetime,
    ctx: ScoringContext,
) -> int:
    if candidate.is_manual:
        return MANUAL_SCORE

    local = to_local(candidate.scheduled_at, zone)
    score = 0
    score += 30 if is_within_working_hours(local, prefs) else -50
    score += 20 if not is_within_quiet_hours(local, prefs) else -40
    score += 15 if prefs.allow_weekends or not is_weekend(local.date()) else -50

    minutes_until = (as_utc(candidate.scheduled_at) - as_utc(now)).total_seconds() / 60
    if prefs.smart_suggestions_enabled:
        score += history_score(minutes_until, ctx.average_snooze_minutes)
        if ctx.engagement_signal == "email_opened" and 0 <= minutes_until <= 24 * 60:
            score += 15

    score += 10 if ctx.delivered_today < prefs.max_reminders_per_day else -30
    if not candidate.adjusted:
        score += 5
    return max(0, min(100, score))


def rank_candidates(
    scored: list[SnoozeCandidate], prefs: SchedulingPreferences
) -> list[SnoozeCandidate]:
    """Sort by score, flag the best timed candidate, keep the top five plus manual."""
    ordered = sorted(scored, key=lambda c: c.score, reverse=True)
    if prefs.smart_suggestions_enabled:
        for i, cand in enumerate(ordered):
            if not cand.is_manual:
                ordered[i] = replace(cand, recommended=True)
                break
    top = ordered[:MAX_RETURNED]
    if prefs.snooze_option_enabled(SnoozeOptionType.PICK_A_TIME) and not any(c.is_manual for c in top):
        top.append(_manual_candidate())
    return top


def suggest_snooze_times(
    prefs: SchedulingPreferences,
    zone: ZoneInfo,
    now: datetime,
    ctx: ScoringContext | None = None,
) -> list[SnoozeCandidate]:
    ctx = ctx or ScoringContext()
    scored = [
        replace(c, score=score_candidate(c, prefs, zone, now, ctx))
        for c in generate_candidates(prefs, zone, now)
    ]
    return rank_candidates(scored, prefs)
