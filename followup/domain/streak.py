"""Completion streaks: consecutive local days with at least one completed follow-up."""
from datetime import date, timedelta
from enum import Enum

STREAK_LOOKBACK_DAYS = 365


class StreakTransition(str, Enum):
    INCREMENTED = "incremented"
    BROKEN = "broken"
    UNCHANGED = "unchanged"


def compute_current_streak(activity_days: set[date], today: date) -> int:
    """
    Walk back from today (or yesterday when today has no activity yet)
    while consecutive days are present; stop at the first gap.
    """
    d = today if today in activity_days else today - timedelta(days=1)
    window_start = today - timedelta(days=STREAK_LOOKBACK_DAYS)
    streak = 0
    while d >= window_start and d in activity_days:
        streak += 1
        d -= timedelta(days=1)
    return streak


def compute_best_streak(activity_days: set[date]) -> int:
    best = 0
    run = 0
    prev = None
    for d in sorted(activity_days):
        if prev is not None and (d - prev).days == 1:
            run += 1
        else:
            run = 1
        best = max(best, run)
        prev = d
    return best


def classify_transition(previous: int, current: int) -> StreakTransition:
    if current > previous:
        return StreakTransition.INCREMENTED
    if current < previous:
        return StreakTransition.BROKEN
    return StreakTransition.UNCHANGED
