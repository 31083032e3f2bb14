"""
Timezone-aware working-hours arithmetic shared by suppression and snooze scoring.

All functions take aware datetimes. Local wall-clock checks are done after
converting into the user's ZoneInfo; results are returned in that zone and
callers convert back to UTC before persisting.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from followup.domain.preferences import SchedulingPreferences

logger = logging.getLogger(__name__)

_MAX_WORKING_DAY_LOOKAHEAD = 14


def as_utc(dt: datetime) -> datetime:
    """Naive values (as returned by SQLite) are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_zone(name: str | None, default: str = "UTC") -> ZoneInfo:
    """Resolve an IANA zone name, falling back to the default on bad input."""
    for candidate in (name, default, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back", candidate)
    return ZoneInfo("UTC")


def to_local(dt: datetime, zone: ZoneInfo) -> datetime:
    return as_utc(dt).astimezone(zone)


def at_local_time(day: date, t: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, t, tzinfo=zone)


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def is_working_day(day: date, prefs: SchedulingPreferences) -> bool:
    if is_weekend(day) and not prefs.allow_weekends:
        return False
    return day.weekday() in prefs.working_days


def is_within_working_hours(local_dt: datetime, prefs: SchedulingPreferences) -> bool:
    """Working day and wall-clock time inside [start, end] (both inclusive)."""
    if not is_working_day(local_dt.date(), prefs):
        return False
    t = local_dt.time().replace(second=0, microsecond=0)
    return prefs.working_hours_start <= t <= prefs.working_hours_end


def is_within_quiet_hours(local_dt: datetime, prefs: SchedulingPreferences) -> bool:
    """Quiet window is [start, end); it may wrap midnight (22:00-07:00)."""
    if not prefs.has_quiet_hours:
        return False
    s, e = prefs.quiet_hours_start, prefs.quiet_hours_end
    t = local_dt.time()
    if s <= e:
        return s <= t < e
    # Overnight range
    return t >= s or t < e


def next_working_day(day: date, prefs: SchedulingPreferences) -> date:
    """First qualifying working day strictly after `day`."""
    candidate = day
    for _ in range(_MAX_WORKING_DAY_LOOKAHEAD):
        candidate += timedelta(days=1)
        if is_working_day(candidate, prefs):
            return candidate
    # No working day configured at all: never push further than tomorrow
    return day + timedelta(days=1)


def next_working_day_start(local_dt: datetime, prefs: SchedulingPreferences) -> datetime:
    day = next_working_day(local_dt.date(), prefs)
    return at_local_time(day, prefs.working_hours_start, local_dt.tzinfo)


def adjust_to_working_hours(local_dt: datetime, prefs: SchedulingPreferences) -> datetime:
    """
    Move a local time into the working window.

    - non-working day → next working day at start
    - before start on a working day → same day at start
    - after end → next working day at start
    - otherwise unchanged
    """
    zone = local_dt.tzinfo
    day = local_dt.date()
    if not is_working_day(day, prefs):
        return next_working_day_start(local_dt, prefs)
    t = local_dt.time().replace(second=0, microsecond=0)
    if t < prefs.working_hours_start:
        return at_local_time(day, prefs.working_hours_start, zone)
    if t > prefs.working_hours_end:
        return next_working_day_start(local_dt, prefs)
    return local_dt


def quiet_hours_end_after(local_dt: datetime, prefs: SchedulingPreferences) -> datetime:
    """End of the quiet window containing local_dt (start of working hours if unset)."""
    zone = local_dt.tzinfo
    day = local_dt.date()
    if not prefs.has_quiet_hours:
        return adjust_to_working_hours(local_dt, prefs)
    s, e = prefs.quiet_hours_start, prefs.quiet_hours_end
    t = local_dt.time()
    if s > e and t >= s:
        return at_local_time(day + timedelta(days=1), e, zone)
    return at_local_time(day, e, zone)


def local_day_bounds(day: date, zone: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC [start, end) of a local calendar day."""
    start = at_local_time(day, time(0, 0), zone)
    end = at_local_time(day + timedelta(days=1), time(0, 0), zone)
    return as_utc(start), as_utc(end)
