"""
Scheduling preferences store with an explicit, injectable TTL cache.

Reads fail open: any error while loading preferences yields the defaults so
the delivery pipeline keeps running. Writes invalidate the cached entry.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from sqlalchemy.orm import Session

from followup.config import get_settings
from followup.domain.digest import DIGEST_TIME_STEP_MINUTES, is_schedulable_digest_time
from followup.domain.preferences import (
    DEFAULT_PREFERENCES,
    NOTIFICATION_CHANNELS,
    DigestPreferences,
    FollowUpCadence,
    SchedulingPreferences,
    default_category_notifications,
    default_snooze_options,
)
from followup.infrastructure.db.models import DigestPreferencesModel, SchedulingPreferencesModel

logger = logging.getLogger(__name__)


class PreferencesValidationError(ValueError):
    pass


class PreferencesCache:
    """Thread-safe per-user cache of SchedulingPreferences with a fixed TTL."""

    def __init__(self, ttl_seconds: int = 300):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._entries: dict[int, tuple[datetime, SchedulingPreferences]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: int) -> SchedulingPreferences | None:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            stored_at, prefs = entry
            if datetime.now(timezone.utc) - stored_at >= self._ttl:
                del self._entries[user_id]
                return None
            return prefs

    def put(self, user_id: int, prefs: SchedulingPreferences) -> None:
        with self._lock:
            self._entries[user_id] = (datetime.now(timezone.utc), prefs)

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@lru_cache
def get_preferences_cache() -> PreferencesCache:
    """Process-wide cache instance used by the web app and scheduler jobs."""
    return PreferencesCache(ttl_seconds=get_settings().PREFERENCES_CACHE_TTL_SECONDS)


def _to_domain(row: SchedulingPreferencesModel) -> SchedulingPreferences:
    snooze = default_snooze_options()
    snooze.update(row.snooze_options or {})
    categories = default_category_notifications()
    categories.update(row.category_notifications or {})
    rules = row.dnd_override_rules or {}
    return SchedulingPreferences(
        working_hours_start=row.working_hours_start,
        working_hours_end=row.working_hours_end,
        working_days=tuple(int(d) for d in (row.working_days or [])),
        quiet_hours_start=row.quiet_hours_start,
        quiet_hours_end=row.quiet_hours_end,
        max_reminders_per_day=row.max_reminders_per_day,
        allow_weekends=row.allow_weekends,
        cooldown_minutes=row.cooldown_minutes,
        snooze_options=snooze,
        follow_up_cadence=row.follow_up_cadence,
        smart_suggestions_enabled=row.smart_suggestions_enabled,
        category_notifications=categories,
        notification_channels=tuple(row.notification_channels or ()),
        dnd_enabled=bool(row.dnd_enabled),
        dnd_emergency_contacts=tuple(int(c) for c in rules.get("emergency_contacts", [])),
        dnd_override_keywords=tuple(rules.get("override_keywords", [])),
    )


def digest_to_domain(row: DigestPreferencesModel) -> DigestPreferences:
    return DigestPreferences(
        weekly_digest_enabled=row.weekly_digest_enabled,
        digest_day=row.digest_day,
        digest_time=row.digest_time,
        digest_channel=row.digest_channel,
        digest_detail_level=row.digest_detail_level,
        only_when_active=row.only_when_active,
    )


_UPDATABLE_FIELDS = {
    "working_hours_start", "working_hours_end", "working_days",
    "quiet_hours_start", "quiet_hours_end", "max_reminders_per_day",
    "allow_weekends", "cooldown_minutes", "snooze_options", "follow_up_cadence",
    "smart_suggestions_enabled", "category_notifications", "notification_channels",
    "dnd_enabled", "dnd_override_rules",
}

_DND_RULE_TYPES = {"emergency_contacts": int, "override_keywords": str}


def _validate_changes(changes: dict) -> None:
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise PreferencesValidationError(f"Unknown preference fields: {sorted(unknown)}")
    if "working_days" in changes:
        days = changes["working_days"]
        if any(not isinstance(d, int) or d < 0 or d > 6 for d in days):
            raise PreferencesValidationError("working_days must be weekday numbers 0-6")
    if "notification_channels" in changes:
        bad = set(changes["notification_channels"]) - set(NOTIFICATION_CHANNELS)
        if bad:
            raise PreferencesValidationError(f"Unsupported channels: {sorted(bad)}")
    if "follow_up_cadence" in changes:
        FollowUpCadence(changes["follow_up_cadence"])
    for key in ("max_reminders_per_day", "cooldown_minutes"):
        if key in changes:
            value = changes[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise PreferencesValidationError(f"{key} must be a non-negative integer")
    for key in ("working_hours_start", "working_hours_end"):
        if key in changes and changes[key] is None:
            raise PreferencesValidationError(f"{key} is required")
    if "dnd_override_rules" in changes:
        _validate_dnd_rules(changes["dnd_override_rules"])


def _validate_dnd_rules(rules) -> None:
    if not isinstance(rules, dict):
        raise PreferencesValidationError("dnd_override_rules must be an object")
    unknown = set(rules) - set(_DND_RULE_TYPES)
    if unknown:
        raise PreferencesValidationError(f"Unknown DND override rules: {sorted(unknown)}")
    for key, kind in _DND_RULE_TYPES.items():
        values = rules.get(key, [])
        if not isinstance(values, list) or any(isinstance(v, bool) or not isinstance(v, kind) for v in values):
            raise PreferencesValidationError(f"{key} must be a list of {kind.__name__}")


class PreferencesService:
    def __init__(self, db: Session, cache: PreferencesCache | None = None):
        self.db = db
        self.cache = cache

    def _get_or_create(self, user_id: int) -> SchedulingPreferencesModel:
        row = self.db.query(SchedulingPreferencesModel).filter_by(user_id=user_id).first()
        if not row:
            row = SchedulingPreferencesModel(user_id=user_id)
            self.db.add(row)
            self.db.flush()
        return row

    def get(self, user_id: int) -> SchedulingPreferences:
        """Cached read; defaults on any failure."""
        if self.cache is not None:
            cached = self.cache.get(user_id)
            if cached is not None:
                return cached
        try:
            prefs = _to_domain(self._get_or_create(user_id))
        except Exception:
            logger.exception("Failed to load scheduling preferences for user_id=%s, using defaults", user_id)
            self.db.rollback()
            return DEFAULT_PREFERENCES
        if self.cache is not None:
            self.cache.put(user_id, prefs)
        return prefs

    def update(self, user_id: int, **changes) -> SchedulingPreferences:
        _validate_changes(changes)
        row = self._get_or_create(user_id)
        start = changes.get("working_hours_start", row.working_hours_start)
        end = changes.get("working_hours_end", row.working_hours_end)
        if start >= end:
            self.db.rollback()
            raise PreferencesValidationError("working_hours_start must be before working_hours_end")
        if "snooze_options" in changes:
            merged = default_snooze_options()
            merged.update(row.snooze_options or {})
            merged.update(changes.pop("snooze_options") or {})
            row.snooze_options = merged
        if "category_notifications" in changes:
            merged = default_category_notifications()
            merged.update(row.category_notifications or {})
            merged.update(changes.pop("category_notifications") or {})
            row.category_notifications = merged
        for key, value in changes.items():
            setattr(row, key, list(value) if key in ("working_days", "notification_channels") else value)
        row.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        if self.cache is not None:
            self.cache.invalidate(user_id)
        return _to_domain(row)

    def get_digest_preferences(self, user_id: int) -> DigestPreferences:
        row = self.db.query(DigestPreferencesModel).filter_by(user_id=user_id).first()
        if not row:
            row = DigestPreferencesModel(user_id=user_id)
            self.db.add(row)
            self.db.flush()
        return digest_to_domain(row)

    def update_digest_preferences(self, user_id: int, **changes) -> DigestPreferences:
        for key in changes:
            if not hasattr(DigestPreferencesModel, key) or key == "user_id":
                raise PreferencesValidationError(f"Unknown digest preference: {key}")
        digest_time = changes.get("digest_time")
        if digest_time is not None and not is_schedulable_digest_time(digest_time):
            raise PreferencesValidationError(
                f"digest_time must fall on a {DIGEST_TIME_STEP_MINUTES}-minute boundary"
            )
        row = self.db.query(DigestPreferencesModel).filter_by(user_id=user_id).first()
        if not row:
            row = DigestPreferencesModel(user_id=user_id)
            self.db.add(row)
        for key, value in changes.items():
            setattr(row, key, value)
        self.db.commit()
        return digest_to_domain(row)
