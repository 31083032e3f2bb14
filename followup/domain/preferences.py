"""
Scheduling preferences value objects and their defaults.
"""
from dataclasses import dataclass, field, replace
from datetime import time
from enum import Enum


class ReminderCategory(str, Enum):
    FOLLOW_UP = "follow_up"
    AFFIRMATION = "affirmation"
    GENERIC = "generic"


class SnoozeOptionType(str, Enum):
    LATER_TODAY = "later_today"
    TOMORROW_MORNING = "tomorrow_morning"
    NEXT_WORKING_DAY = "next_working_day"
    IN_3_DAYS = "in_3_days"
    NEXT_WEEK = "next_week"
    PICK_A_TIME = "pick_a_time"


class FollowUpCadence(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    LIGHT_TOUCH = "light_touch"


NOTIFICATION_CHANNELS = ("email", "push", "in_app")

_AFFIRMATION_KEYWORDS = ("affirmation", "motivation", "inspire")


def default_snooze_options() -> dict[str, bool]:
    return {opt.value: True for opt in SnoozeOptionType}


def default_category_notifications() -> dict[str, bool]:
    return {cat.value: True for cat in ReminderCategory}


@dataclass(frozen=True)
class SchedulingPreferences:
    """
    Immutable snapshot of a user's delivery rules.

    working_days uses Python weekday numbers (0 = Monday ... 6 = Sunday).
    Quiet hours may wrap midnight (22:00-07:00).
    """
    working_hours_start: time = time(9, 0)
    working_hours_end: time = time(17, 30)
    working_days: tuple[int, ...] = (0, 1, 2, 3, 4)
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    max_reminders_per_day: int = 10
    allow_weekends: bool = False
    cooldown_minutes: int = 30
    snooze_options: dict[str, bool] = field(default_factory=default_snooze_options)
    follow_up_cadence: str = FollowUpCadence.BALANCED.value
    smart_suggestions_enabled: bool = True
    category_notifications: dict[str, bool] = field(default_factory=default_category_notifications)
    notification_channels: tuple[str, ...] = ("email",)
    dnd_enabled: bool = False
    dnd_emergency_contacts: tuple[int, ...] = ()
    dnd_override_keywords: tuple[str, ...] = ()

    @property
    def has_quiet_hours(self) -> bool:
        return self.quiet_hours_start is not None and self.quiet_hours_end is not None

    def snooze_option_enabled(self, option: SnoozeOptionType | str) -> bool:
        key = option.value if isinstance(option, SnoozeOptionType) else option
        return bool(self.snooze_options.get(key, True))

    def category_enabled(self, category: ReminderCategory | str) -> bool:
        key = category.value if isinstance(category, ReminderCategory) else category
        return bool(self.category_notifications.get(key, True))

    def dnd_bypassed(self, contact_id: int | None, message: str | None) -> bool:
        """Emergency contacts and override keywords (case-insensitive) cut through DND."""
        if contact_id is not None and contact_id in self.dnd_emergency_contacts:
            return True
        text = (message or "").lower()
        return any(keyword.lower() in text for keyword in self.dnd_override_keywords if keyword)

    def with_changes(self, **changes) -> "SchedulingPreferences":
        return replace(self, **changes)


DEFAULT_PREFERENCES = SchedulingPreferences()


def infer_category(message: str | None, contact_id: int | None) -> ReminderCategory:
    """Category for reminders created without one: contact → follow-up, keywords → affirmation."""
    if contact_id is not None:
        return ReminderCategory.FOLLOW_UP
    text = (message or "").lower()
    if any(word in text for word in _AFFIRMATION_KEYWORDS):
        return ReminderCategory.AFFIRMATION
    return ReminderCategory.GENERIC


@dataclass(frozen=True)
class DigestPreferences:
    weekly_digest_enabled: bool = True
    digest_day: int = 0  # 0 = Monday
    digest_time: time = time(8, 0)
    digest_channel: str = "email"  # email | in_app | both
    digest_detail_level: str = "standard"  # light | standard
    only_when_active: bool = False

    @property
    def channels(self) -> list[str]:
        if self.digest_channel == "both":
            return ["email", "in_app"]
        return [self.digest_channel]
