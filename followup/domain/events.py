"""
Event catalogue: closed set of event types and one payload schema per type.

Payloads are validated with pydantic before they reach the event log, so
downstream readers (stats, streaks, audit) can rely on a stable shape per
event type instead of poking at untyped dicts.
"""
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class EventType(str, Enum):
    REMINDER_CREATED = "reminder_created"
    MANUAL_REMINDER_CREATED = "manual_reminder_created"
    REMINDER_DUE = "reminder_due"
    REMINDER_ALLOWED = "reminder_allowed"
    REMINDER_SUPPRESSED = "reminder_suppressed"
    REMINDER_TRIGGERED = "reminder_triggered"
    REMINDER_DELIVERY_FAILED = "reminder_delivery_failed"
    REMINDER_COMPLETED = "reminder_completed"
    REMINDER_SNOOZED = "reminder_snoozed"
    REMINDER_OVERDUE = "reminder_overdue"
    SNOOZE_SUGGESTED = "snooze_suggested"
    STREAK_INCREMENTED = "streak_incremented"
    STREAK_BROKEN = "streak_broken"
    EMAIL_OPENED = "email_opened"
    LINK_CLICKED = "link_clicked"
    NO_REPLY_AFTER_N_DAYS = "no_reply_after_n_days"
    INACTIVITY_DETECTED = "inactivity_detected"
    PROMPT_QUEUED = "prompt_queued"
    PROMPT_DISPLAYED = "prompt_displayed"
    PROMPT_DISMISSED = "prompt_dismissed"
    PROMPT_ACTED = "prompt_acted"
    PROMPT_EXPIRED = "prompt_expired"
    DIGEST_SENT = "digest_sent"
    DIGEST_FAILED = "digest_failed"


class EventSource(str, Enum):
    APP = "app"
    SCHEDULER = "scheduler"
    SYSTEM = "system"
    EXTERNAL = "external"


class EventPayloadValidationError(ValueError):
    """Payload does not match the schema registered for its event type."""


# ---------------------------------------------------------------------------
# Payload schemas
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ReminderCreatedPayload(_Payload):
    scheduled_at: datetime
    category: str = "generic"
    message: str | None = None


class ReminderDuePayload(_Payload):
    intended_fire_time: datetime
    processed_at: datetime


class ReminderAllowedPayload(_Payload):
    reason_code: str = "ALLOWED"
    intended_fire_time: datetime
    evaluated_at: datetime


class ReminderSuppressedPayload(_Payload):
    reason_code: str
    intended_fire_time: datetime
    evaluated_at: datetime
    next_attempt_time: datetime | None = None


class ReminderTriggeredPayload(_Payload):
    intended_fire_time: datetime
    category: str
    channels: list[str]
    delivered_channels: list[str]


class ReminderDeliveryFailedPayload(_Payload):
    intended_fire_time: datetime
    channels: list[str]
    errors: dict[str, str] = Field(default_factory=dict)


class ReminderCompletedPayload(_Payload):
    completed_at: datetime
    via: str = "app"


class ReminderSnoozedPayload(_Payload):
    snooze_type: str
    snooze_until: datetime
    snooze_duration_minutes: int = Field(ge=0)
    new_reminder_id: int


class ReminderOverduePayload(_Payload):
    scheduled_at: datetime
    minutes_late: int = Field(ge=0)


class SnoozeSuggestedPayload(_Payload):
    candidates: list[dict[str, Any]]
    recommended_type: str | None = None
    context_type: str | None = None


class StreakPayload(_Payload):
    streak_count: int = Field(ge=0)
    previous_streak: int = Field(ge=0)


class EmailOpenedPayload(_Payload):
    opened_at: datetime | None = None
    subject: str | None = None
    thread_link: str | None = None


class LinkClickedPayload(_Payload):
    url: str | None = None
    thread_link: str | None = None


class NoReplyPayload(_Payload):
    days_without_reply: int = Field(ge=1)
    thread_link: str | None = None


class InactivityDetectedPayload(_Payload):
    hours_inactive: int = Field(ge=0)
    last_activity_at: datetime | None = None


class PromptEventPayload(_Payload):
    prompt_id: int
    rule_id: int | None = None
    action: str | None = None


class DigestSentPayload(_Payload):
    week_start: date
    variant: str
    channels: list[str]
    attempts: int = Field(ge=1)


class DigestFailedPayload(_Payload):
    week_start: date
    retry_count: int = Field(ge=0)
    error: str | None = None


PAYLOAD_SCHEMAS: dict[EventType, type[_Payload]] = {
    EventType.REMINDER_CREATED: ReminderCreatedPayload,
    EventType.MANUAL_REMINDER_CREATED: ReminderCreatedPayload,
    EventType.REMINDER_DUE: ReminderDuePayload,
    EventType.REMINDER_ALLOWED: ReminderAllowedPayload,
    EventType.REMINDER_SUPPRESSED: ReminderSuppressedPayload,
    EventType.REMINDER_TRIGGERED: ReminderTriggeredPayload,
    EventType.REMINDER_DELIVERY_FAILED: ReminderDeliveryFailedPayload,
    EventType.REMINDER_COMPLETED: ReminderCompletedPayload,
    EventType.REMINDER_SNOOZED: ReminderSnoozedPayload,
    EventType.REMINDER_OVERDUE: ReminderOverduePayload,
    EventType.SNOOZE_SUGGESTED: SnoozeSuggestedPayload,
    EventType.STREAK_INCREMENTED: StreakPayload,
    EventType.STREAK_BROKEN: StreakPayload,
    EventType.EMAIL_OPENED: EmailOpenedPayload,
    EventType.LINK_CLICKED: LinkClickedPayload,
    EventType.NO_REPLY_AFTER_N_DAYS: NoReplyPayload,
    EventType.INACTIVITY_DETECTED: InactivityDetectedPayload,
    EventType.PROMPT_QUEUED: PromptEventPayload,
    EventType.PROMPT_DISPLAYED: PromptEventPayload,
    EventType.PROMPT_DISMISSED: PromptEventPayload,
    EventType.PROMPT_ACTED: PromptEventPayload,
    EventType.PROMPT_EXPIRED: PromptEventPayload,
    EventType.DIGEST_SENT: DigestSentPayload,
    EventType.DIGEST_FAILED: DigestFailedPayload,
}

# Types external systems (email tracking, client app) may submit directly
INGESTIBLE_EVENT_TYPES: frozenset[EventType] = frozenset({
    EventType.EMAIL_OPENED,
    EventType.LINK_CLICKED,
    EventType.NO_REPLY_AFTER_N_DAYS,
    EventType.MANUAL_REMINDER_CREATED,
    EventType.REMINDER_CREATED,
})


def parse_event_type(value: str | EventType) -> EventType:
    try:
        return EventType(value)
    except ValueError:
        raise EventPayloadValidationError(f"Unknown event type: {value!r}") from None


def validate_payload(event_type: str | EventType, payload: dict[str, Any] | None) -> dict[str, Any]:
    """
    Validate payload against its event-type schema.

    Returns the normalised JSON-ready dict (datetimes as ISO strings).
    Raises EventPayloadValidationError on unknown type or schema mismatch.
    """
    etype = parse_event_type(event_type)
    schema = PAYLOAD_SCHEMAS[etype]
    try:
        model = schema.model_validate(payload or {})
    except ValidationError as exc:
        raise EventPayloadValidationError(f"Invalid payload for {etype.value}: {exc}") from exc
    return model.model_dump(mode="json", exclude_none=True)


def read_payload(event_type: str | EventType, payload: dict[str, Any]) -> _Payload:
    """Parse a stored payload back into its typed model."""
    etype = parse_event_type(event_type)
    return PAYLOAD_SCHEMAS[etype].model_validate(payload)
