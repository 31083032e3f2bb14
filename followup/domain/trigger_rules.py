"""
Trigger rules: which incoming events may queue an in-app prompt.

Pieces kept apart so each can be tested alone:
- DEFAULT_RULES: rule set provisioned for a user on first use
- gate predicates: one function per eligibility check, all pure over GateFacts
- select_winning_rule(): priority-ordered list reduced to a single winner
- render_prompt(): event-type template → title, message, UI payload
- prompt state machine: queued → displayed → acted, with dismiss/expire exits
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable

from followup.domain.events import EventType
from followup.domain.working_hours import as_utc

PRIORITY_MIN = 1
PRIORITY_MAX = 10
ALLOWED_PLAN_STATUSES = frozenset({"active", "trial"})

TRIGGER_EVENT_TYPES: frozenset[str] = frozenset({
    EventType.EMAIL_OPENED.value,
    EventType.LINK_CLICKED.value,
    EventType.REMINDER_DUE.value,
    EventType.REMINDER_COMPLETED.value,
    EventType.NO_REPLY_AFTER_N_DAYS.value,
    EventType.MANUAL_REMINDER_CREATED.value,
    EventType.REMINDER_CREATED.value,
    EventType.STREAK_INCREMENTED.value,
    EventType.INACTIVITY_DETECTED.value,
})


# ---------------------------------------------------------------------------
# Prompt state machine
# ---------------------------------------------------------------------------

class PromptStatus(str, Enum):
    QUEUED = "queued"
    DISPLAYED = "displayed"
    DISMISSED = "dismissed"
    ACTED = "acted"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({PromptStatus.ACTED, PromptStatus.DISMISSED, PromptStatus.EXPIRED})

ALLOWED_TRANSITIONS: dict[PromptStatus, frozenset[PromptStatus]] = {
    PromptStatus.QUEUED: frozenset({PromptStatus.DISPLAYED, PromptStatus.DISMISSED, PromptStatus.EXPIRED}),
    PromptStatus.DISPLAYED: frozenset({PromptStatus.ACTED, PromptStatus.DISMISSED, PromptStatus.EXPIRED}),
    PromptStatus.ACTED: frozenset(),
    PromptStatus.DISMISSED: frozenset(),
    PromptStatus.EXPIRED: frozenset(),
}


class PromptTransitionError(ValueError):
    """Requested prompt status change is not allowed from the current status."""


def sources_for(target: PromptStatus) -> frozenset[PromptStatus]:
    """Statuses from which `target` is reachable."""
    return frozenset(src for src, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def can_transition(current: PromptStatus | str, target: PromptStatus | str) -> bool:
    return PromptStatus(target) in ALLOWED_TRANSITIONS[PromptStatus(current)]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerRule:
    id: int | None
    rule_name: str
    trigger_event_type: str
    template_key: str
    priority: int = 5
    cooldown_seconds: int = 0
    max_per_day: int | None = None
    ttl_seconds: int = 86400
    enabled: bool = True
    conditions: dict[str, Any] = field(default_factory=dict)


def _default(name, priority, cooldown, max_per_day, ttl, enabled=True, conditions=None) -> TriggerRule:
    return TriggerRule(
        id=None,
        rule_name=name,
        trigger_event_type=name,
        template_key=name,
        priority=priority,
        cooldown_seconds=cooldown,
        max_per_day=max_per_day,
        ttl_seconds=ttl,
        enabled=enabled,
        conditions=conditions or {},
    )


DEFAULT_RULES: tuple[TriggerRule, ...] = (
    _default("email_opened", 9, 1800, 6, 86400, conditions={"require_contact_id": False}),
    _default("reminder_due", 8, 900, 10, 86400, conditions={"require_reminder_id": True}),
    _default("reminder_completed", 7, 300, 20, 86400, conditions={"require_reminder_id": True}),
    _default("no_reply_after_n_days", 7, 43200, 6, 86400, conditions={"require_contact_id": True}),
    _default("link_clicked", 6, 1800, 10, 86400, enabled=False),
    _default("manual_reminder_created", 5, 300, 20, 86400),
    _default("reminder_created", 6, 120, 50, 300),
    _default("streak_incremented", 6, 3600, 3, 86400),
    _default("inactivity_detected", 4, 21600, 1, 43200),
)


def clamp_priority(priority: int | None) -> int:
    if priority is None:
        return 5
    return max(PRIORITY_MIN, min(PRIORITY_MAX, int(priority)))


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerEvent:
    id: int
    user_id: int
    event_type: str
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    contact_id: int | None = None
    reminder_id: int | None = None


@dataclass(frozen=True)
class GateFacts:
    """Snapshot of everything the gates read; gathered once per incoming event."""
    event: TriggerEvent
    now: datetime
    plan_status: str | None
    prompts_enabled: bool
    source_event_has_prompt: bool
    last_displayed_at: datetime | None
    last_rule_display: dict[int, datetime] = field(default_factory=dict)
    rule_entity_count_today: dict[int, int] = field(default_factory=dict)
    global_cooldown_seconds: int = 60


def plan_allows(rule: TriggerRule, facts: GateFacts) -> bool:
    return facts.plan_status is None or facts.plan_status in ALLOWED_PLAN_STATUSES


def prompts_enabled(rule: TriggerRule, facts: GateFacts) -> bool:
    return facts.prompts_enabled


def conditions_met(rule: TriggerRule, facts: GateFacts) -> bool:
    cond = rule.conditions or {}
    if cond.get("require_contact_id") and facts.event.contact_id is None:
        return False
    if cond.get("require_reminder_id") and facts.event.reminder_id is None:
        return False
    return True


def not_duplicate(rule: TriggerRule, facts: GateFacts) -> bool:
    return not facts.source_event_has_prompt


def global_cooldown_clear(rule: TriggerRule, facts: GateFacts) -> bool:
    seconds = (rule.conditions or {}).get("global_cooldown_seconds", facts.global_cooldown_seconds)
    if not seconds or facts.last_displayed_at is None:
        return True
    return as_utc(facts.last_displayed_at) < as_utc(facts.now) - timedelta(seconds=int(seconds))


def rule_cooldown_clear(rule: TriggerRule, facts: GateFacts) -> bool:
    last = facts.last_rule_display.get(rule.id)
    if not rule.cooldown_seconds or last is None:
        return True
    return as_utc(last) < as_utc(facts.now) - timedelta(seconds=rule.cooldown_seconds)


def entity_cap_clear(rule: TriggerRule, facts: GateFacts) -> bool:
    if not rule.max_per_day or facts.event.contact_id is None:
        return True
    return facts.rule_entity_count_today.get(rule.id, 0) < rule.max_per_day


GATES: tuple[tuple[str, Callable[[TriggerRule, GateFacts], bool]], ...] = (
    ("plan", plan_allows),
    ("prompt_toggle", prompts_enabled),
    ("conditions", conditions_met),
    ("dedupe", not_duplicate),
    ("global_cooldown", global_cooldown_clear),
    ("rule_cooldown", rule_cooldown_clear),
    ("entity_cap", entity_cap_clear),
)


def first_failed_gate(rule: TriggerRule, facts: GateFacts) -> str | None:
    for name, gate in GATES:
        if not gate(rule, facts):
            return name
    return None


def order_rules(rules: Iterable[TriggerRule], event_type: str) -> list[TriggerRule]:
    """Enabled rules for the event type, highest priority first (ties by id)."""
    matching = [r for r in rules if r.enabled and r.trigger_event_type == event_type]
    return sorted(matching, key=lambda r: (-clamp_priority(r.priority), r.id or 0))


def select_winning_rule(
    rules: list[TriggerRule], is_eligible: Callable[[TriggerRule], bool]
) -> TriggerRule | None:
    """First eligible rule of an already ordered list, or None."""
    return next((rule for rule in rules if is_eligible(rule)), None)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

_TEMPLATES: dict[str, dict[str, str]] = {
    "email_opened": {
        "title": "Email opened",
        "message": "Your email to {contact_name} was opened {time_ago}.",
    },
    "reminder_due": {
        "title": "Follow-up due",
        "message": "Follow-up due: {contact_name}.",
    },
    "reminder_completed": {
        "title": "Follow-up done",
        "message": "Nice work, your follow-up{contact_part} is done.{preview_part}",
    },
    "no_reply_after_n_days": {
        "title": "No reply yet",
        "message": "No reply yet{days_part}. Want to follow up?",
    },
    "link_clicked": {
        "title": "Link clicked",
        "message": "Link clicked: {link_url} for {contact_name}.",
    },
    "manual_reminder_created": {
        "title": "Reminder created",
        "message": "Reminder created: {contact_name} - {preview}",
    },
    "reminder_created": {
        "title": "Reminder set successfully",
        "message": "Your reminder has been set and will notify you at the scheduled time.",
    },
    "streak_incremented": {
        "title": "Streak extended",
        "message": "You're on a {streak_count}-day follow-up streak. Keep it going!",
    },
    "inactivity_detected": {
        "title": "Still there?",
        "message": "It's been {hours_inactive} hours since your last follow-up. Anything to catch up on?",
    },
}

_FALLBACK_CONTACT = "this contact"


@dataclass(frozen=True)
class RenderedPrompt:
    title: str
    message: str
    payload: dict[str, Any]


def _preview(text: str | None, limit: int = 50) -> str:
    text = text or ""
    return text[:limit] + "..." if len(text) > limit else text


def format_time_ago(occurred_at: datetime, now: datetime) -> str:
    minutes = int((as_utc(now) - as_utc(occurred_at)).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    if minutes < 1440:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = minutes // 1440
    return f"{days} day{'s' if days != 1 else ''} ago"


def render_prompt(
    template_key: str,
    event: TriggerEvent,
    now: datetime,
    contact_name: str | None = None,
    reminder_message: str | None = None,
) -> RenderedPrompt:
    """Pure renderer: template text plus the payload the UI needs for follow-up actions."""
    tmpl = _TEMPLATES.get(template_key) or _TEMPLATES["reminder_created"]
    data = event.payload or {}
    name = contact_name or _FALLBACK_CONTACT
    thread_link = data.get("thread_link")

    if event.contact_id is not None:
        entity_id, entity_type = event.contact_id, "contact"
    elif event.reminder_id is not None:
        entity_id, entity_type = event.reminder_id, "reminder"
    else:
        entity_id, entity_type = None, None

    payload: dict[str, Any] = {
        "template_key": template_key,
        "source_event_id": event.id,
        "source_event_type": event.event_type,
        "source_event_created_at": as_utc(event.occurred_at).isoformat(),
        "contact_id": event.contact_id,
        "reminder_id": event.reminder_id,
        "entity_id": entity_id,
        "entity_type": entity_type,
        "contact_name": name,
        "thread_link": thread_link,
    }

    ctx = {
        "contact_name": name,
        "time_ago": format_time_ago(event.occurred_at, now),
        "contact_part": f" to {name}" if contact_name else "",
        "preview_part": f' "{_preview(reminder_message)}"' if reminder_message else "",
        "days_part": f" after {data['days_without_reply']} days" if data.get("days_without_reply") else "",
        "link_url": data.get("url") or "link",
        "preview": _preview(reminder_message or data.get("message")) or "reminder",
        "streak_count": data.get("streak_count", 0),
        "hours_inactive": data.get("hours_inactive", 0),
    }
    if template_key == "link_clicked":
        payload["link_url"] = ctx["link_url"]
    if template_key == "streak_incremented":
        payload["streak_count"] = ctx["streak_count"]

    return RenderedPrompt(
        title=tmpl["title"],
        message=tmpl["message"].format(**ctx),
        payload=payload,
    )
