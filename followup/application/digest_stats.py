"""
Weekly digest statistics, recomputed from the event log and the reminders table.
"""
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from followup.domain.digest import (
    ContactStats,
    DigestStats,
    ForwardLookingStats,
    LongestOverdue,
    OverallStats,
    WeekWindow,
    rank_contacts,
    rate,
)
from followup.domain.events import EventType
from followup.domain.working_hours import as_utc
from followup.infrastructure.db.models import Contact, EventLog, Reminder

_STAT_EVENT_TYPES = [
    EventType.REMINDER_CREATED.value,
    EventType.MANUAL_REMINDER_CREATED.value,
    EventType.REMINDER_TRIGGERED.value,
    EventType.REMINDER_COMPLETED.value,
    EventType.REMINDER_SNOOZED.value,
    EventType.REMINDER_OVERDUE.value,
    EventType.REMINDER_SUPPRESSED.value,
]


def _pending_before(db: Session, user_id: int, cutoff: datetime) -> int:
    return (
        db.query(func.count(Reminder.id))
        .filter(Reminder.user_id == user_id, Reminder.status == "pending", Reminder.scheduled_at < cutoff)
        .scalar()
    ) or 0


def compute_overall_stats(db: Session, user_id: int, window: WeekWindow) -> OverallStats:
    events = (
        db.query(EventLog.event_type, EventLog.payload_json)
        .filter(
            EventLog.user_id == user_id,
            EventLog.event_type.in_(_STAT_EVENT_TYPES),
            EventLog.occurred_at >= window.start_utc,
            EventLog.occurred_at < window.end_utc,
        )
        .all()
    )
    counts = Counter(event_type for event_type, _ in events)
    breakdown = Counter(
        (payload or {}).get("reason_code") or "other"
        for event_type, payload in events
        if event_type == EventType.REMINDER_SUPPRESSED.value
    )

    triggered = counts[EventType.REMINDER_TRIGGERED.value]
    completed = counts[EventType.REMINDER_COMPLETED.value]
    snoozed = counts[EventType.REMINDER_SNOOZED.value]
    return OverallStats(
        total_reminders_created=(
            counts[EventType.REMINDER_CREATED.value] + counts[EventType.MANUAL_REMINDER_CREATED.value]
        ),
        total_reminders_triggered=triggered,
        reminders_completed=completed,
        reminders_snoozed=snoozed,
        reminders_overdue=counts[EventType.REMINDER_OVERDUE.value],
        reminders_suppressed=counts[EventType.REMINDER_SUPPRESSED.value],
        completion_rate=rate(completed, triggered),
        snooze_rate=rate(snoozed, triggered),
        overdue_carry_over_start=_pending_before(db, user_id, window.start_utc),
        overdue_carry_over_end=_pending_before(db, user_id, window.end_utc),
        suppression_breakdown=dict(breakdown),
    )


def compute_contact_stats(db: Session, user_id: int, window: WeekWindow, now: datetime) -> list[ContactStats]:
    """Top contacts by overdue risk, then activity (completed + overdue)."""
    rows = (
        db.query(EventLog.contact_id, EventLog.event_type, EventLog.occurred_at)
        .filter(
            EventLog.user_id == user_id,
            EventLog.contact_id.isnot(None),
            EventLog.event_type.in_([EventType.REMINDER_COMPLETED.value, EventType.REMINDER_OVERDUE.value]),
            EventLog.occurred_at >= window.start_utc,
            EventLog.occurred_at < window.end_utc,
        )
        .all()
    )
    if not rows:
        return []

    contact_ids = {contact_id for contact_id, _, _ in rows}
    names = dict(db.query(Contact.id, Contact.name).filter(Contact.id.in_(contact_ids)).all())

    stats: dict[int, ContactStats] = {}
    for contact_id, event_type, occurred_at in rows:
        item = stats.setdefault(
            contact_id, ContactStats(contact_id=contact_id, contact_name=names.get(contact_id, "Unknown Contact"))
        )
        if event_type == EventType.REMINDER_COMPLETED.value:
            item.reminders_completed += 1
        else:
            item.reminders_overdue += 1
        occurred_at = as_utc(occurred_at)
        if item.last_interaction_at is None or occurred_at > item.last_interaction_at:
            item.last_interaction_at = occurred_at

    upcoming = (
        db.query(Reminder.contact_id, func.min(Reminder.scheduled_at))
        .filter(
            Reminder.user_id == user_id,
            Reminder.contact_id.in_(contact_ids),
            Reminder.status == "pending",
            Reminder.scheduled_at >= now,
        )
        .group_by(Reminder.contact_id)
        .all()
    )
    for contact_id, next_at in upcoming:
        if contact_id in stats and next_at is not None:
            stats[contact_id].next_scheduled_followup = as_utc(next_at)

    return rank_contacts(list(stats.values()))


def compute_forward_looking(db: Session, user_id: int, now: datetime) -> ForwardLookingStats:
    upcoming = (
        db.query(func.count(Reminder.id))
        .filter(
            Reminder.user_id == user_id,
            Reminder.status == "pending",
            Reminder.scheduled_at >= now,
            Reminder.scheduled_at <= now + timedelta(days=7),
        )
        .scalar()
    ) or 0

    total_contacts = db.query(func.count(Contact.id)).filter(Contact.user_id == user_id).scalar() or 0
    scheduled_contacts = (
        db.query(func.count(func.distinct(Reminder.contact_id)))
        .filter(
            Reminder.user_id == user_id,
            Reminder.status == "pending",
            Reminder.scheduled_at >= now,
            Reminder.contact_id.isnot(None),
        )
        .scalar()
    ) or 0

    longest = None
    oldest = (
        db.query(Reminder)
        .filter(Reminder.user_id == user_id, Reminder.status == "pending", Reminder.scheduled_at < now)
        .order_by(Reminder.scheduled_at.asc())
        .first()
    )
    if oldest is not None:
        contact = db.get(Contact, oldest.contact_id) if oldest.contact_id else None
        longest = LongestOverdue(
            reminder_id=oldest.id,
            message=oldest.message,
            days_overdue=(now - as_utc(oldest.scheduled_at)).days,
            contact_name=contact.name if contact else None,
        )

    return ForwardLookingStats(
        upcoming_reminders_next_7_days=upcoming,
        contacts_with_no_followup_scheduled=max(0, total_contacts - scheduled_contacts),
        longest_overdue_reminder=longest,
    )


def compute_weekly_stats(
    db: Session, user_id: int, window: WeekWindow, zone_name: str, now: datetime
) -> DigestStats:
    """All digest stats for one user and week. Raises on database errors."""
    now = as_utc(now)
    return DigestStats(
        week_start=window.week_start,
        week_end=window.week_end,
        timezone=zone_name,
        overall=compute_overall_stats(db, user_id, window),
        per_contact=compute_contact_stats(db, user_id, window, now),
        forward_looking=compute_forward_looking(db, user_id, now),
    )
