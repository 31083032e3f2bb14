"""
Reminder delivery pipeline.

One unit of work per due reminder:

    pending? ─no─▶ skipped ("already processed")
       │
    claim lease (conditional UPDATE on claimed_at)
       │
    log reminder_overdue (once) · log reminder_due → prompt engine
       │
    evaluate_suppression ─▶ log reminder_allowed / reminder_suppressed
       │                       ├─ dropped   : pending → failed (CATEGORY_DISABLED)
       │                       └─ suppressed: scheduled_at := next attempt, stays pending
    deliver on every configured channel (success if any channel succeeds)
       │
    pending → sent | failed  (conditional UPDATE, at most once)
    log reminder_triggered / reminder_delivery_failed

process_due_reminders() isolates failures per reminder and always returns a summary.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import or_
from sqlalchemy.orm import Session

from followup.application.delivery import MessageContent, Recipient, build_senders, send_all
from followup.application.preferences import PreferencesService
from followup.application.streaks import StreakPropagator
from followup.config import get_settings
from followup.domain.events import EventSource, EventType
from followup.domain.preferences import SchedulingPreferences, infer_category
from followup.domain.suppression import (
    DeliveryRecord,
    ReminderSnapshot,
    SuppressionDecision,
    evaluate_suppression,
)
from followup.domain.working_hours import as_utc, at_local_time, get_zone, to_local
from followup.infrastructure.db.models import Contact, Reminder, User
from followup.infrastructure.eventlog.repository import EventLogRepository

logger = logging.getLogger(__name__)

PENDING = "pending"
ALREADY_PROCESSED = "already processed"


class ReminderNotFoundError(LookupError):
    pass


# ---------------------------------------------------------------------------
# Conditional status transition
# ---------------------------------------------------------------------------

def transition_reminder_status(
    db: Session,
    reminder_id: int,
    new_status: str,
    now: datetime,
    commit: bool = True,
    **fields,
) -> bool:
    """
    pending → new_status, only if the row is still pending.

    Returns True for the single caller that wins; every concurrent or repeated
    caller gets False ("already processed").
    """
    values = {"status": new_status, "updated_at": now, "claimed_at": None}
    values.update(fields)
    updated = (
        db.query(Reminder)
        .filter(Reminder.id == reminder_id, Reminder.status == PENDING)
        .update(values, synchronize_session=False)
    )
    if commit:
        db.commit()
    return updated == 1


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ProcessResult:
    reminder_id: int
    outcome: str  # sent | failed | suppressed | dropped | skipped | error
    reason: str | None = None
    next_attempt_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "reminder_id": self.reminder_id,
            "outcome": self.outcome,
            "reason": self.reason,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
        }


@dataclass
class ReminderBatchSummary:
    total: int = 0
    sent: int = 0
    failed: int = 0
    suppressed: int = 0
    dropped: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[ProcessResult] = field(default_factory=list)

    def record(self, result: ProcessResult) -> None:
        self.total += 1
        self.results.append(result)
        if result.outcome == "error":
            self.errors += 1
        else:
            setattr(self, result.outcome, getattr(self, result.outcome) + 1)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "suppressed": self.suppressed,
            "dropped": self.dropped,
            "skipped": self.skipped,
            "errors": self.errors,
        }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ReminderDeliveryService:
    def __init__(
        self,
        db: Session,
        preferences: PreferencesService | None = None,
        prompt_engine=None,
        senders_factory=build_senders,
        executor=None,
    ):
        self.db = db
        self.events = EventLogRepository(db)
        self.preferences = preferences or PreferencesService(db)
        self.prompt_engine = prompt_engine
        self.senders_factory = senders_factory
        self.executor = executor
        self.settings = get_settings()

    # -- helpers ---------------------------------------------------------

    def _claim(self, reminder_id: int, now: datetime) -> bool:
        lease_cutoff = now - timedelta(minutes=self.settings.DELIVERY_LEASE_MINUTES)
        updated = (
            self.db.query(Reminder)
            .filter(
                Reminder.id == reminder_id,
                Reminder.status == PENDING,
                or_(Reminder.claimed_at.is_(None), Reminder.claimed_at < lease_cutoff),
            )
            .update({"claimed_at": now}, synchronize_session=False)
        )
        self.db.commit()
        return updated == 1

    def _offer(self, event_id: int | None, now: datetime) -> None:
        if event_id is None or self.prompt_engine is None:
            return
        try:
            self.prompt_engine.offer_event(event_id, now=now)
        except Exception:
            logger.exception("Prompt evaluation failed for event_id=%s", event_id)
            self.db.rollback()

    def _delivery_history(
        self, user_id: int, zone, now: datetime, prefs: SchedulingPreferences
    ) -> list[DeliveryRecord]:
        """reminder_triggered events covering today (local) and the cooldown window."""
        day_start = as_utc(at_local_time(to_local(now, zone).date(), time(0, 0), zone))
        since = min(day_start, now - timedelta(minutes=prefs.cooldown_minutes))
        try:
            rows = self.events.list_events(user_id, event_types=[EventType.REMINDER_TRIGGERED], since=since)
        except Exception:
            logger.exception("Delivery history lookup failed for user_id=%s", user_id)
            self.db.rollback()
            return []
        return [
            DeliveryRecord(
                delivered_at=as_utc(e.occurred_at),
                contact_id=e.contact_id,
                category=(e.payload_json or {}).get("category"),
            )
            for e in rows
        ]

    def _log_decision(self, reminder: Reminder, decision: SuppressionDecision, now: datetime) -> None:
        intended = as_utc(reminder.scheduled_at)
        if decision.allowed:
            event_type = EventType.REMINDER_ALLOWED
            payload = {"reason_code": decision.reason_value, "intended_fire_time": intended, "evaluated_at": now}
        else:
            event_type = EventType.REMINDER_SUPPRESSED
            payload = {
                "reason_code": decision.reason_value,
                "intended_fire_time": intended,
                "evaluated_at": now,
                "next_attempt_time": decision.next_attempt_at,
            }
        self.events.append_event(
            user_id=reminder.user_id,
            event_type=event_type,
            payload=payload,
            occurred_at=now,
            reminder_id=reminder.id,
            contact_id=reminder.contact_id,
            source=EventSource.SCHEDULER,
        )

    def _content(self, reminder: Reminder) -> MessageContent:
        contact = self.db.get(Contact, reminder.contact_id) if reminder.contact_id else None
        subject = f"Follow up with {contact.name}" if contact else "Reminder"
        return MessageContent(
            kind="reminder",
            subject=subject,
            text=reminder.message,
            url=f"{self.settings.APP_BASE_URL}/reminders/{reminder.id}",
            reminder_id=reminder.id,
            data={"reminder_id": reminder.id, "contact_id": reminder.contact_id},
        )

    # -- unit of work ----------------------------------------------------

    def process_reminder(self, reminder_id: int, now: datetime | None = None) -> ProcessResult:
        now = as_utc(now or datetime.now(timezone.utc))
        reminder = self.db.get(Reminder, reminder_id)
        if reminder is None:
            return ProcessResult(reminder_id, "error", "reminder not found")
        if reminder.status != PENDING:
            return ProcessResult(reminder_id, "skipped", ALREADY_PROCESSED)
        if not self._claim(reminder_id, now):
            return ProcessResult(reminder_id, "skipped", ALREADY_PROCESSED)
        self.db.refresh(reminder)

        user = self.db.get(User, reminder.user_id)
        if user is None:
            transition_reminder_status(self.db, reminder_id, "failed", now, failure_reason="user not found")
            return ProcessResult(reminder_id, "error", "user not found")
        zone = get_zone(user.timezone, self.settings.TIMEZONE)
        scheduled = as_utc(reminder.scheduled_at)

        minutes_late = int((now - scheduled).total_seconds() // 60)
        if minutes_late > self.settings.OVERDUE_GRACE_MINUTES:
            self.events.append_event_once(
                f"overdue:{reminder.id}",
                user_id=reminder.user_id,
                event_type=EventType.REMINDER_OVERDUE,
                payload={"scheduled_at": scheduled, "minutes_late": minutes_late},
                occurred_at=now,
                reminder_id=reminder.id,
                contact_id=reminder.contact_id,
                source=EventSource.SCHEDULER,
            )

        due_id = self.events.append_event(
            user_id=reminder.user_id,
            event_type=EventType.REMINDER_DUE,
            payload={"intended_fire_time": scheduled, "processed_at": now},
            occurred_at=now,
            reminder_id=reminder.id,
            contact_id=reminder.contact_id,
            source=EventSource.SCHEDULER,
        )
        self.db.commit()
        self._offer(due_id, now)

        prefs = self.preferences.get(reminder.user_id)
        snapshot = ReminderSnapshot(
            id=reminder.id,
            user_id=reminder.user_id,
            scheduled_at=scheduled,
            category=reminder.category or infer_category(reminder.message, reminder.contact_id).value,
            contact_id=reminder.contact_id,
            message=reminder.message,
        )
        decision = evaluate_suppression(
            snapshot, prefs, zone, self._delivery_history(reminder.user_id, zone, now, prefs), now
        )
        self._log_decision(reminder, decision, now)

        if not decision.allowed:
            return self._apply_suppression(reminder, decision, now)
        return self._deliver(reminder, user, prefs, now)

    def _apply_suppression(self, reminder: Reminder, decision: SuppressionDecision, now: datetime) -> ProcessResult:
        reason = decision.reason_value
        if decision.dropped:
            won = transition_reminder_status(self.db, reminder.id, "failed", now, failure_reason=reason)
            if not won:
                return ProcessResult(reminder.id, "skipped", ALREADY_PROCESSED)
            logger.info("Reminder %s dropped: %s", reminder.id, reason)
            return ProcessResult(reminder.id, "dropped", reason)

        updated = (
            self.db.query(Reminder)
            .filter(Reminder.id == reminder.id, Reminder.status == PENDING)
            .update(
                {"scheduled_at": decision.next_attempt_at, "claimed_at": None, "updated_at": now},
                synchronize_session=False,
            )
        )
        self.db.commit()
        if not updated:
            return ProcessResult(reminder.id, "skipped", ALREADY_PROCESSED)
        logger.info("Reminder %s suppressed (%s), next attempt %s", reminder.id, reason, decision.next_attempt_at)
        return ProcessResult(reminder.id, "suppressed", reason, decision.next_attempt_at)

    def _deliver(self, reminder: Reminder, user: User, prefs: SchedulingPreferences, now: datetime) -> ProcessResult:
        channels = list(prefs.notification_channels) or ["email"]
        senders = self.senders_factory(self.db, channels)
        results = send_all(senders, Recipient(user.id, user.email), self._content(reminder), self.executor)
        delivered = [ch for ch, res in results.items() if res.success]
        errors = {ch: res.error or "unknown error" for ch, res in results.items() if not res.success}
        intended = as_utc(reminder.scheduled_at)

        if delivered:
            won = transition_reminder_status(self.db, reminder.id, "sent", now, commit=False, sent_at=now)
            if not won:
                self.db.rollback()
                return ProcessResult(reminder.id, "skipped", ALREADY_PROCESSED)
            self.events.append_event(
                user_id=reminder.user_id,
                event_type=EventType.REMINDER_TRIGGERED,
                payload={
                    "intended_fire_time": intended,
                    "category": reminder.category,
                    "channels": channels,
                    "delivered_channels": delivered,
                },
                occurred_at=now,
                reminder_id=reminder.id,
                contact_id=reminder.contact_id,
                source=EventSource.SCHEDULER,
            )
            self.db.commit()
            return ProcessResult(reminder.id, "sent")

        reason = "; ".join(f"{ch}: {err}" for ch, err in errors.items()) or "no delivery channel"
        won = transition_reminder_status(
            self.db, reminder.id, "failed", now, commit=False, failure_reason=reason[:255]
        )
        if not won:
            self.db.rollback()
            return ProcessResult(reminder.id, "skipped", ALREADY_PROCESSED)
        self.events.append_event(
            user_id=reminder.user_id,
            event_type=EventType.REMINDER_DELIVERY_FAILED,
            payload={"intended_fire_time": intended, "channels": channels, "errors": errors},
            occurred_at=now,
            reminder_id=reminder.id,
            contact_id=reminder.contact_id,
            source=EventSource.SCHEDULER,
        )
        self.db.commit()
        logger.warning("Reminder %s delivery failed: %s", reminder.id, reason)
        return ProcessResult(reminder.id, "failed", reason)

    # -- batch -----------------------------------------------------------

    def process_due_reminders(self, now: datetime | None = None, limit: int = 200) -> ReminderBatchSummary:
        """Process every pending reminder with scheduled_at <= now; never raises."""
        now = as_utc(now or datetime.now(timezone.utc))
        summary = ReminderBatchSummary()
        try:
            due_ids = [
                rid for (rid,) in (
                    self.db.query(Reminder.id)
                    .filter(Reminder.status == PENDING, Reminder.scheduled_at <= now)
                    .order_by(Reminder.scheduled_at.asc(), Reminder.id.asc())
                    .limit(limit)
                    .all()
                )
            ]
        except Exception:
            logger.exception("Due reminder query failed")
            self.db.rollback()
            return summary

        for reminder_id in due_ids:
            try:
                summary.record(self.process_reminder(reminder_id, now=now))
            except Exception:
                logger.exception("Reminder processing failed for reminder_id=%s", reminder_id)
                self.db.rollback()
                summary.record(ProcessResult(reminder_id, "error", "unexpected error"))

        if summary.total:
            logger.info("Reminder batch: %s", summary.to_dict())
        return summary

    # -- user actions ----------------------------------------------------

    def create_reminder(
        self,
        user_id: int,
        message: str,
        scheduled_at: datetime,
        contact_id: int | None = None,
        category: str | None = None,
        manual: bool = True,
        now: datetime | None = None,
    ) -> Reminder:
        now = as_utc(now or datetime.now(timezone.utc))
        category = category or infer_category(message, contact_id).value
        reminder = Reminder(
            user_id=user_id,
            contact_id=contact_id,
            message=message,
            category=category,
            scheduled_at=as_utc(scheduled_at),
            status=PENDING,
        )
        self.db.add(reminder)
        self.db.flush()
        event_id = self.events.append_event(
            user_id=user_id,
            event_type=EventType.MANUAL_REMINDER_CREATED if manual else EventType.REMINDER_CREATED,
            payload={"scheduled_at": as_utc(scheduled_at), "category": category, "message": message},
            occurred_at=now,
            reminder_id=reminder.id,
            contact_id=contact_id,
        )
        self.db.commit()
        self._offer(event_id, now)
        return reminder

    def complete_reminder(
        self,
        reminder_id: int,
        user_id: int,
        now: datetime | None = None,
        via: str = "app",
        streaks: StreakPropagator | None = None,
    ) -> bool:
        """
        Mark a follow-up done: one reminder_completed event per reminder.

        Returns False when the reminder was already completed.
        """
        now = as_utc(now or datetime.now(timezone.utc))
        reminder = self.db.query(Reminder).filter(Reminder.id == reminder_id, Reminder.user_id == user_id).first()
        if reminder is None:
            raise ReminderNotFoundError(f"Reminder {reminder_id} not found")

        event_id = self.events.append_event_once(
            f"completed:{reminder_id}",
            user_id=user_id,
            event_type=EventType.REMINDER_COMPLETED,
            payload={"completed_at": now, "via": via},
            occurred_at=now,
            reminder_id=reminder_id,
            contact_id=reminder.contact_id,
        )
        if event_id is None:
            return False

        # A follow-up done before its reminder fired must not fire afterwards
        transition_reminder_status(self.db, reminder_id, "sent", now, sent_at=now)

        streaks = streaks or StreakPropagator(self.db, prompt_engine=self.prompt_engine)
        try:
            streaks.propagate(user_id, now=now)
        except Exception:
            logger.exception("Streak propagation failed for user_id=%s", user_id)
            self.db.rollback()
        self._offer(event_id, now)
        return True
