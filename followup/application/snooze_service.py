"""
Snooze service: builds the scoring context from the event log, returns ranked
candidates, and applies a chosen snooze to a reminder.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from followup.application.preferences import PreferencesService
from followup.config import get_settings
from followup.domain.events import EventType
from followup.domain.preferences import SnoozeOptionType
from followup.domain.snooze import HISTORY_WINDOW, ScoringContext, SnoozeCandidate, suggest_snooze_times
from followup.domain.working_hours import as_utc, get_zone, local_day_bounds, to_local
from followup.infrastructure.db.models import Reminder, User
from followup.infrastructure.eventlog.repository import EventLogRepository

logger = logging.getLogger(__name__)

ENGAGEMENT_LOOKBACK = timedelta(hours=24)


class SnoozeValidationError(ValueError):
    pass


class SnoozeService:
    def __init__(self, db: Session, preferences: PreferencesService | None = None):
        self.db = db
        self.events = EventLogRepository(db)
        self.preferences = preferences or PreferencesService(db)

    def _load(self, reminder_id: int, user_id: int) -> Reminder:
        reminder = (
            self.db.query(Reminder)
            .filter(Reminder.id == reminder_id, Reminder.user_id == user_id)
            .first()
        )
        if reminder is None:
            raise LookupError(f"Reminder {reminder_id} not found")
        return reminder

    def _zone(self, user_id: int):
        user = self.db.get(User, user_id)
        return get_zone(user.timezone if user else None, get_settings().TIMEZONE)

    def build_context(
        self, user_id: int, zone, now: datetime, contact_id: int | None = None, context_type: str | None = None
    ) -> ScoringContext:
        """Scoring inputs from the event log; empty context when the lookup fails."""
        try:
            day_start, day_end = local_day_bounds(to_local(now, zone).date(), zone)
            delivered_today = self.events.count_events(
                user_id, event_types=[EventType.REMINDER_TRIGGERED], since=day_start, until=day_end
            )
            snoozes = self.events.list_events(
                user_id, event_types=[EventType.REMINDER_SNOOZED], limit=HISTORY_WINDOW, newest_first=True
            )
            recent = [
                int(e.payload_json["snooze_duration_minutes"])
                for e in snoozes
                if (e.payload_json or {}).get("snooze_duration_minutes") is not None
            ]
            engagement = None
            if contact_id is not None:
                opened = self.events.list_events(
                    user_id,
                    event_types=[EventType.EMAIL_OPENED],
                    since=now - ENGAGEMENT_LOOKBACK,
                    contact_id=contact_id,
                    limit=1,
                )
                if opened:
                    engagement = EventType.EMAIL_OPENED.value
        except Exception:
            logger.exception("Snooze context lookup failed for user_id=%s", user_id)
            self.db.rollback()
            return ScoringContext(context_type=context_type)
        return ScoringContext(
            delivered_today=delivered_today,
            recent_snooze_minutes=recent,
            engagement_signal=engagement,
            context_type=context_type,
        )

    def suggest(
        self,
        reminder_id: int,
        user_id: int,
        now: datetime | None = None,
        context_type: str | None = None,
    ) -> list[SnoozeCandidate]:
        now = as_utc(now or datetime.now(timezone.utc))
        reminder = self._load(reminder_id, user_id)
        zone = self._zone(user_id)
        prefs = self.preferences.get(user_id)
        ctx = self.build_context(user_id, zone, now, reminder.contact_id, context_type)
        candidates = suggest_snooze_times(prefs, zone, now, ctx)

        recommended = next((c.type.value for c in candidates if c.recommended), None)
        self.events.append_event(
            user_id=user_id,
            event_type=EventType.SNOOZE_SUGGESTED,
            payload={
                "candidates": [c.to_dict() for c in candidates],
                "recommended_type": recommended,
                "context_type": context_type,
            },
            occurred_at=now,
            reminder_id=reminder.id,
            contact_id=reminder.contact_id,
        )
        self.db.commit()
        return candidates

    def snooze_reminder(
        self,
        reminder_id: int,
        user_id: int,
        snooze_type: str | None = None,
        until: datetime | None = None,
        now: datetime | None = None,
    ) -> Reminder:
        """
        Snooze a pending reminder to a suggested option or an explicit time.

        The original row goes pending → snoozed (once); a new pending reminder
        carries the message forward with snoozed_from_id set.
        """
        now = as_utc(now or datetime.now(timezone.utc))
        reminder = self._load(reminder_id, user_id)
        if reminder.status != "pending":
            raise SnoozeValidationError(f"Reminder {reminder_id} is {reminder.status}, only pending reminders can be snoozed")

        try:
            option = SnoozeOptionType(snooze_type) if snooze_type else SnoozeOptionType.PICK_A_TIME
        except ValueError:
            raise SnoozeValidationError(f"Unknown snooze type: {snooze_type}") from None

        prefs = self.preferences.get(user_id)
        if not prefs.snooze_option_enabled(option):
            raise SnoozeValidationError(f"Snooze option {option.value} is disabled")

        if option == SnoozeOptionType.PICK_A_TIME:
            if until is None:
                raise SnoozeValidationError("A time is required for pick_a_time")
            target = as_utc(until)
        else:
            zone = self._zone(user_id)
            match = next(
                (c for c in suggest_snooze_times(prefs, zone, now) if c.type == option and c.scheduled_at),
                None,
            )
            if match is None:
                raise SnoozeValidationError(f"Snooze option {option.value} is not available now")
            target = match.scheduled_at

        if target <= now:
            raise SnoozeValidationError("Snooze time must be in the future")

        updated = (
            self.db.query(Reminder)
            .filter(Reminder.id == reminder.id, Reminder.status == "pending")
            .update({"status": "snoozed", "claimed_at": None, "updated_at": now}, synchronize_session=False)
        )
        if updated != 1:
            self.db.rollback()
            raise SnoozeValidationError(f"Reminder {reminder_id} was already processed")

        replacement = Reminder(
            user_id=user_id,
            contact_id=reminder.contact_id,
            message=reminder.message,
            category=reminder.category,
            scheduled_at=target,
            status="pending",
            snoozed_from_id=reminder.id,
        )
        self.db.add(replacement)
        self.db.flush()

        self.events.append_event(
            user_id=user_id,
            event_type=EventType.REMINDER_SNOOZED,
            payload={
                "snooze_type": option.value,
                "snooze_until": target,
                "snooze_duration_minutes": int((target - now).total_seconds() // 60),
                "new_reminder_id": replacement.id,
            },
            occurred_at=now,
            reminder_id=reminder.id,
            contact_id=reminder.contact_id,
        )
        self.db.commit()
        logger.info("Reminder %s snoozed (%s) until %s as reminder %s", reminder.id, option.value, target, replacement.id)
        return replacement
