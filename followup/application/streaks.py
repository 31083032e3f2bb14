"""
Streak propagation: recompute the completion streak from the event log and
re-inject derived events (streak_incremented) into the prompt engine.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from followup.config import get_settings
from followup.domain.events import EventSource, EventType
from followup.domain.streak import (
    STREAK_LOOKBACK_DAYS,
    StreakTransition,
    classify_transition,
    compute_best_streak,
    compute_current_streak,
)
from followup.domain.working_hours import as_utc, get_zone, to_local
from followup.infrastructure.db.models import User, UserStreak
from followup.infrastructure.eventlog.repository import EventLogRepository

logger = logging.getLogger(__name__)


class StreakPropagator:
    def __init__(self, db: Session, prompt_engine=None):
        self.db = db
        self.events = EventLogRepository(db)
        self.prompt_engine = prompt_engine

    def _get_or_create(self, user_id: int) -> UserStreak:
        row = self.db.query(UserStreak).filter_by(user_id=user_id).first()
        if not row:
            row = UserStreak(user_id=user_id, current_streak=0, best_streak=0)
            self.db.add(row)
            self.db.flush()
        return row

    def propagate(self, user_id: int, now: datetime | None = None) -> StreakTransition:
        now = as_utc(now or datetime.now(timezone.utc))
        user = self.db.get(User, user_id)
        zone = get_zone(user.timezone if user else None, get_settings().TIMEZONE)
        today = to_local(now, zone).date()

        completions = self.events.list_events(
            user_id,
            event_types=[EventType.REMINDER_COMPLETED],
            since=now - timedelta(days=STREAK_LOOKBACK_DAYS + 1),
        )
        days = {to_local(e.occurred_at, zone).date() for e in completions}
        current = compute_current_streak(days, today)

        row = self._get_or_create(user_id)
        previous = row.current_streak
        transition = classify_transition(previous, current)

        row.current_streak = current
        row.best_streak = max(row.best_streak or 0, compute_best_streak(days))
        row.last_activity_date = max(days) if days else row.last_activity_date
        row.updated_at = now
        self.db.commit()

        if transition == StreakTransition.UNCHANGED:
            return transition

        event_type = (
            EventType.STREAK_INCREMENTED if transition == StreakTransition.INCREMENTED
            else EventType.STREAK_BROKEN
        )
        event_id = self.events.append_event_once(
            f"{event_type.value}:{user_id}:{today.isoformat()}:{previous}->{current}",
            user_id=user_id,
            event_type=event_type,
            payload={"streak_count": current, "previous_streak": previous},
            occurred_at=now,
            source=EventSource.SYSTEM,
        )
        logger.info("Streak %s for user_id=%s: %s -> %s", transition.value, user_id, previous, current)

        if event_id is not None and transition == StreakTransition.INCREMENTED and self.prompt_engine is not None:
            self.prompt_engine.offer_event(event_id, now=now)
        return transition
