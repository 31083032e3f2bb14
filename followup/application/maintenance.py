"""
Daily maintenance: inactivity detection and prompt expiry.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from followup.application.prompt_engine import PromptEngine
from followup.config import get_settings
from followup.domain.events import EventSource, EventType
from followup.domain.working_hours import as_utc
from followup.infrastructure.db.models import EventLog, User
from followup.infrastructure.eventlog.repository import EventLogRepository

logger = logging.getLogger(__name__)

INACTIVITY_REPEAT_WINDOW = timedelta(hours=6)

# Events written by ticks and the engine itself are not user activity
_ACTIVITY_SOURCES = (EventSource.APP.value, EventSource.EXTERNAL.value)


@dataclass
class MaintenanceSummary:
    inactivity_detected: int = 0
    prompts_expired: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "inactivity_detected": self.inactivity_detected,
            "prompts_expired": self.prompts_expired,
            "errors": self.errors,
        }


def _last_activity(db: Session, user_id: int) -> datetime | None:
    last = (
        db.query(func.max(EventLog.occurred_at))
        .filter(EventLog.user_id == user_id, EventLog.source.in_(_ACTIVITY_SOURCES))
        .scalar()
    )
    return as_utc(last) if last is not None else None


def detect_inactivity(
    db: Session,
    prompt_engine: PromptEngine | None = None,
    now: datetime | None = None,
    threshold_hours: int | None = None,
) -> tuple[int, int]:
    """
    Log inactivity_detected for users idle longer than the threshold.

    Users with no activity at all are skipped, and so are users who already
    got one in the last six hours. Returns (detected, errors).
    """
    now = as_utc(now or datetime.now(timezone.utc))
    if threshold_hours is None:
        threshold_hours = get_settings().INACTIVITY_THRESHOLD_HOURS
    threshold = now - timedelta(hours=threshold_hours)
    events = EventLogRepository(db)
    engine = prompt_engine or PromptEngine(db)

    detected = errors = 0
    user_ids = [uid for (uid,) in db.query(User.id).order_by(User.id).all()]
    for user_id in user_ids:
        try:
            last = _last_activity(db, user_id)
            if last is None or last >= threshold:
                continue
            recent = events.count_events(
                user_id, event_types=[EventType.INACTIVITY_DETECTED], since=now - INACTIVITY_REPEAT_WINDOW
            )
            if recent:
                continue
            event_id = events.append_event(
                user_id=user_id,
                event_type=EventType.INACTIVITY_DETECTED,
                payload={
                    "hours_inactive": int((now - last).total_seconds() // 3600),
                    "last_activity_at": last,
                },
                occurred_at=now,
                source=EventSource.SCHEDULER,
            )
            db.commit()
            engine.offer_event(event_id, now=now)
            detected += 1
        except Exception:
            logger.exception("Inactivity check failed for user_id=%s", user_id)
            db.rollback()
            errors += 1
    return detected, errors


def run_daily_maintenance(db: Session, now: datetime | None = None) -> MaintenanceSummary:
    now = as_utc(now or datetime.now(timezone.utc))
    summary = MaintenanceSummary()
    engine = PromptEngine(db)

    try:
        summary.inactivity_detected, summary.errors = detect_inactivity(db, engine, now=now)
    except Exception:
        logger.exception("Inactivity detection failed")
        db.rollback()
        summary.errors += 1

    try:
        summary.prompts_expired = engine.expire_stale_prompts(now=now)
    except Exception:
        logger.exception("Prompt expiry failed")
        db.rollback()
        summary.errors += 1

    logger.info("Daily maintenance: %s", summary.to_dict())
    return summary
