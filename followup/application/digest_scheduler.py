"""
Weekly digest batch scheduler.

Each quarter-hour tick walks users with the digest enabled and, for those whose local
digest moment falls inside the tick, runs:

    eligibility gate  (new user without reminders → skip)
    idempotency gate  (sent record for dedupe key → skip; lookup failure → skip)
    activity gate     (only_when_active and empty week → skip)
    stats → variant → content
    deliver on every channel; a failed attempt is retried whole (1s, 2s, 4s)
    persist sent / failed record, UNIQUE(dedupe_key) settles races

The tick never raises; it returns a DigestTickSummary.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from followup.application.delivery import Recipient, build_senders, send_all
from followup.application.digest_content import build_digest_content
from followup.application.digest_stats import compute_weekly_stats
from followup.application.preferences import digest_to_domain
from followup.config import get_settings
from followup.domain.digest import (
    DigestVariant,
    WeekWindow,
    dedupe_key,
    is_digest_moment,
    is_new_user_without_reminders,
    select_variant,
    week_window,
)
from followup.domain.events import EventSource, EventType
from followup.domain.preferences import DigestPreferences
from followup.domain.working_hours import as_utc, get_zone
from followup.infrastructure.db.models import DigestJobRecord, DigestPreferencesModel, EventLog, Reminder, User
from followup.infrastructure.eventlog.repository import EventLogRepository

logger = logging.getLogger(__name__)


@dataclass
class DigestOutcome:
    user_id: int
    outcome: str  # sent | failed | skipped | error
    reason: str | None = None
    variant: str | None = None
    attempts: int = 0


@dataclass
class DigestTickSummary:
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    outcomes: list[DigestOutcome] = field(default_factory=list)

    def record(self, outcome: DigestOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.outcome == "error":
            self.errors += 1
        else:
            setattr(self, outcome.outcome, getattr(self, outcome.outcome) + 1)

    def to_dict(self) -> dict:
        return {
            "due": self.due,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class DigestScheduler:
    def __init__(
        self,
        db: Session,
        senders_factory=build_senders,
        sleep: Callable[[float], None] = time.sleep,
        max_retries: int | None = None,
        backoff: list[float] | None = None,
        executor=None,
    ):
        settings = get_settings()
        self.db = db
        self.events = EventLogRepository(db)
        self.senders_factory = senders_factory
        self.sleep = sleep
        self.max_retries = settings.DIGEST_MAX_RETRIES if max_retries is None else max_retries
        self.backoff = list(backoff if backoff is not None else settings.DIGEST_RETRY_BACKOFF_SECONDS)
        self.executor = executor
        self.default_timezone = settings.TIMEZONE

    # -- selection -------------------------------------------------------

    def due_users(self, now: datetime) -> list[tuple[User, DigestPreferences]]:
        rows = (
            self.db.query(User, DigestPreferencesModel)
            .join(DigestPreferencesModel, DigestPreferencesModel.user_id == User.id)
            .filter(DigestPreferencesModel.weekly_digest_enabled.is_(True))
            .order_by(User.id)
            .all()
        )
        due = []
        for user, pref_row in rows:
            prefs = digest_to_domain(pref_row)
            if is_digest_moment(now, get_zone(user.timezone, self.default_timezone), prefs):
                due.append((user, prefs))
        return due

    # -- gates -----------------------------------------------------------

    def _is_eligible(self, user: User, now: datetime) -> bool:
        reminders = self.db.query(func.count(Reminder.id)).filter(Reminder.user_id == user.id).scalar() or 0
        return not is_new_user_without_reminders(user.created_at, reminders, now)

    def _already_sent(self, key: str) -> bool:
        record = self.db.query(DigestJobRecord).filter(DigestJobRecord.dedupe_key == key).first()
        return record is not None and record.status == "sent"

    def _has_activity(self, user_id: int, window: WeekWindow) -> bool:
        first = (
            self.db.query(EventLog.id)
            .filter(
                EventLog.user_id == user_id,
                EventLog.occurred_at >= window.start_utc,
                EventLog.occurred_at < window.end_utc,
            )
            .first()
        )
        return first is not None

    # -- delivery --------------------------------------------------------

    def _deliver(self, user: User, prefs: DigestPreferences, content) -> tuple[bool, int, str | None]:
        """
        Send on every channel and retry the whole attempt with backoff.

        An attempt succeeds only when every channel succeeds within it.
        Returns (ok, attempts, last_error).
        """
        senders = self.senders_factory(self.db, prefs.channels)
        if not senders:
            return False, 1, "no delivery channel"
        recipient = Recipient(user.id, user.email)
        last_error = None
        attempts = 0
        for attempt in range(self.max_retries + 1):
            attempts += 1
            results = send_all(senders, recipient, content, self.executor)
            failed = [ch for ch, result in results.items() if not result.success]
            if not failed:
                return True, attempts, None
            last_error = "; ".join(f"{ch}: {results[ch].error or 'unknown error'}" for ch in failed)
            logger.warning("Digest attempt %s for user_id=%s failed: %s", attempts, user.id, last_error)
            if attempt < self.max_retries and self.backoff:
                self.sleep(self.backoff[min(attempt, len(self.backoff) - 1)])
        return False, attempts, last_error

    def _persist(
        self,
        user: User,
        window: WeekWindow,
        key: str,
        variant: DigestVariant,
        stats_data: dict,
        ok: bool,
        attempts: int,
        error: str | None,
        channels: list[str],
        now: datetime,
    ) -> bool:
        """Write the terminal record and its event in one commit. False if another worker already did."""
        record = self.db.query(DigestJobRecord).filter(DigestJobRecord.dedupe_key == key).first()
        if record is not None and record.status == "sent":
            return False
        if record is None:
            record = DigestJobRecord(
                user_id=user.id, week_start=window.week_start, week_end=window.week_end, dedupe_key=key
            )
            self.db.add(record)
        record.variant = variant.value
        record.stats_data = stats_data
        record.status = "sent" if ok else "failed"
        record.retry_count = attempts - 1 if ok else self.max_retries
        record.failure_reason = None if ok else error
        record.sent_at = now if ok else None
        record.updated_at = now
        try:
            if ok:
                self.events.append_event(
                    user_id=user.id,
                    event_type=EventType.DIGEST_SENT,
                    payload={
                        "week_start": window.week_start,
                        "variant": variant.value,
                        "channels": channels,
                        "attempts": attempts,
                    },
                    occurred_at=now,
                    source=EventSource.SCHEDULER,
                )
            else:
                self.events.append_event(
                    user_id=user.id,
                    event_type=EventType.DIGEST_FAILED,
                    payload={"week_start": window.week_start, "retry_count": self.max_retries, "error": error},
                    occurred_at=now,
                    source=EventSource.SCHEDULER,
                )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("Digest %s already persisted by another worker", key)
            return False
        return True

    # -- unit of work ----------------------------------------------------

    def process_user(self, user: User, prefs: DigestPreferences, now: datetime) -> DigestOutcome:
        zone_name = user.timezone or self.default_timezone
        zone = get_zone(zone_name, self.default_timezone)
        window = week_window(now, zone)
        key = dedupe_key(user.id, window.week_start)

        try:
            if not self._is_eligible(user, now):
                return DigestOutcome(user.id, "skipped", "not eligible yet")
        except Exception:
            logger.exception("Digest eligibility check failed for user_id=%s", user.id)
            self.db.rollback()
            return DigestOutcome(user.id, "skipped", "eligibility check failed")

        try:
            if self._already_sent(key):
                return DigestOutcome(user.id, "skipped", "already sent")
        except Exception:
            logger.exception("Digest idempotency check failed for user_id=%s", user.id)
            self.db.rollback()
            return DigestOutcome(user.id, "skipped", "idempotency check failed")

        if prefs.only_when_active and not self._has_activity(user.id, window):
            return DigestOutcome(user.id, "skipped", "no activity")

        try:
            stats = compute_weekly_stats(self.db, user.id, window, zone_name, now)
        except Exception:
            logger.exception("Digest stats failed for user_id=%s", user.id)
            self.db.rollback()
            return DigestOutcome(user.id, "error", "stats computation failed")

        variant = select_variant(stats, prefs.digest_detail_level)
        content = build_digest_content(variant, stats)
        ok, attempts, error = self._deliver(user, prefs, content)

        persisted = self._persist(
            user, window, key, variant, stats.to_dict(), ok, attempts, error, prefs.channels, now
        )
        if not persisted:
            return DigestOutcome(user.id, "skipped", "already sent", variant.value, attempts)
        if ok:
            logger.info("Digest sent to user_id=%s (%s, %s attempts)", user.id, variant.value, attempts)
            return DigestOutcome(user.id, "sent", None, variant.value, attempts)
        logger.error("Digest failed for user_id=%s after %s attempts: %s", user.id, attempts, error)
        return DigestOutcome(user.id, "failed", error, variant.value, attempts)

    def run_tick(self, now: datetime | None = None) -> DigestTickSummary:
        now = as_utc(now or datetime.now(timezone.utc))
        summary = DigestTickSummary()
        try:
            due = self.due_users(now)
        except Exception:
            logger.exception("Digest due-user query failed")
            self.db.rollback()
            summary.errors += 1
            return summary

        summary.due = len(due)
        for user, prefs in due:
            try:
                summary.record(self.process_user(user, prefs, now))
            except Exception:
                logger.exception("Digest processing failed for user_id=%s", user.id)
                self.db.rollback()
                summary.record(DigestOutcome(user.id, "error", "unexpected error"))

        if summary.due:
            logger.info("Digest tick: %s", summary.to_dict())
        return summary
