"""
Background scheduler: runs the periodic ticks inside the FastAPI process.

Jobs:
  - Reminder dispatch (every 2 minutes)
  - Weekly digest tick (every 15 minutes; each user's local moment is checked per tick)
  - Daily maintenance: inactivity detection + prompt expiry (06:00 UTC)

The same ticks are exposed as POST /api/cron/* for external schedulers.
"""
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from followup.domain.digest import DIGEST_TIME_STEP_MINUTES

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(daemon=True, timezone="UTC")


def digest_trigger() -> CronTrigger:
    """Fires on every quarter hour, so any allowed digest_time is hit exactly."""
    return CronTrigger(minute=f"*/{DIGEST_TIME_STEP_MINUTES}", timezone="UTC")


def _run_reminders():
    from followup.infrastructure.db.session import get_session_factory
    from followup.application.preferences import PreferencesService, get_preferences_cache
    from followup.application.prompt_engine import PromptEngine
    from followup.application.reminder_delivery import ReminderDeliveryService

    Session = get_session_factory()
    db = Session()
    try:
        ReminderDeliveryService(
            db,
            preferences=PreferencesService(db, get_preferences_cache()),
            prompt_engine=PromptEngine(db),
        ).process_due_reminders()
    except Exception:
        logger.exception("Reminder dispatch job failed")
    finally:
        db.close()


def _run_digests():
    from followup.infrastructure.db.session import get_session_factory
    from followup.application.digest_scheduler import DigestScheduler

    Session = get_session_factory()
    db = Session()
    try:
        DigestScheduler(db).run_tick()
    except Exception:
        logger.exception("Digest tick failed")
    finally:
        db.close()


def _run_daily_maintenance():
    from followup.infrastructure.db.session import get_session_factory
    from followup.application.maintenance import run_daily_maintenance

    Session = get_session_factory()
    db = Session()
    try:
        run_daily_maintenance(db)
    except Exception:
        logger.exception("Daily maintenance job failed")
    finally:
        db.close()


def start_scheduler():
    """Start the background scheduler with all periodic jobs."""
    # Reminder dispatch: every 2 minutes
    scheduler.add_job(
        _run_reminders,
        "interval",
        minutes=2,
        id="reminders",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # Digest tick: every quarter hour
    scheduler.add_job(
        _run_digests,
        digest_trigger(),
        id="digests",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # Inactivity + prompt expiry: 06:00 UTC
    scheduler.add_job(
        _run_daily_maintenance,
        CronTrigger(hour=6, minute=0),
        id="daily_maintenance",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started: reminders (every 2 min), digests (every 15 min), daily_maintenance (06:00 UTC)")


def shutdown_scheduler():
    """Gracefully stop the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
