"""
Cron tick endpoints for external schedulers. Safe to call repeatedly.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from followup.api.deps import get_db, require_cron_secret
from followup.application.digest_scheduler import DigestScheduler
from followup.application.maintenance import run_daily_maintenance
from followup.application.preferences import PreferencesService, get_preferences_cache
from followup.application.prompt_engine import PromptEngine
from followup.application.reminder_delivery import ReminderDeliveryService

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/reminders")
def run_reminders(db: Session = Depends(get_db)):
    service = ReminderDeliveryService(
        db,
        preferences=PreferencesService(db, get_preferences_cache()),
        prompt_engine=PromptEngine(db),
    )
    summary = service.process_due_reminders()
    return {"success": True, **summary.to_dict()}


@router.post("/digests")
def run_digests(db: Session = Depends(get_db)):
    summary = DigestScheduler(db).run_tick()
    return {"success": True, **summary.to_dict()}


@router.post("/daily")
def run_daily(db: Session = Depends(get_db)):
    summary = run_daily_maintenance(db)
    return {"success": True, **summary.to_dict()}
