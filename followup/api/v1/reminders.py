"""
Reminder endpoints: create, smart snooze suggestions, snooze, complete.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from followup.api.deps import current_user_id, get_db
from followup.application.preferences import PreferencesService, get_preferences_cache
from followup.application.prompt_engine import PromptEngine
from followup.application.reminder_delivery import ReminderDeliveryService, ReminderNotFoundError
from followup.application.snooze_service import SnoozeService, SnoozeValidationError
from followup.domain.preferences import ReminderCategory

router = APIRouter(prefix="/api/reminders", tags=["reminders"])


class CreateReminderRequest(BaseModel):
    message: str = Field(min_length=1)
    scheduled_at: datetime
    contact_id: int | None = None
    category: ReminderCategory | None = None


class SnoozeRequest(BaseModel):
    snooze_type: str | None = None
    until: datetime | None = None


class CompleteRequest(BaseModel):
    via: str = "app"


def _delivery_service(db: Session) -> ReminderDeliveryService:
    return ReminderDeliveryService(
        db,
        preferences=PreferencesService(db, get_preferences_cache()),
        prompt_engine=PromptEngine(db),
    )


@router.post("")
def create_reminder(body: CreateReminderRequest, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    reminder = _delivery_service(db).create_reminder(
        user_id=user_id,
        message=body.message,
        scheduled_at=body.scheduled_at,
        contact_id=body.contact_id,
        category=body.category.value if body.category else None,
    )
    return {
        "id": reminder.id,
        "status": reminder.status,
        "category": reminder.category,
        "scheduled_at": body.scheduled_at.isoformat(),
    }


@router.get("/{reminder_id}/snooze-suggestions")
def snooze_suggestions(
    reminder_id: int,
    context_type: str | None = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = SnoozeService(db, PreferencesService(db, get_preferences_cache()))
    try:
        candidates = service.suggest(reminder_id, user_id, context_type=context_type)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"reminder_id": reminder_id, "suggestions": [c.to_dict() for c in candidates]}


@router.post("/{reminder_id}/snooze")
def snooze(
    reminder_id: int,
    body: SnoozeRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = SnoozeService(db, PreferencesService(db, get_preferences_cache()))
    try:
        replacement = service.snooze_reminder(reminder_id, user_id, snooze_type=body.snooze_type, until=body.until)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SnoozeValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "success": True,
        "reminder_id": reminder_id,
        "new_reminder_id": replacement.id,
        "scheduled_at": replacement.scheduled_at.isoformat(),
    }


@router.post("/{reminder_id}/complete")
def complete(
    reminder_id: int,
    body: CompleteRequest | None = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        completed = _delivery_service(db).complete_reminder(
            reminder_id, user_id, via=body.via if body else "app"
        )
    except ReminderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "reminder_id": reminder_id, "already_completed": not completed}
