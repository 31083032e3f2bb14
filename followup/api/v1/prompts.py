"""
Notification prompt endpoints (client polling + state transitions).

Older clients still send pending / shown / action_taken; those spellings are
translated here and never reach the engine or the database.
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from followup.api.deps import current_user_id, get_db
from followup.application.prompt_engine import PromptEngine, PromptNotFoundError
from followup.domain.trigger_rules import PromptStatus, PromptTransitionError
from followup.infrastructure.db.models import NotificationPromptModel

router = APIRouter(prefix="/api/prompts", tags=["prompts"])

LEGACY_STATUS_ALIASES = {
    "pending": PromptStatus.QUEUED,
    "shown": PromptStatus.DISPLAYED,
    "action_taken": PromptStatus.ACTED,
}


def parse_status(value: str) -> PromptStatus:
    if value in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[value]
    try:
        return PromptStatus(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown prompt status: {value}") from None


class ActionRequest(BaseModel):
    action: str | None = None


class StatusRequest(BaseModel):
    status: str
    action: str | None = None


def _serialize(prompt: NotificationPromptModel) -> dict:
    return {
        "id": prompt.id,
        "title": prompt.title,
        "message": prompt.message,
        "priority": prompt.priority,
        "status": prompt.status,
        "reminder_id": prompt.reminder_id,
        "contact_id": prompt.contact_id,
        "payload": prompt.payload,
        "queued_at": prompt.queued_at.isoformat() if prompt.queued_at else None,
        "expires_at": prompt.expires_at.isoformat() if prompt.expires_at else None,
    }


def _transition(db: Session, prompt_id: int, user_id: int, target: PromptStatus, action: str | None = None) -> dict:
    try:
        prompt = PromptEngine(db).transition(prompt_id, user_id, target, action=action)
    except PromptNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PromptTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "prompt": _serialize(prompt)}


@router.get("/next")
def next_prompt(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    prompt = PromptEngine(db).next_prompt(user_id)
    return {"prompt": _serialize(prompt) if prompt else None}


@router.post("/{prompt_id}/displayed")
def mark_displayed(prompt_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return _transition(db, prompt_id, user_id, PromptStatus.DISPLAYED)


@router.post("/{prompt_id}/dismiss")
def dismiss(prompt_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return _transition(db, prompt_id, user_id, PromptStatus.DISMISSED)


@router.post("/{prompt_id}/action")
def act(
    prompt_id: int,
    body: ActionRequest | None = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return _transition(db, prompt_id, user_id, PromptStatus.ACTED, action=body.action if body else None)


@router.post("/{prompt_id}/status")
def set_status(
    prompt_id: int,
    body: StatusRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    """Generic transition; accepts the legacy status spellings."""
    target = parse_status(body.status)
    if target == PromptStatus.QUEUED:
        raise HTTPException(status_code=409, detail="Prompts cannot be moved back to queued")
    return _transition(db, prompt_id, user_id, target, action=body.action)
