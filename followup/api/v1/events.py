"""
Event ingestion: email tracking and client-side events enter the log here.
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from followup.api.deps import current_user_id, get_db
from followup.application.prompt_engine import PromptEngine
from followup.domain.events import (
    INGESTIBLE_EVENT_TYPES,
    EventPayloadValidationError,
    EventSource,
    parse_event_type,
)
from followup.domain.working_hours import as_utc
from followup.infrastructure.eventlog.repository import EventLogRepository

router = APIRouter(prefix="/api/events", tags=["events"])


class IngestEventRequest(BaseModel):
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    reminder_id: int | None = None
    contact_id: int | None = None
    occurred_at: datetime | None = None
    idempotency_key: str | None = None
    source: str = EventSource.EXTERNAL.value


@router.post("")
def ingest_event(body: IngestEventRequest, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    """Validate, append and offer the event to the prompt engine."""
    try:
        event_type = parse_event_type(body.event_type)
        if event_type not in INGESTIBLE_EVENT_TYPES:
            raise EventPayloadValidationError(f"Event type {event_type.value} cannot be submitted")
        source = EventSource(body.source)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    repo = EventLogRepository(db)
    kwargs = dict(
        user_id=user_id,
        event_type=event_type,
        payload=body.payload,
        occurred_at=as_utc(body.occurred_at) if body.occurred_at else None,
        reminder_id=body.reminder_id,
        contact_id=body.contact_id,
        source=source,
    )
    try:
        if body.idempotency_key:
            event_id = repo.append_event_once(body.idempotency_key, **kwargs)
            if event_id is None:
                existing = repo.find_by_idempotency_key(body.idempotency_key)
                return {"success": True, "event_id": existing.id if existing else None, "duplicate": True}
        else:
            event_id = repo.append_event(**kwargs)
            db.commit()
    except EventPayloadValidationError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(e))

    prompt = PromptEngine(db).offer_event(event_id)
    return {
        "success": True,
        "event_id": event_id,
        "duplicate": False,
        "prompt_id": prompt.id if prompt else None,
    }
