"""
Scheduling and digest preference endpoints.
"""
from dataclasses import asdict
from datetime import time
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from followup.api.deps import current_user_id, get_db
from followup.application.preferences import PreferencesService, get_preferences_cache
from followup.domain.preferences import DigestPreferences, SchedulingPreferences

router = APIRouter(prefix="/api/preferences", tags=["preferences"])

_NULLABLE = {"quiet_hours_start", "quiet_hours_end"}


class DndOverrideRules(BaseModel):
    emergency_contacts: list[int] = Field(default_factory=list)
    override_keywords: list[str] = Field(default_factory=list)


class SchedulingPreferencesUpdate(BaseModel):
    working_hours_start: time | None = None
    working_hours_end: time | None = None
    working_days: list[int] | None = None
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    max_reminders_per_day: int | None = Field(default=None, ge=0)
    allow_weekends: bool | None = None
    cooldown_minutes: int | None = Field(default=None, ge=0)
    snooze_options: dict[str, bool] | None = None
    follow_up_cadence: str | None = None
    smart_suggestions_enabled: bool | None = None
    category_notifications: dict[str, bool] | None = None
    notification_channels: list[str] | None = None
    dnd_enabled: bool | None = None
    dnd_override_rules: DndOverrideRules | None = None


class DigestPreferencesUpdate(BaseModel):
    weekly_digest_enabled: bool | None = None
    digest_day: int | None = Field(default=None, ge=0, le=6)
    digest_time: time | None = None
    digest_channel: Literal["email", "in_app", "both"] | None = None
    digest_detail_level: Literal["light", "standard"] | None = None
    only_when_active: bool | None = None


def _hhmm(value: time | None) -> str | None:
    return value.strftime("%H:%M") if value else None


def _scheduling_dict(prefs: SchedulingPreferences) -> dict:
    data = asdict(prefs)
    for key in ("working_hours_start", "working_hours_end", "quiet_hours_start", "quiet_hours_end"):
        data[key] = _hhmm(data[key])
    data["working_days"] = list(prefs.working_days)
    data["notification_channels"] = list(prefs.notification_channels)
    data["dnd_override_rules"] = {
        "emergency_contacts": list(data.pop("dnd_emergency_contacts")),
        "override_keywords": list(data.pop("dnd_override_keywords")),
    }
    return data


def _digest_dict(prefs: DigestPreferences) -> dict:
    data = asdict(prefs)
    data["digest_time"] = _hhmm(prefs.digest_time)
    return data


def _service(db: Session) -> PreferencesService:
    return PreferencesService(db, get_preferences_cache())


@router.get("/scheduling")
def get_scheduling(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    prefs = _service(db).get(user_id)
    db.commit()
    return _scheduling_dict(prefs)


@router.put("/scheduling")
def update_scheduling(
    body: SchedulingPreferencesUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    changes = {
        k: v for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k in _NULLABLE
    }
    try:
        prefs = _service(db).update(user_id, **changes)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    return _scheduling_dict(prefs)


@router.get("/digest")
def get_digest(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    prefs = _service(db).get_digest_preferences(user_id)
    db.commit()
    return _digest_dict(prefs)


@router.put("/digest")
def update_digest(
    body: DigestPreferencesUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    changes = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    try:
        prefs = _service(db).update_digest_preferences(user_id, **changes)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    return _digest_dict(prefs)
