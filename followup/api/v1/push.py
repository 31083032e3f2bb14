"""
Web Push subscription endpoints (used by the push delivery channel).
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from followup.api.deps import current_user_id, get_db
from followup.application.delivery import MessageContent, PushSender, Recipient
from followup.config import get_settings
from followup.infrastructure.db.models import PushSubscription

router = APIRouter(prefix="/api/push", tags=["push"])


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class SubscribeRequest(BaseModel):
    endpoint: str
    keys: PushKeys


@router.get("/public-key")
def public_key():
    return {"public_key": get_settings().VAPID_PUBLIC_KEY}


@router.post("/subscribe")
def subscribe(body: SubscribeRequest, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    existing = db.query(PushSubscription).filter(
        PushSubscription.endpoint == body.endpoint
    ).first()

    if existing:
        existing.user_id = user_id
        existing.p256dh = body.keys.p256dh
        existing.auth = body.keys.auth
    else:
        db.add(PushSubscription(
            user_id=user_id,
            endpoint=body.endpoint,
            p256dh=body.keys.p256dh,
            auth=body.keys.auth,
        ))

    db.commit()
    return {"success": True}


@router.delete("/unsubscribe")
def unsubscribe(body: SubscribeRequest, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    deleted = db.query(PushSubscription).filter(
        PushSubscription.endpoint == body.endpoint,
        PushSubscription.user_id == user_id,
    ).delete()
    db.commit()
    return {"success": True, "deleted": deleted}


@router.post("/test")
def test_push(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    """Send a test push to verify the setup."""
    result = PushSender(db).send(
        Recipient(user_id),
        MessageContent(kind="reminder", subject="FollowUp Timer", text="Push notifications are working", url="/"),
    )
    db.commit()
    return {"success": result.success, "error": result.error}
