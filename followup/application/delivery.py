"""
Delivery collaborators: email, web push, in-app inbox.

Every sender exposes send(recipient, content) -> SendResult and never raises
for provider errors; the pipeline only looks at success / error. Senders that
write through the caller's SQLAlchemy session (push cleanup, in-app rows) are
flagged uses_session and are run on the calling thread by send_all().
"""
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests
from pywebpush import webpush, WebPushException
from sqlalchemy.orm import Session

from followup.config import get_settings
from followup.infrastructure.db.models import InAppNotification, PushSubscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class Recipient:
    user_id: int
    email: str | None = None


@dataclass(frozen=True)
class MessageContent:
    kind: str  # reminder | digest
    subject: str
    text: str
    html: str | None = None
    url: str | None = None
    reminder_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)


class Sender(Protocol):
    uses_session: bool

    def send(self, recipient: Recipient, content: MessageContent) -> SendResult: ...


class EmailSender:
    """HTTP email API (Resend-compatible JSON body, bearer auth)."""
    uses_session = False

    def __init__(self, http: requests.Session | None = None):
        self.http = http or requests.Session()

    def send(self, recipient: Recipient, content: MessageContent) -> SendResult:
        cfg = get_settings()
        if not cfg.EMAIL_API_KEY:
            logger.warning("Email API key not configured, skipping email to user_id=%s", recipient.user_id)
            return SendResult(False, "email not configured")
        if not recipient.email:
            return SendResult(False, "recipient has no email address")
        body = {
            "from": cfg.EMAIL_FROM,
            "to": [recipient.email],
            "subject": content.subject,
            "text": content.text,
        }
        if content.html:
            body["html"] = content.html
        try:
            resp = self.http.post(
                cfg.EMAIL_API_URL,
                json=body,
                headers={"Authorization": f"Bearer {cfg.EMAIL_API_KEY}"},
                timeout=10,
            )
        except requests.RequestException as exc:
            logger.exception("Email send failed for user_id=%s", recipient.user_id)
            return SendResult(False, str(exc))
        if 200 <= resp.status_code < 300:
            return SendResult(True)
        return SendResult(False, f"email API returned HTTP {resp.status_code}")


def _vapid_private_key(raw_key: str) -> str:
    # .env may store PEM with literal \n or real newlines depending on quoting
    if "\\n" in raw_key:
        raw_key = raw_key.replace("\\n", "\n")
    if "BEGIN" in raw_key:
        lines = [ln.strip() for ln in raw_key.strip().splitlines()
                 if ln.strip() and not ln.strip().startswith("-----")]
        raw_key = "".join(lines)
    return raw_key


class PushSender:
    """Web Push to every subscription of the user; stale endpoints are removed."""
    uses_session = True

    def __init__(self, db: Session):
        self.db = db

    def _push_one(self, subscription: PushSubscription, payload: dict) -> bool:
        cfg = get_settings()
        try:
            webpush(
                subscription_info={
                    "endpoint": subscription.endpoint,
                    "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
                },
                data=json.dumps(payload, ensure_ascii=False),
                vapid_private_key=_vapid_private_key(cfg.VAPID_PRIVATE_KEY),
                vapid_claims={"sub": cfg.VAPID_MAILTO},
            )
            return True
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else 0
            if status_code in (404, 410):
                logger.info("Push subscription gone (HTTP %d), removing: %s", status_code, subscription.endpoint[:60])
                self.db.query(PushSubscription).filter(PushSubscription.id == subscription.id).delete()
                self.db.flush()
            else:
                logger.error("WebPush error (HTTP %d): %s", status_code, e)
            return False

    def send(self, recipient: Recipient, content: MessageContent) -> SendResult:
        cfg = get_settings()
        if not cfg.VAPID_PRIVATE_KEY or not cfg.VAPID_PUBLIC_KEY:
            logger.warning("VAPID keys not configured, skipping push")
            return SendResult(False, "push not configured")
        subs = self.db.query(PushSubscription).filter(PushSubscription.user_id == recipient.user_id).all()
        if not subs:
            return SendResult(False, "no push subscriptions")
        payload = {"title": content.subject, "body": content.text, "url": content.url or "/"}
        sent = sum(1 for sub in subs if self._push_one(sub, payload))
        if sent == 0:
            return SendResult(False, "all push deliveries failed")
        return SendResult(True)


class InAppWriter:
    """Writes an inbox row in the caller's session (flushed, committed by the caller)."""
    uses_session = True

    def __init__(self, db: Session):
        self.db = db

    def send(self, recipient: Recipient, content: MessageContent) -> SendResult:
        self.db.add(InAppNotification(
            user_id=recipient.user_id,
            reminder_id=content.reminder_id,
            kind=content.kind,
            title=content.subject,
            message=content.text,
            data=content.data,
        ))
        self.db.flush()
        return SendResult(True)


def build_senders(db: Session, channels: list[str] | tuple[str, ...]) -> dict[str, Sender]:
    senders: dict[str, Sender] = {}
    for channel in channels:
        if channel == "email":
            senders[channel] = EmailSender()
        elif channel == "push":
            senders[channel] = PushSender(db)
        elif channel == "in_app":
            senders[channel] = InAppWriter(db)
        else:
            logger.warning("Unknown delivery channel %r ignored", channel)
    return senders


def _safe_send(channel: str, sender: Sender, recipient: Recipient, content: MessageContent) -> SendResult:
    try:
        return sender.send(recipient, content)
    except Exception as exc:
        logger.exception("Channel %s raised for user_id=%s", channel, recipient.user_id)
        return SendResult(False, str(exc) or exc.__class__.__name__)


def send_all(
    senders: dict[str, Sender],
    recipient: Recipient,
    content: MessageContent,
    executor: ThreadPoolExecutor | None = None,
) -> dict[str, SendResult]:
    """
    Issue every channel send, wait for all of them, return per-channel results.

    Network-only senders run concurrently on the executor; session-bound
    senders run inline because a Session must stay on one thread.
    """
    results: dict[str, SendResult] = {}
    pooled = {ch: s for ch, s in senders.items() if not getattr(s, "uses_session", False)}
    inline = {ch: s for ch, s in senders.items() if ch not in pooled}

    # a lone network send runs inline; anything else overlaps on a pool
    own_executor = executor is None and bool(pooled) and (len(pooled) > 1 or bool(inline))
    pool = ThreadPoolExecutor(max_workers=len(pooled)) if own_executor else executor
    try:
        if pool is not None:
            futures = {ch: pool.submit(_safe_send, ch, s, recipient, content) for ch, s in pooled.items()}
        else:
            futures = {}
            for ch, s in pooled.items():
                results[ch] = _safe_send(ch, s, recipient, content)
        for ch, s in inline.items():
            results[ch] = _safe_send(ch, s, recipient, content)
        for ch, fut in futures.items():
            results[ch] = fut.result()
    finally:
        if own_executor:
            pool.shutdown(wait=True)
    return results
