"""
FastAPI dependencies (DB session, session user, cron secret)
"""
import hmac

from fastapi import Header, HTTPException, Request, status

from followup.config import get_settings
from followup.infrastructure.db.session import get_db as _get_db


# Re-export get_db for routers
get_db = _get_db


def current_user_id(request: Request) -> int:
    """
    User id from the signed session cookie.

    Raises:
        HTTPException(401): not logged in
    """
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return int(user_id)


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """
    Guard for /api/cron/*: "Authorization: Bearer <CRON_SECRET>".

    An empty CRON_SECRET leaves the endpoints open (local development).
    """
    secret = get_settings().CRON_SECRET
    if not secret:
        return
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
