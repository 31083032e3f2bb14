"""
FastAPI application factory
"""
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import Response

from followup.config import get_settings
from followup.infrastructure.db.session import check_db_connection
from followup.api.v1 import cron, events, preferences, prompts, push, reminders
from followup.application.scheduler import shutdown_scheduler, start_scheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every unhandled exception with its traceback, including sync routes."""

    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error("Unhandled error on %s %s\n%s", request.method, request.url.path, traceback.format_exc())
            return Response(content="Internal Server Error", status_code=500)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.SCHEDULER_ENABLED:
        start_scheduler()
    try:
        yield
    finally:
        shutdown_scheduler()


def create_app() -> FastAPI:
    """
    Application factory: builds and configures the FastAPI app
    """
    settings = get_settings()

    app = FastAPI(
        title="FollowUp Timer",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    app.add_middleware(ErrorLoggingMiddleware)
    app.add_middleware(SessionMiddleware, secret_key=settings.SECRET_KEY)

    app.include_router(reminders.router)
    app.include_router(prompts.router)
    app.include_router(events.router)
    app.include_router(preferences.router)
    app.include_router(push.router)
    app.include_router(cron.router)

    # Health checks
    @app.get("/health", response_class=PlainTextResponse, tags=["system"])
    def health():
        """Health check endpoint"""
        return "ok"

    @app.get("/ready", response_class=PlainTextResponse, tags=["system"])
    def ready():
        """Readiness check endpoint (database reachable)"""
        check_db_connection()
        return "ok"

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "followup.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
