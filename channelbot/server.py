"""FastAPI admin API for inspecting and ending sessions."""

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .models import Session

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        server = (config or {}).get("server", {})
        self.slow_threshold = server.get("slow_request_threshold_seconds", 1.0)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )

        return response


class SessionResponse(BaseModel):
    """Response containing session info."""
    channel_id: str
    session_id: str
    topic_name: str
    project_path: str
    created_at: str
    message_count: int
    last_alert_percent: int


class UsageResponse(BaseModel):
    """Token usage of a session."""
    channel_id: str
    session_id: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost_usd: float
    token_limit: int
    percent: Optional[int] = None


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(
        channel_id=session.channel_id,
        session_id=session.session_id,
        topic_name=session.topic_name,
        project_path=session.project_path,
        created_at=session.created_at.isoformat(),
        message_count=session.message_count,
        last_alert_percent=session.last_alert_percent,
    )


def create_app(
    store=None,
    usage_tracker=None,
    orchestrator=None,
    config: Optional[dict] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        store: SessionStore instance
        usage_tracker: UsageTracker instance
        orchestrator: SessionOrchestrator, told to forget deleted sessions
        config: Configuration dictionary

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Channel Agent Bot",
        description="Inspect and manage chat-bound agent sessions",
        version="0.1.0",
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.store = store
    app.state.usage_tracker = usage_tracker
    app.state.orchestrator = orchestrator

    def _require_store():
        if not app.state.store:
            raise HTTPException(status_code=503, detail="Session store not configured")
        return app.state.store

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "channel-agent-bot"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/sessions")
    async def list_sessions():
        """List all active sessions."""
        sessions = _require_store().list_sessions()
        return {"sessions": [_session_response(s) for s in sessions]}

    @app.get("/sessions/{channel_id}", response_model=SessionResponse)
    async def get_session(channel_id: str):
        """Get session details."""
        session = _require_store().get_session(channel_id)
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        return _session_response(session)

    @app.get("/sessions/{channel_id}/usage", response_model=UsageResponse)
    async def get_usage(channel_id: str):
        """Token usage summed from the session transcript."""
        session = _require_store().get_session(channel_id)
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        if not app.state.usage_tracker:
            raise HTTPException(status_code=503, detail="Usage tracker not configured")

        tracker = app.state.usage_tracker
        usage = await tracker.usage(session.session_id, session.project_path)
        return UsageResponse(
            channel_id=session.channel_id,
            session_id=session.session_id,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            cost_usd=usage.cost_usd,
            token_limit=tracker.token_limit,
            percent=(100 * usage.total_tokens) // tracker.token_limit if tracker.enabled else None,
        )

    @app.delete("/sessions/{channel_id}")
    async def delete_session(channel_id: str):
        """End a session, as /stop would (the pinned status message is left in place)."""
        removed = _require_store().remove_session(channel_id)
        if not removed:
            raise HTTPException(status_code=404, detail="Session not found")
        if app.state.orchestrator:
            app.state.orchestrator.forget(channel_id)
        logger.info(f"Session {removed.short_id} in {channel_id} ended via API")
        return {"status": "removed", "session_id": removed.session_id}

    return app
