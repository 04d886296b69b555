"""FastAPI application for StageCall."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import notifications
from .auth import SCHEDULE_MANAGE, has_permission, resolve_member
from .config import settings
from .crud import blocked_member_ids, get_member
from .database import SessionLocal, get_session
from .deadlines import deadline_catalogue
from .lifecycle import RehearsalFields, RehearsalLifecycle, get_lifecycle
from .outcomes import Outcome
from .realtime import hub
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .utils import parse_date

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")

WEBSOCKET_HEARTBEAT_SECONDS = 30.0


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("stagecall")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    hub.bind_loop(asyncio.get_running_loop())
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()
        hub.bind_loop(None)


app = FastAPI(title="StageCall", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def _member_id_for_token(token: str | None) -> str | None:
    if not token:
        return None
    with get_session() as session:
        member = resolve_member(session, token)
        return member.id if member else None


def current_member_id(request: Request) -> str | None:
    """Resolve the bearer token to a member id; ``None`` when anonymous."""
    return _member_id_for_token(_get_bearer_token(request))


def _outcome_response(outcome: Outcome, *, success_status: int = 200) -> JSONResponse:
    if not outcome.ok:
        return JSONResponse(outcome.as_error_payload(), status_code=outcome.status_code)
    body = dict(outcome.data)
    body.setdefault("id", outcome.rehearsal_id)
    body["warnings"] = list(outcome.warnings)
    return JSONResponse(body, status_code=success_status)


def _error_response(kind: str, message: str | None = None) -> JSONResponse:
    return _outcome_response(Outcome.failure(kind, message))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    lower = raw.lower()
    if "database is locked" in lower:
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


class RehearsalPayload(BaseModel):
    title: str | None = None
    date: str | None = Field(None, description="Local date, YYYY-MM-DD")
    time: str | None = Field(None, description="Local start time, HH:MM")
    end_time: str | None = Field(None, description="Optional local end time, HH:MM")
    location: str | None = None
    description: str | None = None
    invitees: list[str] | None = None
    deadline_option: str | None = Field(
        None, description="One of none, 12h, 24h, 48h, 72h, 1w, 2w"
    )

    def to_fields(self) -> RehearsalFields:
        return RehearsalFields.from_mapping(self.model_dump(exclude_unset=True))


class RespondPayload(BaseModel):
    recipient_id: str
    response: str = Field(..., description="yes, no or emergency")
    reason: str | None = None


@app.get("/api/v1/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/v1/rehearsals/drafts")
def api_create_draft(
    payload: RehearsalPayload | None = None,
    actor_id: str | None = Depends(current_member_id),
    lifecycle: RehearsalLifecycle = Depends(get_lifecycle),
):
    fields = payload.to_fields() if payload else RehearsalFields()
    return _outcome_response(lifecycle.create_draft(actor_id, fields), success_status=201)


@app.post("/api/v1/rehearsals")
def api_create_rehearsal(
    payload: RehearsalPayload,
    actor_id: str | None = Depends(current_member_id),
    lifecycle: RehearsalLifecycle = Depends(get_lifecycle),
):
    return _outcome_response(
        lifecycle.create_planned(actor_id, payload.to_fields()), success_status=201
    )


@app.get("/api/v1/rehearsals/{rehearsal_id}")
def api_get_rehearsal(
    rehearsal_id: str,
    actor_id: str | None = Depends(current_member_id),
    lifecycle: RehearsalLifecycle = Depends(get_lifecycle),
):
    return _outcome_response(lifecycle.view(actor_id, rehearsal_id))


@app.patch("/api/v1/rehearsals/{rehearsal_id}")
def api_update_rehearsal(
    rehearsal_id: str,
    payload: RehearsalPayload,
    actor_id: str | None = Depends(current_member_id),
    lifecycle: RehearsalLifecycle = Depends(get_lifecycle),
):
    return _outcome_response(
        lifecycle.update(actor_id, rehearsal_id, payload.to_fields())
    )


@app.post("/api/v1/rehearsals/{rehearsal_id}/publish")
def api_publish_rehearsal(
    rehearsal_id: str,
    payload: RehearsalPayload,
    actor_id: str | None = Depends(current_member_id),
    lifecycle: RehearsalLifecycle = Depends(get_lifecycle),
):
    return _outcome_response(
        lifecycle.publish(actor_id, rehearsal_id, payload.to_fields())
    )


@app.post("/api/v1/rehearsals/{rehearsal_id}/discard")
def api_discard_draft(
    rehearsal_id: str,
    actor_id: str | None = Depends(current_member_id),
    lifecycle: RehearsalLifecycle = Depends(get_lifecycle),
):
    return _outcome_response(lifecycle.discard_draft(actor_id, rehearsal_id))


@app.delete("/api/v1/rehearsals/{rehearsal_id}")
def api_delete_rehearsal(
    rehearsal_id: str,
    actor_id: str | None = Depends(current_member_id),
    lifecycle: RehearsalLifecycle = Depends(get_lifecycle),
):
    return _outcome_response(lifecycle.delete(actor_id, rehearsal_id))


@app.get("/api/v1/notifications")
def api_list_notifications(
    limit: int | None = Query(None, ge=1, le=200),
    actor_id: str | None = Depends(current_member_id),
    db: Session = Depends(get_db),
):
    if actor_id is None:
        return _error_response("Unauthorized")
    return {"notifications": notifications.list_for_member(db, actor_id, limit=limit)}


@app.post("/api/v1/notifications/respond")
def api_respond_to_notification(
    payload: RespondPayload,
    actor_id: str | None = Depends(current_member_id),
    lifecycle: RehearsalLifecycle = Depends(get_lifecycle),
):
    outcome = lifecycle.respond_to_notification(
        actor_id,
        payload.recipient_id,
        response=payload.response,
        reason=payload.reason,
    )
    return _outcome_response(outcome)


@app.get("/api/v1/availability")
def api_availability(
    date: str = Query(..., description="Local date, YYYY-MM-DD"),
    actor_id: str | None = Depends(current_member_id),
    db: Session = Depends(get_db),
):
    """Members who blocked ``date``; an advisory signal for planners."""
    if actor_id is None:
        return _error_response("Unauthorized")
    if not has_permission(get_member(db, actor_id), SCHEDULE_MANAGE):
        return _error_response("Forbidden")
    try:
        day = parse_date(date)
    except ValueError as exc:
        return _error_response("ValidationFailed", str(exc))
    return {
        "date": day.isoformat(),
        "blocked_member_ids": sorted(blocked_member_ids(db, day)),
    }


@app.get("/api/v1/deadline-options")
def api_deadline_options():
    return {
        "options": deadline_catalogue(),
        "default": settings.default_deadline_option,
    }


@app.websocket("/ws/members/{token}")
async def member_feed_websocket(websocket: WebSocket, token: str):
    """Realtime feed of rehearsal events addressed to one member.

    On connect the member's recent history is replayed as a single
    ``{"type": "history", "events": [...]}`` message; afterwards every
    published event is forwarded as it happens. Clients may send ``ping``
    and receive ``pong``; idle connections get a heartbeat.
    """
    member_id = await run_in_threadpool(_member_id_for_token, token)
    if member_id is None:
        await websocket.close(code=1008)
        return

    await hub.connect(member_id, websocket)
    try:
        await websocket.send_json({"type": "history", "events": hub.history(member_id)})
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(), timeout=WEBSOCKET_HEARTBEAT_SECONDS
                )
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "heartbeat"})
                except Exception:
                    break
    except WebSocketDisconnect:
        logger.info("Realtime client disconnected for member %s", member_id)
    finally:
        hub.disconnect(member_id, websocket)
