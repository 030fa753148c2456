"""FastAPI application for the clinic waiting list / whiteboard.

The app exposes the waiting list actions (check in, status and priority
changes, removal) and the whiteboard projection that front-desk and clinical
staff poll to keep their boards current.  Every request is scoped to one
clinic, taken from the ``X-Clinic-Id`` header or a ``clinic_id`` query
parameter.

Configuration comes from environment variables; see ``services`` for the
database settings and ``events`` for Redis.
"""

from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any, Dict, Iterator, List, Optional

import pydantic
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlmodel import Session

import services
from errors import QueueError, ValidationError
from events import BoardEvents
from schemas import (
    ActionResult,
    EntryCreate,
    EntryEventOut,
    EntryOut,
    PatientSearchResult,
    PhotoUpdate,
    PriorityUpdate,
    StatusUpdate,
    WhiteboardFilters,
    WhiteboardResponse,
    WhiteboardStats,
)
from status_machine import normalize_status
from whiteboard import build_whiteboard, whiteboard_stats

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = services.make_engine()

app = FastAPI(
    title="Vet Clinic Waiting List",
    description="Patient queue and whiteboard for veterinary clinics",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    services.init_db(engine)
    app.state.events = BoardEvents.from_url()
    logger.info("Waiting list service started")


@app.on_event("shutdown")
def on_shutdown() -> None:
    events = getattr(app.state, "events", None)
    if events is not None:
        events.close()


# ===== DEPENDENCIES =====


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


def get_events(request: Request) -> BoardEvents:
    events = getattr(request.app.state, "events", None)
    return events if events is not None else BoardEvents(None)


def get_clinic_id(
    x_clinic_id: Optional[str] = Header(default=None),
    clinic_id: Optional[str] = Query(default=None),
) -> str:
    value = (x_clinic_id or clinic_id or "").strip()
    if not value:
        raise ValidationError("clinic_id is required")
    return value


# ===== ERROR HANDLING =====


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "error_type": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": f"Invalid request: {detail}",
            "error_type": ValidationError.__name__,
        },
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Failed to update"},
    )


def _entry_result(entry) -> ActionResult:
    return ActionResult(success=True, data=EntryOut.model_validate(entry))


def _filters(
    day: Optional[date],
    show: str,
    status: Optional[str],
    provider_id: str,
    appt_type: str,
    q: str,
) -> WhiteboardFilters:
    try:
        return WhiteboardFilters(
            day=day,
            show=show,
            status=normalize_status(status) if status else None,
            provider_id=provider_id or "all",
            appt_type=appt_type or "all",
            q=q or "",
        )
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid filter: {e.errors()[0]['msg']}") from None


# ===== ROUTES =====


@app.get("/")
def root() -> Dict[str, Any]:
    return {
        "service": "Vet Clinic Waiting List",
        "status": "running",
        "endpoints": {
            "whiteboard": "/whiteboard",
            "stats": "/whiteboard/stats",
            "waiting_list": "/waiting-list",
            "patient_search": "/patients/search",
        },
    }


@app.get("/health")
def health_check(
    session: Session = Depends(get_session),
    events: BoardEvents = Depends(get_events),
) -> Dict[str, Any]:
    try:
        session.connection().execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unavailable")
    return {
        "status": "healthy",
        "database": "connected",
        "redis": "connected" if events.enabled else "unavailable",
    }


@app.post("/waiting-list", response_model=ActionResult)
def add_entry(
    body: EntryCreate,
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
    events: BoardEvents = Depends(get_events),
) -> ActionResult:
    entry = services.add_entry(session, clinic_id, body)
    events.publish(clinic_id, "added", entry.id)
    return _entry_result(entry)


@app.post("/waiting-list/scheduled", response_model=ActionResult)
def schedule_entry(
    body: EntryCreate,
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
    events: BoardEvents = Depends(get_events),
) -> ActionResult:
    entry = services.schedule_entry(session, clinic_id, body)
    events.publish(clinic_id, "scheduled", entry.id)
    return _entry_result(entry)


@app.get("/waiting-list")
def list_raw_entries(
    status: Optional[List[str]] = Query(default=None),
    day: Optional[date] = Query(default=None, alias="date"),
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    entries = services.get_entries(session, clinic_id, status=status or None, day=day)
    return {"data": [EntryOut.model_validate(e) for e in entries], "total": len(entries)}


@app.put("/waiting-list/status", response_model=ActionResult)
def update_status(
    body: StatusUpdate,
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
    events: BoardEvents = Depends(get_events),
) -> ActionResult:
    entry = services.update_status(session, clinic_id, body.id, body.status)
    events.publish(clinic_id, "status", entry.id)
    return _entry_result(entry)


@app.put("/waiting-list/priority", response_model=ActionResult)
def update_priority(
    body: PriorityUpdate,
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
    events: BoardEvents = Depends(get_events),
) -> ActionResult:
    entry = services.update_priority(session, clinic_id, body.id, body.priority)
    events.publish(clinic_id, "priority", entry.id)
    return _entry_result(entry)


@app.put("/waiting-list/photo", response_model=ActionResult)
def update_photo(
    body: PhotoUpdate,
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
    events: BoardEvents = Depends(get_events),
) -> ActionResult:
    entry = services.update_photo(session, clinic_id, body.id, body.photo_url)
    events.publish(clinic_id, "photo", entry.id)
    return _entry_result(entry)


@app.delete("/waiting-list/{entry_id}")
def remove_entry(
    entry_id: str,
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
    events: BoardEvents = Depends(get_events),
) -> Dict[str, bool]:
    if services.remove_entry(session, clinic_id, entry_id):
        events.publish(clinic_id, "removed", entry_id)
    return {"success": True}


@app.get("/waiting-list/{entry_id}/events")
def entry_events(
    entry_id: str,
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    history = services.get_entry_events(session, clinic_id, entry_id)
    return {"data": [EntryEventOut.model_validate(e) for e in history]}


@app.get("/whiteboard", response_model=WhiteboardResponse)
def list_entries(
    day: Optional[date] = Query(default=None, alias="date"),
    show: str = "all",
    status: Optional[str] = None,
    provider_id: str = "all",
    appt_type: str = "all",
    q: str = "",
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
) -> WhiteboardResponse:
    filters = _filters(day, show, status, provider_id, appt_type, q)
    rows = build_whiteboard(session, clinic_id, filters)
    return WhiteboardResponse(data=rows, filters=filters, total=len(rows))


@app.get("/whiteboard/stats", response_model=WhiteboardStats)
def board_stats(
    day: Optional[date] = Query(default=None, alias="date"),
    show: str = "all",
    status: Optional[str] = None,
    provider_id: str = "all",
    appt_type: str = "all",
    q: str = "",
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
) -> WhiteboardStats:
    filters = _filters(day, show, status, provider_id, appt_type, q)
    return whiteboard_stats(build_whiteboard(session, clinic_id, filters))


@app.get("/patients/search")
def patient_search(
    q: str = "",
    clinic_id: str = Depends(get_clinic_id),
    session: Session = Depends(get_session),
) -> Dict[str, List[PatientSearchResult]]:
    return {"data": services.search_patients(session, clinic_id, q)}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
