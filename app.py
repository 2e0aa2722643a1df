# app.py — internal RPC surface of the progress tracking service
# - JSON bodies decoded through schemas.py, domain errors returned as {"error": {...}}
# - X-Request-ID / X-Actor headers become the request context of every write

import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Dict, Optional, Type, TypeVar
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from engines.alternance_scheduler import CalendarGeneration, ContractAmendment
from errors import (
    DecodeError,
    DomainError,
    DuplicateAttendanceError,
    InvalidTransitionError,
    PersistenceError,
    Result,
    SchedulingConflictError,
    UnknownEntityError,
)
from event_store import SQLiteEventStore
from models import AlternanceContract, RequestContext
from schemas import (
    AmendmentIn,
    AttendanceCorrectionIn,
    AttendanceIn,
    CalendarEntryOut,
    CompletionEventIn,
    ConfirmWeekIn,
    ContentStructureIn,
    ContractIn,
    CoordinationEventIn,
    ProgressStateModel,
    RiskAlertOut,
    TransitionIn,
    decode,
)
from service import ProgressTrackingService

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)

SERVICE = ProgressTrackingService()


@asynccontextmanager
async def _lifespan(_: FastAPI):
    global SERVICE
    try:
        from env_validation import validate_environment
        validate_environment()

        store = SQLiteEventStore(os.environ["TRACKING_DB_PATH"])
        SERVICE = ProgressTrackingService(store=store)
        SERVICE.start_background()
        logger.info("Progress tracking service ready (store: %s)", store.database)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    finally:
        SERVICE.shutdown()


app = FastAPI(title="Alternance progress engine", version="1.0.0", lifespan=_lifespan)


@app.middleware("http")
async def _request_context(request: Request, call_next):
    request.state.ctx = RequestContext(
        request_id=request.headers.get("x-request-id") or uuid4().hex,
        actor=request.headers.get("x-actor") or "anonymous",
    )
    response = await call_next(request)
    response.headers["x-request-id"] = request.state.ctx.request_id
    return response


_STATUS_BY_ERROR = (
    (UnknownEntityError, 404),
    (DuplicateAttendanceError, 409),
    (SchedulingConflictError, 409),
    (InvalidTransitionError, 409),
    (PersistenceError, 503),
)


def _status_for(error: DomainError) -> int:
    for kind, status in _STATUS_BY_ERROR:
        if isinstance(error, kind):
            return status
    return 422


def _error_response(error: DomainError) -> JSONResponse:
    return JSONResponse(status_code=_status_for(error), content={"error": error.to_dict()})


def _ctx(request: Request) -> RequestContext:
    return getattr(request.state, "ctx", None) or RequestContext()


async def _body(request: Request, model: Type[_M]) -> _M:
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except ValueError as exc:
        raise DecodeError(f"Request body is not valid JSON: {exc}") from exc
    return decode(model, payload)


def _respond(result: Result[Any], render) -> Any:
    if not result.ok:
        return _error_response(result.error)
    return render(result.value)


def _generation(generation: CalendarGeneration) -> Dict[str, Any]:
    return {
        "contract_id": generation.contract_id,
        "weeks": [CalendarEntryOut.from_entry(e).model_dump(mode="json") for e in generation.entries],
        "conflicts": [c.to_dict() for c in generation.conflicts],
        "warnings": [w.to_dict() for w in generation.warnings],
        "center_share": generation.center_share,
    }


def _contract(contract: AlternanceContract) -> Dict[str, Any]:
    data = asdict(contract)
    data["status"] = contract.status.value
    data["start_date"] = contract.start_date.isoformat()
    data["end_date"] = contract.end_date.isoformat()
    data["holiday_weeks"] = sorted([list(key) for key in contract.holiday_weeks])
    return data


@app.exception_handler(DomainError)
async def _domain_error_handler(_: Request, exc: DomainError):
    return _error_response(exc)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@app.get("/")
def root():
    return {"service": "progress-tracking", "formations": SERVICE.registry.formation_ids()}


@app.get("/progress/{student_id}/{formation_id}")
def get_progress(student_id: str, formation_id: str):
    state = SERVICE.get_progress(student_id, formation_id)
    return ProgressStateModel.from_state(state).model_dump(mode="json")


@app.get("/calendar/{student_id}/conflicts")
def get_calendar_conflicts(student_id: str):
    report = SERVICE.calendar_conflicts(student_id)
    return {
        "student_id": report.student_id,
        "severity": report.severity,
        "conflicts": [
            {"kind": c.kind, "message": c.message, "weeks": [list(w) for w in c.weeks]}
            for c in report.conflicts
        ],
        "recommendations": list(report.recommendations),
    }


@app.get("/calendar/{student_id}/{contract_id}")
def get_calendar(student_id: str, contract_id: str, start: Optional[date] = None, end: Optional[date] = None):
    SERVICE.scheduler.get_contract(contract_id)
    entries = SERVICE.get_calendar(student_id, contract_id, start, end)
    return {"weeks": [CalendarEntryOut.from_entry(e).model_dump(mode="json") for e in entries]}


@app.get("/risk/alerts")
def get_risk_alerts(threshold: Optional[float] = None):
    alerts = SERVICE.get_risk_alerts(threshold_override=threshold)
    return {
        "alerts": [
            RiskAlertOut(
                student_id=a.student_id,
                formation_id=a.formation_id,
                risk_score=a.risk_score,
                risk_level=a.risk_level,
                difficulty_signals=list(a.difficulty_signals),
                recommendations=list(a.recommendations),
                intervention_priority=a.intervention_priority,
            ).model_dump()
            for a in alerts
        ]
    }


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@app.post("/content/{formation_id}")
async def content_changed(formation_id: str, request: Request):
    body = await _body(request, ContentStructureIn)
    result = SERVICE.content_changed(formation_id, body.to_domain(), _ctx(request))
    return _respond(result, lambda tree: {"formation_id": tree.formation_id, "version": tree.version, "nodes": len(tree)})


class _EnrollmentIn(BaseModel):
    student_id: str
    formation_id: str
    started_at: datetime
    expected_end: Optional[datetime] = None


@app.post("/enrollments")
async def enroll(request: Request):
    body = await _body(request, _EnrollmentIn)
    result = SERVICE.enroll(body.student_id, body.formation_id, body.started_at, body.expected_end, _ctx(request))
    return _respond(result, lambda e: {"student_id": e.student_id, "formation_id": e.formation_id})


@app.post("/events/completion")
async def record_completion(request: Request):
    body = await _body(request, CompletionEventIn)
    result = SERVICE.record_completion(body.to_domain(), _ctx(request))
    return _respond(
        result,
        lambda d: {
            "formation_id": d.formation_id,
            "completion_percentage": d.completion_percentage,
            "previous_completion": d.previous_completion,
            "duplicate": d.duplicate,
            "changed_nodes": {k: list(v) for k, v in d.changed_nodes.items()},
        },
    )


@app.post("/attendance")
async def record_attendance(request: Request):
    body = await _body(request, AttendanceIn)
    result = SERVICE.record_attendance(body.to_domain(), _ctx(request))
    return _respond(result, lambda rate: {"student_id": body.student_id, "attendance_rate": rate})


@app.post("/attendance/corrections")
async def correct_attendance(request: Request):
    body = await _body(request, AttendanceCorrectionIn)
    result = SERVICE.correct_attendance(body.to_domain(), _ctx(request))
    return _respond(result, lambda rate: {"student_id": body.student_id, "attendance_rate": rate})


@app.post("/coordination")
async def record_coordination(request: Request):
    body = await _body(request, CoordinationEventIn)
    result = SERVICE.record_coordination_event(body.to_domain(), _ctx(request))
    return _respond(
        result,
        lambda s: {"signal": None if s is None else {**asdict(s), "timestamp": s.timestamp.isoformat()}},
    )


@app.post("/risk/{student_id}/{formation_id}/recompute")
async def recompute_risk(student_id: str, formation_id: str, request: Request):
    result = SERVICE.recompute_risk(student_id, formation_id, ctx=_ctx(request))
    return _respond(
        result,
        lambda o: {
            "risk_score": o.risk_score,
            "at_risk_of_dropout": o.at_risk_of_dropout,
            "risk_level": o.risk_level,
            "engagement_score": o.engagement_score,
            "factors": o.factors.as_dict(),
        },
    )


@app.post("/contracts")
async def create_contract(request: Request):
    body = await _body(request, ContractIn)
    return _respond(SERVICE.create_contract(body.to_domain(), _ctx(request)), _contract)


@app.post("/contracts/{contract_id}/validate")
async def validate_contract(contract_id: str, request: Request):
    return _respond(SERVICE.validate_contract(contract_id, _ctx(request)), _generation)


@app.post("/contracts/{contract_id}/activate")
async def activate_contract(contract_id: str, request: Request):
    return _respond(SERVICE.activate_contract(contract_id, _ctx(request)), _contract)


@app.post("/contracts/{contract_id}/complete")
async def complete_contract(contract_id: str, request: Request):
    return _respond(SERVICE.complete_contract(contract_id, _ctx(request)), _contract)


@app.post("/contracts/{contract_id}/terminate")
async def terminate_contract(contract_id: str, request: Request):
    body = await _body(request, TransitionIn)
    return _respond(SERVICE.terminate_contract(contract_id, body.reason, _ctx(request)), _contract)


@app.post("/contracts/{contract_id}/amend")
async def amend_contract(contract_id: str, request: Request):
    body = await _body(request, AmendmentIn)
    amendment = ContractAmendment(**body.model_dump(exclude={"as_of"}))
    result = SERVICE.amend_contract(contract_id, amendment, body.as_of, _ctx(request))
    return _respond(result, _generation)


@app.post("/calendar/{student_id}/confirm")
async def confirm_week(student_id: str, request: Request):
    body = await _body(request, ConfirmWeekIn)
    result = SERVICE.confirm_calendar_week(
        student_id, body.contract_id, body.year, body.week, body.actor, _ctx(request)
    )
    return _respond(result, lambda e: CalendarEntryOut.from_entry(e).model_dump(mode="json"))
