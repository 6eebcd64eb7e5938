"""FastAPI wrapper around the audit plan store and interview planner.

Endpoints stay thin: they parse the request, call the library functions and
serialize with ``jsonable_encoder``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .data_exchange import audit_plan_payload, import_standard_audit_plan
from .database import (
    SessionLocal,
    audit_to_dict,
    add_participant,
    create_audit,
    delete_interview,
    fetch_interviews_by_audit_id,
    fetch_themes,
    fetch_topics,
    get_active_policy,
    get_audit,
    get_or_create_theme,
    init_database,
    list_participants,
    record_audit_log,
    remove_participant,
    update_interview,
    upsert_policy,
)
from .generator.api import generate_audit_plan, preview_audit_plan
from .generator.calendar import estimate_plan, get_business_days
from .generator.models import ScheduleError
from .policy import ensure_default_policy, load_calendar_rules
from .themes import UnknownThemeError
from .validation import validate_audit_plan


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(SessionLocal)
    yield


app = FastAPI(title="Audit Plan API", version="0.1", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable:
    return SessionLocal


def _parse_date(value: Any, field: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _parse_datetime(value: Any, field: str) -> datetime.datetime:
    label = str(value or "").strip()
    if label.endswith("Z"):
        label = label[:-1] + "+00:00"
    try:
        return datetime.datetime.fromisoformat(label)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be an ISO timestamp")


def _require_audit(db: Session, audit_id: str):
    audit = get_audit(db, audit_id)
    if not audit:
        raise HTTPException(status_code=404, detail="Audit not found")
    return audit


def _plan_options(payload: Dict[str, Any]) -> Dict[str, Any]:
    options = payload.get("options")
    return dict(options) if isinstance(options, dict) else dict(payload)


def _plan_range(payload: Dict[str, Any], audit) -> tuple:
    start = payload.get("startDate") or payload.get("start_date") or audit.start_date
    end = payload.get("endDate") or payload.get("end_date") or audit.end_date
    return start, end


def _audit(db: Session, actor: str, action: str, target: Optional[str], payload: Optional[Dict[str, Any]] = None) -> None:
    record_audit_log(db, user_id=actor, action=action, target_type="API", target_id=target, payload=payload)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/themes")
def list_themes(db=Depends(get_db)) -> JSONResponse:
    themes = [{"id": theme.id, "name": theme.name, "description": theme.description} for theme in fetch_themes(db)]
    return JSONResponse(content=jsonable_encoder({"themes": themes}))


@app.post("/api/v1/themes")
def create_theme(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    try:
        theme = get_or_create_theme(db, payload.get("name") or "", payload.get("description") or "")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(
        status_code=201,
        content=jsonable_encoder({"id": theme.id, "name": theme.name, "description": theme.description}),
    )


@app.get("/api/v1/topics")
def list_topics(db=Depends(get_db)) -> JSONResponse:
    topics = [{"id": topic.id, "name": topic.name, "description": topic.description} for topic in fetch_topics(db)]
    return JSONResponse(content=jsonable_encoder({"topics": topics}))


@app.get("/api/v1/business-days")
def business_days(start: str = Query(...), end: str = Query(...)) -> JSONResponse:
    start_date = _parse_date(start, "start")
    end_date = _parse_date(end, "end")
    return JSONResponse(content={"days": get_business_days(start_date, end_date)})


@app.post("/api/v1/audits")
def create_audit_endpoint(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    start = payload.get("start_date")
    end = payload.get("end_date")
    try:
        audit = create_audit(
            db,
            company_name=payload.get("company_name") or "",
            framework=payload.get("framework") or "",
            start_date=_parse_date(start, "start_date") if start else None,
            end_date=_parse_date(end, "end_date") if end else None,
            audit_id=payload.get("id"),
            status=payload.get("status") or "draft",
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(status_code=201, content=jsonable_encoder(audit_to_dict(audit)))


@app.get("/api/v1/audits/{audit_id}")
def audit_detail(audit_id: str, db=Depends(get_db)) -> JSONResponse:
    audit = _require_audit(db, audit_id)
    return JSONResponse(content=jsonable_encoder(audit_to_dict(audit)))


@app.get("/api/v1/audits/{audit_id}/interviews")
def audit_interviews(audit_id: str, db=Depends(get_db)) -> JSONResponse:
    _require_audit(db, audit_id)
    interviews = fetch_interviews_by_audit_id(db, audit_id)
    return JSONResponse(content=jsonable_encoder({"audit_id": audit_id, "interviews": interviews}))


@app.post("/api/v1/audits/{audit_id}/plan/estimate")
def estimate_endpoint(audit_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    _require_audit(db, audit_id)
    options = _plan_options(payload)
    try:
        estimate = estimate_plan(
            options.get("topic_ids") or options.get("topicIds") or [],
            options.get("theme_durations") or options.get("themeDurations") or {},
            fetch_themes(db),
            load_calendar_rules(db),
            include_opening_closing=bool(options.get("include_opening_closing", options.get("includeOpeningClosing", True))),
            max_hours_per_day=options.get("max_hours_per_day") or options.get("maxHoursPerDay"),
        )
    except UnknownThemeError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ScheduleError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder(estimate.to_dict()))


@app.post("/api/v1/audits/{audit_id}/plan/preview")
def preview_endpoint(audit_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    audit = _require_audit(db, audit_id)
    start, end = _plan_range(payload, audit)
    try:
        result = preview_audit_plan(db, audit_id, start, end, _plan_options(payload))
    except UnknownThemeError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ScheduleError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(
        content=jsonable_encoder(
            {
                "audit_id": audit_id,
                "items": [item.to_dict() for item in result.items],
                "ideal_minutes_per_day": result.ideal_minutes_per_day,
                "unscheduled_theme_ids": result.unscheduled_theme_ids,
                "warnings": result.warnings,
            }
        )
    )


@app.post("/api/v1/audits/{audit_id}/plan/generate")
def generate_endpoint(
    audit_id: str,
    payload: Dict[str, Any],
    db=Depends(get_db),
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    audit = _require_audit(db, audit_id)
    start, end = _plan_range(payload, audit)
    actor = (payload.get("actor") or "api").strip() or "api"
    outcome = generate_audit_plan(session_factory, audit_id, start, end, _plan_options(payload), actor=actor)
    return JSONResponse(status_code=200 if outcome else 422, content=jsonable_encoder(outcome.to_dict()))


@app.get("/api/v1/audits/{audit_id}/plan/validate")
def validate_endpoint(audit_id: str, db=Depends(get_db)) -> JSONResponse:
    _require_audit(db, audit_id)
    return JSONResponse(content=jsonable_encoder(validate_audit_plan(db, audit_id)))


@app.post("/api/v1/audits/{audit_id}/plan/import")
def import_endpoint(audit_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    _require_audit(db, audit_id)
    actor = (payload.get("actor") or "api").strip() or "api"
    created = import_standard_audit_plan(db, audit_id, payload, actor=actor)
    return JSONResponse(content={"audit_id": audit_id, "created": created})


@app.get("/api/v1/audits/{audit_id}/plan/export")
def export_endpoint(audit_id: str, db=Depends(get_db)) -> JSONResponse:
    _require_audit(db, audit_id)
    return JSONResponse(content=jsonable_encoder(audit_plan_payload(db, audit_id)))


@app.patch("/api/v1/interviews/{interview_id}")
def update_interview_endpoint(interview_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    updates = dict(payload)
    actor = (updates.pop("actor", None) or "api").strip() or "api"
    if "start_time" in updates:
        updates["start_time"] = _parse_datetime(updates["start_time"], "start_time")
    try:
        interview = update_interview(db, interview_id, updates)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(db, actor=actor, action="INTERVIEW_EDIT", target=interview_id, payload={"fields": sorted(updates)})
    return JSONResponse(content=jsonable_encoder(interview))


@app.delete("/api/v1/interviews/{interview_id}")
def delete_interview_endpoint(interview_id: str, db=Depends(get_db)) -> JSONResponse:
    if not delete_interview(db, interview_id):
        raise HTTPException(status_code=404, detail="Interview not found")
    _audit(db, actor="api", action="INTERVIEW_DELETE", target=interview_id)
    return JSONResponse(content={"deleted": True, "id": interview_id})


@app.post("/api/v1/interviews/{interview_id}/participants")
def add_participant_endpoint(interview_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    user_id = (payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    try:
        add_participant(db, interview_id, user_id, payload.get("role") or "participant")
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JSONResponse(
        content=jsonable_encoder({"interview_id": interview_id, "participants": list_participants(db, interview_id)})
    )


@app.delete("/api/v1/interviews/{interview_id}/participants/{user_id}")
def remove_participant_endpoint(interview_id: str, user_id: str, db=Depends(get_db)) -> JSONResponse:
    if not remove_participant(db, interview_id, user_id):
        raise HTTPException(status_code=404, detail="Participant not found")
    return JSONResponse(
        content=jsonable_encoder({"interview_id": interview_id, "participants": list_participants(db, interview_id)})
    )


@app.get("/api/v1/policy/active")
def active_policy(db=Depends(get_db)) -> JSONResponse:
    policy = get_active_policy(db)
    if not policy:
        raise HTTPException(status_code=404, detail="No active policy found")
    payload = {
        "id": policy.id,
        "name": policy.name,
        "params": policy.params_dict(),
        "lastEditedBy": policy.lastEditedBy,
        "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
    }
    return JSONResponse(content=jsonable_encoder(payload))


@app.put("/api/v1/policy/active")
def set_active_policy(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = (payload.get("actor") or "api").strip() or "api"
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    policy = upsert_policy(db, name=name, params_dict=params, edited_by=actor)
    _audit(db, actor=actor, action="POLICY_EDIT", target=str(policy.id), payload={"name": policy.name})
    return JSONResponse(
        content=jsonable_encoder(
            {
                "id": policy.id,
                "name": policy.name,
                "params": policy.params_dict(),
                "lastEditedBy": policy.lastEditedBy,
                "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
            }
        )
    )
