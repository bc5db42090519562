"""FastAPI wrapper over the shift board services.

Handlers parse the request, call one service function and serialize the
result. Scheduling errors are translated to status codes in one place.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure flat absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from analytics import coverage, shift_warnings, template_weekly_hours, week_summary, weekly_hours  # noqa: E402
from batch import clone_week, publish_week, save_staff_week, week_status  # noqa: E402
from database import SessionLocal, init_database, list_audit_log, normalize_week_start  # noqa: E402
from default_schedules import (  # noqa: E402
    delete_default_schedule,
    list_default_schedules,
    save_default_schedule,
    schedule_to_dict,
)
from errors import ConflictError, NotFoundError, ScheduleError, ValidationError  # noqa: E402
from mutations import (  # noqa: E402
    create_manual_shift,
    delete_shift,
    edit_occurrence,
    move_shift,
    revert_to_default,
)
from reconciliation import resolve, resolve_week  # noqa: E402
from settings import SHIFT_PRESETS  # noqa: E402
from staff_directory import get_staff, list_staff, staff_ids, staff_to_dict  # noqa: E402
from validation import parse_date, parse_flag  # noqa: E402

EDITABLE_FIELDS = ("start", "end", "role", "notes", "overnight", "off")


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    yield


app = FastAPI(title="Shift Board API", version="0.1", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _status_for(exc: ScheduleError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    return 400


@app.exception_handler(ScheduleError)
async def schedule_error_handler(_: Request, exc: ScheduleError) -> JSONResponse:
    return JSONResponse(status_code=_status_for(exc), content={"detail": str(exc)})


def _actor(payload: Optional[Dict[str, Any]]) -> str:
    value = (payload or {}).get("actor")
    if value is None:
        return "api"
    if not isinstance(value, str):
        raise ValidationError("actor must be a string.")
    return value.strip() or "api"


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer.") from None


def _required_int(payload: Dict[str, Any], key: str) -> int:
    value = _optional_int(payload, key)
    if value is None:
        raise ValidationError(f"{key} is required.")
    return value


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/staff")
def staff(include_inactive: bool = Query(False), db=Depends(get_db)) -> JSONResponse:
    members = list_staff(db, only_active=not include_inactive)
    return JSONResponse(content=jsonable_encoder({"staff": [staff_to_dict(member) for member in members]}))


@app.get("/api/v1/staff/{staff_id}")
def staff_member(staff_id: int, db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(staff_to_dict(get_staff(db, staff_id))))


@app.get("/api/v1/shift-presets")
def shift_presets() -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"presets": SHIFT_PRESETS}))


@app.get("/api/v1/staff/{staff_id}/shifts/{date}")
def get_occurrence(staff_id: int, date: str, db=Depends(get_db)) -> JSONResponse:
    shift = resolve(db, staff_id, parse_date(date))
    return JSONResponse(content=jsonable_encoder(shift.to_dict()))


@app.put("/api/v1/staff/{staff_id}/shifts/{date}")
def put_occurrence(staff_id: int, date: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    values = {key: payload[key] for key in EDITABLE_FIELDS if key in payload}
    shift = edit_occurrence(
        db,
        staff_id,
        parse_date(date),
        values,
        payload.get("override_reason"),
        expected_version=_optional_int(payload, "expected_version"),
        require_version=True,
        actor=_actor(payload),
    )
    return JSONResponse(content=jsonable_encoder(shift.to_dict()))


@app.delete("/api/v1/staff/{staff_id}/shifts/{date}")
def delete_occurrence(
    staff_id: int,
    date: str,
    expected_version: Optional[int] = Query(None),
    actor: str = Query("api"),
    db=Depends(get_db),
) -> JSONResponse:
    shift = delete_shift(
        db, staff_id, parse_date(date), expected_version=expected_version, require_version=True, actor=actor
    )
    return JSONResponse(content=jsonable_encoder(shift.to_dict()))


@app.post("/api/v1/staff/{staff_id}/shifts/{date}/revert")
def revert_occurrence(
    staff_id: int, date: str, payload: Dict[str, Any] | None = None, db=Depends(get_db)
) -> JSONResponse:
    body = payload or {}
    shift = revert_to_default(
        db,
        staff_id,
        parse_date(date),
        expected_version=_optional_int(body, "expected_version"),
        require_version=True,
        actor=_actor(body),
    )
    return JSONResponse(content=jsonable_encoder(shift.to_dict()))


@app.get("/api/v1/staff/{staff_id}/shifts/{date}/warnings")
def occurrence_warnings(
    staff_id: int,
    date: str,
    start: str = Query(...),
    end: str = Query(...),
    db=Depends(get_db),
) -> JSONResponse:
    warnings = shift_warnings(db, staff_id, date, start, end)
    return JSONResponse(content=jsonable_encoder({"warnings": warnings}))


@app.post("/api/v1/shifts")
def post_shift(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    shift = create_manual_shift(
        db,
        _required_int(payload, "staff_id"),
        payload.get("date"),
        payload.get("start"),
        payload.get("end"),
        payload.get("role"),
        payload.get("notes") or "",
        overnight=parse_flag(payload.get("overnight"), field="overnight"),
        actor=_actor(payload),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(shift.to_dict()))


@app.post("/api/v1/shifts/move")
def post_move(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    shift = move_shift(
        db,
        _required_int(payload, "staff_id"),
        payload.get("date"),
        _required_int(payload, "new_staff_id"),
        payload.get("new_date"),
        overwrite=parse_flag(payload.get("overwrite"), field="overwrite"),
        expected_version=_optional_int(payload, "expected_version"),
        require_version=True,
        actor=_actor(payload),
    )
    return JSONResponse(content=jsonable_encoder(shift.to_dict()))


@app.get("/api/v1/weeks/{week_start}/shifts")
def week_shifts(
    week_start: str,
    staff_id: Optional[list[int]] = Query(None),
    db=Depends(get_db),
) -> JSONResponse:
    start_date = parse_date(week_start, field="week_start")
    ids = staff_id if staff_id else staff_ids(db)
    shifts = resolve_week(db, ids, start_date)
    return JSONResponse(
        content=jsonable_encoder(
            {
                "week_start": normalize_week_start(start_date).isoformat(),
                "shifts": [shift.to_dict() for shift in shifts],
            }
        )
    )


@app.get("/api/v1/weeks/{week_start}/status")
def get_week_status(week_start: str, db=Depends(get_db)) -> JSONResponse:
    start_date = normalize_week_start(parse_date(week_start, field="week_start"))
    return JSONResponse(content={"week_start": start_date.isoformat(), "status": week_status(db, start_date)})


@app.get("/api/v1/weeks/{week_start}/coverage")
def week_coverage(
    week_start: str,
    staff_id: Optional[list[int]] = Query(None),
    db=Depends(get_db),
) -> JSONResponse:
    days = coverage(db, week_start, staff_id or None)
    return JSONResponse(content=jsonable_encoder({"coverage": [day.to_dict() for day in days]}))


@app.get("/api/v1/weeks/{week_start}/summary")
def get_week_summary(
    week_start: str,
    staff_id: Optional[list[int]] = Query(None),
    db=Depends(get_db),
) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(week_summary(db, week_start, staff_id or None)))


@app.post("/api/v1/weeks/{week_start}/clone")
def post_clone(week_start: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    target = payload.get("target_week_start")
    if not target:
        raise ValidationError("target_week_start is required.")
    result = clone_week(
        db,
        week_start,
        target,
        overwrite=parse_flag(payload.get("overwrite"), field="overwrite"),
        actor=_actor(payload),
    )
    return JSONResponse(content=jsonable_encoder(result.to_dict()))


@app.post("/api/v1/weeks/{week_start}/publish")
def post_publish(week_start: str, payload: Dict[str, Any] | None = None, db=Depends(get_db)) -> JSONResponse:
    result = publish_week(db, week_start, actor=_actor(payload))
    return JSONResponse(content=jsonable_encoder(result.to_dict()))


@app.get("/api/v1/staff/{staff_id}/weeks/{week_start}/hours")
def staff_week_hours(staff_id: int, week_start: str, db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(weekly_hours(db, staff_id, week_start).to_dict()))


@app.put("/api/v1/staff/{staff_id}/weeks/{week_start}")
def put_staff_week(staff_id: int, week_start: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    shifts = save_staff_week(db, staff_id, week_start, payload.get("days") or [], actor=_actor(payload))
    return JSONResponse(content=jsonable_encoder({"shifts": [shift.to_dict() for shift in shifts]}))


@app.get("/api/v1/default-schedules")
def get_default_schedules(staff_id: Optional[int] = Query(None), db=Depends(get_db)) -> JSONResponse:
    payload = []
    for schedule in list_default_schedules(db, staff_id):
        entry = schedule_to_dict(schedule)
        entry["weekly_hours"] = round(template_weekly_hours(schedule), 2)
        payload.append(entry)
    return JSONResponse(content=jsonable_encoder({"default_schedules": payload}))


@app.post("/api/v1/default-schedules")
def post_default_schedule(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    schedule = save_default_schedule(
        db,
        _required_int(payload, "staff_id"),
        payload.get("effective_from"),
        payload.get("days"),
        actor=_actor(payload),
    )
    entry = schedule_to_dict(schedule)
    entry["weekly_hours"] = round(template_weekly_hours(schedule), 2)
    return JSONResponse(status_code=201, content=jsonable_encoder(entry))


@app.delete("/api/v1/default-schedules/{schedule_id}")
def remove_default_schedule(schedule_id: int, actor: str = Query("api"), db=Depends(get_db)) -> JSONResponse:
    delete_default_schedule(db, schedule_id, actor=actor)
    return JSONResponse(content={"deleted": schedule_id})


@app.get("/api/v1/audit")
def audit_log(action: Optional[str] = Query(None), limit: int = Query(100), db=Depends(get_db)) -> JSONResponse:
    entries = list_audit_log(db, action=action, limit=limit)
    payload = [
        {
            "id": entry.id,
            "actor": entry.actor,
            "action": entry.action,
            "target_type": entry.target_type,
            "target_id": entry.target_id,
            "payload": entry.payload(),
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in entries
    ]
    return JSONResponse(content=jsonable_encoder({"entries": payload}))
