from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import select

from database import (
    DefaultSchedule,
    DefaultScheduleDay,
    day_index,
    mark_weeks_modified_from,
    record_audit_log,
)
from errors import NotFoundError, ValidationError
from settings import DAY_KEYS
from validation import day_entry, parse_date, parse_flag, parse_time, validate_role, validate_shift_times

logger = logging.getLogger(__name__)


def _normalize_days(days: Sequence[Any] | Mapping[Any, Any] | None) -> List[Optional[Dict[str, Any]]]:
    """Coerce the accepted day layouts into seven Sunday-first slots."""
    slots: List[Optional[Dict[str, Any]]] = [None] * 7
    if days is None:
        return slots
    if isinstance(days, Mapping):
        for key, entry in days.items():
            if isinstance(key, str) and key.strip().lower() in DAY_KEYS:
                index = DAY_KEYS.index(key.strip().lower())
            else:
                try:
                    index = int(key)
                except (TypeError, ValueError):
                    raise ValidationError(f"Unknown day key '{key}'.") from None
            if not 0 <= index <= 6:
                raise ValidationError(f"Day index {index} is out of range (0 = Sunday .. 6 = Saturday).")
            slots[index] = day_entry(entry, field=f"Day {key}")
        return slots
    entries = list(days)
    if len(entries) != 7:
        raise ValidationError("A default schedule needs exactly seven day entries (Sunday first).")
    for index, entry in enumerate(entries):
        slots[index] = day_entry(entry, field=f"Day {index}")
    return slots


def _build_day(index: int, entry: Mapping[str, Any]) -> DefaultScheduleDay:
    label = DAY_KEYS[index]
    start = parse_time(entry.get("start"), field=f"{label} start")
    end = parse_time(entry.get("end"), field=f"{label} end")
    overnight = parse_flag(entry.get("overnight"), field=f"{label} overnight")
    validate_shift_times(start, end, overnight=overnight)
    return DefaultScheduleDay(
        day_of_week=index,
        start_time=start,
        end_time=end,
        role=validate_role(entry.get("role")),
        overnight=overnight,
    )


def save_default_schedule(
    session,
    staff_id: int,
    effective_from: datetime.date | str,
    days: Sequence[Any] | Mapping[Any, Any] | None,
    *,
    actor: str = "system",
) -> DefaultSchedule:
    """Create a template, or replace the days of the one sharing ``(staff_id, effective_from)``."""
    effective = parse_date(effective_from, field="effective_from")
    built = []
    for index, entry in enumerate(_normalize_days(days)):
        if not entry or parse_flag(entry.get("off"), field=f"{DAY_KEYS[index]} off"):
            continue
        built.append(_build_day(index, entry))

    existing = session.scalars(
        select(DefaultSchedule).where(
            DefaultSchedule.staff_id == staff_id,
            DefaultSchedule.effective_from == effective,
        )
    ).first()
    if existing:
        existing.days.clear()
        session.flush()
        existing.days.extend(built)
        schedule = existing
        action = "DEFAULT_SCHEDULE_UPDATE"
    else:
        schedule = DefaultSchedule(staff_id=staff_id, effective_from=effective, created_by=actor, days=built)
        session.add(schedule)
        action = "DEFAULT_SCHEDULE_CREATE"
    session.flush()
    mark_weeks_modified_from(session, effective)
    record_audit_log(
        session,
        actor,
        action,
        target_type="DefaultSchedule",
        target_id=schedule.id,
        payload={"staff_id": staff_id, "effective_from": effective.isoformat(), "days": len(built)},
    )
    session.commit()
    session.refresh(schedule)
    logger.info("Saved default schedule %s for staff %s from %s", schedule.id, staff_id, effective)
    return schedule


def delete_default_schedule(session, schedule_id: int, *, actor: str = "system") -> None:
    schedule = session.get(DefaultSchedule, schedule_id)
    if not schedule:
        raise NotFoundError(f"Default schedule {schedule_id} was not found.")
    staff_id = schedule.staff_id
    effective = schedule.effective_from
    session.delete(schedule)
    mark_weeks_modified_from(session, effective)
    record_audit_log(
        session,
        actor,
        "DEFAULT_SCHEDULE_DELETE",
        target_type="DefaultSchedule",
        target_id=schedule_id,
        payload={"staff_id": staff_id, "effective_from": effective.isoformat()},
    )
    session.commit()
    logger.info("Deleted default schedule %s for staff %s", schedule_id, staff_id)


def list_default_schedules(session, staff_id: Optional[int] = None) -> List[DefaultSchedule]:
    stmt = select(DefaultSchedule).order_by(DefaultSchedule.staff_id, DefaultSchedule.effective_from.desc())
    if staff_id is not None:
        stmt = stmt.where(DefaultSchedule.staff_id == staff_id)
    return list(session.scalars(stmt))


def get_active_schedule(session, staff_id: int, on_date: datetime.date) -> Optional[DefaultSchedule]:
    """Latest template for ``staff_id`` whose ``effective_from`` is on or before ``on_date``."""
    stmt = (
        select(DefaultSchedule)
        .where(DefaultSchedule.staff_id == staff_id, DefaultSchedule.effective_from <= on_date)
        .order_by(DefaultSchedule.effective_from.desc(), DefaultSchedule.id.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()


def schedules_for_window(
    session, staff_ids: Iterable[int], end: datetime.date
) -> Dict[int, List[DefaultSchedule]]:
    """Templates that could apply on or before ``end``, newest first, grouped per staff member."""
    ids = list(staff_ids)
    grouped: Dict[int, List[DefaultSchedule]] = {staff_id: [] for staff_id in ids}
    if not ids:
        return grouped
    stmt = (
        select(DefaultSchedule)
        .where(DefaultSchedule.staff_id.in_(ids), DefaultSchedule.effective_from <= end)
        .order_by(DefaultSchedule.effective_from.desc(), DefaultSchedule.id.desc())
    )
    for schedule in session.scalars(stmt):
        grouped.setdefault(schedule.staff_id, []).append(schedule)
    return grouped


def pick_schedule(candidates: Iterable[DefaultSchedule], on_date: datetime.date) -> Optional[DefaultSchedule]:
    """From newest-first candidates, return the one in force on ``on_date``."""
    for schedule in candidates:
        if schedule.effective_from <= on_date:
            return schedule
    return None


def template_entry(schedule: Optional[DefaultSchedule], on_date: datetime.date) -> Optional[DefaultScheduleDay]:
    if schedule is None or on_date < schedule.effective_from:
        return None
    return schedule.day(day_index(on_date))


def schedule_to_dict(schedule: DefaultSchedule) -> Dict[str, Any]:
    days: Dict[str, Any] = {key: None for key in DAY_KEYS}
    for entry in schedule.days:
        days[DAY_KEYS[entry.day_of_week]] = {
            "start": entry.start_time.strftime("%H:%M"),
            "end": entry.end_time.strftime("%H:%M"),
            "role": entry.role,
            "overnight": entry.overnight,
        }
    return {
        "id": schedule.id,
        "staff_id": schedule.staff_id,
        "effective_from": schedule.effective_from.isoformat(),
        "days": days,
    }
