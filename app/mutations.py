from __future__ import annotations

import datetime
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from database import StaffMember, ShiftRecord, mark_week_modified, record_audit_log
from default_schedules import get_active_schedule, template_entry
from errors import ConflictError, NotFoundError, ScheduleError, ValidationError
from reconciliation import EffectiveShift, ShiftState, resolve, resolve_occurrence
from shift_store import add_record, get_record, record_to_dict, remove_record
from validation import (
    is_time_off_reason,
    parse_date,
    parse_flag,
    parse_time,
    validate_override_reason,
    validate_role,
    validate_shift_times,
)

logger = logging.getLogger(__name__)


@contextmanager
def _write_guard(session, staff_id: int, date: datetime.date) -> Iterator[None]:
    """Roll back and translate storage conflicts for one (staff, date) write."""
    try:
        yield
    except StaleDataError as exc:
        session.rollback()
        raise ConflictError(
            f"Shift for staff {staff_id} on {date.isoformat()} changed since it was read; reload and retry.",
            staff_id=staff_id,
            date=date,
        ) from exc
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(
            f"Staff {staff_id} already has a shift on {date.isoformat()}.",
            staff_id=staff_id,
            date=date,
        ) from exc
    except (ScheduleError, SQLAlchemyError):
        session.rollback()
        raise


def _check_version(
    record: Optional[ShiftRecord],
    expected_version: Optional[int],
    staff_id: int,
    date: datetime.date,
    *,
    require_version: bool = False,
) -> None:
    """Compare the version the caller read against the stored one.

    ``record`` must come from a refreshed read. With ``require_version`` a
    persisted record cannot be changed without naming the version it replaces.
    """
    if expected_version is None:
        if require_version and record is not None:
            raise ValidationError(
                f"expected_version is required to change the saved shift for staff {staff_id} on {date.isoformat()}."
            )
        return
    if record is None or record.version != expected_version:
        raise ConflictError(
            f"Shift for staff {staff_id} on {date.isoformat()} is no longer at version {expected_version}.",
            staff_id=staff_id,
            date=date,
        )


def _fallback_role(session, staff_id: int, role: Optional[str]) -> str:
    if role and role.strip():
        return role.strip()
    member = session.get(StaffMember, staff_id)
    return validate_role(member.default_role if member else None)


def _merge_values(values: Mapping[str, Any], shift: EffectiveShift) -> Dict[str, Any]:
    """Overlay caller-supplied fields on the current occurrence."""
    start = parse_time(values["start"], field="start") if values.get("start") is not None else shift.start
    end = parse_time(values["end"], field="end") if values.get("end") is not None else shift.end
    if start is None or end is None:
        raise ValidationError("Shift start and end are required.")
    overnight = parse_flag(values["overnight"], field="overnight") if "overnight" in values else shift.overnight
    validate_shift_times(start, end, overnight=overnight)
    role = (values.get("role") or "").strip() or (shift.role or "")
    notes = values["notes"] if values.get("notes") is not None else shift.notes
    return {
        "start": start,
        "end": end,
        "overnight": overnight,
        "role": validate_role(role),
        "notes": (notes or "").strip(),
    }


def create_manual_shift(
    session,
    staff_id: int,
    date: datetime.date | str,
    start: datetime.time | str,
    end: datetime.time | str,
    role: Optional[str] = None,
    notes: str = "",
    *,
    overnight: bool = False,
    actor: str = "system",
) -> EffectiveShift:
    day = parse_date(date)
    start_time = parse_time(start, field="start")
    end_time = parse_time(end, field="end")
    overnight = parse_flag(overnight, field="overnight")
    validate_shift_times(start_time, end_time, overnight=overnight)
    role_value = _fallback_role(session, staff_id, role)
    if get_record(session, staff_id, day) is not None:
        raise ValidationError(
            f"Staff {staff_id} already has a shift on {day.isoformat()}; edit that shift instead."
        )
    record = ShiftRecord(
        staff_id=staff_id,
        date=day,
        start_time=start_time,
        end_time=end_time,
        role=role_value,
        notes=(notes or "").strip(),
        source="manual",
        is_override=False,
        overnight=overnight,
    )
    with _write_guard(session, staff_id, day):
        add_record(session, record)
        mark_week_modified(session, day)
        record_audit_log(session, actor, "SHIFT_CREATE", target_id=record.id, payload=record_to_dict(record))
        session.commit()
    logger.info("Created manual shift %s for staff %s on %s", record.id, staff_id, day)
    return resolve_occurrence(staff_id, day, record, None)


def edit_occurrence(
    session,
    staff_id: int,
    date: datetime.date | str,
    new_values: Optional[Mapping[str, Any]],
    override_reason: Optional[str] = None,
    *,
    expected_version: Optional[int] = None,
    require_version: bool = False,
    actor: str = "system",
) -> EffectiveShift:
    """Apply an edit to whatever currently occupies the (staff, date) cell.

    ``new_values`` may carry ``start``, ``end``, ``role``, ``notes``,
    ``overnight`` and ``off``; omitted fields keep their current value.
    Editing a template occurrence creates an override and needs a reason.
    ``expected_version`` is the version the caller last read; a saved record
    at any other version raises ``ConflictError``.
    """
    day = parse_date(date)
    values = dict(new_values or {})
    if "off" in values:
        values["off"] = parse_flag(values["off"], field="off")
    if override_reason is not None:
        validate_override_reason(override_reason, required=False)
    record = get_record(session, staff_id, day, refresh=True)
    _check_version(record, expected_version, staff_id, day, require_version=require_version)
    schedule = None if record is not None else get_active_schedule(session, staff_id, day)
    current = resolve_occurrence(staff_id, day, record, schedule)

    if current.state is ShiftState.off:
        if values.get("off"):
            raise ValidationError(f"Staff {staff_id} is already off on {day.isoformat()}.")
        return create_manual_shift(
            session,
            staff_id,
            day,
            values.get("start"),
            values.get("end"),
            values.get("role"),
            values.get("notes") or "",
            overnight=values.get("overnight", False),
            actor=actor,
        )
    if current.state is ShiftState.manual:
        return _update_manual(session, record, values, actor=actor)
    if current.state is ShiftState.default:
        return _create_override(session, current, schedule, values, override_reason, actor=actor)
    return _update_override(session, record, values, override_reason, actor=actor)


def _update_manual(session, record: ShiftRecord, values: Mapping[str, Any], *, actor: str) -> EffectiveShift:
    if values.get("off"):
        raise ValidationError("Manual shifts are cleared with delete_shift, not marked off.")
    current = resolve_occurrence(record.staff_id, record.date, record, None)
    merged = _merge_values(values, current)
    with _write_guard(session, record.staff_id, record.date):
        record.start_time = merged["start"]
        record.end_time = merged["end"]
        record.overnight = merged["overnight"]
        record.role = merged["role"]
        record.notes = merged["notes"]
        session.flush()
        mark_week_modified(session, record.date)
        record_audit_log(session, actor, "SHIFT_UPDATE", target_id=record.id, payload=record_to_dict(record))
        session.commit()
    logger.info("Updated manual shift %s for staff %s on %s", record.id, record.staff_id, record.date)
    return resolve_occurrence(record.staff_id, record.date, record, None)


def _create_override(
    session,
    current: EffectiveShift,
    schedule,
    values: Mapping[str, Any],
    override_reason: Optional[str],
    *,
    actor: str,
) -> EffectiveShift:
    entry = template_entry(schedule, current.date)
    off = bool(values.get("off"))
    if off:
        merged = {
            "start": None,
            "end": None,
            "overnight": False,
            "role": entry.role,
            "notes": (values.get("notes") or "").strip(),
        }
    else:
        merged = _merge_values(values, current)
        unchanged = (
            merged["start"] == entry.start_time
            and merged["end"] == entry.end_time
            and merged["role"] == entry.role
        )
        if unchanged:
            raise ValidationError("no changes from default schedule")
    reason = validate_override_reason(override_reason, required=True)
    if off and not is_time_off_reason(reason):
        raise ValidationError("Marking a scheduled day off needs a pto, sick or day_off reason.")
    record = ShiftRecord(
        staff_id=current.staff_id,
        date=current.date,
        start_time=merged["start"],
        end_time=merged["end"],
        role=merged["role"],
        notes=merged["notes"],
        source="default",
        is_override=True,
        override_reason=reason,
        original_start=entry.start_time,
        original_end=entry.end_time,
        overnight=merged["overnight"],
    )
    with _write_guard(session, current.staff_id, current.date):
        add_record(session, record)
        mark_week_modified(session, current.date)
        record_audit_log(session, actor, "SHIFT_OVERRIDE", target_id=record.id, payload=record_to_dict(record))
        session.commit()
    logger.info(
        "Overrode default shift for staff %s on %s (%s)", current.staff_id, current.date, reason
    )
    return resolve_occurrence(current.staff_id, current.date, record, None)


def _update_override(
    session,
    record: ShiftRecord,
    values: Mapping[str, Any],
    override_reason: Optional[str],
    *,
    actor: str,
) -> EffectiveShift:
    if override_reason is not None:
        reason = validate_override_reason(override_reason, required=True)
    else:
        reason = record.override_reason
    off = bool(values.get("off"))
    if off:
        if not is_time_off_reason(reason):
            raise ValidationError("Marking a scheduled day off needs a pto, sick or day_off reason.")
        merged = {
            "start": None,
            "end": None,
            "overnight": False,
            "role": record.role,
            "notes": (values["notes"] if values.get("notes") is not None else record.notes or "").strip(),
        }
    else:
        current = resolve_occurrence(record.staff_id, record.date, record, None)
        if record.is_time_off:
            # Bringing a time-off day back to work starts from the template's hours.
            current = EffectiveShift(
                date=record.date,
                staff_id=record.staff_id,
                state=ShiftState.override,
                start=record.original_start,
                end=record.original_end,
                role=record.role,
                overnight=bool(
                    record.original_start and record.original_end and record.original_end < record.original_start
                ),
                notes=record.notes or "",
            )
        merged = _merge_values(values, current)
    with _write_guard(session, record.staff_id, record.date):
        record.start_time = merged["start"]
        record.end_time = merged["end"]
        record.overnight = merged["overnight"]
        record.role = merged["role"]
        record.notes = merged["notes"]
        record.override_reason = reason
        session.flush()
        mark_week_modified(session, record.date)
        record_audit_log(session, actor, "SHIFT_OVERRIDE_UPDATE", target_id=record.id, payload=record_to_dict(record))
        session.commit()
    logger.info("Updated override %s for staff %s on %s", record.id, record.staff_id, record.date)
    return resolve_occurrence(record.staff_id, record.date, record, None)


def delete_shift(
    session,
    staff_id: int,
    date: datetime.date | str,
    *,
    expected_version: Optional[int] = None,
    require_version: bool = False,
    actor: str = "system",
) -> EffectiveShift:
    """Remove the persisted record for the cell; overrides fall back to their template."""
    day = parse_date(date)
    record = get_record(session, staff_id, day, refresh=True)
    if record is None:
        raise NotFoundError(f"No persisted shift for staff {staff_id} on {day.isoformat()}.")
    _check_version(record, expected_version, staff_id, day, require_version=require_version)
    payload = record_to_dict(record)
    action = "SHIFT_REVERT" if record.is_override else "SHIFT_DELETE"
    with _write_guard(session, staff_id, day):
        remove_record(session, record)
        mark_week_modified(session, day)
        record_audit_log(session, actor, action, target_id=payload["id"], payload=payload)
        session.commit()
    logger.info("Removed shift %s for staff %s on %s", payload["id"], staff_id, day)
    return resolve(session, staff_id, day)


def revert_to_default(
    session,
    staff_id: int,
    date: datetime.date | str,
    *,
    expected_version: Optional[int] = None,
    require_version: bool = False,
    actor: str = "system",
) -> EffectiveShift:
    day = parse_date(date)
    record = get_record(session, staff_id, day)
    if record is None:
        raise NotFoundError(f"No override to revert for staff {staff_id} on {day.isoformat()}.")
    if not record.is_override:
        raise ValidationError("Only overrides of a default schedule can be reverted; delete manual shifts instead.")
    return delete_shift(
        session, staff_id, day, expected_version=expected_version, require_version=require_version, actor=actor
    )


def move_shift(
    session,
    staff_id: int,
    date: datetime.date | str,
    new_staff_id: int,
    new_date: datetime.date | str,
    *,
    overwrite: bool = False,
    expected_version: Optional[int] = None,
    require_version: bool = False,
    actor: str = "system",
) -> EffectiveShift:
    """Reassign the occurrence in one cell to another (staff, date) cell in a single commit.

    The moved shift always lands as a manual shift: template occurrences and
    overrides lose their template link, override reason and original times.
    """
    source_day = parse_date(date)
    target_day = parse_date(new_date, field="new_date")
    if staff_id == new_staff_id and source_day == target_day:
        return resolve(session, staff_id, source_day)

    source_record = get_record(session, staff_id, source_day, refresh=True)
    _check_version(source_record, expected_version, staff_id, source_day, require_version=require_version)
    if source_record is None:
        schedule = get_active_schedule(session, staff_id, source_day)
        current = resolve_occurrence(staff_id, source_day, None, schedule)
        if current.state is ShiftState.off:
            raise NotFoundError(f"Staff {staff_id} has no shift on {source_day.isoformat()} to move.")
    elif source_record.is_time_off:
        raise ValidationError("Time-off overrides cannot be moved.")

    target_record = get_record(session, new_staff_id, target_day)
    if target_record is not None and not overwrite:
        raise ConflictError(
            f"Staff {new_staff_id} already has a shift on {target_day.isoformat()}.",
            staff_id=new_staff_id,
            date=target_day,
        )

    with _write_guard(session, new_staff_id, target_day):
        replaced = None
        if target_record is not None:
            replaced = record_to_dict(target_record)
            remove_record(session, target_record)
        if source_record is not None:
            moved = source_record
            moved.staff_id = new_staff_id
            moved.date = target_day
            if moved.source != "manual":
                moved.source = "manual"
                moved.is_override = False
                moved.override_reason = None
                moved.original_start = None
                moved.original_end = None
            session.flush()
        else:
            moved = ShiftRecord(
                staff_id=new_staff_id,
                date=target_day,
                start_time=current.start,
                end_time=current.end,
                role=current.role or "",
                notes=current.notes,
                source="manual",
                is_override=False,
                overnight=current.overnight,
            )
            session.add(moved)
            session.flush()
        mark_week_modified(session, source_day)
        mark_week_modified(session, target_day)
        record_audit_log(
            session,
            actor,
            "SHIFT_MOVE",
            target_id=moved.id,
            payload={
                "from": {"staff_id": staff_id, "date": source_day.isoformat()},
                "to": record_to_dict(moved),
                "replaced": replaced,
            },
        )
        session.commit()
    logger.info(
        "Moved shift from staff %s on %s to staff %s on %s", staff_id, source_day, new_staff_id, target_day
    )
    return resolve_occurrence(new_staff_id, target_day, moved, None)
