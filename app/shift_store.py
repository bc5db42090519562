from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from database import ShiftRecord
from errors import ConflictError


def get_record(session, staff_id: int, date: datetime.date, *, refresh: bool = False) -> Optional[ShiftRecord]:
    """Look up the cell's record; ``refresh`` reloads an already identity-mapped row from the database."""
    stmt = select(ShiftRecord).where(ShiftRecord.staff_id == staff_id, ShiftRecord.date == date)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return session.scalars(stmt).first()


def records_in_range(
    session,
    start: datetime.date,
    end: datetime.date,
    staff_ids: Optional[Iterable[int]] = None,
) -> List[ShiftRecord]:
    """Persisted records dated ``start`` through ``end`` inclusive."""
    stmt = (
        select(ShiftRecord)
        .where(ShiftRecord.date >= start, ShiftRecord.date <= end)
        .order_by(ShiftRecord.date, ShiftRecord.staff_id)
    )
    if staff_ids is not None:
        ids = list(staff_ids)
        if not ids:
            return []
        stmt = stmt.where(ShiftRecord.staff_id.in_(ids))
    return list(session.scalars(stmt))


def add_record(session, record: ShiftRecord) -> ShiftRecord:
    """Insert ``record`` and flush so a duplicate ``(staff_id, date)`` surfaces immediately."""
    session.add(record)
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(
            f"Staff {record.staff_id} already has a shift on {record.date.isoformat()}.",
            staff_id=record.staff_id,
            date=record.date,
        ) from exc
    return record


def remove_record(session, record: ShiftRecord) -> None:
    session.delete(record)
    session.flush()


def time_label(value: Optional[datetime.time]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%H:%M:%S" if value.second else "%H:%M")


def record_to_dict(record: ShiftRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "staff_id": record.staff_id,
        "date": record.date.isoformat(),
        "start": time_label(record.start_time),
        "end": time_label(record.end_time),
        "role": record.role,
        "notes": record.notes,
        "source": record.source,
        "is_override": record.is_override,
        "override_reason": record.override_reason,
        "original_start": time_label(record.original_start),
        "original_end": time_label(record.original_end),
        "overnight": record.overnight,
        "version": record.version,
    }
