"""Effective-shift resolution.

A persisted shift record always wins for its (staff, date) cell. Without one,
the newest default schedule in force on that date supplies the shift for the
weekday, and with neither the cell is off. Nothing here writes to the stores.
"""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from database import DefaultSchedule, ShiftRecord, normalize_week_start
from default_schedules import get_active_schedule, pick_schedule, schedules_for_window, template_entry
from shift_store import get_record, records_in_range, time_label
from validation import shift_duration_seconds


class ShiftState(str, enum.Enum):
    off = "off"
    default = "default"
    override = "override"
    manual = "manual"


@dataclass(frozen=True)
class EffectiveShift:
    date: datetime.date
    staff_id: int
    state: ShiftState
    start: Optional[datetime.time] = None
    end: Optional[datetime.time] = None
    role: Optional[str] = None
    overnight: bool = False
    notes: str = ""
    record_id: Optional[int] = None
    version: Optional[int] = None
    override_reason: Optional[str] = None
    original_start: Optional[datetime.time] = None
    original_end: Optional[datetime.time] = None
    default_schedule_id: Optional[int] = None

    @property
    def is_working(self) -> bool:
        return self.state is not ShiftState.off and self.start is not None and self.end is not None

    @property
    def duration_seconds(self) -> int:
        if not self.is_working:
            return 0
        return shift_duration_seconds(self.start, self.end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "staff_id": self.staff_id,
            "state": self.state.value,
            "start": time_label(self.start),
            "end": time_label(self.end),
            "role": self.role,
            "overnight": self.overnight,
            "notes": self.notes,
            "record_id": self.record_id,
            "version": self.version,
            "override_reason": self.override_reason,
            "original_start": time_label(self.original_start),
            "original_end": time_label(self.original_end),
            "hours": round(self.duration_seconds / 3600, 2),
        }


def resolve_occurrence(
    staff_id: int,
    date: datetime.date,
    record: Optional[ShiftRecord],
    schedule: Optional[DefaultSchedule],
) -> EffectiveShift:
    if record is not None:
        state = ShiftState.manual if record.source == "manual" else ShiftState.override
        return EffectiveShift(
            date=date,
            staff_id=staff_id,
            state=state,
            start=record.start_time,
            end=record.end_time,
            role=record.role,
            overnight=record.overnight,
            notes=record.notes or "",
            record_id=record.id,
            version=record.version,
            override_reason=record.override_reason if record.is_override else None,
            original_start=record.original_start,
            original_end=record.original_end,
        )
    entry = template_entry(schedule, date)
    if entry is not None:
        return EffectiveShift(
            date=date,
            staff_id=staff_id,
            state=ShiftState.default,
            start=entry.start_time,
            end=entry.end_time,
            role=entry.role,
            overnight=entry.overnight,
            original_start=entry.start_time,
            original_end=entry.end_time,
            default_schedule_id=schedule.id,
        )
    return EffectiveShift(date=date, staff_id=staff_id, state=ShiftState.off)


def resolve(session, staff_id: int, date: datetime.date) -> EffectiveShift:
    record = get_record(session, staff_id, date)
    schedule = None if record is not None else get_active_schedule(session, staff_id, date)
    return resolve_occurrence(staff_id, date, record, schedule)


def resolve_range(
    session,
    staff_ids: Iterable[int],
    start: datetime.date,
    end: datetime.date,
) -> List[EffectiveShift]:
    """Resolve every (staff, date) cell from ``start`` to ``end`` inclusive.

    Records and templates for the window are fetched once; each cell is then
    resolved independently. Output follows the order of ``staff_ids``, then date.
    """
    ids = list(dict.fromkeys(staff_ids))
    if not ids or end < start:
        return []
    records: Dict[Tuple[int, datetime.date], ShiftRecord] = {
        (record.staff_id, record.date): record for record in records_in_range(session, start, end, ids)
    }
    templates = schedules_for_window(session, ids, end)
    days = (end - start).days + 1
    results: List[EffectiveShift] = []
    for staff_id in ids:
        candidates = templates.get(staff_id, [])
        for offset in range(days):
            day = start + datetime.timedelta(days=offset)
            record = records.get((staff_id, day))
            schedule = None if record is not None else pick_schedule(candidates, day)
            results.append(resolve_occurrence(staff_id, day, record, schedule))
    return results


def resolve_week(session, staff_ids: Iterable[int], week_start: datetime.date) -> List[EffectiveShift]:
    start = normalize_week_start(week_start)
    return resolve_range(session, staff_ids, start, start + datetime.timedelta(days=6))


def group_by_staff(shifts: Iterable[EffectiveShift]) -> Dict[int, List[EffectiveShift]]:
    grouped: Dict[int, List[EffectiveShift]] = {}
    for shift in shifts:
        grouped.setdefault(shift.staff_id, []).append(shift)
    return grouped
