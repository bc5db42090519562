from __future__ import annotations

import datetime
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from batch import week_status
from database import DefaultSchedule, format_week_label, normalize_week_start, week_dates
from reconciliation import EffectiveShift, group_by_staff, resolve_week
from settings import (
    COVERAGE_MIN_STAFF,
    COVERAGE_STAFF_RATIO,
    LONG_SHIFT_HOURS,
    OVERTIME_THRESHOLD_HOURS,
)
from staff_directory import staff_ids as directory_staff_ids
from validation import parse_date, parse_time, shift_duration_seconds

OVERTIME_THRESHOLD_SECONDS = OVERTIME_THRESHOLD_HOURS * 3600
LONG_SHIFT_SECONDS = LONG_SHIFT_HOURS * 3600

COVERAGE_GREEN = "green"
COVERAGE_YELLOW = "yellow"
COVERAGE_RED = "red"


@dataclass(frozen=True)
class DayCoverage:
    date: datetime.date
    scheduled_count: int
    min_needed: int
    ratio: float
    status: str
    staff_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "scheduled_count": self.scheduled_count,
            "min_needed": self.min_needed,
            "ratio": round(self.ratio, 2),
            "status": self.status,
            "staff_ids": list(self.staff_ids),
        }


@dataclass(frozen=True)
class WeeklyHours:
    staff_id: int
    week_start: datetime.date
    seconds: int

    @property
    def hours(self) -> float:
        return self.seconds / 3600

    @property
    def overtime(self) -> bool:
        return self.seconds > OVERTIME_THRESHOLD_SECONDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "staff_id": self.staff_id,
            "week_start": self.week_start.isoformat(),
            "hours": round(self.hours, 2),
            "overtime": self.overtime,
        }


def min_staff_needed(team_size: int) -> int:
    return max(COVERAGE_MIN_STAFF, math.ceil(COVERAGE_STAFF_RATIO * team_size))


def coverage_status(ratio: float) -> str:
    if ratio >= 1:
        return COVERAGE_GREEN
    if ratio >= 0.5:
        return COVERAGE_YELLOW
    return COVERAGE_RED


def _coverage_from(shifts: Iterable[EffectiveShift], team_size: int, week_start: datetime.date) -> List[DayCoverage]:
    working: Dict[datetime.date, set] = {day: set() for day in week_dates(week_start)}
    for shift in shifts:
        if shift.is_working and shift.date in working:
            working[shift.date].add(shift.staff_id)
    needed = min_staff_needed(team_size)
    days = []
    for day, members in working.items():
        ratio = len(members) / needed
        days.append(
            DayCoverage(
                date=day,
                scheduled_count=len(members),
                min_needed=needed,
                ratio=ratio,
                status=coverage_status(ratio),
                staff_ids=sorted(members),
            )
        )
    return days


def _resolve_team(session, week_start, staff_ids: Optional[Iterable[int]]):
    start = normalize_week_start(parse_date(week_start, field="week_start"))
    ids = list(dict.fromkeys(staff_ids)) if staff_ids is not None else directory_staff_ids(session)
    return start, ids, resolve_week(session, ids, start)


def coverage(session, week_start, staff_ids: Optional[Iterable[int]] = None) -> List[DayCoverage]:
    """Per-day headcount against the minimum staffing for the team.

    ``staff_ids`` defaults to every active member of the staff directory.
    """
    start, ids, shifts = _resolve_team(session, week_start, staff_ids)
    return _coverage_from(shifts, len(ids), start)


def weekly_hours(session, staff_id: int, week_start) -> WeeklyHours:
    start = normalize_week_start(parse_date(week_start, field="week_start"))
    shifts = resolve_week(session, [staff_id], start)
    return WeeklyHours(staff_id=staff_id, week_start=start, seconds=sum(shift.duration_seconds for shift in shifts))


def shift_warnings(session, staff_id: int, date, start, end) -> List[Dict[str, str]]:
    """Warnings for a candidate shift: too long, or pushing the week into overtime."""
    day = parse_date(date)
    start_time = parse_time(start, field="start")
    end_time = parse_time(end, field="end")
    candidate = shift_duration_seconds(start_time, end_time)
    warnings: List[Dict[str, str]] = []
    if candidate > LONG_SHIFT_SECONDS:
        warnings.append(
            {
                "code": "long_shift",
                "message": f"Shift is {candidate / 3600:.2f}h, longer than {LONG_SHIFT_HOURS}h.",
            }
        )
    shifts = resolve_week(session, [staff_id], day)
    projected = candidate + sum(shift.duration_seconds for shift in shifts if shift.date != day)
    if projected > OVERTIME_THRESHOLD_SECONDS:
        warnings.append(
            {
                "code": "overtime",
                "message": (
                    f"Week would total {projected / 3600:.2f}h, over the "
                    f"{OVERTIME_THRESHOLD_HOURS}h overtime threshold."
                ),
            }
        )
    return warnings


def template_weekly_hours(schedule: DefaultSchedule) -> float:
    seconds = sum(shift_duration_seconds(entry.start_time, entry.end_time) for entry in schedule.days)
    return seconds / 3600


def week_summary(session, week_start, staff_ids: Optional[Iterable[int]] = None) -> Dict[str, Any]:
    start, ids, shifts = _resolve_team(session, week_start, staff_ids)
    grouped = group_by_staff(shifts)
    staff_rows = []
    for staff_id in ids:
        rows = grouped.get(staff_id, [])
        totals = WeeklyHours(staff_id=staff_id, week_start=start, seconds=sum(row.duration_seconds for row in rows))
        entry = totals.to_dict()
        entry["shifts"] = [row.to_dict() for row in rows]
        staff_rows.append(entry)
    return {
        "week_start": start.isoformat(),
        "label": format_week_label(start),
        "status": week_status(session, start),
        "coverage": [day.to_dict() for day in _coverage_from(shifts, len(ids), start)],
        "staff": staff_rows,
    }
