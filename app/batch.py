"""Week-level operations: clone, publish, publish status and the per-staff week form."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import (
    DefaultSchedule,
    ShiftRecord,
    WeekPublication,
    ensure_aware,
    get_week_publication,
    mark_week_modified,
    normalize_week_start,
    record_audit_log,
    utcnow,
)
from errors import ValidationError
from mutations import delete_shift, edit_occurrence
from notifications import Notifier, dispatch_published
from reconciliation import EffectiveShift, ShiftState, resolve, resolve_week
from settings import CLONE_CHUNK_SIZE
from shift_store import get_record, record_to_dict, records_in_range
from staff_directory import staff_ids as directory_staff_ids
from validation import day_entry, parse_date, parse_flag, parse_time

logger = logging.getLogger(__name__)

WEEK_DRAFT = "draft"
WEEK_PUBLISHED = "published"
WEEK_STALE = "stale"

# Attempts per chunk when a concurrent writer fills a target cell mid-flush.
CHUNK_RETRY_LIMIT = 3


@dataclass
class CloneResult:
    source_week_start: datetime.date
    target_week_start: datetime.date
    created: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_week_start": self.source_week_start.isoformat(),
            "target_week_start": self.target_week_start.isoformat(),
            "created": list(self.created),
            "skipped": list(self.skipped),
            "error": self.error,
            "completed": self.completed,
        }


@dataclass
class PublishResult:
    week_start: datetime.date
    published_at: datetime.datetime
    staff_ids: List[int]
    notified: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_start": self.week_start.isoformat(),
            "published_at": self.published_at.isoformat(),
            "staff_ids": list(self.staff_ids),
            "notified": self.notified,
        }


def _chunks(items: Sequence[ShiftRecord], size: int) -> List[Sequence[ShiftRecord]]:
    size = max(1, int(size))
    return [items[index:index + size] for index in range(0, len(items), size)]


def _skip_entry(record: ShiftRecord, target_day: datetime.date, reason: str) -> Dict[str, Any]:
    return {
        "staff_id": record.staff_id,
        "source_date": record.date.isoformat(),
        "date": target_day.isoformat(),
        "reason": reason,
    }


def _stage_chunk(
    session,
    chunk: Sequence[ShiftRecord],
    offset: datetime.timedelta,
    target_start: datetime.date,
    overwrite: bool,
) -> tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Add clones for one chunk to the session without committing."""
    skipped: List[Dict[str, Any]] = []
    pending: List[ShiftRecord] = []
    replaced = False
    for record in chunk:
        target_day = record.date + offset
        if record.is_time_off:
            skipped.append(_skip_entry(record, target_day, "time_off"))
            continue
        existing = get_record(session, record.staff_id, target_day)
        if existing is not None:
            if not overwrite:
                skipped.append(_skip_entry(record, target_day, "occupied"))
                continue
            session.delete(existing)
            replaced = True
        pending.append(
            ShiftRecord(
                staff_id=record.staff_id,
                date=target_day,
                start_time=record.start_time,
                end_time=record.end_time,
                role=record.role,
                notes=record.notes or "",
                source="manual",
                is_override=False,
                overnight=record.overnight,
            )
        )
    if replaced:
        # Deletes must reach the database before the inserts that reuse their cells.
        session.flush()
    session.add_all(pending)
    session.flush()
    mark_week_modified(session, target_start)
    return [record_to_dict(clone) for clone in pending], skipped


def clone_week(
    session,
    source_week_start: datetime.date | str,
    target_week_start: datetime.date | str,
    *,
    overwrite: bool = False,
    chunk_size: int = CLONE_CHUNK_SIZE,
    actor: str = "system",
) -> CloneResult:
    """Copy the persisted shifts of one week onto another.

    Template occurrences are not copied; the target week already resolves its
    own templates. Occupied target cells are skipped and reported unless
    ``overwrite`` is set. Each chunk commits on its own, so a storage failure
    leaves earlier chunks in place and is reported on ``error``.
    """
    source_start = normalize_week_start(parse_date(source_week_start, field="source_week_start"))
    target_start = normalize_week_start(parse_date(target_week_start, field="target_week_start"))
    if source_start == target_start:
        raise ValidationError("Source and target weeks must differ.")
    offset = target_start - source_start
    records = records_in_range(session, source_start, source_start + datetime.timedelta(days=6))
    result = CloneResult(source_week_start=source_start, target_week_start=target_start)

    for number, chunk in enumerate(_chunks(records, chunk_size), start=1):
        attempts = 0
        try:
            while True:
                try:
                    created, skipped = _stage_chunk(session, chunk, offset, target_start, overwrite)
                    session.commit()
                    break
                except IntegrityError:
                    # A concurrent writer filled a target cell; restage so it is reported as skipped.
                    session.rollback()
                    attempts += 1
                    if attempts >= CHUNK_RETRY_LIMIT:
                        raise
        except SQLAlchemyError as exc:
            session.rollback()
            result.error = f"Clone stopped at chunk {number}: {exc}"
            logger.error(
                "Clone of week %s into %s failed after %d record(s): %s",
                source_start,
                target_start,
                len(result.created),
                exc,
            )
            return result
        result.created.extend(created)
        result.skipped.extend(skipped)

    record_audit_log(
        session,
        actor,
        "WEEK_CLONE",
        target_type="Week",
        payload={
            "source_week_start": source_start.isoformat(),
            "target_week_start": target_start.isoformat(),
            "created": len(result.created),
            "skipped": len(result.skipped),
            "overwrite": overwrite,
        },
    )
    session.commit()
    logger.info(
        "Cloned week %s into %s: %d created, %d skipped",
        source_start,
        target_start,
        len(result.created),
        len(result.skipped),
    )
    return result


def _candidate_staff_ids(session, start: datetime.date, end: datetime.date) -> List[int]:
    candidates: Set[int] = set(directory_staff_ids(session))
    candidates.update(record.staff_id for record in records_in_range(session, start, end))
    candidates.update(
        session.scalars(select(DefaultSchedule.staff_id).where(DefaultSchedule.effective_from <= end))
    )
    return sorted(candidates)


def publish_week(
    session,
    week_start: datetime.date | str,
    *,
    notifier: Optional[Notifier] = None,
    actor: str = "system",
) -> PublishResult:
    """Stamp the week as published and notify everyone working in it.

    Publishing is a status marker only; the week stays editable and later
    edits turn its status to stale.
    """
    start = normalize_week_start(parse_date(week_start, field="week_start"))
    end = start + datetime.timedelta(days=6)
    shifts = resolve_week(session, _candidate_staff_ids(session, start, end), start)
    working = sorted({shift.staff_id for shift in shifts if shift.is_working})

    publication = get_week_publication(session, start)
    published_at = utcnow()
    if publication is None:
        publication = WeekPublication(week_start=start, published_at=published_at, published_by=actor)
        session.add(publication)
    else:
        publication.published_at = published_at
        publication.published_by = actor
    publication.modified_at = None
    session.flush()
    record_audit_log(
        session,
        actor,
        "WEEK_PUBLISH",
        target_type="Week",
        target_id=publication.id,
        payload={"week_start": start.isoformat(), "staff_ids": working},
    )
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    logger.info("Published week %s for %d staff member(s)", start, len(working))

    notified = dispatch_published(notifier, start, working)
    return PublishResult(week_start=start, published_at=published_at, staff_ids=working, notified=notified)


def week_status(session, week_start: datetime.date | str) -> str:
    publication = get_week_publication(session, parse_date(week_start, field="week_start"))
    if publication is None:
        return WEEK_DRAFT
    if publication.modified_at is not None and ensure_aware(publication.modified_at) >= ensure_aware(
        publication.published_at
    ):
        return WEEK_STALE
    return WEEK_PUBLISHED


def _matches_template(entry: Mapping[str, Any], current: EffectiveShift) -> bool:
    start = parse_time(entry["start"], field="start") if entry.get("start") is not None else current.start
    end = parse_time(entry["end"], field="end") if entry.get("end") is not None else current.end
    role = (entry.get("role") or "").strip() or current.role
    return start == current.start and end == current.end and role == current.role


def save_staff_week(
    session,
    staff_id: int,
    week_start: datetime.date | str,
    days: Sequence[Optional[Mapping[str, Any]]],
    *,
    actor: str = "system",
) -> List[EffectiveShift]:
    """Apply a Sunday-first, seven-slot week form for one staff member.

    Empty or ``{"off": True}`` slots clear manual shifts; template and override
    days are only marked off when the slot names a time-off ``override_reason``,
    otherwise they are left as they are. Other
    slots go through ``edit_occurrence``. Days are applied in order and each
    commits on its own; the first invalid slot stops the run.
    """
    start = normalize_week_start(parse_date(week_start, field="week_start"))
    slots = list(days or [])
    if len(slots) != 7:
        raise ValidationError("A week needs exactly seven day entries (Sunday first).")

    for offset, slot in enumerate(slots):
        day = start + datetime.timedelta(days=offset)
        entry = day_entry(slot, field=f"Day {offset}")
        current = resolve(session, staff_id, day)
        reason = (entry or {}).get("override_reason")
        if not entry or parse_flag(entry.get("off"), field="off"):
            if current.state is ShiftState.manual:
                delete_shift(session, staff_id, day, actor=actor)
            elif current.state is ShiftState.default and reason:
                edit_occurrence(session, staff_id, day, {"off": True, "notes": entry.get("notes")}, reason, actor=actor)
            elif current.state is ShiftState.override and reason:
                edit_occurrence(session, staff_id, day, {"off": True}, reason, actor=actor)
            continue
        if current.state is ShiftState.default and _matches_template(entry, current):
            continue
        values = {key: entry[key] for key in ("start", "end", "role", "notes", "overnight") if key in entry}
        edit_occurrence(session, staff_id, day, values, reason, actor=actor)

    logger.info("Saved week of %s for staff %s", start, staff_id)
    return resolve_week(session, [staff_id], start)
