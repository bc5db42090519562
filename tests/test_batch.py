from __future__ import annotations

import datetime
import sys
from pathlib import Path
from typing import List, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import batch  # noqa: E402
from batch import clone_week, publish_week, save_staff_week, week_status  # noqa: E402
from database import Base, StaffMember, list_audit_log  # noqa: E402
from default_schedules import save_default_schedule  # noqa: E402
from errors import ValidationError  # noqa: E402
from mutations import create_manual_shift, edit_occurrence  # noqa: E402
from notifications import Notifier  # noqa: E402
from reconciliation import ShiftState, resolve  # noqa: E402
from shift_store import get_record, records_in_range  # noqa: E402

SOURCE_WEEK = datetime.date(2024, 4, 7)
TARGET_WEEK = datetime.date(2024, 4, 14)
WEDNESDAY = datetime.date(2024, 4, 10)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.calls: List[Tuple[datetime.date, List[int]]] = []

    def notify_published(self, week_start, staff_ids) -> None:
        self.calls.append((week_start, list(staff_ids)))


class BrokenNotifier(Notifier):
    def notify_published(self, week_start, staff_ids) -> None:
        raise RuntimeError("mail relay unavailable")


@pytest.fixture()
def board():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, expire_on_commit=False, future=True)()
    avery = StaffMember(name="Avery Cole", default_role="Kennel Tech")
    blake = StaffMember(name="Blake Moreno", default_role="Front Desk")
    casey = StaffMember(name="Casey Ito", default_role="Groomer")
    session.add_all([avery, blake, casey])
    session.commit()
    weekdays = {
        day: {"start": "09:00", "end": "17:00", "role": "Kennel Tech"}
        for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
    }
    save_default_schedule(session, avery.id, datetime.date(2024, 1, 7), weekdays, actor="tests")
    try:
        yield session, avery.id, blake.id, casey.id
    finally:
        session.close()
        engine.dispose()


def _day(week_start: datetime.date, offset: int) -> datetime.date:
    return week_start + datetime.timedelta(days=offset)


def test_clone_skips_occupied_cells_and_reports_them(board) -> None:
    session, avery, blake, _ = board
    create_manual_shift(session, avery, _day(SOURCE_WEEK, 0), "10:00", "14:00", "Kennel Tech")
    create_manual_shift(session, blake, _day(SOURCE_WEEK, 1), "08:00", "16:00", "Front Desk")
    create_manual_shift(session, blake, _day(TARGET_WEEK, 1), "12:00", "20:00", "Front Desk")

    result = clone_week(session, SOURCE_WEEK, TARGET_WEEK)

    assert result.completed
    assert [entry["date"] for entry in result.created] == [_day(TARGET_WEEK, 0).isoformat()]
    assert len(result.skipped) == 1
    assert result.skipped[0]["staff_id"] == blake
    assert result.skipped[0]["reason"] == "occupied"
    kept = resolve(session, blake, _day(TARGET_WEEK, 1))
    assert kept.start == datetime.time(12, 0)
    cloned = resolve(session, avery, _day(TARGET_WEEK, 0))
    assert cloned.state is ShiftState.manual
    assert cloned.start == datetime.time(10, 0)


def test_clone_with_overwrite_replaces_occupied_cells(board) -> None:
    session, _, blake, _ = board
    create_manual_shift(session, blake, _day(SOURCE_WEEK, 1), "08:00", "16:00", "Front Desk")
    create_manual_shift(session, blake, _day(TARGET_WEEK, 1), "12:00", "20:00", "Front Desk")

    result = clone_week(session, SOURCE_WEEK, TARGET_WEEK, overwrite=True)

    assert len(result.created) == 1
    assert result.skipped == []
    assert resolve(session, blake, _day(TARGET_WEEK, 1)).start == datetime.time(8, 0)


def test_clone_copies_records_only_and_flattens_overrides(board) -> None:
    session, avery, _, _ = board
    edit_occurrence(session, avery, WEDNESDAY, {"start": "07:00"}, "time_change")
    edit_occurrence(session, avery, _day(SOURCE_WEEK, 4), {"off": True}, "pto")

    result = clone_week(session, SOURCE_WEEK, TARGET_WEEK)

    assert len(result.created) == 1
    assert result.skipped[0]["reason"] == "time_off"
    target_wednesday = resolve(session, avery, WEDNESDAY + datetime.timedelta(days=7))
    assert target_wednesday.state is ShiftState.manual
    assert target_wednesday.start == datetime.time(7, 0)
    # Template days are left to the target week's own templates.
    assert resolve(session, avery, _day(TARGET_WEEK, 1)).state is ShiftState.default
    assert resolve(session, avery, _day(TARGET_WEEK, 4)).state is ShiftState.default


def test_clone_commits_in_chunks(board) -> None:
    session, avery, blake, casey = board
    for staff_id in (blake, casey):
        for offset in (0, 6):
            create_manual_shift(session, staff_id, _day(SOURCE_WEEK, offset), "10:00", "14:00", "Front Desk")

    result = clone_week(session, SOURCE_WEEK, TARGET_WEEK, chunk_size=1)

    assert len(result.created) == 4
    assert len(records_in_range(session, TARGET_WEEK, _day(TARGET_WEEK, 6))) == 4
    entry = list_audit_log(session, action="WEEK_CLONE")[0]
    assert entry.payload()["created"] == 4


def test_clone_reports_partial_progress_on_storage_failure(board, monkeypatch) -> None:
    session, _, blake, casey = board
    create_manual_shift(session, blake, _day(SOURCE_WEEK, 0), "10:00", "14:00", "Front Desk")
    create_manual_shift(session, casey, _day(SOURCE_WEEK, 1), "10:00", "14:00", "Groomer")
    original = batch._stage_chunk
    calls = {"count": 0}

    def failing_stage(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OperationalError("INSERT INTO shift_records", {}, Exception("disk I/O error"))
        return original(*args, **kwargs)

    monkeypatch.setattr(batch, "_stage_chunk", failing_stage)
    result = clone_week(session, SOURCE_WEEK, TARGET_WEEK, chunk_size=1)

    assert not result.completed
    assert "disk I/O error" in result.error
    assert len(result.created) == 1
    assert get_record(session, blake, _day(TARGET_WEEK, 0)) is not None
    assert get_record(session, casey, _day(TARGET_WEEK, 1)) is None
    assert list_audit_log(session, action="WEEK_CLONE") == []


def test_clone_into_same_week_is_rejected(board) -> None:
    session, *_ = board
    with pytest.raises(ValidationError):
        clone_week(session, SOURCE_WEEK, WEDNESDAY)


def test_publish_notifies_staff_with_working_shifts(board) -> None:
    session, avery, blake, casey = board
    create_manual_shift(session, blake, _day(SOURCE_WEEK, 6), "10:00", "14:00", "Front Desk")
    notifier = RecordingNotifier()

    result = publish_week(session, WEDNESDAY, notifier=notifier, actor="manager")

    assert result.week_start == SOURCE_WEEK
    assert result.staff_ids == sorted([avery, blake])
    assert casey not in result.staff_ids
    assert result.notified is True
    assert notifier.calls == [(SOURCE_WEEK, sorted([avery, blake]))]
    assert week_status(session, SOURCE_WEEK) == "published"


def test_week_status_moves_from_draft_to_stale(board) -> None:
    session, avery, _, _ = board
    assert week_status(session, SOURCE_WEEK) == "draft"
    publish_week(session, SOURCE_WEEK)
    assert week_status(session, SOURCE_WEEK) == "published"

    edit_occurrence(session, avery, WEDNESDAY, {"end": "15:00"}, "time_change")
    assert week_status(session, SOURCE_WEEK) == "stale"
    assert week_status(session, TARGET_WEEK) == "draft"

    publish_week(session, SOURCE_WEEK)
    assert week_status(session, SOURCE_WEEK) == "published"


def test_template_change_marks_later_published_weeks_stale(board) -> None:
    session, avery, _, _ = board
    publish_week(session, SOURCE_WEEK)
    publish_week(session, TARGET_WEEK)

    save_default_schedule(
        session, avery, TARGET_WEEK, {"monday": {"start": "06:00", "end": "14:00", "role": "Kennel Tech"}}
    )

    assert week_status(session, SOURCE_WEEK) == "published"
    assert week_status(session, TARGET_WEEK) == "stale"


def test_notification_failure_keeps_the_publish_stamp(board) -> None:
    session, *_ = board
    result = publish_week(session, SOURCE_WEEK, notifier=BrokenNotifier())

    assert result.notified is False
    assert week_status(session, SOURCE_WEEK) == "published"
    assert list_audit_log(session, action="WEEK_PUBLISH")


def test_save_staff_week_applies_each_day(board) -> None:
    session, avery, _, _ = board
    days = [
        {"start": "10:00", "end": "14:00"},
        None,
        {"start": "07:00", "end": "17:00", "override_reason": "time_change"},
        {"start": "09:00", "end": "17:00"},
        {"off": True, "override_reason": "sick"},
        {"start": "09:00", "end": "17:00", "role": "Kennel Tech"},
        None,
    ]

    week = save_staff_week(session, avery, SOURCE_WEEK, days, actor="manager")

    states = [shift.state for shift in week]
    assert states == [
        ShiftState.manual,
        ShiftState.default,
        ShiftState.override,
        ShiftState.default,
        ShiftState.override,
        ShiftState.default,
        ShiftState.off,
    ]
    assert week[0].role == "Kennel Tech"
    assert not week[4].is_working

    cleared = save_staff_week(session, avery, SOURCE_WEEK, [None] * 7)
    assert cleared[0].state is ShiftState.off
    assert cleared[2].state is ShiftState.override


def test_save_staff_week_needs_seven_days(board) -> None:
    session, avery, _, _ = board
    with pytest.raises(ValidationError):
        save_staff_week(session, avery, SOURCE_WEEK, [None] * 5)
    with pytest.raises(ValidationError, match="must be an object"):
        save_staff_week(session, avery, SOURCE_WEEK, [None, "09:00-17:00", None, None, None, None, None])
