from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, ShiftRecord, StaffMember  # noqa: E402
from default_schedules import save_default_schedule  # noqa: E402
from reconciliation import (  # noqa: E402
    ShiftState,
    group_by_staff,
    resolve,
    resolve_occurrence,
    resolve_range,
    resolve_week,
)

WEEK_START = datetime.date(2024, 4, 7)  # Sunday
WEDNESDAY = datetime.date(2024, 4, 10)
WEEKDAY_SHIFT = {"start": "09:00", "end": "17:00", "role": "Kennel Tech"}


class ReconciliationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)()
        self.avery = StaffMember(name="Avery Cole", default_role="Kennel Tech")
        self.blake = StaffMember(name="Blake Moreno", default_role="Front Desk")
        self.session.add_all([self.avery, self.blake])
        self.session.commit()
        weekdays = {day: dict(WEEKDAY_SHIFT) for day in ("monday", "tuesday", "wednesday", "thursday", "friday")}
        save_default_schedule(self.session, self.avery.id, datetime.date(2024, 1, 7), weekdays, actor="tests")

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _add_record(self, staff_id: int, date: datetime.date, *, source: str = "manual", **fields) -> ShiftRecord:
        record = ShiftRecord(
            staff_id=staff_id,
            date=date,
            start_time=fields.get("start", datetime.time(7, 0)),
            end_time=fields.get("end", datetime.time(15, 0)),
            role=fields.get("role", "Kennel Tech"),
            source=source,
            is_override=source == "default",
            override_reason="time_change" if source == "default" else None,
        )
        self.session.add(record)
        self.session.commit()
        return record

    def test_template_day_resolves_to_default(self) -> None:
        shift = resolve(self.session, self.avery.id, WEDNESDAY)
        self.assertEqual(shift.state, ShiftState.default)
        self.assertEqual(shift.start, datetime.time(9, 0))
        self.assertEqual(shift.end, datetime.time(17, 0))
        self.assertEqual(shift.role, "Kennel Tech")
        self.assertIsNone(shift.record_id)

    def test_day_missing_from_template_is_off(self) -> None:
        shift = resolve(self.session, self.avery.id, WEEK_START)
        self.assertEqual(shift.state, ShiftState.off)
        self.assertIsNone(shift.start)
        self.assertIsNone(shift.end)
        self.assertIsNone(shift.role)
        self.assertFalse(shift.is_working)

    def test_staff_without_template_is_off(self) -> None:
        shift = resolve(self.session, self.blake.id, WEDNESDAY)
        self.assertEqual(shift.state, ShiftState.off)

    def test_dates_before_effective_from_are_off(self) -> None:
        shift = resolve(self.session, self.avery.id, datetime.date(2024, 1, 3))
        self.assertEqual(shift.state, ShiftState.off)

    def test_manual_record_wins_over_template(self) -> None:
        record = self._add_record(self.avery.id, WEDNESDAY)
        shift = resolve(self.session, self.avery.id, WEDNESDAY)
        self.assertEqual(shift.state, ShiftState.manual)
        self.assertEqual(shift.start, datetime.time(7, 0))
        self.assertEqual(shift.record_id, record.id)
        self.assertEqual(shift.version, 1)

    def test_default_sourced_record_resolves_to_override(self) -> None:
        self._add_record(self.avery.id, WEDNESDAY, source="default")
        shift = resolve(self.session, self.avery.id, WEDNESDAY)
        self.assertEqual(shift.state, ShiftState.override)
        self.assertEqual(shift.override_reason, "time_change")

    def test_newer_template_supersedes_older_from_its_effective_date(self) -> None:
        early = {"wednesday": {"start": "06:00", "end": "14:00", "role": "Kennel Tech"}}
        save_default_schedule(self.session, self.avery.id, WEEK_START, early, actor="tests")

        before = resolve(self.session, self.avery.id, datetime.date(2024, 4, 3))
        after = resolve(self.session, self.avery.id, WEDNESDAY)
        thursday = resolve(self.session, self.avery.id, datetime.date(2024, 4, 11))

        self.assertEqual(before.start, datetime.time(9, 0))
        self.assertEqual(after.start, datetime.time(6, 0))
        # The newer template has no Thursday, so the older one no longer applies.
        self.assertEqual(thursday.state, ShiftState.off)

    def test_resolve_week_matches_single_cell_resolution(self) -> None:
        self._add_record(self.blake.id, WEDNESDAY)
        week = resolve_week(self.session, [self.blake.id, self.avery.id], WEDNESDAY)

        self.assertEqual(len(week), 14)
        self.assertEqual([shift.staff_id for shift in week[:7]], [self.blake.id] * 7)
        self.assertEqual(week[0].date, WEEK_START)
        for shift in week:
            self.assertEqual(shift, resolve(self.session, shift.staff_id, shift.date))

    def test_resolution_is_repeatable(self) -> None:
        first = resolve_range(self.session, [self.avery.id], WEEK_START, WEEK_START + datetime.timedelta(days=13))
        second = resolve_range(self.session, [self.avery.id], WEEK_START, WEEK_START + datetime.timedelta(days=13))
        self.assertEqual(first, second)

    def test_empty_inputs_resolve_to_nothing(self) -> None:
        self.assertEqual(resolve_week(self.session, [], WEEK_START), [])
        self.assertEqual(resolve_range(self.session, [self.avery.id], WEDNESDAY, WEEK_START), [])

    def test_pure_resolution_without_sources_is_off(self) -> None:
        shift = resolve_occurrence(42, WEDNESDAY, None, None)
        self.assertEqual(shift.state, ShiftState.off)
        self.assertEqual(shift.duration_seconds, 0)

    def test_group_by_staff_keeps_date_order(self) -> None:
        grouped = group_by_staff(resolve_week(self.session, [self.avery.id, self.blake.id], WEEK_START))
        self.assertEqual(set(grouped), {self.avery.id, self.blake.id})
        dates = [shift.date for shift in grouped[self.avery.id]]
        self.assertEqual(dates, sorted(dates))

    def test_to_dict_reports_hours(self) -> None:
        payload = resolve(self.session, self.avery.id, WEDNESDAY).to_dict()
        self.assertEqual(payload["state"], "default")
        self.assertEqual(payload["start"], "09:00")
        self.assertEqual(payload["hours"], 8.0)


if __name__ == "__main__":
    unittest.main()
