from __future__ import annotations

import datetime
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
for path in (APP_DIR, APP_DIR / "scripts"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from database import Base  # noqa: E402
from reconciliation import ShiftState, resolve_week  # noqa: E402
from seed_staff import SAMPLE_STAFF, seed_staff  # noqa: E402
from staff_directory import list_staff  # noqa: E402

WEEK_START = datetime.date(2024, 4, 7)


def test_seed_is_idempotent_and_builds_templates() -> None:
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    first = seed_staff(factory, effective_from=WEEK_START)
    second = seed_staff(factory, effective_from=WEEK_START)

    assert first == {"created": len(SAMPLE_STAFF), "refreshed": 0, "schedules": len(SAMPLE_STAFF)}
    assert second == {"created": 0, "refreshed": len(SAMPLE_STAFF), "schedules": 0}

    with factory() as session:
        active = list_staff(session)
        assert len(active) == len(SAMPLE_STAFF) - 1
        avery = next(member for member in active if member.name == "Avery Cole")
        week = resolve_week(session, [avery.id], WEEK_START)
        assert [shift.state for shift in week] == [ShiftState.off] + [ShiftState.default] * 5 + [ShiftState.off]
        assert week[1].start == datetime.time(6, 0)
    engine.dispose()
