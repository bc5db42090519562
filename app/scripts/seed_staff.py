from __future__ import annotations

import datetime
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import SessionLocal, StaffMember, init_database, normalize_week_start
from default_schedules import get_active_schedule, save_default_schedule
from settings import shift_preset

logger = logging.getLogger(__name__)


def _preset_day(preset_id: str, role: Optional[str] = None) -> Dict[str, Any]:
    preset = shift_preset(preset_id)
    return {"start": preset["start"], "end": preset["end"], "role": role or preset["role"]}


# Sunday-first weeks; None is a day off.
SAMPLE_STAFF: List[Dict[str, Any]] = [
    {
        "name": "Avery Cole",
        "default_role": "Kennel Tech",
        "week": [None, "morning", "morning", "morning", "morning", "morning", None],
    },
    {
        "name": "Blake Moreno",
        "default_role": "Kennel Tech",
        "week": ["weekend", None, None, "evening", "evening", "evening", "weekend"],
    },
    {
        "name": "Casey Ito",
        "default_role": "Front Desk",
        "week": [None, "day", "day", "day", "day", "day", None],
    },
    {
        "name": "Devon Price",
        "default_role": "Groomer",
        "week": [None, None, "day", "day", "day", "day", "weekend"],
    },
    {
        "name": "Emerson Hale",
        "default_role": "Kennel Tech",
        "week": ["evening", "evening", None, None, "morning", "morning", "evening"],
    },
    {
        "name": "Finley Shaw",
        "default_role": "Trainer",
        "status": "inactive",
        "week": [None, "day", None, "day", None, "day", None],
    },
]


def seed_staff(session_factory=SessionLocal, effective_from: Optional[datetime.date] = None) -> Dict[str, int]:
    """Insert the sample team and one default schedule each; rerunning refreshes profiles."""
    effective = normalize_week_start(effective_from or datetime.date.today())
    created = 0
    refreshed = 0
    schedules = 0
    with session_factory() as session:
        for entry in SAMPLE_STAFF:
            member = session.scalars(select(StaffMember).where(StaffMember.name == entry["name"])).first()
            if member is None:
                member = StaffMember(name=entry["name"])
                session.add(member)
                created += 1
            else:
                refreshed += 1
            member.default_role = entry["default_role"]
            member.status = entry.get("status", "active")
            session.commit()

            if get_active_schedule(session, member.id, effective) is not None:
                continue
            days = [
                _preset_day(preset_id, member.default_role) if preset_id else None
                for preset_id in entry["week"]
            ]
            save_default_schedule(session, member.id, effective, days, actor="seed")
            schedules += 1
    logger.info(
        "Seed complete. Created %d staff, refreshed %d profiles, added %d default schedules.",
        created,
        refreshed,
        schedules,
    )
    return {"created": created, "refreshed": refreshed, "schedules": schedules}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_database()
    seed_staff()
