from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List


DATA_DIR = Path(os.environ.get("SHIFTBOARD_DATA_DIR") or Path(__file__).resolve().parent / "data")
DATABASE_URL = os.environ.get("SHIFTBOARD_DATABASE_URL") or f"sqlite:///{(DATA_DIR / 'shiftboard.db').as_posix()}"

# Sunday-first, matching the default schedule's day slots.
DAY_KEYS = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]

OVERTIME_THRESHOLD_HOURS = 40
LONG_SHIFT_HOURS = 10
COVERAGE_MIN_STAFF = 2
COVERAGE_STAFF_RATIO = 0.5
CLONE_CHUNK_SIZE = 200

DEFAULT_ROLE = "Kennel Tech"

SHIFT_PRESETS: List[Dict[str, str]] = [
    {"id": "morning", "label": "Morning", "start": "06:00", "end": "14:00", "role": DEFAULT_ROLE},
    {"id": "day", "label": "Day", "start": "09:00", "end": "17:00", "role": DEFAULT_ROLE},
    {"id": "evening", "label": "Evening", "start": "14:00", "end": "22:00", "role": DEFAULT_ROLE},
    {"id": "weekend", "label": "Weekend", "start": "07:00", "end": "19:00", "role": DEFAULT_ROLE},
]


def shift_preset(preset_id: str) -> Dict[str, str]:
    for preset in SHIFT_PRESETS:
        if preset["id"] == preset_id:
            return dict(preset)
    raise KeyError(f"Unknown shift preset '{preset_id}'.")
