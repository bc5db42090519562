from __future__ import annotations

import datetime
from typing import Any, Mapping, Optional

from database import OVERRIDE_REASONS, TIME_OFF_REASONS
from errors import ValidationError

SECONDS_PER_DAY = 24 * 60 * 60


def parse_date(value: Any, *, field: str = "date") -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{field} must be a date in YYYY-MM-DD format.")


def parse_time(value: Any, *, field: str = "time") -> datetime.time:
    if isinstance(value, datetime.datetime):
        value = value.time()
    elif isinstance(value, str):
        try:
            value = datetime.time.fromisoformat(value.strip())
        except ValueError:
            value = None
    if isinstance(value, datetime.time):
        # Times are wall-clock values local to the site; offsets are not converted.
        if value.tzinfo is not None:
            raise ValidationError(f"{field} must not carry a UTC offset.")
        return value
    raise ValidationError(f"{field} must be a time in HH:MM format.")


def parse_flag(value: Any, *, field: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "yes", "1"):
            return True
        if text in ("false", "no", "0", ""):
            return False
    raise ValidationError(f"{field} must be true or false.")


def day_entry(value: Any, *, field: str) -> Optional[Mapping[str, Any]]:
    if value is None or isinstance(value, Mapping):
        return value
    raise ValidationError(f"{field} must be an object or null.")


def _seconds(value: datetime.time) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


def shift_duration_seconds(start: datetime.time, end: datetime.time) -> int:
    """Length of a shift, wrapping past midnight when it ends before it starts."""
    span = _seconds(end) - _seconds(start)
    if span < 0:
        span += SECONDS_PER_DAY
    return span


def validate_shift_times(start: datetime.time, end: datetime.time, *, overnight: bool = False) -> None:
    if start == end:
        raise ValidationError("Shift start and end cannot be the same time.")
    if end < start and not overnight:
        raise ValidationError(
            f"Shift ends ({end.strftime('%H:%M')}) before it starts ({start.strftime('%H:%M')}); "
            "mark it as overnight to wrap past midnight."
        )
    if end > start and overnight:
        raise ValidationError("Overnight shifts must end before their start time on the following day.")


def validate_role(role: Optional[str]) -> str:
    value = (role or "").strip()
    if not value:
        raise ValidationError("Shift role is required.")
    return value


def validate_override_reason(reason: Optional[str], *, required: bool = True) -> Optional[str]:
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("override reason must be a string")
    value = (reason or "").strip().lower()
    if not value:
        if required:
            raise ValidationError("override reason required")
        return None
    if value not in OVERRIDE_REASONS:
        raise ValidationError(
            f"Unknown override reason '{reason}'. Expected one of: {', '.join(OVERRIDE_REASONS)}."
        )
    return value


def is_time_off_reason(reason: Optional[str]) -> bool:
    return (reason or "") in TIME_OFF_REASONS
