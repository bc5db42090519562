from __future__ import annotations

import datetime
from typing import Optional


class ScheduleError(Exception):
    """Base class for errors raised by the scheduling core."""


class ValidationError(ScheduleError):
    """Raised when input is malformed or breaks a scheduling rule."""


class ConflictError(ScheduleError):
    """Raised when a target cell is occupied or a record changed underneath the caller."""

    def __init__(
        self,
        message: str,
        *,
        staff_id: Optional[int] = None,
        date: Optional[datetime.date] = None,
    ) -> None:
        super().__init__(message)
        self.staff_id = staff_id
        self.date = date


class NotFoundError(ScheduleError):
    """Raised when an operation expects a persisted record that does not exist."""
