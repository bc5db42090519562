from __future__ import annotations

import datetime
import logging
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


class Notifier:
    """Receives the fan-out when a week is published."""

    def notify_published(self, week_start: datetime.date, staff_ids: List[int]) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def notify_published(self, week_start: datetime.date, staff_ids: List[int]) -> None:
        logger.info(
            "Week of %s published; notifying %d staff member(s): %s",
            week_start.isoformat(),
            len(staff_ids),
            ", ".join(str(staff_id) for staff_id in staff_ids) or "-",
        )


def dispatch_published(
    notifier: Optional[Notifier],
    week_start: datetime.date,
    staff_ids: Iterable[int],
) -> bool:
    """Hand the publish fan-out to ``notifier``; failures are logged, never raised."""
    target = notifier or LoggingNotifier()
    recipients = list(staff_ids)
    try:
        target.notify_published(week_start, recipients)
    except Exception:  # noqa: BLE001 - delivery is fire-and-forget
        logger.exception("Publish notification for week of %s failed", week_start.isoformat())
        return False
    return True
