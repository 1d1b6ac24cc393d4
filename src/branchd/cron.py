"""Cron schedule evaluation for automatic refreshes."""

import logging
from datetime import datetime

from croniter import croniter

from branchd.errors import ValidationError

logger = logging.getLogger(__name__)


def next_refresh(schedule: str, after: datetime) -> datetime | None:
    """Next fire time of a five-field cron ``schedule`` after ``after``.

    Returns ``None`` for an empty schedule, and logs and returns ``None``
    for an invalid one.
    """
    if not schedule or not schedule.strip():
        return None
    if not croniter.is_valid(schedule):
        logger.warning("Invalid refresh schedule %r, automatic refresh disabled", schedule)
        return None
    return croniter(schedule, after).get_next(datetime)


def validate_schedule(schedule: str) -> None:
    """Reject a non-empty schedule croniter cannot parse.

    Raises:
        ValidationError: If ``schedule`` is set but invalid.
    """
    if schedule.strip() and not croniter.is_valid(schedule):
        raise ValidationError(f"invalid cron expression: {schedule!r}")
