"""Scale-to-zero schedule evaluation.

A pool may declare a 5-field cron expression. While one of its fire times is
within the tolerance window around the current tick, the pool's idle target
is forced to zero.
"""

from datetime import datetime, timedelta

from croniter import croniter

from buildfleet.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW = timedelta(minutes=2)


class InvalidScheduleError(ValueError):
    """Raised when a schedule is not a valid 5-field cron expression."""


def next_fire_after(schedule: str, start: datetime) -> datetime:
    """Return the first fire time strictly after ``start``.

    Raises:
        InvalidScheduleError: If ``schedule`` does not have exactly five
            fields or croniter rejects it.
    """
    fields = schedule.split()
    if len(fields) != 5:
        raise InvalidScheduleError(
            f"expected 5 fields (minute hour day-of-month month day-of-week), got {len(fields)}"
        )
    try:
        return croniter(" ".join(fields), start).get_next(datetime)
    except (ValueError, KeyError) as e:
        raise InvalidScheduleError(str(e)) from e


def should_scale_to_zero(
    schedule: str | None, now: datetime, window: timedelta = DEFAULT_WINDOW
) -> bool:
    """Whether a scale-to-zero moment is active at ``now``.

    True when the next fire time after ``now - window`` is not after ``now``.
    An empty schedule never fires. An invalid schedule is logged and treated
    as no schedule.
    """
    if not schedule or not schedule.strip():
        return False

    try:
        fire_time = next_fire_after(schedule, now - window)
    except InvalidScheduleError as e:
        logger.warning("Invalid scale-down schedule, ignoring", schedule=schedule, error=str(e))
        return False

    return now - window <= fire_time <= now
