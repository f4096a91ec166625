from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from ..schemas.pydantic_schemas import Schedule

logger = logging.getLogger(__name__)

DEFAULT_TRIGGER_WINDOW = timedelta(minutes=1)


def schedule_weekday(dt: datetime) -> int:
    """Weekday index in the schedule convention: 0=Sunday .. 6=Saturday."""
    return dt.isoweekday() % 7


def scheduled_instant(schedule: Schedule, local_day: datetime) -> datetime:
    """The schedule's hour:minute on ``local_day``'s date, in the schedule's zone, as UTC."""
    local = local_day.replace(
        hour=schedule.time_of_day.hour,
        minute=schedule.time_of_day.minute,
        second=0,
        microsecond=0,
    )
    return local.astimezone(timezone.utc)


def should_fire(schedule: Schedule, now_utc: datetime, tolerance: Optional[timedelta] = None) -> bool:
    """True when ``now_utc`` is within ``tolerance`` (inclusive) of a scheduled instant.

    The comparison is done per local calendar day in the schedule's timezone,
    using the tz database, so DST shifts move the UTC instant as expected.
    Yesterday and tomorrow are checked as well so windows that straddle
    local midnight still match.
    """
    if tolerance is None:
        tolerance = DEFAULT_TRIGGER_WINDOW
    if not schedule.is_active or not schedule.days_of_week:
        return False
    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)

    try:
        tz = ZoneInfo(schedule.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.error(f"Schedule {schedule.id} has unknown timezone {schedule.timezone!r}; skipping")
        return False

    now_local = now_utc.astimezone(tz)
    for day_offset in (-1, 0, 1):
        local_day = now_local + timedelta(days=day_offset)
        if schedule_weekday(local_day) not in schedule.days_of_week:
            continue
        target = scheduled_instant(schedule, local_day)
        if abs(now_utc - target) <= tolerance:
            return True
    return False
