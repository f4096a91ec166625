from datetime import datetime, timedelta
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(minutes=10)


class TriggerGuard:
    """Duplicate-trigger suppression.

    Any call record for the schedule whose ``started_at`` falls inside the
    look-back window blocks a new trigger, whatever its status. Failed
    attempts count too, which throttles retries of a broken schedule to
    one per window.
    """

    def __init__(self, db: Any, lookback: Optional[timedelta] = None) -> None:
        self.db = db
        self.lookback = lookback or DEFAULT_LOOKBACK

    def recently_triggered(self, schedule_id: str, now_utc: datetime) -> bool:
        since = now_utc - self.lookback
        rows = self.db.find_call_logs_for_schedule_since(schedule_id, since)
        if rows:
            logger.debug(f"Schedule {schedule_id} has {len(rows)} call(s) since {since.isoformat()}")
            return True
        return False
