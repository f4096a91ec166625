from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional
import asyncio
import logging

from pydantic import ValidationError

from ..config import Settings
from ..db import utcnow
from ..errors import CheckinError
from ..schemas.pydantic_schemas import Schedule
from .call_initiator import CallInitiator
from .schedule_matcher import should_fire
from .trigger_guard import TriggerGuard

logger = logging.getLogger(__name__)


@dataclass
class PollReport:
    started_at: datetime
    scanned: int = 0
    triggered: List[str] = field(default_factory=list)
    skipped_recent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class SchedulerLoop:
    """Polls active schedules and fires the ones whose window contains now.

    One pass at a time: the next poll starts only after the previous scan
    finished. Assumes a single scheduler instance per data store.
    """

    def __init__(self, db: Any, initiator: CallInitiator, settings: Settings,
                 guard: Optional[TriggerGuard] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.initiator = initiator
        self.settings = settings
        self.guard = guard or TriggerGuard(db, timedelta(minutes=settings.duplicate_lookback_minutes))
        self.tolerance = timedelta(minutes=settings.trigger_window_minutes)
        self.clock = clock
        self._pass_lock = asyncio.Lock()

    async def poll_once(self, now: Optional[datetime] = None) -> PollReport:
        async with self._pass_lock:
            now_utc = now or self.clock()
            report = PollReport(started_at=now_utc)
            try:
                rows = self.db.list_active_schedules()
            except Exception as e:
                logger.error(f"Failed to fetch schedules: {e}")
                return report

            report.scanned = len(rows)
            logger.info(f"Fetched {len(rows)} active schedules")
            for row in rows:
                await self._consider(row, now_utc, report)
            return report

    async def _consider(self, row: dict, now_utc: datetime, report: PollReport) -> None:
        try:
            schedule = Schedule(**row)
        except ValidationError as e:
            logger.error(f"Skipping malformed schedule {row.get('id')}: {e}")
            return

        if not should_fire(schedule, now_utc, self.tolerance):
            return

        try:
            recent = self.guard.recently_triggered(schedule.id, now_utc)
        except Exception as e:
            logger.error(f"Could not check recent calls for schedule {schedule.id}, not triggering: {e}")
            report.failed.append(schedule.id)
            return
        if recent:
            logger.info(f"Skipping schedule {schedule.id} because it was recently triggered.")
            report.skipped_recent.append(schedule.id)
            return

        logger.info(f"Triggering schedule {schedule.id} ({schedule.name}) at {now_utc.isoformat()}")
        try:
            record = await self.initiator.initiate(schedule)
        except CheckinError as e:
            # No automatic retry: the failed attempt blocks the schedule until the lookback passes
            logger.error(f"Failed to trigger schedule {schedule.id}: {e}")
            report.failed.append(schedule.id)
            return
        except Exception:
            logger.exception(f"Unexpected error triggering schedule {schedule.id}")
            report.failed.append(schedule.id)
            return
        logger.info(f"Call {record['id']} created for schedule {schedule.id} ({record.get('call_status')})")
        report.triggered.append(schedule.id)

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        interval = self.settings.poll_interval_seconds
        logger.info(f"Scheduler loop started. Poll interval: {interval}s")
        while not stop.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Poll error")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler loop stopped")
