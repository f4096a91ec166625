"""Scheduler worker process.

Polls active call schedules, matches them against the current time in each
schedule's timezone, skips schedules that fired recently, and starts a call
through the voice provider (or the simulator when VOICE_API_KEY is unset).

Run a single instance per database: two workers polling the same schedules
can both trigger before either call record is visible.
"""
import asyncio
import logging
import signal

from .config import configure_logging, get_settings
from .db import get_db
from .services.analysis_queue import AnalysisQueue
from .services.call_initiator import get_call_initiator
from .services.scheduler import SchedulerLoop
from .services.transcript_analyzer import TranscriptAnalyzer

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    db = get_db()
    queue = AnalysisQueue(TranscriptAnalyzer(db))
    queue.start()
    initiator = get_call_initiator(db, settings, analysis_queue=queue)
    loop = SchedulerLoop(db, initiator, settings)

    stop = asyncio.Event()
    running_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            running_loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    logger.info(
        f"Scheduler worker starting: trigger window {settings.trigger_window_minutes} min, "
        f"duplicate lookback {settings.duplicate_lookback_minutes} min"
    )
    try:
        await loop.run(stop)
    finally:
        await queue.stop()


def main() -> None:
    configure_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
