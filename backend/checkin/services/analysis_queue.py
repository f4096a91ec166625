from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisJob:
    user_id: str
    call_id: str
    transcript: str
    reference_date: datetime


class AnalysisQueue:
    """Completed calls waiting for transcript analysis, consumed by one worker task."""

    def __init__(self, analyzer: Any) -> None:
        self.analyzer = analyzer
        self._queue: "asyncio.Queue[AnalysisJob]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def enqueue(self, job: AnalysisJob) -> None:
        logger.info(f"Queued transcript analysis for call {job.call_id}")
        self._queue.put_nowait(job)

    def pending(self) -> int:
        return self._queue.qsize()

    def process(self, job: AnalysisJob) -> List[Any]:
        outcomes = self.analyzer.analyze(job.user_id, job.call_id, job.transcript, job.reference_date)
        completed = sum(1 for o in outcomes if o.completed)
        logger.info(f"Analysis for call {job.call_id}: {len(outcomes)} task(s) mentioned, {completed} completed")
        return outcomes

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                self.process(job)
            except Exception:
                logger.exception(f"Transcript analysis failed for call {job.call_id}")
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def join(self) -> None:
        await self._queue.join()

    async def drain(self) -> int:
        """Process queued jobs inline, without a worker. Returns how many ran."""
        count = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                self.process(job)
            except Exception:
                logger.exception(f"Transcript analysis failed for call {job.call_id}")
            finally:
                self._queue.task_done()
            count += 1
        return count

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
