from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import asyncio
import json
import logging

import httpx

from ..config import Settings
from ..db import to_iso, utcnow
from ..errors import ConfigurationError, MissingContactError, ProviderCallError
from ..schemas.pydantic_schemas import CallStatus, Profile, Schedule, Task, can_transition
from .analysis_queue import AnalysisJob, AnalysisQueue

# Set up logger
logger = logging.getLogger(__name__)


def build_conversation_script(tasks: List[Task], schedule_name: str) -> str:
    """Render the agent instructions for a check-in call, one line per task."""
    lines = []
    for index, task in enumerate(tasks, start=1):
        if task.target_value is not None and task.unit:
            target = f"{task.target_value:g}"
            lines.append(f'{index}. "{task.title}": Target is {target} {task.unit}. Ask how many {task.unit} they completed today.')
        else:
            lines.append(f'{index}. "{task.title}": Ask if they made progress on this goal today.')
    tasks_list = "\n".join(lines)

    return (
        f'You are a supportive accountability partner. The user scheduled a call named "{schedule_name}".\n\n'
        "Your goal is to check in on their daily goals and build lasting habits. Be warm, encouraging, and concise.\n\n"
        f"Here are their tasks to ask about:\n{tasks_list}\n\n"
        "Instructions:\n"
        "1. Greet them warmly and introduce yourself\n"
        "2. Ask about each task one by one\n"
        "3. Listen to their responses and be encouraging\n"
        "4. After all tasks, provide a brief motivational message\n"
        "5. Thank them and end the call\n\n"
        "Keep the conversation natural and supportive. This should take 3-5 minutes total."
    )


class CallInitiator(ABC):
    """Creates the call record and starts the call.

    Status flow: scheduled -> initiated -> in_progress -> completed | failed.
    """

    def __init__(self, db: Any, settings: Settings, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.settings = settings
        self.clock = clock

    async def initiate(self, schedule: Schedule) -> Dict[str, Any]:
        profile, tasks = self._resolve_context(schedule.user_id)
        created_at = self.clock()
        record = self.db.create_call_log({
            "user_id": schedule.user_id,
            "schedule_id": schedule.id,
            "call_status": CallStatus.SCHEDULED.value,
            "scheduled_at": to_iso(created_at),
            "started_at": to_iso(created_at),
        })
        logger.info(f"Created call record {record['id']} for schedule {schedule.id} ({schedule.name})")
        script = build_conversation_script(tasks, schedule.name)
        return await self._start(record, schedule, profile, tasks, script)

    def _resolve_context(self, user_id: str) -> Tuple[Profile, List[Task]]:
        row = self.db.get_profile(user_id)
        if not row or not (row.get("phone_number") or "").strip():
            # Nothing has been written yet, so a bad profile leaves no orphan call record
            raise MissingContactError(user_id)
        profile = Profile(**row)
        tasks = [Task(**t) for t in self.db.list_active_tasks(user_id)]
        return profile, tasks

    def _transition(self, call_id: str, target: CallStatus, **fields: Any) -> Optional[Dict[str, Any]]:
        current = self.db.get_call_log(call_id)
        if current is None:
            logger.warning(f"Call record {call_id} disappeared before moving to {target.value}")
            return None
        if not can_transition(CallStatus(current["call_status"]), target):
            logger.warning(f"Refusing to move call {call_id} from {current['call_status']} to {target.value}")
            return current
        fields["call_status"] = target.value
        return self.db.update_call_log(call_id, fields)

    @abstractmethod
    async def _start(self, record: Dict[str, Any], schedule: Schedule, profile: Profile,
                     tasks: List[Task], script: str) -> Dict[str, Any]:
        ...


class ProviderCallInitiator(CallInitiator):
    """Places the call through the voice provider's HTTP API."""

    def __init__(self, db: Any, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(db, settings, clock)
        if not settings.voice_api_key:
            raise ConfigurationError("VOICE_API_KEY not configured")
        self._transport = transport

    def build_payload(self, profile: Profile, script: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "phone_number": profile.phone_number,
            "task": script,
            "language": self.settings.voice_language,
            "temperature": self.settings.voice_temperature,
            "max_duration": self.settings.voice_max_duration_seconds,
            "webhook_url": self.settings.callback_url,
        }
        if self.settings.voice_voice:
            payload["voice"] = self.settings.voice_voice
        if self.settings.voice_model:
            payload["model"] = self.settings.voice_model
        return payload

    async def _start(self, record: Dict[str, Any], schedule: Schedule, profile: Profile,
                     tasks: List[Task], script: str) -> Dict[str, Any]:
        call_id = record["id"]
        headers = {
            "Authorization": f"Bearer {self.settings.voice_api_key}",
            "Content-Type": "application/json"
        }
        payload = self.build_payload(profile, script)
        logger.debug(f"Voice API payload: {json.dumps(payload, indent=2)}")

        try:
            async with httpx.AsyncClient(timeout=self.settings.voice_timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.settings.voice_api_url, headers=headers, json=payload)
        except httpx.RequestError as e:
            detail = str(e) or e.__class__.__name__
            logger.error(f"Voice API request error for call {call_id}: {detail}")
            self._transition(call_id, CallStatus.FAILED, error_message=detail)
            raise ProviderCallError(call_id, detail)

        logger.info(f"Voice API response for call {call_id}: {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            detail = json.dumps(data if data is not None else {"status": response.status_code})
            logger.error(f"Voice API error for call {call_id}: {response.status_code} - {detail}")
            self._transition(call_id, CallStatus.FAILED, error_message=detail)
            raise ProviderCallError(call_id, detail, status_code=response.status_code)

        provider_call_id = data.get("call_id") if isinstance(data, dict) else None
        if not provider_call_id:
            logger.warning(f"Voice API accepted call {call_id} without a call_id; webhooks will rely on fallback matching")
        updated = self._transition(call_id, CallStatus.INITIATED, provider_call_id=provider_call_id)
        logger.info(f"Call {call_id} initiated with provider call id {provider_call_id}")
        return updated or record


class SimulatedCallInitiator(CallInitiator):
    """Streams a scripted transcript into the call record without any provider.

    Lines are appended one per interval on a background task; the call then
    completes with a fixed duration. Pending simulations are not cancelled
    on shutdown.
    """

    def __init__(self, db: Any, settings: Settings, analysis_queue: Optional[AnalysisQueue] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(db, settings, clock)
        self.analysis_queue = analysis_queue
        self._pending: Set[asyncio.Task] = set()

    @staticmethod
    def simulated_lines(profile: Profile, tasks: List[Task]) -> List[str]:
        first = tasks[0].title if len(tasks) > 0 else "(no task)"
        second = tasks[1].title if len(tasks) > 1 else "(no task)"
        return [
            f"Hi {profile.full_name or 'there'}, this is your check-in call about your tasks.",
            f"First task: {first}. How did you get on today?",
            f"Second task: {second}.",
            "Thanks for sharing, that's helpful. Keep it up!",
            "Call complete. Logged your responses.",
        ]

    async def _start(self, record: Dict[str, Any], schedule: Schedule, profile: Profile,
                     tasks: List[Task], script: str) -> Dict[str, Any]:
        call_id = record["id"]
        updated = self._transition(call_id, CallStatus.IN_PROGRESS)
        lines = self.simulated_lines(profile, tasks)
        task = asyncio.create_task(self._run_simulation(call_id, schedule.user_id, lines))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        logger.info(f"Simulated call {call_id} started with {len(lines)} scripted lines")
        return updated or record

    def _append_line(self, call_id: str, line: str) -> None:
        # Read-modify-write; the simulator is the only writer for its call
        row = self.db.get_call_log(call_id) or {}
        existing = row.get("call_transcript") or ""
        updated = f"{existing}\n{line}" if existing else line
        self.db.update_call_log(call_id, {"call_transcript": updated})

    async def _run_simulation(self, call_id: str, user_id: str, lines: List[str]) -> None:
        interval = self.settings.simulator_line_interval_seconds
        for idx, line in enumerate(lines):
            await asyncio.sleep(interval)
            try:
                self._append_line(call_id, line)
                logger.debug(f"Simulator wrote line {idx} for call {call_id}: {line[:60]}")
            except Exception as e:
                logger.error(f"Simulator failed to write line {idx} for call {call_id}: {e}")

        await asyncio.sleep(interval)
        try:
            row = self.db.get_call_log(call_id) or {}
            transcript = row.get("call_transcript") or ""
            ended_at = self.clock()
            final = self._transition(
                call_id,
                CallStatus.COMPLETED,
                ended_at=to_iso(ended_at),
                call_duration=self.settings.simulator_duration_seconds,
                call_transcript=transcript,
            )
            logger.info(f"Simulated call {call_id} completed")
        except Exception as e:
            logger.error(f"Failed to finalize simulated call {call_id}: {e}")
            return

        if final and final.get("call_status") == CallStatus.COMPLETED.value and self.analysis_queue is not None:
            if self.db.claim_analysis(call_id):
                self.analysis_queue.enqueue(AnalysisJob(user_id=user_id, call_id=call_id,
                                                        transcript=transcript, reference_date=ended_at))

    async def wait_idle(self) -> None:
        """Wait for every running simulation to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


def get_call_initiator(db: Any, settings: Settings, analysis_queue: Optional[AnalysisQueue] = None) -> CallInitiator:
    if settings.use_provider:
        logger.info("VOICE_API_KEY present: calls go through the voice provider")
        return ProviderCallInitiator(db, settings)
    logger.info("VOICE_API_KEY missing: using the call simulator")
    return SimulatedCallInitiator(db, settings, analysis_queue=analysis_queue)
