import json
from dataclasses import replace

import httpx
import pytest

from checkin.errors import ConfigurationError, MissingContactError, ProviderCallError
from checkin.schemas.pydantic_schemas import Schedule, Task
from checkin.services.analysis_queue import AnalysisQueue
from checkin.services.call_initiator import (
    ProviderCallInitiator,
    SimulatedCallInitiator,
    build_conversation_script,
    get_call_initiator,
)
from checkin.services.transcript_analyzer import TranscriptAnalyzer


@pytest.fixture
def provider_settings(settings):
    return replace(settings, voice_api_key="sk-test", app_url="https://checkin.example.com")


@pytest.fixture
def schedule(schedule_row):
    return Schedule(**schedule_row)


class Recorder:
    def __init__(self, status_code=200, body=None, raise_error=None):
        self.status_code = status_code
        self.body = body if body is not None else {"status": "success", "call_id": "prov-123"}
        self.raise_error = raise_error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error:
            raise self.raise_error(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def payload(self):
        return json.loads(self.requests[-1].content)


class TestConversationScript:
    def test_numeric_task_and_plain_task(self):
        tasks = [
            Task(id="t1", user_id="u", title="Drink water", target_value=8, unit="glasses"),
            Task(id="t2", user_id="u", title="Exercise"),
        ]
        script = build_conversation_script(tasks, "Morning check-in")
        assert 'call named "Morning check-in"' in script
        assert '1. "Drink water": Target is 8 glasses. Ask how many glasses they completed today.' in script
        assert '2. "Exercise": Ask if they made progress on this goal today.' in script

    def test_target_without_unit_is_plain(self):
        script = build_conversation_script([Task(id="t", user_id="u", title="Read", target_value=20)], "x")
        assert '1. "Read": Ask if they made progress on this goal today.' in script


class TestProviderCallInitiator:
    async def test_success_marks_initiated_and_stores_provider_id(self, db, provider_settings, schedule, tasks):
        recorder = Recorder()
        initiator = ProviderCallInitiator(db, provider_settings, transport=httpx.MockTransport(recorder))

        record = await initiator.initiate(schedule)

        assert record["call_status"] == "initiated"
        assert record["provider_call_id"] == "prov-123"
        assert record["schedule_id"] == "sched-1"
        assert record["started_at"] is not None

        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.bland.ai/v1/calls"
        assert request.headers["Authorization"] == "Bearer sk-test"
        payload = recorder.payload
        assert payload["phone_number"] == "+15555550100"
        assert payload["language"] == "en"
        assert payload["temperature"] == 0.7
        assert payload["max_duration"] == 300
        assert payload["webhook_url"] == "https://checkin.example.com/api/voice/webhook"
        assert "Drink water" in payload["task"]
        assert "voice" not in payload and "model" not in payload

    async def test_optional_voice_and_model(self, db, provider_settings, schedule, tasks):
        recorder = Recorder()
        cfg = replace(provider_settings, voice_voice="maya", voice_model="enhanced")
        await ProviderCallInitiator(db, cfg, transport=httpx.MockTransport(recorder)).initiate(schedule)
        assert recorder.payload["voice"] == "maya"
        assert recorder.payload["model"] == "enhanced"

    async def test_non_2xx_marks_failed_with_verbatim_error(self, db, provider_settings, schedule, tasks):
        body = {"status": "error", "message": "Rate limit exceeded", "errors": ["too many calls"]}
        initiator = ProviderCallInitiator(db, provider_settings, transport=httpx.MockTransport(Recorder(429, body)))

        with pytest.raises(ProviderCallError) as exc:
            await initiator.initiate(schedule)

        assert exc.value.status_code == 429
        row = db.get_call_log(exc.value.call_id)
        assert row["call_status"] == "failed"
        assert json.loads(row["error_message"]) == body
        assert row["provider_call_id"] is None

    async def test_transport_error_marks_failed(self, db, provider_settings, schedule, tasks):
        def boom(request):
            return httpx.ConnectError("connection refused", request=request)

        initiator = ProviderCallInitiator(db, provider_settings, transport=httpx.MockTransport(Recorder(raise_error=boom)))
        with pytest.raises(ProviderCallError) as exc:
            await initiator.initiate(schedule)

        row = db.get_call_log(exc.value.call_id)
        assert row["call_status"] == "failed"
        assert "connection refused" in row["error_message"]

    async def test_missing_phone_aborts_before_any_record(self, db, provider_settings, schedule, tasks):
        db.profiles["user-1"]["phone_number"] = None
        recorder = Recorder()
        initiator = ProviderCallInitiator(db, provider_settings, transport=httpx.MockTransport(recorder))

        with pytest.raises(MissingContactError):
            await initiator.initiate(schedule)

        assert db.call_logs == {}
        assert recorder.requests == []

    def test_missing_credential_is_a_configuration_error(self, db, settings):
        with pytest.raises(ConfigurationError):
            ProviderCallInitiator(db, settings)


class TestSimulatedCallInitiator:
    async def test_streams_lines_then_completes(self, db, settings, schedule, tasks):
        initiator = SimulatedCallInitiator(db, settings)

        record = await initiator.initiate(schedule)
        assert record["call_status"] == "in_progress"

        await initiator.wait_idle()
        row = db.get_call_log(record["id"])
        assert row["call_status"] == "completed"
        assert row["call_duration"] == 180
        assert row["ended_at"] is not None
        lines = row["call_transcript"].split("\n")
        assert len(lines) == 5
        assert lines[0].startswith("Hi Sam")
        assert "Drink water" in lines[1]
        assert "Exercise" in lines[2]

    async def test_no_tasks_uses_placeholders(self, db, settings, schedule):
        initiator = SimulatedCallInitiator(db, settings)
        record = await initiator.initiate(schedule)
        await initiator.wait_idle()
        assert "(no task)" in db.get_call_log(record["id"])["call_transcript"]

    async def test_completion_enqueues_analysis_once(self, db, settings, schedule, tasks):
        queue = AnalysisQueue(TranscriptAnalyzer(db))
        initiator = SimulatedCallInitiator(db, settings, analysis_queue=queue)

        record = await initiator.initiate(schedule)
        await initiator.wait_idle()

        assert queue.pending() == 1
        assert await queue.drain() == 1
        responses = db.list_task_responses(record["id"])
        assert {r["task_id"] for r in responses} == {"task-water", "task-exercise"}
        assert db.get_call_log(record["id"])["analyzed_at"] is not None

    async def test_missing_phone_aborts(self, db, settings, schedule, tasks):
        db.profiles["user-1"]["phone_number"] = "  "
        with pytest.raises(MissingContactError):
            await SimulatedCallInitiator(db, settings).initiate(schedule)
        assert db.call_logs == {}


def test_factory_picks_by_credential(db, settings, provider_settings):
    assert isinstance(get_call_initiator(db, settings), SimulatedCallInitiator)
    assert isinstance(get_call_initiator(db, provider_settings), ProviderCallInitiator)
