from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class CallStatus(str, Enum):
    SCHEDULED = "scheduled"
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.COMPLETED, CallStatus.FAILED)


_STATUS_ORDER = {
    CallStatus.SCHEDULED: 0,
    CallStatus.INITIATED: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.COMPLETED: 3,
    CallStatus.FAILED: 3,
}

OPEN_STATUSES = (CallStatus.SCHEDULED, CallStatus.INITIATED, CallStatus.IN_PROGRESS)


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    """Status only moves forward; terminal states accept nothing new."""
    current = CallStatus(current)
    target = CallStatus(target)
    if current.is_terminal:
        return False
    return _STATUS_ORDER[target] > _STATUS_ORDER[current]


class Schedule(BaseModel):
    id: str
    user_id: str
    name: str = ""
    days_of_week: List[int]
    time_of_day: time
    timezone: str = "UTC"
    is_active: bool = True

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _stringify_ids(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("time_of_day", mode="before")
    @classmethod
    def _parse_hh_mm(cls, v: Any) -> Any:
        if isinstance(v, str):
            parts = v.strip().split(":")
            if len(parts) >= 2:
                return time(int(parts[0]), int(parts[1]))
        return v

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, v: List[int]) -> List[int]:
        for day in v:
            if day < 0 or day > 6:
                raise ValueError(f"day of week must be 0 (Sunday) to 6 (Saturday), got {day}")
        return sorted(set(v))

    @model_validator(mode="after")
    def _active_needs_days(self) -> "Schedule":
        if self.is_active and not self.days_of_week:
            raise ValueError("an active schedule needs at least one day of week")
        return self


class Profile(BaseModel):
    id: str
    phone_number: Optional[str] = None
    full_name: Optional[str] = None
    timezone: Optional[str] = None
    preferred_voice: Optional[str] = None


class Task(BaseModel):
    id: str
    user_id: str
    title: str
    target_value: Optional[float] = None
    unit: Optional[str] = None
    is_active: bool = True

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _stringify_ids(cls, v: Any) -> Any:
        return str(v) if v is not None else v


class CallRecord(BaseModel):
    id: str
    user_id: str
    schedule_id: Optional[str] = None
    call_status: CallStatus
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    call_duration: Optional[int] = None
    call_transcript: Optional[str] = None
    provider_call_id: Optional[str] = None
    error_message: Optional[str] = None
    recording_url: Optional[str] = None
    analyzed_at: Optional[datetime] = None


class CallEventRead(BaseModel):
    id: str
    call_id: str
    speaker: Optional[str] = None
    text: str
    provider_event_id: Optional[str] = None
    created_at: Optional[datetime] = None


class WebhookSubEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    speaker: Optional[str] = None
    text: Optional[str] = None
    transcript: Optional[str] = None
    message: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return str(v)

    @property
    def content(self) -> str:
        return self.text or self.transcript or self.message or ""


class WebhookEvent(BaseModel):
    """Inbound provider notification. Known fields only; the rest is dropped."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    provider_call_id: str = Field(validation_alias=AliasChoices("provider_call_id", "call_id"))
    status: Optional[str] = None
    transcript: Optional[str] = None
    duration: Optional[float] = Field(default=None, validation_alias=AliasChoices("duration", "corrected_duration"))
    recording_reference: Optional[str] = Field(default=None, validation_alias=AliasChoices("recording_reference", "recording_url"))
    phone_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("phone_number", "to"))
    error_message: Optional[str] = Field(default=None, validation_alias=AliasChoices("error_message", "error"))
    events: List[WebhookSubEvent] = Field(default_factory=list)

    @field_validator("provider_call_id", mode="before")
    @classmethod
    def _require_call_id(cls, v: Any) -> Any:
        if v is None or len(str(v).strip()) == 0:
            raise ValueError("provider call id is required")
        return str(v).strip()

    @field_validator("error_message", mode="before")
    @classmethod
    def _flatten_error(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("events", mode="before")
    @classmethod
    def _null_events(cls, v: Any) -> Any:
        return v or []

    @property
    def normalized_status(self) -> str:
        return (self.status or "").strip().lower()


class TaskOutcome(BaseModel):
    task_id: str
    task_title: str
    inferred_text: Optional[str] = None
    response_value: Optional[float] = None
    completed: bool = False


class TriggerCallRequest(BaseModel):
    schedule_id: str


class TriggerCallResponse(BaseModel):
    call_id: str
    status: CallStatus
    provider_call_id: Optional[str] = None


class CallListResponse(BaseModel):
    items: List[CallRecord]
    total: int


class CallDetail(CallRecord):
    events: List[CallEventRead] = Field(default_factory=list)
    task_responses: List[Dict[str, Any]] = Field(default_factory=list)


class Recommendation(BaseModel):
    task_id: str
    title: str
    suggestion: str


class AnalyzeResponse(BaseModel):
    success: bool = True
    results: List[TaskOutcome]
    recommendations: List[Recommendation]
