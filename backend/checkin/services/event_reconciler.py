from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from ..config import Settings
from ..db import parse_ts, to_iso, utcnow
from ..schemas.pydantic_schemas import CallStatus, WebhookEvent, WebhookSubEvent, can_transition
from .analysis_queue import AnalysisJob, AnalysisQueue

# Set up logger
logger = logging.getLogger(__name__)

COMPLETED_STATUSES = {"completed"}
FAILED_STATUSES = {"failed", "error", "no-answer", "no_answer", "busy", "canceled", "cancelled"}

TIER_PROVIDER_ID = "provider_call_id"
TIER_PHONE = "phone_recent"
TIER_RECENT_OPEN = "recent_open"


@dataclass
class ReconcileResult:
    call_id: Optional[str] = None
    tier: Optional[str] = None
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    status: Optional[str] = None
    analysis_enqueued: bool = False

    @property
    def matched(self) -> bool:
        return self.call_id is not None


class EventReconciler:
    """Matches provider webhooks to call records and applies them.

    Resolution tiers, first hit wins:
      1. stored provider call id
      2. contact phone -> owning user -> their latest call in the window
      3. latest non-terminal call of anyone in the window
    Unmatched events are acknowledged and dropped.
    """

    def __init__(self, db: Any, settings: Settings, analysis_queue: Optional[AnalysisQueue] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.settings = settings
        self.analysis_queue = analysis_queue
        self.clock = clock

    @property
    def fallback_window(self) -> timedelta:
        return timedelta(minutes=self.settings.reconcile_fallback_window_minutes)

    def resolve(self, event: WebhookEvent, now: Optional[datetime] = None) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        now = now or self.clock()
        since = now - self.fallback_window

        row = self.db.find_call_log_by_provider_id(event.provider_call_id)
        if row:
            return row, TIER_PROVIDER_ID

        if event.phone_number:
            profile = self.db.find_profile_by_phone(event.phone_number)
            if profile:
                row = self.db.find_latest_call_log_for_user(profile["id"], since)
                if row:
                    return row, TIER_PHONE

        row = self.db.find_latest_open_call_log(since)
        if row:
            return row, TIER_RECENT_OPEN
        return None, None

    def ingest(self, event: WebhookEvent) -> ReconcileResult:
        now = self.clock()
        result = ReconcileResult()
        record, tier = self.resolve(event, now)
        if record is None:
            logger.info(f"No call record matches provider call {event.provider_call_id}; acknowledging without changes")
            return result

        call_id = str(record["id"])
        result.call_id = call_id
        result.tier = tier
        logger.info(f"Webhook for provider call {event.provider_call_id} matched call {call_id} via {tier}")

        if tier != TIER_PROVIDER_ID and not record.get("provider_call_id"):
            # Bind the id so later deliveries hit tier 1
            try:
                record = self.db.update_call_log(call_id, {"provider_call_id": event.provider_call_id}) or record
            except Exception as e:
                logger.error(f"Failed to store provider call id on call {call_id}: {e}")

        self._append_fragments(call_id, event, result)

        status = event.normalized_status
        if status in COMPLETED_STATUSES:
            self._complete(record, event, now, result)
        elif status in FAILED_STATUSES:
            self._fail(record, event, now, result)
        else:
            self._mark_in_progress(record, now, result)
        return result

    def _fragments(self, call_id: str, event: WebhookEvent) -> List[WebhookSubEvent]:
        if event.events:
            return event.events
        if event.transcript:
            # A bare transcript carries no event id; skip it when the same text is already logged
            existing = {e.get("text") for e in self.db.list_call_events(call_id)}
            if event.transcript in existing:
                return []
            return [WebhookSubEvent(text=event.transcript)]
        return []

    def _append_fragments(self, call_id: str, event: WebhookEvent, result: ReconcileResult) -> None:
        for sub in self._fragments(call_id, event):
            text = sub.content
            if not text:
                continue
            try:
                if sub.id and self.db.call_event_exists(call_id, sub.id):
                    logger.debug(f"Skipping duplicate event {sub.id} for call {call_id}")
                    result.duplicates += 1
                    continue
                self.db.insert_call_event({
                    "call_id": call_id,
                    "speaker": sub.speaker,
                    "text": text,
                    "provider_event_id": sub.id,
                })
                result.inserted += 1
            except Exception as e:
                # Best effort: keep going with the rest of the batch
                logger.error(f"Failed to insert event {sub.id} for call {call_id}: {e}")
                result.errors += 1

    def _complete(self, record: Dict[str, Any], event: WebhookEvent, now: datetime, result: ReconcileResult) -> None:
        call_id = str(record["id"])
        current = CallStatus(record["call_status"])
        if current == CallStatus.FAILED:
            logger.warning(f"Completion webhook for call {call_id} ignored: call already failed")
            result.status = current.value
            return

        events = self.db.list_call_events(call_id)
        final_transcript = "\n".join(e["text"] for e in events if e.get("text")) or event.transcript or ""
        fields: Dict[str, Any] = {
            "call_status": CallStatus.COMPLETED.value,
            "ended_at": record.get("ended_at") or to_iso(now),
            "call_duration": int(event.duration or 0),
            "call_transcript": final_transcript,
            "recording_url": event.recording_reference or record.get("recording_url"),
        }
        if not record.get("started_at"):
            fields["started_at"] = to_iso(now)
        self.db.update_call_log(call_id, fields)
        result.status = CallStatus.COMPLETED.value
        logger.info(f"Call {call_id} completed with {len(events)} event(s), {len(final_transcript)} chars of transcript")

        if not final_transcript or not record.get("user_id"):
            return
        if self.analysis_queue is None:
            logger.warning(f"No analysis queue configured; call {call_id} will not be analyzed")
            return
        if self.db.claim_analysis(call_id):
            reference = parse_ts(fields["ended_at"]) or now
            self.analysis_queue.enqueue(AnalysisJob(user_id=str(record["user_id"]), call_id=call_id,
                                                    transcript=final_transcript, reference_date=reference))
            result.analysis_enqueued = True
        else:
            logger.info(f"Call {call_id} already analyzed; skipping repeat completion")

    def _fail(self, record: Dict[str, Any], event: WebhookEvent, now: datetime, result: ReconcileResult) -> None:
        call_id = str(record["id"])
        current = CallStatus(record["call_status"])
        result.status = current.value
        if not can_transition(current, CallStatus.FAILED):
            return
        detail = event.error_message or f"provider reported status {event.normalized_status}"
        self.db.update_call_log(call_id, {
            "call_status": CallStatus.FAILED.value,
            "ended_at": to_iso(now),
            "error_message": detail,
        })
        result.status = CallStatus.FAILED.value
        logger.warning(f"Call {call_id} failed at provider: {detail}")

    def _mark_in_progress(self, record: Dict[str, Any], now: datetime, result: ReconcileResult) -> None:
        call_id = str(record["id"])
        current = CallStatus(record["call_status"])
        result.status = current.value
        if not can_transition(current, CallStatus.IN_PROGRESS):
            return
        fields: Dict[str, Any] = {"call_status": CallStatus.IN_PROGRESS.value}
        if not record.get("started_at"):
            fields["started_at"] = to_iso(now)
        try:
            self.db.update_call_log(call_id, fields)
            result.status = CallStatus.IN_PROGRESS.value
        except Exception as e:
            logger.error(f"Failed to mark call {call_id} in progress: {e}")
