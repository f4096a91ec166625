from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Any, Optional
import logging

from ..db import parse_ts
from ..errors import MissingContactError, ProviderCallError, ScheduleNotFoundError
from ..schemas.pydantic_schemas import (
    AnalyzeResponse,
    CallDetail,
    CallListResponse,
    Recommendation,
    Schedule,
    TriggerCallRequest,
    TriggerCallResponse,
)
from ..services.call_initiator import CallInitiator
from ..services.transcript_analyzer import TranscriptAnalyzer
from .deps import get_initiator, get_store

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


def load_schedule(db: Any, schedule_id: str) -> Schedule:
    row = db.get_schedule(schedule_id)
    if not row:
        raise ScheduleNotFoundError(schedule_id)
    return Schedule(**row)


@router.post("/trigger", status_code=202, response_model=TriggerCallResponse)
async def trigger_call(payload: TriggerCallRequest,
                       db: Any = Depends(get_store),
                       initiator: CallInitiator = Depends(get_initiator)):
    """Start a check-in call for a schedule right now, outside its time window."""
    try:
        schedule = load_schedule(db, payload.schedule_id)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(f"Manual trigger for schedule {schedule.id} ({schedule.name})")

    try:
        record = await initiator.initiate(schedule)
    except MissingContactError as e:
        raise HTTPException(status_code=400, detail=f"{e}. Please add a mobile number in settings.")
    except ProviderCallError as e:
        raise HTTPException(status_code=502, detail={"message": "Failed to initiate call", "call_id": e.call_id, "details": e.detail})

    return {
        "call_id": str(record["id"]),
        "status": record["call_status"],
        "provider_call_id": record.get("provider_call_id"),
    }


@router.get("/", response_model=CallListResponse)
async def list_calls(user_id: Optional[str] = None, status: Optional[str] = None,
                     limit: int = Query(default=50, ge=1, le=500),
                     db: Any = Depends(get_store)):
    items, total = db.list_call_logs(user_id=user_id, status=status, limit=limit)
    return {"items": items, "total": total}


@router.get("/{call_id}", response_model=CallDetail)
async def get_call(call_id: str, db: Any = Depends(get_store)):
    call = db.get_call_log(call_id)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    call["events"] = db.list_call_events(call_id)
    call["task_responses"] = db.list_task_responses(call_id)
    return call


@router.post("/{call_id}/analyze", response_model=AnalyzeResponse)
async def analyze_call(call_id: str, db: Any = Depends(get_store)):
    """Re-run the transcript heuristics on a stored call. Inserts a fresh set of task responses."""
    call = db.get_call_log(call_id)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")

    transcript = (call.get("call_transcript") or "").strip()
    analyzer = TranscriptAnalyzer(db)
    results = analyzer.analyze(str(call["user_id"]), call_id, transcript, parse_ts(call.get("started_at")))
    recommendations = [
        Recommendation(
            task_id=r.task_id,
            title=r.task_title,
            suggestion=f'Try breaking "{r.task_title}" into smaller steps or schedule it on easier days.',
        )
        for r in results if not r.completed
    ]
    return {"success": True, "results": results, "recommendations": recommendations}
