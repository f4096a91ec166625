from fastapi import Depends, Request
from typing import Any

from ..config import Settings, get_settings
from ..db import get_db
from ..services.analysis_queue import AnalysisQueue
from ..services.call_initiator import CallInitiator, get_call_initiator
from ..services.event_reconciler import EventReconciler
from ..services.transcript_analyzer import TranscriptAnalyzer


def get_store() -> Any:
    return get_db()


def get_analysis_queue(request: Request) -> AnalysisQueue:
    queue = getattr(request.app.state, "analysis_queue", None)
    if queue is None:
        queue = AnalysisQueue(TranscriptAnalyzer(get_db()))
        request.app.state.analysis_queue = queue
    return queue


def get_reconciler(settings: Settings = Depends(get_settings),
                   db: Any = Depends(get_store),
                   queue: AnalysisQueue = Depends(get_analysis_queue)) -> EventReconciler:
    return EventReconciler(db, settings, analysis_queue=queue)


def get_initiator(request: Request,
                  settings: Settings = Depends(get_settings),
                  db: Any = Depends(get_store),
                  queue: AnalysisQueue = Depends(get_analysis_queue)) -> CallInitiator:
    # Kept on app state so simulated calls share one set of background tasks
    initiator = getattr(request.app.state, "call_initiator", None)
    if initiator is None:
        initiator = get_call_initiator(db, settings, analysis_queue=queue)
        request.app.state.call_initiator = initiator
    return initiator
