from datetime import date, datetime, timezone
from typing import Any, List, Optional, Union
import re
import logging

from ..schemas.pydantic_schemas import Task, TaskOutcome

logger = logging.getLogger(__name__)

CONTEXT_RADIUS = 120

NUMBER_RE = re.compile(r"(\d+(?:[.,]\d+)?)")
AFFIRMATIVE_RE = re.compile(r"\b(done|completed|yes|finished|achieved|met)\b", re.IGNORECASE)
NEGATIVE_RE = re.compile(r"\b(not|no|didn't|did not|failed|never)\b", re.IGNORECASE)
MILD_POSITIVE_RE = re.compile(r"\b(good|well|great|improved|better)\b", re.IGNORECASE)
# A number right after one of these restates the goal, not the answer
TARGET_PREFIX_RE = re.compile(r"\b(target|goal|aim)(\s+(is|of|was))?\s*:?\s*$", re.IGNORECASE)


def _to_number(raw: str) -> float:
    return float(raw.replace(",", "."))


def infer_value(window: str, unit: Optional[str] = None) -> Optional[float]:
    """Pick the number in ``window`` most likely to be the user's answer.

    A number followed by the task's unit wins; otherwise the first number
    that is not introduced by "target"/"goal". None when every number only
    restates the goal.
    """
    matches = list(NUMBER_RE.finditer(window))
    if not matches:
        return None
    if unit:
        unit_re = re.compile(r"\s*" + re.escape(unit.strip()), re.IGNORECASE)
        for m in matches:
            if unit_re.match(window, m.end()):
                return _to_number(m.group(1))
    for m in matches:
        if not TARGET_PREFIX_RE.search(window[:m.start()]):
            return _to_number(m.group(1))
    return None


def classify(window: str, value: Optional[float], target: Optional[float]) -> bool:
    completed = False
    decided = False
    if value is not None and target is not None and value >= target:
        completed = decided = True
    if AFFIRMATIVE_RE.search(window):
        completed = decided = True
    # Checked after the affirmative set so explicit negation wins
    if NEGATIVE_RE.search(window):
        completed = False
        decided = True
    if not decided and MILD_POSITIVE_RE.search(window):
        completed = True
    return completed


def analyze_task(task: Task, transcript: str, radius: int = CONTEXT_RADIUS) -> Optional[TaskOutcome]:
    title = (task.title or "").strip()
    if not title:
        return None
    idx = transcript.lower().find(title.lower())
    if idx < 0:
        return None
    window = transcript[max(0, idx - radius):min(len(transcript), idx + len(title) + radius)]
    value = infer_value(window, task.unit)
    return TaskOutcome(
        task_id=task.id,
        task_title=task.title,
        inferred_text=window,
        response_value=value,
        completed=classify(window, value, task.target_value),
    )


class TranscriptAnalyzer:
    """Keyword/number heuristics that turn a finished transcript into task responses.

    Only tasks whose title appears in the transcript produce an outcome.
    Sarcasm and indirect phrasing will be misread; that is accepted.
    """

    def __init__(self, db: Any, radius: int = CONTEXT_RADIUS) -> None:
        self.db = db
        self.radius = radius

    def analyze(self, user_id: str, call_id: str, transcript: str,
                reference_date: Optional[Union[datetime, date]] = None) -> List[TaskOutcome]:
        text = (transcript or "").strip()
        if not text:
            return []
        if reference_date is None:
            reference_date = datetime.now(timezone.utc)
        response_date = reference_date.date() if isinstance(reference_date, datetime) else reference_date

        outcomes: List[TaskOutcome] = []
        for row in self.db.list_active_tasks(user_id):
            task = Task(**row)
            outcome = analyze_task(task, text, self.radius)
            if outcome is None:
                continue
            outcomes.append(outcome)
            try:
                self.db.insert_task_response({
                    "user_id": user_id,
                    "task_id": task.id,
                    "call_id": call_id,
                    "response_value": outcome.response_value,
                    "response_text": outcome.inferred_text,
                    "completed": outcome.completed,
                    "response_date": response_date.isoformat(),
                })
            except Exception as e:
                logger.error(f"Failed to insert task response for task {task.id} on call {call_id}: {e}")
        return outcomes
