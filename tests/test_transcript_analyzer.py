from datetime import date, datetime, timezone

import pytest

from checkin.schemas.pydantic_schemas import Task
from checkin.services.transcript_analyzer import TranscriptAnalyzer, analyze_task, classify, infer_value


@pytest.fixture
def analyzer(db):
    return TranscriptAnalyzer(db)


def test_numeric_answer_beyond_target_is_completed(db, analyzer, tasks):
    outcomes = analyzer.analyze("user-1", "call-1", "Drink water: target 8, I drank 9 glasses, done!",
                                datetime(2025, 1, 6, 14, 0, tzinfo=timezone.utc))

    assert len(outcomes) == 1
    assert outcomes[0].task_id == "task-water"
    assert outcomes[0].response_value == 9
    assert outcomes[0].completed is True

    rows = db.list_task_responses("call-1")
    assert len(rows) == 1
    assert rows[0]["user_id"] == "user-1"
    assert rows[0]["response_value"] == 9
    assert rows[0]["completed"] is True
    assert rows[0]["response_date"] == "2025-01-06"
    assert "Drink water" in rows[0]["response_text"]


def test_negative_answer_is_not_completed(analyzer, tasks):
    outcomes = analyzer.analyze("user-1", "call-1", "Exercise: no, did not do it today")
    assert [(o.task_id, o.completed) for o in outcomes] == [("task-exercise", False)]


def test_negation_overrides_affirmative():
    task = Task(id="t", user_id="u", title="Exercise")
    outcome = analyze_task(task, "Exercise: yes I started, but no, did not finish")
    assert outcome.completed is False


def test_numeric_below_target_without_keywords():
    task = Task(id="t", user_id="u", title="Drink water", target_value=8, unit="glasses")
    outcome = analyze_task(task, "Drink water, I managed 5 glasses")
    assert outcome.response_value == 5
    assert outcome.completed is False


def test_title_match_is_case_insensitive():
    task = Task(id="t", user_id="u", title="Drink Water")
    assert analyze_task(task, "drink water: finished") is not None


def test_mild_positive_counts_only_when_nothing_else_decides():
    assert classify("Meditation went well", None, None) is True
    assert classify("Meditation was not great", None, None) is False


def test_unmentioned_task_produces_nothing(db, analyzer, tasks):
    outcomes = analyzer.analyze("user-1", "call-1", "We only talked about the weather.")
    assert outcomes == []
    assert db.task_responses == []


def test_empty_transcript_produces_nothing(db, analyzer, tasks):
    assert analyzer.analyze("user-1", "call-1", "   ") == []
    assert db.task_responses == []


def test_reference_date_may_be_a_plain_date(db, analyzer, tasks):
    analyzer.analyze("user-1", "call-1", "Exercise done", date(2025, 3, 1))
    assert db.list_task_responses("call-1")[0]["response_date"] == "2025-03-01"


def test_insert_failure_is_logged_and_skipped(db, analyzer, tasks):
    def broken(row):
        raise RuntimeError("write failed")

    db.insert_task_response = broken
    outcomes = analyzer.analyze("user-1", "call-1", "Exercise done")
    assert [o.task_id for o in outcomes] == ["task-exercise"]


class TestInferValue:
    def test_number_followed_by_unit_wins(self):
        assert infer_value("target 8, I drank 9 glasses", "glasses") == 9

    def test_goal_restatement_is_skipped_without_unit(self):
        assert infer_value("the goal is 10 and I did 12", None) == 12

    def test_only_target_gives_nothing(self):
        assert infer_value("Read: target 20", "pages") is None

    def test_comma_decimal(self):
        assert infer_value("I ran 2,5 km", "km") == 2.5

    def test_no_numbers(self):
        assert infer_value("all good", "km") is None
