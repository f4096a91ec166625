from datetime import timedelta

from checkin.services.trigger_guard import DEFAULT_LOOKBACK, TriggerGuard


def test_default_lookback_is_ten_minutes():
    assert DEFAULT_LOOKBACK == timedelta(minutes=10)


def test_no_calls_means_not_triggered(db, now):
    assert TriggerGuard(db).recently_triggered("sched-1", now) is False


def test_call_inside_window_suppresses(db, now, make_call, minutes_ago):
    make_call(schedule_id="sched-1", started_at=minutes_ago(5))
    assert TriggerGuard(db).recently_triggered("sched-1", now) is True


def test_call_at_window_edge_still_suppresses(db, now, make_call, minutes_ago):
    make_call(schedule_id="sched-1", started_at=minutes_ago(10))
    assert TriggerGuard(db).recently_triggered("sched-1", now) is True


def test_call_outside_window_does_not_suppress(db, now, make_call, minutes_ago):
    make_call(schedule_id="sched-1", started_at=minutes_ago(11))
    assert TriggerGuard(db).recently_triggered("sched-1", now) is False


def test_failed_attempt_still_counts(db, now, make_call, minutes_ago):
    make_call(schedule_id="sched-1", status="failed", started_at=minutes_ago(2), error_message="boom")
    assert TriggerGuard(db).recently_triggered("sched-1", now) is True


def test_other_schedules_are_ignored(db, now, make_call, minutes_ago):
    make_call(schedule_id="sched-2", started_at=minutes_ago(1))
    make_call(schedule_id=None, started_at=minutes_ago(1))
    assert TriggerGuard(db).recently_triggered("sched-1", now) is False


def test_custom_lookback(db, now, make_call, minutes_ago):
    make_call(schedule_id="sched-1", started_at=minutes_ago(20))
    assert TriggerGuard(db, lookback=timedelta(minutes=30)).recently_triggered("sched-1", now) is True
