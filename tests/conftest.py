"""Shared fixtures: an in-memory store seeded with one user, two tasks and a schedule."""

from datetime import datetime, timedelta, timezone

import pytest

from checkin.config import Settings
from checkin.db import InMemoryDB, to_iso

# Monday 6 January 2025, 09:00 in New York (EST, UTC-5)
WINTER_MONDAY_0900_NY = datetime(2025, 1, 6, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    return Settings(simulator_line_interval_seconds=0)


@pytest.fixture
def db() -> InMemoryDB:
    return InMemoryDB()


@pytest.fixture
def user(db):
    return db.add_profile({
        "id": "user-1",
        "full_name": "Sam",
        "phone_number": "+15555550100",
        "timezone": "America/New_York",
    })


@pytest.fixture
def tasks(db, user):
    return [
        db.add_task({"id": "task-water", "user_id": user["id"], "title": "Drink water", "target_value": 8, "unit": "glasses"}),
        db.add_task({"id": "task-exercise", "user_id": user["id"], "title": "Exercise"}),
    ]


@pytest.fixture
def schedule_row(db, user):
    return db.add_schedule({
        "id": "sched-1",
        "user_id": user["id"],
        "name": "Morning check-in",
        "days_of_week": [1],
        "time_of_day": "09:00:00",
        "timezone": "America/New_York",
    })


def add_call(db, user_id="user-1", status="initiated", provider_call_id=None,
             started_at=None, schedule_id=None, **extra):
    return db.create_call_log({
        "user_id": user_id,
        "schedule_id": schedule_id,
        "call_status": status,
        "provider_call_id": provider_call_id,
        "started_at": to_iso(started_at) if started_at else None,
        **extra,
    })


@pytest.fixture
def make_call(db):
    def _make(**kwargs):
        return add_call(db, **kwargs)
    return _make


@pytest.fixture
def now() -> datetime:
    return WINTER_MONDAY_0900_NY


@pytest.fixture
def minutes_ago(now):
    def _ago(minutes: float) -> datetime:
        return now - timedelta(minutes=minutes)
    return _ago
