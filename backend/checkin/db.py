from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4
from datetime import datetime, timezone
import threading
import logging

# Lightweight adapter over Supabase client. Keeps an in-memory fallback when SUPABASE_URL is missing.
from supabase import create_client, Client

from .config import get_settings

logger = logging.getLogger(__name__)

OPEN_CALL_STATUSES = ["scheduled", "initiated", "in_progress"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class InMemoryDB:
    def __init__(self) -> None:
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self.schedules: Dict[str, Dict[str, Any]] = {}
        self.call_logs: Dict[str, Dict[str, Any]] = {}
        # Append-only; list order is creation order
        self.call_events: List[Dict[str, Any]] = []
        self.task_responses: List[Dict[str, Any]] = []
        self._lock = threading.RLock()

    # Seeding helpers (profiles, tasks and schedules are owned by external CRUD)
    def add_profile(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = dict(row)
        obj.setdefault("id", str(uuid4()))
        self.profiles[str(obj["id"])] = obj
        return obj

    def add_task(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"is_active": True, **row}
        obj.setdefault("id", str(uuid4()))
        self.tasks[str(obj["id"])] = obj
        return obj

    def add_schedule(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"is_active": True, "timezone": "UTC", **row}
        obj.setdefault("id", str(uuid4()))
        self.schedules[str(obj["id"])] = obj
        return obj

    # Schedules
    def list_active_schedules(self) -> List[Dict[str, Any]]:
        return [dict(s) for s in self.schedules.values() if s.get("is_active")]

    def get_schedule(self, schedule_id: str) -> Optional[Dict[str, Any]]:
        row = self.schedules.get(str(schedule_id))
        return dict(row) if row else None

    # Profiles / tasks
    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = self.profiles.get(str(user_id))
        return dict(row) if row else None

    def find_profile_by_phone(self, phone_number: str) -> Optional[Dict[str, Any]]:
        for p in self.profiles.values():
            if p.get("phone_number") == phone_number:
                return dict(p)
        return None

    def list_active_tasks(self, user_id: str) -> List[Dict[str, Any]]:
        return [dict(t) for t in self.tasks.values() if t.get("user_id") == str(user_id) and t.get("is_active")]

    # Call logs
    def create_call_log(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {
            "id": str(uuid4()),
            "schedule_id": None,
            "scheduled_at": None,
            "started_at": None,
            "ended_at": None,
            "call_duration": None,
            "call_transcript": None,
            "provider_call_id": None,
            "error_message": None,
            "recording_url": None,
            "analyzed_at": None,
            "created_at": to_iso(utcnow()),
        }
        obj.update(row)
        with self._lock:
            self.call_logs[obj["id"]] = obj
        return dict(obj)

    def update_call_log(self, call_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.call_logs.get(str(call_id))
            if row is None:
                return None
            row.update(fields)
            return dict(row)

    def get_call_log(self, call_id: str) -> Optional[Dict[str, Any]]:
        row = self.call_logs.get(str(call_id))
        return dict(row) if row else None

    def list_call_logs(self, user_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50) -> Tuple[List[Dict[str, Any]], int]:
        items = list(self.call_logs.values())
        if user_id:
            items = [c for c in items if c.get("user_id") == user_id]
        if status:
            items = [c for c in items if c.get("call_status") == status]
        items.sort(key=lambda c: c.get("created_at") or "", reverse=True)
        return [dict(c) for c in items[:limit]], len(items)

    def _started_since(self, row: Dict[str, Any], since: datetime) -> bool:
        started = parse_ts(row.get("started_at"))
        return started is not None and started >= since

    def _latest_started(self, rows: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not rows:
            return None
        return dict(max(rows, key=lambda r: parse_ts(r.get("started_at"))))

    def find_call_logs_for_schedule_since(self, schedule_id: str, since: datetime) -> List[Dict[str, Any]]:
        return [dict(c) for c in self.call_logs.values()
                if c.get("schedule_id") == str(schedule_id) and self._started_since(c, since)]

    def find_call_log_by_provider_id(self, provider_call_id: str) -> Optional[Dict[str, Any]]:
        for c in self.call_logs.values():
            if c.get("provider_call_id") == provider_call_id:
                return dict(c)
        return None

    def find_latest_call_log_for_user(self, user_id: str, since: datetime) -> Optional[Dict[str, Any]]:
        rows = [c for c in self.call_logs.values() if c.get("user_id") == str(user_id) and self._started_since(c, since)]
        return self._latest_started(rows)

    def find_latest_open_call_log(self, since: datetime) -> Optional[Dict[str, Any]]:
        rows = [c for c in self.call_logs.values()
                if c.get("call_status") in OPEN_CALL_STATUSES and self._started_since(c, since)]
        return self._latest_started(rows)

    def claim_analysis(self, call_id: str) -> bool:
        with self._lock:
            row = self.call_logs.get(str(call_id))
            if row is None or row.get("analyzed_at"):
                return False
            row["analyzed_at"] = to_iso(utcnow())
            return True

    # Call events
    def call_event_exists(self, call_id: str, provider_event_id: str) -> bool:
        return any(e["call_id"] == str(call_id) and e.get("provider_event_id") == provider_event_id for e in self.call_events)

    def insert_call_event(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {
            "id": str(uuid4()),
            "speaker": None,
            "provider_event_id": None,
            "created_at": to_iso(utcnow()),
        }
        obj.update(row)
        with self._lock:
            # Mirrors the unique index on (call_id, provider_event_id)
            if obj.get("provider_event_id") and self.call_event_exists(obj["call_id"], obj["provider_event_id"]):
                raise ValueError(f"duplicate provider_event_id {obj['provider_event_id']} for call {obj['call_id']}")
            self.call_events.append(obj)
        return dict(obj)

    def list_call_events(self, call_id: str) -> List[Dict[str, Any]]:
        return [dict(e) for e in self.call_events if e["call_id"] == str(call_id)]

    # Task responses
    def insert_task_response(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), "created_at": to_iso(utcnow())}
        obj.update(row)
        self.task_responses.append(obj)
        return dict(obj)

    def list_task_responses(self, call_id: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.task_responses if r.get("call_id") == str(call_id)]


class SupabaseDB:
    def __init__(self, client: Client) -> None:
        self.client = client

    # Schedules
    def list_active_schedules(self) -> List[Dict[str, Any]]:
        res = self.client.table("call_schedules").select("*").eq("is_active", True).execute()
        return res.data or []

    def get_schedule(self, schedule_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("call_schedules").select("*").eq("id", str(schedule_id)).limit(1).execute()
        return (res.data or [None])[0]

    # Profiles / tasks
    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        res = (self.client.table("profiles")
               .select("id,phone_number,timezone,preferred_voice,full_name")
               .eq("id", str(user_id)).limit(1).execute())
        return (res.data or [None])[0]

    def find_profile_by_phone(self, phone_number: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("profiles").select("id,phone_number").eq("phone_number", phone_number).limit(1).execute()
        return (res.data or [None])[0]

    def list_active_tasks(self, user_id: str) -> List[Dict[str, Any]]:
        res = (self.client.table("tasks").select("*")
               .eq("user_id", str(user_id)).eq("is_active", True)
               .order("created_at", desc=False).execute())
        return res.data or []

    # Call logs
    def create_call_log(self, row: Dict[str, Any]) -> Dict[str, Any]:
        res = self.client.table("call_logs").insert(row).execute()
        return (res.data or [])[0]

    def update_call_log(self, call_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        res = self.client.table("call_logs").update(fields).eq("id", str(call_id)).execute()
        return (res.data or [None])[0]

    def get_call_log(self, call_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("call_logs").select("*").eq("id", str(call_id)).limit(1).execute()
        return (res.data or [None])[0]

    def list_call_logs(self, user_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50) -> Tuple[List[Dict[str, Any]], int]:
        query = self.client.table("call_logs").select("*", count="exact")
        if user_id:
            query = query.eq("user_id", user_id)
        if status:
            query = query.eq("call_status", status)
        res = query.order("created_at", desc=True).limit(limit).execute()
        items = res.data or []
        total = res.count if res.count is not None else len(items)
        return items, total

    def find_call_logs_for_schedule_since(self, schedule_id: str, since: datetime) -> List[Dict[str, Any]]:
        res = (self.client.table("call_logs").select("id,call_status,started_at")
               .eq("schedule_id", str(schedule_id))
               .gte("started_at", to_iso(since))
               .limit(1).execute())
        return res.data or []

    def find_call_log_by_provider_id(self, provider_call_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("call_logs").select("*").eq("provider_call_id", provider_call_id).limit(1).execute()
        return (res.data or [None])[0]

    def find_latest_call_log_for_user(self, user_id: str, since: datetime) -> Optional[Dict[str, Any]]:
        res = (self.client.table("call_logs").select("*")
               .eq("user_id", str(user_id))
               .gte("started_at", to_iso(since))
               .order("started_at", desc=True).limit(1).execute())
        return (res.data or [None])[0]

    def find_latest_open_call_log(self, since: datetime) -> Optional[Dict[str, Any]]:
        res = (self.client.table("call_logs").select("*")
               .in_("call_status", OPEN_CALL_STATUSES)
               .gte("started_at", to_iso(since))
               .order("started_at", desc=True).limit(1).execute())
        return (res.data or [None])[0]

    def claim_analysis(self, call_id: str) -> bool:
        # Conditional update: only the request that flips analyzed_at from null gets a row back
        res = (self.client.table("call_logs")
               .update({"analyzed_at": to_iso(utcnow())})
               .eq("id", str(call_id))
               .is_("analyzed_at", "null")
               .execute())
        return bool(res.data)

    # Call events
    def call_event_exists(self, call_id: str, provider_event_id: str) -> bool:
        res = (self.client.table("call_log_events").select("id")
               .eq("call_id", str(call_id))
               .eq("provider_event_id", provider_event_id)
               .limit(1).execute())
        return bool(res.data)

    def insert_call_event(self, row: Dict[str, Any]) -> Dict[str, Any]:
        res = self.client.table("call_log_events").insert(row).execute()
        return (res.data or [])[0]

    def list_call_events(self, call_id: str) -> List[Dict[str, Any]]:
        res = (self.client.table("call_log_events").select("*")
               .eq("call_id", str(call_id))
               .order("created_at", desc=False)
               .order("seq", desc=False)
               .execute())
        return res.data or []

    # Task responses
    def insert_task_response(self, row: Dict[str, Any]) -> Dict[str, Any]:
        res = self.client.table("task_responses").insert(row).execute()
        return (res.data or [])[0]

    def list_task_responses(self, call_id: str) -> List[Dict[str, Any]]:
        res = self.client.table("task_responses").select("*").eq("call_id", str(call_id)).execute()
        return res.data or []


_client: Optional[Client] = None
_db_instance: Optional[Any] = None


def get_db():
    global _client, _db_instance

    settings = get_settings()
    url = settings.supabase_url
    key = settings.supabase_key
    if url and key:
        if _client is None:
            _client = create_client(url, key)
        if _db_instance is None or not isinstance(_db_instance, SupabaseDB):
            _db_instance = SupabaseDB(_client)
            logger.info("Using Supabase store at %s", url)
        return _db_instance
    if _db_instance is None or not isinstance(_db_instance, InMemoryDB):
        _db_instance = InMemoryDB()
        logger.info("SUPABASE_URL not set, using in-memory store")
    return _db_instance


def set_db(db: Any) -> None:
    """Swap the process-wide store (used by tests and embedding callers)."""
    global _db_instance
    _db_instance = db
