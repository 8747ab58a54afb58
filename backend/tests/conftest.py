# backend/tests/conftest.py

import copy
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError

# Load environment variables FIRST, before any mya_recovery imports, so the
# settings singleton can find the required variables.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test")

from mya_recovery.config.settings import settings  # noqa: E402
from mya_recovery.main import app  # noqa: E402
from mya_recovery.services.db_service import db_service  # noqa: E402
from mya_recovery.utils.rate_limiter import limiter  # noqa: E402


class FakeDatabase:
    """
    In-memory stand-in for DatabaseService holding already-serialized
    documents, so pipeline scenarios can run end to end without MongoDB.
    """

    def __init__(self):
        self.sessions = {}
        self.schedules = {}
        self.attempts = {}
        self.templates = {}
        self.plans = {}
        self.profiles = []
        self.config = None

    @staticmethod
    def _new_id() -> str:
        return str(ObjectId())

    # --- sessions ---
    async def get_session(self, cart_session_id):
        doc = self.sessions.get(cart_session_id)
        return copy.deepcopy(doc) if doc else None

    async def get_session_by_session_id(self, session_id):
        for doc in self.sessions.values():
            if doc["session_id"] == session_id:
                return copy.deepcopy(doc)
        return None

    async def insert_session(self, session_data):
        if any(s["session_id"] == session_data["session_id"] for s in self.sessions.values()):
            raise DuplicateKeyError("duplicate session_id")
        doc = dict(session_data, id=self._new_id())
        self.sessions[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def update_session_by_session_id(self, session_id, fields, allowed_statuses=None):
        for doc in self.sessions.values():
            if doc["session_id"] == session_id:
                if allowed_statuses is not None and doc["status"] not in allowed_statuses:
                    return None
                doc.update(fields)
                return copy.deepcopy(doc)
        return None

    async def transition_session(self, cart_session_id, from_status, fields):
        doc = self.sessions.get(cart_session_id)
        if not doc or doc["status"] != from_status:
            return False
        doc.update(fields)
        return True

    async def find_sessions(self, query, limit=500):
        statuses = query.get("status", {}).get("$in")
        found = []
        for doc in self.sessions.values():
            if statuses is not None and doc["status"] not in statuses:
                continue
            if "user_email" in query and doc.get("user_email") != query["user_email"]:
                continue
            if "user_whatsapp" in query and doc.get("user_whatsapp") != query["user_whatsapp"]:
                continue
            found.append(copy.deepcopy(doc))
        return found[:limit]

    async def update_sessions(self, cart_session_ids, status_filter, fields):
        updated = 0
        for session_id in cart_session_ids:
            doc = self.sessions.get(session_id)
            if doc and doc["status"] in status_filter:
                doc.update(fields)
                updated += 1
        return updated

    async def get_sessions_page(self, status, start_date=None, end_date=None, created_after=None,
                                email=None, whatsapp=None, limit=50, offset=0):
        def matches(doc):
            if doc["status"] != status:
                return False
            if start_date and doc["created_at"] < start_date:
                return False
            if created_after and doc["created_at"] < created_after:
                return False
            if end_date and doc["created_at"] > end_date:
                return False
            if email and email.lower() not in (doc.get("user_email") or "").lower():
                return False
            if whatsapp and whatsapp not in (doc.get("user_whatsapp") or ""):
                return False
            return True

        found = [copy.deepcopy(d) for d in self.sessions.values() if matches(d)]
        found.sort(key=lambda d: d.get("abandoned_at") or d["created_at"], reverse=True)
        return found[offset:offset + limit], len(found)

    async def expire_sessions(self, abandoned_before, now):
        expired = 0
        for doc in self.sessions.values():
            if doc["status"] == "abandoned" and doc.get("abandoned_at") and doc["abandoned_at"] < abandoned_before:
                doc.update({"status": "expired", "expired_at": now, "updated_at": now})
                expired += 1
        return expired

    # --- plans & profiles ---
    async def get_plan(self, plan_id):
        return copy.deepcopy(self.plans.get(plan_id)) if plan_id else None

    async def find_profile_by_email(self, email):
        return next((dict(p) for p in self.profiles if p.get("email") == email), None)

    async def get_profile(self, user_id):
        return next((dict(p) for p in self.profiles if p.get("id") == user_id), None)

    # --- schedules ---
    async def insert_schedule(self, schedule_data):
        for doc in self.schedules.values():
            if (doc["cart_session_id"], doc["attempt_number"]) == (schedule_data["cart_session_id"], schedule_data["attempt_number"]):
                raise DuplicateKeyError("duplicate schedule")
        doc = dict(schedule_data, id=self._new_id())
        self.schedules[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def get_schedule_for_attempt(self, cart_session_id, attempt_number):
        for doc in self.schedules.values():
            if doc["cart_session_id"] == cart_session_id and doc["attempt_number"] == attempt_number:
                return copy.deepcopy(doc)
        return None

    async def get_due_schedules(self, now, limit):
        due = [d for d in self.schedules.values() if d["status"] == "pending" and d["scheduled_at"] <= now]
        due.sort(key=lambda d: d["scheduled_at"])
        return copy.deepcopy(due[:limit])

    async def claim_schedule(self, schedule_id, now):
        doc = self.schedules.get(schedule_id)
        if not doc or doc["status"] != "pending":
            return None
        doc.update({"status": "processing", "claimed_at": now, "updated_at": now})
        return copy.deepcopy(doc)

    async def finish_schedule(self, schedule_id, status, error_message, now):
        doc = self.schedules.get(schedule_id)
        if not doc or doc["status"] != "processing":
            return False
        doc.update({"status": status, "processed_at": now, "updated_at": now})
        if error_message is not None:
            doc["error_message"] = error_message
        return True

    async def requeue_stuck_schedules(self, claimed_before, max_requeues, now):
        requeued = failed = 0
        for doc in self.schedules.values():
            if doc["status"] != "processing" or doc["claimed_at"] >= claimed_before:
                continue
            if doc.get("requeue_count", 0) >= max_requeues:
                doc.update({"status": "failed", "processed_at": now, "updated_at": now})
                failed += 1
            else:
                doc.update({"status": "pending", "updated_at": now, "requeue_count": doc.get("requeue_count", 0) + 1})
                doc.pop("claimed_at", None)
                requeued += 1
        return requeued, failed

    def schedules_for(self, cart_session_id):
        return sorted(
            (d for d in self.schedules.values() if d["cart_session_id"] == cart_session_id),
            key=lambda d: d["attempt_number"],
        )

    # --- attempts ---
    async def insert_attempt(self, attempt_data):
        doc = dict(attempt_data, id=self._new_id())
        self.attempts[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def update_attempt(self, attempt_id, fields):
        if attempt_id not in self.attempts:
            return False
        self.attempts[attempt_id].update(fields)
        return True

    async def get_attempts_for_session(self, cart_session_id):
        return sorted(
            (copy.deepcopy(a) for a in self.attempts.values() if a["cart_session_id"] == cart_session_id),
            key=lambda a: a["attempt_number"],
        )

    # --- config & templates ---
    async def get_recovery_config(self):
        return copy.deepcopy(self.config)

    async def get_templates(self, template_type=None, active_only=False):
        found = [
            copy.deepcopy(t) for t in self.templates.values()
            if (template_type is None or t["type"] == template_type) and (not active_only or t["is_active"])
        ]
        return sorted(found, key=lambda t: (t.get("attempt_number") or 0, t["type"], t["name"]))

    async def insert_templates(self, templates):
        for template in templates:
            doc = dict(template, id=self._new_id())
            self.templates[doc["id"]] = doc
        return len(templates)

    async def delete_templates(self, template_ids):
        return sum(1 for i in template_ids if self.templates.pop(i, None) is not None)


FAKE_DB_METHODS = [
    name for name in vars(FakeDatabase)
    if not name.startswith("_") and name != "schedules_for"
]


@pytest.fixture
def fake_db(mocker):
    """Routes every db_service call to an in-memory FakeDatabase."""
    fake = FakeDatabase()
    for name in FAKE_DB_METHODS:
        mocker.patch.object(db_service, name, new=getattr(fake, name))
    return fake


@pytest.fixture
def service_headers():
    return {"Authorization": f"Bearer {settings.cart_recovery_api_key}"}


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests without touching
    MongoDB or the WhatsApp gateway during startup and shutdown.
    """
    lifecycle_db = mocker.patch("mya_recovery.utils.lifecycle.db_service", new_callable=MagicMock)
    lifecycle_db.create_indexes = AsyncMock()
    mocker.patch("mya_recovery.utils.lifecycle.whatsapp_service", new_callable=AsyncMock)
    mocker.patch("mya_recovery.utils.lifecycle.alerting_service", new_callable=AsyncMock)

    # Rate limit counters are in-memory and shared by every test
    limiter.reset()

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client
