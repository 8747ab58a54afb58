# /mya_recovery/services/db_service.py

import re
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from mya_recovery.config.settings import settings
from mya_recovery.config.strings import ERROR_STUCK_PROCESSING
from mya_recovery.models.domain import CartStatus, ScheduleStatus
from mya_recovery.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Constants
DEFAULT_PAGE_LIMIT = 50
ATTEMPT_SUMMARY_FIELDS = {"_id": 0, "attempt_number": 1, "method": 1, "status": 1, "sent_at": 1, "error_message": 1}
PLAN_SUMMARY_FIELDS = {"_id": 0, "id": 1, "name": 1, "description": 1}
PROFILE_FIELDS = {"_id": 0, "id": 1, "email": 1}


class DatabaseService:
    """
    All MongoDB access for the recovery pipeline: cart sessions, the schedule
    queue, dispatch attempts, configuration, templates and API clients.
    Errors propagate to the caller; the pipeline decides how to record them.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    @staticmethod
    def _to_object_id(value: Any) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        if isinstance(value, str) and ObjectId.is_valid(value):
            return ObjectId(value)
        return None

    @staticmethod
    def _serialize_doc(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        Converts a MongoDB document for the domain models and JSON responses:
        `_id` becomes `id`, and ObjectId values become strings.
        """
        if document is None:
            return None
        serialized = {}
        for key, value in document.items():
            if key == "_id":
                key = "id"
            if isinstance(value, ObjectId):
                value = str(value)
            serialized[key] = value
        return serialized

    def _serialize_docs(self, documents: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self._serialize_doc(doc) for doc in documents]

    async def _run(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Runs a database call and records its outcome in metrics."""
        try:
            result = await func()
        except Exception:
            database_operations_counter.labels(operation=operation, status="failed").inc()
            logger.exception(f"Database operation failed: {operation}")
            raise
        database_operations_counter.labels(operation=operation, status="success").inc()
        return result

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("cart_sessions", [("session_id", ASCENDING)], {"unique": True}),
            ("cart_sessions", [("status", ASCENDING), ("abandoned_at", DESCENDING)], {}),
            ("cart_sessions", [("user_email", ASCENDING)], {}),
            ("cart_sessions", [("user_whatsapp", ASCENDING)], {}),
            ("cart_sessions", [("created_at", DESCENDING)], {}),
            ("cart_recovery_schedules", [("cart_session_id", ASCENDING), ("attempt_number", ASCENDING)], {"unique": True}),
            ("cart_recovery_schedules", [("status", ASCENDING), ("scheduled_at", ASCENDING)], {}),
            ("cart_recovery_schedules", [("status", ASCENDING), ("claimed_at", ASCENDING)], {}),
            ("cart_recovery_attempts", [("cart_session_id", ASCENDING), ("attempt_number", ASCENDING)], {}),
            ("cart_recovery_templates", [("type", ASCENDING), ("attempt_number", ASCENDING), ("is_active", ASCENDING)], {}),
            ("api_clients", [("client_id", ASCENDING)], {"unique": True}),
            ("profiles", [("email", ASCENDING)], {}),
            ("subscription_plans", [("id", ASCENDING)], {"unique": True}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Cart Sessions ====================

    async def get_session(self, cart_session_id: Any) -> Optional[Dict[str, Any]]:
        object_id = self._to_object_id(cart_session_id)
        if not object_id:
            return None
        doc = await self._run("get_session", lambda: self.db.cart_sessions.find_one({"_id": object_id}))
        return self._serialize_doc(doc)

    async def get_session_by_session_id(self, session_id: str) -> Optional[Dict[str, Any]]:
        doc = await self._run(
            "get_session_by_session_id",
            lambda: self.db.cart_sessions.find_one({"session_id": session_id})
        )
        return self._serialize_doc(doc)

    async def insert_session(self, session_data: Dict[str, Any]) -> Dict[str, Any]:
        """Inserts a session; a duplicate session_id raises DuplicateKeyError."""
        document = dict(session_data)
        result = await self._run("insert_session", lambda: self.db.cart_sessions.insert_one(document))
        document["_id"] = result.inserted_id
        return self._serialize_doc(document)

    async def update_session_by_session_id(
        self,
        session_id: str,
        fields: Dict[str, Any],
        allowed_statuses: Optional[Iterable[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Updates a session by its external token. When `allowed_statuses` is
        given the update only applies if the current status is one of them.
        Returns the updated document, or None when nothing matched.
        """
        query: Dict[str, Any] = {"session_id": session_id}
        if allowed_statuses is not None:
            query["status"] = {"$in": list(allowed_statuses)}
        doc = await self._run(
            "update_session",
            lambda: self.db.cart_sessions.find_one_and_update(
                query, {"$set": fields}, return_document=ReturnDocument.AFTER
            )
        )
        return self._serialize_doc(doc)

    async def transition_session(
        self,
        cart_session_id: Any,
        from_status: str,
        fields: Dict[str, Any],
    ) -> bool:
        """Conditional status change: applies only while the session is still in `from_status`."""
        object_id = self._to_object_id(cart_session_id)
        if not object_id:
            return False
        result = await self._run(
            "transition_session",
            lambda: self.db.cart_sessions.update_one({"_id": object_id, "status": from_status}, {"$set": fields})
        )
        return result.modified_count > 0

    async def find_sessions(self, query: Dict[str, Any], limit: int = 500) -> List[Dict[str, Any]]:
        cursor = self.db.cart_sessions.find(query).sort("created_at", DESCENDING)
        docs = await self._run("find_sessions", lambda: cursor.to_list(length=limit))
        return self._serialize_docs(docs)

    async def update_sessions(self, cart_session_ids: List[str], status_filter: Iterable[str], fields: Dict[str, Any]) -> int:
        object_ids = [oid for oid in (self._to_object_id(i) for i in cart_session_ids) if oid]
        if not object_ids:
            return 0
        result = await self._run(
            "update_sessions",
            lambda: self.db.cart_sessions.update_many(
                {"_id": {"$in": object_ids}, "status": {"$in": list(status_filter)}},
                {"$set": fields}
            )
        )
        return result.modified_count

    async def get_sessions_page(
        self,
        status: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        created_after: Optional[datetime] = None,
        email: Optional[str] = None,
        whatsapp: Optional[str] = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Filtered, paginated session listing ordered by abandoned_at (newest first)."""
        query: Dict[str, Any] = {"status": status}

        created_range: Dict[str, Any] = {}
        lower_bounds = [d for d in (start_date, created_after) if d is not None]
        if lower_bounds:
            created_range["$gte"] = max(lower_bounds)
        if end_date is not None:
            created_range["$lte"] = end_date
        if created_range:
            query["created_at"] = created_range

        if email:
            query["user_email"] = {"$regex": re.escape(email), "$options": "i"}
        if whatsapp:
            query["user_whatsapp"] = {"$regex": re.escape(whatsapp), "$options": "i"}

        total = await self._run("count_sessions", lambda: self.db.cart_sessions.count_documents(query))
        cursor = (
            self.db.cart_sessions.find(query)
            .sort([("abandoned_at", DESCENDING), ("created_at", DESCENDING)])
            .skip(offset)
            .limit(limit)
        )
        docs = await self._run("list_sessions", lambda: cursor.to_list(length=limit))
        return self._serialize_docs(docs), total

    async def expire_sessions(self, abandoned_before: datetime, now: datetime) -> int:
        result = await self._run(
            "expire_sessions",
            lambda: self.db.cart_sessions.update_many(
                {"status": CartStatus.ABANDONED.value, "abandoned_at": {"$lt": abandoned_before}},
                {"$set": {"status": CartStatus.EXPIRED.value, "expired_at": now, "updated_at": now}}
            )
        )
        return result.modified_count

    # ==================== Plans & Profiles ====================

    async def get_plan(self, plan_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not plan_id:
            return None
        return await self._run(
            "get_plan",
            lambda: self.db.subscription_plans.find_one({"id": plan_id}, PLAN_SUMMARY_FIELDS)
        )

    async def find_profile_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self._run(
            "find_profile",
            lambda: self.db.profiles.find_one({"email": email}, PROFILE_FIELDS)
        )

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(
            "get_profile",
            lambda: self.db.profiles.find_one({"id": user_id}, PROFILE_FIELDS)
        )

    # ==================== Recovery Schedules ====================

    async def insert_schedule(self, schedule_data: Dict[str, Any]) -> Dict[str, Any]:
        """Inserts a schedule; a second row for the same session/attempt raises DuplicateKeyError."""
        document = dict(schedule_data)
        document["cart_session_id"] = self._to_object_id(document["cart_session_id"])
        result = await self._run("insert_schedule", lambda: self.db.cart_recovery_schedules.insert_one(document))
        document["_id"] = result.inserted_id
        return self._serialize_doc(document)

    async def get_schedule_for_attempt(self, cart_session_id: Any, attempt_number: int) -> Optional[Dict[str, Any]]:
        doc = await self._run(
            "get_schedule",
            lambda: self.db.cart_recovery_schedules.find_one({
                "cart_session_id": self._to_object_id(cart_session_id),
                "attempt_number": attempt_number,
            })
        )
        return self._serialize_doc(doc)

    async def get_due_schedules(self, now: datetime, limit: int) -> List[Dict[str, Any]]:
        cursor = (
            self.db.cart_recovery_schedules
            .find({"status": ScheduleStatus.PENDING.value, "scheduled_at": {"$lte": now}})
            .sort("scheduled_at", ASCENDING)
        )
        docs = await self._run("get_due_schedules", lambda: cursor.to_list(length=limit))
        return self._serialize_docs(docs)

    async def claim_schedule(self, schedule_id: Any, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Atomically moves a schedule from pending to processing. Returns the
        claimed row, or None if another worker got there first.
        """
        doc = await self._run(
            "claim_schedule",
            lambda: self.db.cart_recovery_schedules.find_one_and_update(
                {"_id": self._to_object_id(schedule_id), "status": ScheduleStatus.PENDING.value},
                {"$set": {"status": ScheduleStatus.PROCESSING.value, "claimed_at": now, "updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
        )
        return self._serialize_doc(doc)

    async def finish_schedule(self, schedule_id: Any, status: str, error_message: Optional[str], now: datetime) -> bool:
        fields: Dict[str, Any] = {"status": status, "processed_at": now, "updated_at": now}
        if error_message is not None:
            fields["error_message"] = error_message
        result = await self._run(
            "finish_schedule",
            lambda: self.db.cart_recovery_schedules.update_one(
                {"_id": self._to_object_id(schedule_id), "status": ScheduleStatus.PROCESSING.value},
                {"$set": fields}
            )
        )
        return result.modified_count > 0

    async def requeue_stuck_schedules(self, claimed_before: datetime, max_requeues: int, now: datetime) -> Tuple[int, int]:
        """
        Returns stuck processing rows to pending, or fails them once they
        have been requeued `max_requeues` times. Returns (requeued, failed).
        """
        stuck = {"status": ScheduleStatus.PROCESSING.value, "claimed_at": {"$lt": claimed_before}}

        failed = await self._run(
            "fail_stuck_schedules",
            lambda: self.db.cart_recovery_schedules.update_many(
                {**stuck, "requeue_count": {"$gte": max_requeues}},
                {"$set": {
                    "status": ScheduleStatus.FAILED.value,
                    "processed_at": now,
                    "updated_at": now,
                    "error_message": ERROR_STUCK_PROCESSING,
                }}
            )
        )
        requeued = await self._run(
            "requeue_stuck_schedules",
            lambda: self.db.cart_recovery_schedules.update_many(
                {**stuck, "$or": [{"requeue_count": {"$lt": max_requeues}}, {"requeue_count": {"$exists": False}}]},
                {"$set": {"status": ScheduleStatus.PENDING.value, "updated_at": now},
                 "$unset": {"claimed_at": ""},
                 "$inc": {"requeue_count": 1}}
            )
        )
        return requeued.modified_count, failed.modified_count

    # ==================== Recovery Attempts ====================

    async def insert_attempt(self, attempt_data: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(attempt_data)
        document["cart_session_id"] = self._to_object_id(document["cart_session_id"])
        result = await self._run("insert_attempt", lambda: self.db.cart_recovery_attempts.insert_one(document))
        document["_id"] = result.inserted_id
        return self._serialize_doc(document)

    async def update_attempt(self, attempt_id: Any, fields: Dict[str, Any]) -> bool:
        result = await self._run(
            "update_attempt",
            lambda: self.db.cart_recovery_attempts.update_one({"_id": self._to_object_id(attempt_id)}, {"$set": fields})
        )
        return result.modified_count > 0

    async def get_attempts_for_session(self, cart_session_id: Any) -> List[Dict[str, Any]]:
        cursor = (
            self.db.cart_recovery_attempts
            .find({"cart_session_id": self._to_object_id(cart_session_id)}, ATTEMPT_SUMMARY_FIELDS)
            .sort("attempt_number", ASCENDING)
        )
        return await self._run("get_attempts", lambda: cursor.to_list(length=None))

    # ==================== Configuration & Templates ====================

    async def get_recovery_config(self) -> Optional[Dict[str, Any]]:
        """The enabled configuration row if there is one, otherwise any stored row."""
        doc = await self._run(
            "get_recovery_config",
            lambda: self.db.cart_recovery_config.find_one({}, sort=[("enabled", DESCENDING), ("_id", ASCENDING)])
        )
        return self._serialize_doc(doc)

    async def get_templates(self, template_type: Optional[str] = None, active_only: bool = False) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if template_type:
            query["type"] = template_type
        if active_only:
            query["is_active"] = True
        cursor = self.db.cart_recovery_templates.find(query).sort([("attempt_number", ASCENDING), ("type", ASCENDING), ("name", ASCENDING)])
        docs = await self._run("get_templates", lambda: cursor.to_list(length=None))
        return self._serialize_docs(docs)

    async def insert_templates(self, templates: List[Dict[str, Any]]) -> int:
        if not templates:
            return 0
        documents = [dict(t) for t in templates]
        result = await self._run("insert_templates", lambda: self.db.cart_recovery_templates.insert_many(documents))
        return len(result.inserted_ids)

    async def delete_templates(self, template_ids: List[str]) -> int:
        object_ids = [oid for oid in (self._to_object_id(i) for i in template_ids) if oid]
        if not object_ids:
            return 0
        result = await self._run(
            "delete_templates",
            lambda: self.db.cart_recovery_templates.delete_many({"_id": {"$in": object_ids}})
        )
        return result.deleted_count

    # ==================== API Clients ====================

    async def get_api_client(self, client_id: str) -> Optional[Dict[str, Any]]:
        doc = await self._run("get_api_client", lambda: self.db.api_clients.find_one({"client_id": client_id}))
        return self._serialize_doc(doc)

    async def insert_api_client(self, client_data: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(client_data)
        result = await self._run("insert_api_client", lambda: self.db.api_clients.insert_one(document))
        document["_id"] = result.inserted_id
        return self._serialize_doc(document)

    async def touch_api_client(self, client_id: str, now: datetime) -> None:
        await self._run(
            "touch_api_client",
            lambda: self.db.api_clients.update_one({"client_id": client_id}, {"$set": {"last_used_at": now}})
        )


# Globally accessible instance
db_service = DatabaseService(settings.mongo_atlas_uri)
