# /mya_recovery/services/session_service.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from mya_recovery.models.domain import (
    CartSession, CartStatus, RecoveryConfig, OPEN_CART_STATUSES, TERMINAL_CART_STATUSES,
)
from mya_recovery.services.config_service import load_recovery_config
from mya_recovery.services.db_service import db_service
from mya_recovery.services.schedule_service import recovery_scheduler
from mya_recovery.services.security_service import EnhancedSecurityService
from mya_recovery.utils.metrics import cart_sessions_counter

logger = logging.getLogger(__name__)

STATUS_TIMESTAMP_FIELDS = {
    CartStatus.COMPLETED.value: "completed_at",
    CartStatus.CONVERTED.value: "converted_at",
    CartStatus.EXPIRED.value: "expired_at",
}
TRACKED_FIELDS = ("user_name", "user_email", "user_whatsapp", "amount", "frequency", "plan_id", "payment_method", "user_id")


class SessionNotFoundError(Exception):
    pass


class SessionStatusConflictError(Exception):
    def __init__(self, session_id: str, current: str, requested: str):
        super().__init__(f"Session {session_id} is already {current} and cannot become {requested}")
        self.current = current
        self.requested = requested


class SessionTracker:
    """Records checkout sessions and moves them through their statuses."""

    @staticmethod
    def _clean_contact_fields(session_data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(session_data)
        if "user_whatsapp" in data:
            data["user_whatsapp"] = EnhancedSecurityService.sanitize_phone_number(data["user_whatsapp"]) or None
        if "user_email" in data:
            data["user_email"] = EnhancedSecurityService.sanitize_email(data["user_email"])
        return data

    async def _link_profile(self, data: Dict[str, Any]) -> None:
        if data.get("user_email") and not data.get("user_id"):
            profile = await db_service.find_profile_by_email(data["user_email"])
            if profile and profile.get("id"):
                data["user_id"] = profile["id"]

    async def create_session(
        self,
        session_data: Dict[str, Any],
        config: Optional[RecoveryConfig] = None,
        now: Optional[datetime] = None,
    ) -> CartSession:
        """
        Stores a new active session and enqueues its abandonment check
        (attempt 0) `delay_minutes` after creation.
        """
        if not session_data.get("session_id"):
            raise ValueError("session_id is required")

        config = config or await load_recovery_config()
        now = now or datetime.now(timezone.utc)

        document = {key: session_data[key] for key in TRACKED_FIELDS if session_data.get(key) is not None}
        document.update({
            "session_id": session_data["session_id"],
            "amount": float(session_data.get("amount") or 0),
            "metadata": session_data.get("metadata"),
            "status": CartStatus.ACTIVE.value,
            "created_at": now,
            "updated_at": now,
        })

        doc = await db_service.insert_session(document)
        session = CartSession(**doc)
        await recovery_scheduler.enqueue(session.id, 0, config.delay_minutes, now=now)

        cart_sessions_counter.labels(action="created").inc()
        logger.info(f"Cart session {session.session_id} created, abandonment check in {config.delay_minutes} min")
        return session

    async def track_session(self, session_data: Dict[str, Any]) -> Tuple[CartSession, bool]:
        """
        Creates the session on first sight, otherwise refreshes its contact,
        plan and amount fields. Returns (session, created).
        """
        data = self._clean_contact_fields(session_data)
        await self._link_profile(data)

        existing = await db_service.get_session_by_session_id(data["session_id"])
        if existing is None:
            try:
                return await self.create_session(data), True
            except DuplicateKeyError:
                # Another request created it between the lookup and the insert.
                logger.info(f"Cart session {data['session_id']} was created concurrently, updating instead")
                existing = await db_service.get_session_by_session_id(data["session_id"])
                if existing is None:
                    raise

        fields = {key: data[key] for key in TRACKED_FIELDS if data.get(key) is not None}
        fields["updated_at"] = datetime.now(timezone.utc)
        doc = await db_service.update_session_by_session_id(data["session_id"], fields)
        session = CartSession(**(doc or existing))
        await self._ensure_abandonment_check(session)

        cart_sessions_counter.labels(action="updated").inc()
        logger.info(f"Cart session {session.session_id} updated")
        return session, False

    async def _ensure_abandonment_check(self, session: CartSession) -> None:
        """Re-enqueues attempt 0 for an active session whose first enqueue never landed."""
        if session.status != CartStatus.ACTIVE.value:
            return
        if await db_service.get_schedule_for_attempt(session.id, 0) is not None:
            return
        config = await load_recovery_config()
        logger.warning(f"Cart session {session.session_id} had no abandonment check, enqueuing it now")
        await recovery_scheduler.enqueue(session.id, 0, config.delay_minutes, now=session.created_at)

    async def complete_session(self, session_id: str) -> bool:
        now = datetime.now(timezone.utc)
        doc = await db_service.update_session_by_session_id(
            session_id,
            {"status": CartStatus.COMPLETED.value, "completed_at": now, "updated_at": now},
            allowed_statuses=OPEN_CART_STATUSES,
        )
        if doc:
            cart_sessions_counter.labels(action="completed").inc()
            logger.info(f"Cart session {session_id} completed")
        return doc is not None

    async def mark_converted(
        self,
        user_email: Optional[str] = None,
        user_whatsapp: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Converts every open session that belongs to the user. Identifiers are
        tried in the order user_id (via the profile email), email, WhatsApp.
        """
        if not (user_email or user_whatsapp or user_id):
            raise ValueError("userEmail, userWhatsapp, or userId is required")

        query: Dict[str, Any] = {"status": {"$in": list(OPEN_CART_STATUSES)}}
        if user_id:
            profile = await db_service.get_profile(user_id)
            if not profile or not profile.get("email"):
                logger.info(f"No profile email for user {user_id}, nothing to convert")
                return []
            query["user_email"] = profile["email"]
        elif user_email:
            query["user_email"] = EnhancedSecurityService.sanitize_email(user_email)
        else:
            query["user_whatsapp"] = EnhancedSecurityService.sanitize_phone_number(user_whatsapp) or user_whatsapp

        sessions = await db_service.find_sessions(query)
        if not sessions:
            return []

        now = datetime.now(timezone.utc)
        fields = {
            "status": CartStatus.CONVERTED.value,
            "converted_at": now,
            "updated_at": now,
            "metadata": {
                "conversion_source": "user_activation",
                "converted_at": now.isoformat(),
                "user_identifier": user_email or user_whatsapp or user_id,
            },
        }
        await db_service.update_sessions([s["id"] for s in sessions], OPEN_CART_STATUSES, fields)
        cart_sessions_counter.labels(action="converted").inc(len(sessions))
        logger.info(f"Marked {len(sessions)} cart sessions as converted")

        return [
            {
                "session_id": s["session_id"],
                "user_email": s.get("user_email"),
                "user_whatsapp": s.get("user_whatsapp"),
                "previous_status": s["status"],
            }
            for s in sessions
        ]

    async def update_status(self, session_id: str, status: str, metadata: Optional[Dict[str, Any]] = None) -> CartSession:
        """
        Sets a session's status with its matching timestamp. A terminal
        session accepts only its own status again.
        """
        current = await db_service.get_session_by_session_id(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)

        current_status = current["status"]
        if current_status in TERMINAL_CART_STATUSES:
            if current_status != status:
                raise SessionStatusConflictError(session_id, current_status, status)
            return CartSession(**current)

        now = datetime.now(timezone.utc)
        fields: Dict[str, Any] = {"status": status, "updated_at": now}
        if status in STATUS_TIMESTAMP_FIELDS:
            fields[STATUS_TIMESTAMP_FIELDS[status]] = now
        elif status == CartStatus.ABANDONED.value and current_status == CartStatus.ACTIVE.value:
            fields["abandoned_at"] = now
        if metadata is not None:
            fields["metadata"] = metadata

        doc = await db_service.update_session_by_session_id(session_id, fields, allowed_statuses=[current_status])
        if doc is None:
            # Status changed between the read and the write
            latest = await db_service.get_session_by_session_id(session_id)
            if latest is None:
                raise SessionNotFoundError(session_id)
            raise SessionStatusConflictError(session_id, latest["status"], status)

        cart_sessions_counter.labels(action=f"status_{status}").inc()
        logger.info(f"Cart session {session_id} status {current_status} -> {status}")
        return CartSession(**doc)


# Globally accessible instance
session_tracker = SessionTracker()
