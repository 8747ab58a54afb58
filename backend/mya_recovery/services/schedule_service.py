# /mya_recovery/services/schedule_service.py

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from mya_recovery.config.settings import settings
from mya_recovery.models.domain import RecoverySchedule, ScheduleStatus
from mya_recovery.services.db_service import db_service
from mya_recovery.utils.metrics import stuck_schedules_counter

logger = logging.getLogger(__name__)


class RecoveryScheduler:
    """
    Durable queue of recovery schedules stored in MongoDB.

    Rows move pending -> processing -> completed | failed. A row only leaves
    pending through `claim`, which is a single conditional update, so each
    schedule is handled by exactly one drain.
    """

    async def enqueue(
        self,
        cart_session_id: str,
        attempt_number: int,
        delay_minutes: int,
        now: Optional[datetime] = None,
    ) -> RecoverySchedule:
        now = now or datetime.now(timezone.utc)
        schedule_data = {
            "cart_session_id": cart_session_id,
            "attempt_number": attempt_number,
            "scheduled_at": now + timedelta(minutes=delay_minutes),
            "status": ScheduleStatus.PENDING.value,
            "created_at": now,
            "requeue_count": 0,
        }
        try:
            doc = await db_service.insert_schedule(schedule_data)
        except DuplicateKeyError:
            logger.info(f"Schedule for session {cart_session_id} attempt {attempt_number} already exists")
            doc = await db_service.get_schedule_for_attempt(cart_session_id, attempt_number)
        else:
            logger.info(f"Enqueued attempt {attempt_number} for session {cart_session_id} at {schedule_data['scheduled_at'].isoformat()}")
        return RecoverySchedule(**doc)

    async def get_due(self, now: datetime, limit: int) -> List[RecoverySchedule]:
        docs = await db_service.get_due_schedules(now, limit)
        return [RecoverySchedule(**doc) for doc in docs]

    async def claim(self, schedule_id: str, now: datetime) -> Optional[RecoverySchedule]:
        doc = await db_service.claim_schedule(schedule_id, now)
        return RecoverySchedule(**doc) if doc else None

    async def finish(self, schedule_id: str, status: ScheduleStatus, error_message: Optional[str] = None, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        if not await db_service.finish_schedule(schedule_id, status.value, error_message, now):
            logger.warning(f"Schedule {schedule_id} was not in processing when finishing as {status.value}")

    async def requeue_stuck(self, now: Optional[datetime] = None) -> int:
        """
        Returns rows stuck in processing past the timeout to pending. Rows that
        already hit the requeue cap are failed instead. Returns the number of
        rows requeued.
        """
        now = now or datetime.now(timezone.utc)
        claimed_before = now - timedelta(minutes=settings.recovery_processing_timeout_minutes)
        requeued, failed = await db_service.requeue_stuck_schedules(claimed_before, settings.recovery_max_requeues, now)

        if requeued:
            stuck_schedules_counter.labels(outcome="requeued").inc(requeued)
            logger.warning(f"Requeued {requeued} stuck recovery schedules")
        if failed:
            stuck_schedules_counter.labels(outcome="failed").inc(failed)
            logger.error(f"Failed {failed} recovery schedules that exceeded the requeue limit")
        return requeued


# Globally accessible instance
recovery_scheduler = RecoveryScheduler()
