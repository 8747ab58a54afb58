# /mya_recovery/jobs/recovery_job.py

"""
Drain and maintenance passes over the recovery schedule queue.

`drain` processes every due pending schedule once: it claims the row,
hands it to the abandonment check (attempt 0) or the message dispatcher
(attempt >= 1), then marks it completed or failed. The configuration is
read once per drain and passed to every handler.

`run_maintenance` returns stuck processing rows to the queue and expires
sessions that stayed abandoned for too long.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from mya_recovery.config.settings import settings
from mya_recovery.config.strings import ERROR_SESSION_NOT_FOUND
from mya_recovery.jobs.abandonment_detector import check_abandonment
from mya_recovery.jobs.message_dispatcher import dispatch_recovery_message
from mya_recovery.models.domain import CartSession, RecoveryConfig, RecoverySchedule, ScheduleResult, ScheduleStatus
from mya_recovery.services.config_service import load_recovery_config
from mya_recovery.services.db_service import db_service
from mya_recovery.services.schedule_service import recovery_scheduler
from mya_recovery.utils.metrics import schedules_processed_counter

logger = logging.getLogger(__name__)


class CartSessionMissingError(Exception):
    def __init__(self):
        super().__init__(ERROR_SESSION_NOT_FOUND)


async def _process_schedule(schedule: RecoverySchedule, config: RecoveryConfig, now: datetime) -> ScheduleResult:
    claimed = await recovery_scheduler.claim(schedule.id, now)
    if claimed is None:
        return ScheduleResult(schedule_id=schedule.id, attempt_number=schedule.attempt_number, status="claimed_elsewhere")

    session_token = None
    try:
        session_doc = await db_service.get_session(claimed.cart_session_id)
        if session_doc is None:
            raise CartSessionMissingError()
        session = CartSession(**session_doc)
        session_token = session.session_id

        handler = check_abandonment if claimed.is_abandonment_check else dispatch_recovery_message
        outcome = await handler(claimed, session, config, now)
    except Exception as e:
        logger.error(f"Recovery schedule {claimed.id} (attempt {claimed.attempt_number}) failed: {e}", exc_info=True)
        await recovery_scheduler.finish(claimed.id, ScheduleStatus.FAILED, str(e), now)
        return ScheduleResult(
            schedule_id=claimed.id, session_id=session_token,
            attempt_number=claimed.attempt_number, status="error", error=str(e),
        )

    await recovery_scheduler.finish(claimed.id, ScheduleStatus.COMPLETED, outcome.note, now)
    return ScheduleResult(
        schedule_id=claimed.id, session_id=session_token, attempt_number=claimed.attempt_number,
        status="skipped" if outcome.skipped else "success", note=outcome.note,
    )


async def drain(now: Optional[datetime] = None) -> List[ScheduleResult]:
    """Processes all due pending schedules, one result per fetched row."""
    now = now or datetime.now(timezone.utc)
    config = await load_recovery_config()
    due = await recovery_scheduler.get_due(now, settings.recovery_batch_size)

    if not due:
        logger.info("No due recovery schedules")
        return []

    logger.info(f"Processing {len(due)} due recovery schedules")
    results = []
    for schedule in due:
        kind = "abandonment_check" if schedule.is_abandonment_check else "message"
        try:
            result = await _process_schedule(schedule, config, now)
        except Exception as e:
            # Claim or finish could not be written; the sweep picks the row up later
            logger.error(f"Could not process recovery schedule {schedule.id}: {e}", exc_info=True)
            result = ScheduleResult(
                schedule_id=schedule.id, attempt_number=schedule.attempt_number, status="error", error=str(e),
            )
        schedules_processed_counter.labels(kind=kind, status=result.status).inc()
        results.append(result)

    succeeded = sum(1 for r in results if r.status == "success")
    logger.info(f"Recovery drain finished: {succeeded}/{len(results)} succeeded")
    return results


async def expire_stale_sessions(now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=settings.recovery_session_expiry_days)
    expired = await db_service.expire_sessions(cutoff, now)
    if expired:
        logger.info(f"Expired {expired} abandoned cart sessions older than {settings.recovery_session_expiry_days} days")
    return expired


async def run_maintenance(now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or datetime.now(timezone.utc)
    requeued = await recovery_scheduler.requeue_stuck(now)
    expired = await expire_stale_sessions(now)
    return {"requeued": requeued, "expired": expired}
