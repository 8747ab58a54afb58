# /mya_recovery/jobs/abandonment_detector.py

"""
Abandonment check (attempt 0).

Runs when a session's first schedule comes due. The session is flipped from
active to abandoned with a conditional update, so a checkout that completed
in the meantime is never overwritten. When recovery is enabled, attempt #1
is queued `delay_minutes` later.
"""

import logging
from datetime import datetime

from mya_recovery.config.strings import NOTE_RECOVERY_DISABLED, NOTE_SESSION_NOT_ACTIVE
from mya_recovery.models.domain import CartSession, CartStatus, HandlerOutcome, RecoveryConfig, RecoverySchedule
from mya_recovery.services.db_service import db_service
from mya_recovery.services.schedule_service import recovery_scheduler

logger = logging.getLogger(__name__)


async def check_abandonment(
    schedule: RecoverySchedule,
    session: CartSession,
    config: RecoveryConfig,
    now: datetime,
) -> HandlerOutcome:
    marked = await db_service.transition_session(
        session.id,
        CartStatus.ACTIVE.value,
        {"status": CartStatus.ABANDONED.value, "abandoned_at": now, "updated_at": now},
    )
    if not marked:
        logger.info(f"Session {session.session_id} is no longer active, skipping abandonment")
        return HandlerOutcome(skipped=True, note=NOTE_SESSION_NOT_ACTIVE)

    logger.info(f"Session {session.session_id} marked as abandoned")

    if not config.dispatch_enabled:
        logger.info(f"Recovery disabled, no follow-up for session {session.session_id}")
        return HandlerOutcome(note=NOTE_RECOVERY_DISABLED)

    await recovery_scheduler.enqueue(session.id, 1, config.delay_minutes, now=now)
    return HandlerOutcome()
