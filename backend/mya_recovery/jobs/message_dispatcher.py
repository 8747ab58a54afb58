# /mya_recovery/jobs/message_dispatcher.py

"""
Recovery message dispatch (attempt >= 1).

Renders the WhatsApp template for the attempt, sends it through the
Evolution gateway and records a RecoveryAttempt. A successful send queues
the next attempt until `max_attempts` is reached; a failed send fails the
schedule and ends the sequence.
"""

import logging
from datetime import datetime, timezone

from mya_recovery.config.strings import (
    NOTE_MAX_ATTEMPTS_REACHED, NOTE_RECOVERY_DISABLED, NOTE_SESSION_NOT_ABANDONED,
)
from mya_recovery.models.domain import (
    AttemptStatus, CartSession, CartStatus, HandlerOutcome, RecoveryConfig, RecoveryMethod, RecoverySchedule,
)
from mya_recovery.services.db_service import db_service
from mya_recovery.services.schedule_service import recovery_scheduler
from mya_recovery.services.template_service import build_variables, render_template, select_template, template_service
from mya_recovery.services.whatsapp_service import whatsapp_service
from mya_recovery.utils.metrics import recovery_messages_counter

logger = logging.getLogger(__name__)


class TemplateNotFoundError(Exception):
    def __init__(self, attempt_number: int):
        super().__init__(f"Template not found for attempt {attempt_number}")
        self.attempt_number = attempt_number


class DispatchError(Exception):
    """The gateway rejected or failed to deliver a recovery message."""


async def dispatch_recovery_message(
    schedule: RecoverySchedule,
    session: CartSession,
    config: RecoveryConfig,
    now: datetime,
) -> HandlerOutcome:
    attempt_number = schedule.attempt_number

    if session.status != CartStatus.ABANDONED.value:
        logger.info(f"Session {session.session_id} is {session.status}, skipping attempt {attempt_number}")
        return HandlerOutcome(skipped=True, note=NOTE_SESSION_NOT_ABANDONED)

    if not config.dispatch_enabled:
        return HandlerOutcome(skipped=True, note=NOTE_RECOVERY_DISABLED)

    templates = await template_service.get_active_templates(RecoveryMethod.WHATSAPP.value)
    template = select_template(templates, attempt_number)
    if template is None:
        raise TemplateNotFoundError(attempt_number)

    plan = await db_service.get_plan(session.plan_id)
    message = render_template(template.content, build_variables(session, plan))

    attempt = await db_service.insert_attempt({
        "cart_session_id": session.id,
        "attempt_number": attempt_number,
        "method": RecoveryMethod.WHATSAPP.value,
        "status": AttemptStatus.PENDING.value,
        "message_content": message,
        "created_at": now,
    })

    result = await whatsapp_service.send_text(session.user_whatsapp, message)
    if not result.success:
        await db_service.update_attempt(attempt["id"], {
            "status": AttemptStatus.FAILED.value,
            "error_message": result.error,
        })
        recovery_messages_counter.labels(method=RecoveryMethod.WHATSAPP.value, status="failed").inc()
        raise DispatchError(f"WhatsApp send failed for attempt {attempt_number}: {result.error}")

    await db_service.update_attempt(attempt["id"], {
        "status": AttemptStatus.SENT.value,
        "sent_at": datetime.now(timezone.utc),
        "external_message_id": result.message_id,
    })
    recovery_messages_counter.labels(method=RecoveryMethod.WHATSAPP.value, status="sent").inc()
    logger.info(f"Recovery attempt {attempt_number} sent for session {session.session_id}")

    if attempt_number >= config.max_attempts:
        return HandlerOutcome(note=NOTE_MAX_ATTEMPTS_REACHED)

    await recovery_scheduler.enqueue(session.id, attempt_number + 1, config.delay_minutes, now=now)
    return HandlerOutcome()
