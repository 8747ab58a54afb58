# /mya_recovery/routes/cart_recovery.py

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from mya_recovery.config.settings import settings
from mya_recovery.config.strings import ERROR_SESSION_NOT_FOUND
from mya_recovery.jobs.recovery_job import drain, run_maintenance
from mya_recovery.models.api import (
    AbandonedListResponse, APIResponse, MarkConvertedRequest, Pagination, RecordAttemptRequest, UpdateSessionRequest,
)
from mya_recovery.models.domain import ApiClient, AttemptStatus, CartStatus, RecoveryAttempt
from mya_recovery.services.config_service import load_recovery_config
from mya_recovery.services.db_service import db_service
from mya_recovery.services.session_service import SessionNotFoundError, SessionStatusConflictError, session_tracker
from mya_recovery.utils.dependencies import require_scope

# Authenticated endpoints used by external integrations (CRM, automation
# tools, the billing backend) to read and update the recovery pipeline.

router = APIRouter(prefix="/api/cart-recovery", tags=["Cart Recovery"])
log = structlog.get_logger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get("/abandoned", response_model=AbandonedListResponse)
async def list_abandoned_sessions(
    status_filter: CartStatus = Query(CartStatus.ABANDONED, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    email: Optional[str] = None,
    whatsapp: Optional[str] = None,
    minutes: Optional[int] = Query(None, ge=1),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    client: ApiClient = Depends(require_scope("sessions:read")),
):
    """Lists sessions (abandoned by default) with their plan and recovery attempts."""
    start_date, end_date = _as_utc(start_date), _as_utc(end_date)
    created_after = datetime.now(timezone.utc) - timedelta(minutes=minutes) if minutes else None

    sessions, total = await db_service.get_sessions_page(
        status=status_filter.value,
        start_date=start_date,
        end_date=end_date,
        created_after=created_after,
        email=email,
        whatsapp=whatsapp,
        limit=limit,
        offset=offset,
    )

    plans: Dict[str, Any] = {}
    for session in sessions:
        plan_id = session.get("plan_id")
        if plan_id and plan_id not in plans:
            plans[plan_id] = await db_service.get_plan(plan_id)
        session["plan"] = plans.get(plan_id) if plan_id else None
        session["attempts"] = await db_service.get_attempts_for_session(session["id"])

    log.info("Listed cart sessions", client_id=client.client_id, status=status_filter.value, count=len(sessions))
    return AbandonedListResponse(
        data=sessions,
        count=len(sessions),
        total_count=total,
        pagination=Pagination(limit=limit, offset=offset, has_more=offset + len(sessions) < total),
        filters={
            "status": status_filter.value,
            "start_date": start_date,
            "end_date": end_date,
            "email": email,
            "whatsapp": whatsapp,
            "minutes": minutes,
        },
    )


@router.get("/config", response_model=APIResponse)
async def get_recovery_config(client: ApiClient = Depends(require_scope("config:read"))):
    """Current configuration, active templates and gateway settings (never the key itself)."""
    config = await load_recovery_config()
    templates = sorted(await db_service.get_templates(active_only=True), key=lambda t: t.get("name", ""))
    return APIResponse(
        success=True,
        message="Recovery configuration retrieved",
        data={
            "config": config.model_dump(),
            "templates": templates,
            "whatsapp_settings": {
                "api_url": settings.evolution_api_url,
                "instance_name": settings.evolution_instance_name,
                "api_key_configured": bool(settings.evolution_api_key),
            },
        },
    )


@router.put("/session", response_model=APIResponse)
async def update_session_status(
    body: UpdateSessionRequest,
    client: ApiClient = Depends(require_scope("sessions:write")),
):
    try:
        session = await session_tracker.update_status(body.session_id, body.status.value, body.metadata)
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=ERROR_SESSION_NOT_FOUND)
    except SessionStatusConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    log.info("Cart session status updated", client_id=client.client_id, session_id=body.session_id, status=body.status.value)
    return APIResponse(success=True, message="Session updated", data=session.model_dump())


@router.post("/attempt", response_model=APIResponse)
async def record_recovery_attempt(
    body: RecordAttemptRequest,
    client: ApiClient = Depends(require_scope("attempts:write")),
):
    """Records an attempt made by an external channel (e.g. an email tool)."""
    session = await db_service.get_session_by_session_id(body.session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=ERROR_SESSION_NOT_FOUND)

    now = datetime.now(timezone.utc)
    attempt_data: Dict[str, Any] = {
        "cart_session_id": session["id"],
        "attempt_number": body.attempt_number,
        "method": body.method.value,
        "status": body.status.value,
        "message_content": body.message_content,
        "created_at": now,
    }
    if body.status == AttemptStatus.SENT:
        attempt_data["sent_at"] = now
        attempt_data["external_message_id"] = body.message_id
    if body.status == AttemptStatus.FAILED:
        attempt_data["error_message"] = body.error_message

    attempt = RecoveryAttempt(**await db_service.insert_attempt(attempt_data))
    log.info("Recovery attempt recorded", client_id=client.client_id, session_id=body.session_id, attempt=body.attempt_number)
    return APIResponse(success=True, message="Attempt recorded", data=attempt.model_dump())


@router.post("/converted", response_model=APIResponse)
async def mark_sessions_converted(
    body: MarkConvertedRequest,
    client: ApiClient = Depends(require_scope("sessions:write")),
):
    converted = await session_tracker.mark_converted(body.user_email, body.user_whatsapp, body.user_id)
    message = "Cart sessions marked as converted" if converted else "No cart sessions found to convert"
    return APIResponse(
        success=True,
        message=message,
        data={"converted_count": len(converted), "sessions": converted},
    )


@router.post("/process")
async def process_recovery_queue(client: ApiClient = Depends(require_scope("recovery:process"))):
    """Runs one drain of the schedule queue, for callers driving it from an external cron."""
    results = await drain()
    log.info("Recovery drain triggered over API", client_id=client.client_id, processed=len(results))
    return {
        "success": True,
        "processed": len(results),
        "results": [r.model_dump(exclude_none=True) for r in results],
    }


@router.post("/maintenance", response_model=APIResponse)
async def run_recovery_maintenance(client: ApiClient = Depends(require_scope("recovery:process"))):
    summary = await run_maintenance()
    return APIResponse(success=True, message="Maintenance completed", data=summary)
