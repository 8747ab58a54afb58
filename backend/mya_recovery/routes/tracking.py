# /mya_recovery/routes/tracking.py

import structlog
from fastapi import APIRouter, Request

from mya_recovery.config.settings import settings
from mya_recovery.models.api import APIResponse, TrackSessionRequest
from mya_recovery.services.session_service import session_tracker
from mya_recovery.utils.rate_limiter import limiter
from mya_recovery.utils.request_utils import get_remote_address

# Called from the checkout page without credentials, so it is rate limited
# per client IP instead.

router = APIRouter(prefix="/api/cart-recovery", tags=["Tracking"])
log = structlog.get_logger(__name__)

COMPLETE_ACTION = "complete"


@router.post("/track", response_model=APIResponse)
@limiter.limit(f"{settings.track_rate_limit_per_minute}/minute")
async def track_cart_session(request: Request, body: TrackSessionRequest):
    if body.action == COMPLETE_ACTION:
        completed = await session_tracker.complete_session(body.session_id)
        log.info("Checkout completed", session_id=body.session_id, updated=completed)
        return APIResponse(
            success=True,
            message="Session completed" if completed else "Session already closed or unknown",
            data={"session_id": body.session_id, "completed": completed},
        )

    session, created = await session_tracker.track_session(body.session_fields())
    log.info("Cart session tracked", session_id=session.session_id, created=created, ip=get_remote_address(request))
    return APIResponse(
        success=True,
        message="Session created" if created else "Session updated",
        data={"session": session.model_dump(), "created": created},
    )
