# /mya_recovery/routes/templates.py

import structlog
from fastapi import APIRouter, Depends

from mya_recovery.models.api import APIResponse
from mya_recovery.models.domain import ApiClient
from mya_recovery.services.config_service import load_recovery_config
from mya_recovery.services.template_service import template_service
from mya_recovery.utils.dependencies import require_scope

router = APIRouter(prefix="/api/cart-recovery/templates", tags=["Templates"])
log = structlog.get_logger(__name__)


@router.get("", response_model=APIResponse)
async def list_templates(client: ApiClient = Depends(require_scope("templates:read"))):
    templates = await template_service.list_templates()
    return APIResponse(
        success=True,
        message="Templates retrieved",
        data={"templates": templates, "count": len(templates)},
    )


@router.post("/sync", response_model=APIResponse)
async def sync_templates(client: ApiClient = Depends(require_scope("templates:write"))):
    """Creates default templates up to max_attempts and removes the ones beyond it."""
    config = await load_recovery_config()
    results = await template_service.sync_templates(config.max_attempts)
    log.info("Templates synced", client_id=client.client_id, max_attempts=config.max_attempts, created=results["created"], deleted=results["deleted"])
    return APIResponse(
        success=not results["errors"],
        message="Templates synchronized" if not results["errors"] else "Templates synchronized with errors",
        data={"max_attempts": config.max_attempts, "results": results},
    )
