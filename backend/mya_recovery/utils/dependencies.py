# /mya_recovery/utils/dependencies.py

import secrets
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mya_recovery.config.settings import settings
from mya_recovery.models.domain import ApiClient
from mya_recovery.services.db_service import db_service
from mya_recovery.services.security_service import SecurityService
from mya_recovery.utils.metrics import api_auth_counter
from mya_recovery.utils.request_utils import get_remote_address

bearer_scheme = HTTPBearer(auto_error=False)
log = structlog.get_logger(__name__)

API_SCOPES = (
    "sessions:read",
    "sessions:write",
    "attempts:write",
    "config:read",
    "recovery:process",
    "templates:read",
    "templates:write",
)
SERVICE_CLIENT_ID = "service"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def authenticate_api_client(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> ApiClient:
    """
    Resolves the bearer token to an API client. The configured service key
    grants every scope; `mya_<client_id>_<secret>` tokens grant the scopes
    stored on their client.
    """
    if credentials is None or not credentials.credentials:
        api_auth_counter.labels(status="missing", method="none").inc()
        raise _unauthorized("Missing bearer token")

    token = credentials.credentials

    if settings.cart_recovery_api_key and SecurityService.constant_time_equals(token, settings.cart_recovery_api_key):
        api_auth_counter.labels(status="valid", method="service_key").inc()
        return ApiClient(client_id=SERVICE_CLIENT_ID, name="Service key", scopes=list(API_SCOPES))

    parsed = SecurityService.parse_api_token(token)
    if parsed is None:
        api_auth_counter.labels(status="invalid", method="unknown").inc()
        log.warning("Rejected malformed API token", ip=get_remote_address(request))
        raise _unauthorized("Invalid API token")

    client_id, secret = parsed
    client_doc = await db_service.get_api_client(client_id)
    if (
        not client_doc
        or not client_doc.get("is_active", False)
        or not SecurityService.verify_secret(secret, client_doc.get("key_hash", ""))
    ):
        api_auth_counter.labels(status="invalid", method="client_token").inc()
        log.warning("Rejected API token", client_id=client_id, ip=get_remote_address(request))
        raise _unauthorized("Invalid API token")

    await db_service.touch_api_client(client_id, datetime.now(timezone.utc))
    api_auth_counter.labels(status="valid", method="client_token").inc()
    return ApiClient(**client_doc)


def require_scope(scope: str):
    """Dependency factory: the caller must be authenticated and hold `scope`."""

    async def _check_scope(client: ApiClient = Depends(authenticate_api_client)) -> ApiClient:
        if scope not in client.scopes:
            api_auth_counter.labels(status="forbidden", method="scope").inc()
            log.warning("API client lacks scope", client_id=client.client_id, scope=scope)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing scope: {scope}")
        return client

    return _check_scope


async def verify_metrics_access(request: Request):
    if settings.metrics_api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.metrics_api_key)):
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
