# /mya_recovery/routes/public.py

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from mya_recovery.config.settings import settings
from mya_recovery.services.db_service import db_service
from mya_recovery.services.whatsapp_service import whatsapp_service
from mya_recovery.utils.dependencies import verify_metrics_access

# Health probes and the Prometheus endpoint. None of these require an API
# token; /metrics is guarded by METRICS_API_KEY when it is set.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "MYA Cart Recovery",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe: MongoDB must answer a ping."""
    if not await db_service.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unavailable")
    return {
        "status": "ready",
        "whatsapp": "configured" if whatsapp_service.is_configured else "not_configured",
    }


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
