"""Health check and metrics endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Response
from pydantic import BaseModel

from core.models.common import utcnow
from core.observability.metrics import get_metrics
from runtime import get_runtime
from storage.base import StorageError

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    runtime = get_runtime()
    try:
        await runtime.merchants.list_active()
        storage = "up"
    except StorageError:
        storage = "down"
    return HealthResponse(
        status="healthy" if storage == "up" else "degraded",
        timestamp=utcnow().isoformat(),
        version="1.0.0",
        services={
            "api": "up",
            "storage": storage,
            "registry": runtime.config.api_base_url,
        },
    )


@router.get("/ready")
async def readiness_check(response: Response) -> Dict[str, str]:
    """Readiness check for Kubernetes."""
    try:
        await get_runtime().merchants.list_active()
    except StorageError:
        response.status_code = 503
        return {"status": "not ready"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness check for Kubernetes."""
    return {"status": "alive"}


@router.get("/metrics")
async def metrics() -> Dict[str, Any]:
    """In-process counters: transitions, webhooks, polling, token refreshes, API timings."""
    return get_metrics().get_summary()
