"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from connectors.erp_base import list_available_clients
from core import __version__
from core.observability.metrics import get_metrics


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    providers: list
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    service = getattr(request.app.state, "connection_service", None)
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        providers=[kind.value for kind in list_available_clients()],
        services={
            "api": "up",
            "connections": "up" if service is not None else "down",
        }
    )


@router.get("/metrics")
async def metrics_summary() -> Dict[str, Any]:
    """In-process ERP request and health-check metrics."""
    return get_metrics().get_summary()


@router.get("/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, str]:
    """Readiness check for Kubernetes."""
    if getattr(request.app.state, "connection_service", None) is None:
        response.status_code = 503
        return {"status": "starting"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness check for Kubernetes."""
    return {"status": "alive"}
