"""
Health check endpoints for the letter workflow orchestrator.
"""
import time
from datetime import datetime
from typing import Dict, Any
from fastapi import APIRouter, Request, Depends
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.dependencies import (
    get_adapters,
    get_approval_store,
    get_intake,
    get_notification_service,
)
from app.core.logging import get_logger
from app.models.workflow import utcnow
from app.services.approval_store import ApprovalStore
from app.services.intake import TaskIntake
from app.services.notification_service import NotificationService

router = APIRouter()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    uptime_seconds: float
    timestamp: datetime
    service_name: str


class DetailedHealthResponse(HealthResponse):
    """Detailed health check response model."""

    checks: Dict[str, Any]
    approval_states: Dict[str, int]
    intake: Dict[str, Any]
    circuit_breakers: Dict[str, Dict[str, Any]]
    notifications: Dict[str, Any]


def _uptime(request: Request) -> float:
    start_time = getattr(request.app.state, "start_time", time.time())
    return time.time() - start_time


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Basic health check endpoint.

    Returns service status, version, and uptime.
    """
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        version=settings.service_version,
        uptime_seconds=_uptime(request),
        timestamp=utcnow(),
        service_name=settings.service_name,
    )


@router.get("/health/detailed", response_model=DetailedHealthResponse)
async def detailed_health_check(
    request: Request,
    store: ApprovalStore = Depends(get_approval_store),
    intake: TaskIntake = Depends(get_intake),
    adapters: Dict[str, Any] = Depends(get_adapters),
    notifier: NotificationService = Depends(get_notification_service),
):
    """
    Detailed health check endpoint.

    Reports approval state counts, intake health and the circuit breaker of
    every external adapter. Status is ``degraded`` when the task source is
    unreachable or any circuit is open, ``unhealthy`` when the approval
    store cannot be read.
    """
    settings = get_settings()
    checks: Dict[str, Any] = {}

    try:
        approval_states = await store.state_counts()
        checks["approval_store"] = "healthy"
    except OSError as e:
        logger.error("Approval store health check failed", error=str(e))
        approval_states = {}
        checks["approval_store"] = "unhealthy"

    circuit_breakers = {name: adapter.get_circuit_status() for name, adapter in adapters.items()}
    open_circuits = [name for name, cb in circuit_breakers.items() if not cb.get("is_available", True)]

    intake_status = intake.get_status()
    checks["task_source"] = "healthy" if intake_status["healthy"] else "degraded"
    checks["external_services"] = "degraded" if open_circuits else "healthy"

    if checks["approval_store"] != "healthy":
        overall_status = "unhealthy"
    elif open_circuits or not intake_status["healthy"]:
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    response = DetailedHealthResponse(
        status=overall_status,
        version=settings.service_version,
        uptime_seconds=_uptime(request),
        timestamp=utcnow(),
        service_name=settings.service_name,
        checks=checks,
        approval_states=approval_states,
        intake=intake_status,
        circuit_breakers=circuit_breakers,
        notifications=notifier.get_status(),
    )

    logger.info(
        "Detailed health check completed",
        status=response.status,
        open_circuits=open_circuits,
        correlation_id=request.headers.get("X-Correlation-ID"),
    )
    return response
