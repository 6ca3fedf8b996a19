"""
Workflow endpoints: intake triggers, task status, progress stream and metrics.
"""
import asyncio
import json
import uuid
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Request, HTTPException, status, Depends, Query
from fastapi.responses import StreamingResponse

from app.core.dependencies import (
    get_approval_store,
    get_intake,
    get_progress_publisher,
    get_trigger_registry,
)
from app.core.exceptions import OrchestrationError, orchestration_http_exception
from app.core.logging import get_logger
from app.models.approval import ApprovalState
from app.models.workflow import WorkflowTrigger, utcnow
from app.schemas.approval import ApprovalResponse, ErrorResponse
from app.schemas.workflow import (
    MetricsResponse,
    TaskStateResponse,
    TriggerRequest,
    TriggerResponse,
)
from app.services.approval_store import ApprovalStore
from app.services.intake import TaskIntake
from app.services.progress import ProgressEvent, ProgressPublisher
from app.services.trigger_service import TriggerRegistry

router = APIRouter(prefix="/workflows", tags=["workflows"])
logger = get_logger(__name__)

KEEPALIVE_SECONDS = 15.0
TERMINAL_EVENTS = (
    "workflow_completed",
    "workflow_failed",
    "approval_rejected",
    "approval_cancelled",
)


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    responses={
        422: {"model": ErrorResponse, "description": "Invalid trigger id"},
    },
    summary="Run an intake cycle",
)
async def trigger_workflows(
    request: TriggerRequest,
    registry: TriggerRegistry = Depends(get_trigger_registry),
) -> TriggerResponse:
    """
    Select eligible CRM tasks and start a workflow for each.

    Workflows run until they reach the approval point before the response
    is sent. Repeating a ``trigger_id`` returns the stored result.
    """
    trigger = WorkflowTrigger(
        trigger_id=request.trigger_id or str(uuid.uuid4()),
        requested_by=request.requested_by,
        max_tasks=request.max_tasks,
        dry_run=request.dry_run,
    )

    logger.info(
        "Workflow trigger received",
        trigger_id=trigger.trigger_id,
        requested_by=trigger.requested_by,
        max_tasks=trigger.max_tasks,
        dry_run=trigger.dry_run,
    )

    try:
        processed = await registry.trigger(trigger)
    except OrchestrationError as e:
        raise orchestration_http_exception(e)

    return TriggerResponse(
        trigger_id=processed.trigger_id,
        requested_by=processed.requested_by,
        requested_at=processed.requested_at,
        processed_at=processed.processed_at,
        result=processed.result,
    )


@router.get(
    "/tasks/{task_id}",
    response_model=TaskStateResponse,
    responses={
        404: {"model": ErrorResponse, "description": "No approval for this task"},
    },
    summary="Get approval state for a CRM task",
)
async def get_task_state(
    task_id: str,
    store: ApprovalStore = Depends(get_approval_store),
) -> TaskStateResponse:
    records = await store.find_by_task(task_id)
    if not records:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"No approval found for task '{task_id}'", "error_code": "TASK_NOT_FOUND"},
        )

    active = next((r for r in records if not r.is_terminal), None)
    return TaskStateResponse(
        task_id=task_id,
        state=records[-1].state,
        active_approval_id=active.approval_id if active else None,
        approvals=[ApprovalResponse.from_record(r) for r in records],
    )


def _format_sse(event: ProgressEvent) -> str:
    """Format a ProgressEvent as SSE message."""
    return f"event: {event.event_type}\ndata: {json.dumps(event.to_dict())}\n\n"


def _format_sse_dict(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


async def event_stream(
    publisher: ProgressPublisher,
    request: Request,
    approval_id: Optional[str] = None,
    keepalive_seconds: float = KEEPALIVE_SECONDS,
) -> AsyncGenerator[str, None]:
    """
    Generate SSE messages for one approval, or for all workflows.

    A per-approval stream ends after the approval's terminal event.
    """
    queue = publisher.subscribe(approval_id)

    try:
        yield _format_sse_dict("connected", {
            "approval_id": approval_id,
            "message": "Subscribed to workflow events",
        })

        while True:
            if await request.is_disconnected():
                break

            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue

            yield _format_sse(event)
            if approval_id and event.event_type in TERMINAL_EVENTS:
                break
    finally:
        publisher.unsubscribe(queue, approval_id)


@router.get(
    "/stream",
    responses={
        200: {"description": "SSE stream of workflow events"},
        404: {"model": ErrorResponse, "description": "Approval not found"},
    },
    summary="Stream workflow progress",
)
async def stream_progress(
    request: Request,
    approval_id: Optional[str] = Query(default=None),
    publisher: ProgressPublisher = Depends(get_progress_publisher),
    store: ApprovalStore = Depends(get_approval_store),
):
    """Server-Sent Events stream of progress events."""
    if approval_id:
        try:
            record = await store.get(approval_id)
        except OrchestrationError as e:
            raise orchestration_http_exception(e)

        if record.is_terminal:
            async def _finished():
                yield _format_sse_dict("approval_state", {
                    "approval_id": approval_id,
                    "state": record.state.value,
                    "tracking_id": record.tracking_id,
                })

            return StreamingResponse(_finished(), media_type="text/event-stream")

    return StreamingResponse(
        event_stream(publisher, request, approval_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get(
    "/metrics",
    response_model=MetricsResponse,
    summary="Workflow metrics",
)
async def get_metrics(
    store: ApprovalStore = Depends(get_approval_store),
    intake: TaskIntake = Depends(get_intake),
    publisher: ProgressPublisher = Depends(get_progress_publisher),
) -> MetricsResponse:
    counts = await store.state_counts()
    active = await store.list_active()
    archived_total = sum(counts.values()) - len(active)

    return MetricsResponse(
        state_counts=counts,
        active_total=len(active),
        archived_total=archived_total,
        pending_approvals=sum(1 for r in active if r.state == ApprovalState.PENDING_APPROVAL),
        intake=intake.get_status(),
        stream_subscribers=publisher.subscriber_count(),
        timestamp=utcnow(),
    )
