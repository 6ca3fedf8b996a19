"""
Request and response schemas for workflow trigger and status endpoints.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from app.models.approval import ApprovalState
from app.models.workflow import TriggerResult
from app.schemas.approval import ApprovalResponse


class TriggerRequest(BaseModel):
    """Request schema for starting an intake cycle."""

    trigger_id: Optional[str] = Field(
        default=None, description="Idempotency key; generated when omitted"
    )
    max_tasks: Optional[int] = Field(
        default=None, ge=1, le=100, description="Upper bound on tasks started"
    )
    dry_run: bool = Field(default=False, description="Select tasks without starting them")
    requested_by: str = Field(default="api", description="Caller identifier")


class TriggerResponse(BaseModel):
    """Response schema for an intake trigger."""

    trigger_id: str
    requested_by: str
    requested_at: datetime
    processed_at: Optional[datetime] = None
    result: TriggerResult


class TaskStateResponse(BaseModel):
    """All approval attempts for one CRM task."""

    task_id: str
    state: Optional[ApprovalState] = Field(
        default=None, description="State of the most recent attempt"
    )
    active_approval_id: Optional[str] = Field(
        default=None, description="Approval currently in flight, if any"
    )
    approvals: List[ApprovalResponse] = Field(default_factory=list)


class MetricsResponse(BaseModel):
    """Workflow metrics snapshot."""

    state_counts: Dict[str, int]
    active_total: int
    archived_total: int
    pending_approvals: int
    intake: Dict[str, Any]
    stream_subscribers: int
    timestamp: datetime
