"""
Request and response schemas for approval API endpoints.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from app.models.approval import (
    ApprovalRecord,
    ApprovalState,
    DecisionType,
    LetterHistoryEntry,
)
from app.models.workflow import LetterContent, PostalAddress, utcnow


class DecisionRequest(BaseModel):
    """Request schema for a reviewer decision."""

    decision: DecisionType = Field(..., description="Decision: approve, reject, or revise")
    feedback: Optional[str] = Field(
        default=None, description="Revision feedback (required for revise) or rejection reason"
    )
    decided_by: str = Field(default="api", description="Identifier of the reviewer")


class CancelRequest(BaseModel):
    """Request schema for cancelling an approval."""

    reason: Optional[str] = Field(default=None, description="Reason for cancellation")
    cancelled_by: str = Field(default="operator", description="Identifier of the operator")


class ApprovalResponse(BaseModel):
    """Full view of an approval record."""

    approval_id: str = Field(..., description="Approval identifier")
    task_id: str = Field(..., description="CRM task identifier")
    contact_id: str = Field(..., description="CRM contact identifier")
    state: ApprovalState = Field(..., description="Current approval state")
    iteration: int = Field(..., description="Number of letter iterations")
    current_letter: LetterContent
    letter_history: List[LetterHistoryEntry]
    mailing_address: Optional[PostalAddress] = None
    has_pdf: bool = Field(..., description="Whether a preview PDF is stored")
    error: Optional[Dict[str, Any]] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    delivery_started_at: Optional[datetime] = None
    tracking_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    is_terminal: bool = Field(..., description="Whether the record is archived or about to be")

    @classmethod
    def from_record(cls, record: ApprovalRecord) -> "ApprovalResponse":
        return cls(
            approval_id=record.approval_id,
            task_id=record.task_id,
            contact_id=record.contact.contact_id,
            state=record.state,
            iteration=record.iteration,
            current_letter=record.current_letter,
            letter_history=record.letter_history,
            mailing_address=record.mailing_address,
            has_pdf=record.pdf_base64 is not None,
            error=record.error,
            decided_by=record.decided_by,
            decided_at=record.decided_at,
            delivery_started_at=record.delivery_started_at,
            tracking_id=record.tracking_id,
            completed_at=record.completed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            is_terminal=record.is_terminal,
        )


class ApprovalQueueItem(BaseModel):
    """Schema for approval queue items returned to reviewers."""

    approval_id: str = Field(..., description="Approval identifier")
    task_id: str = Field(..., description="CRM task identifier")
    recipient_name: str = Field(..., description="Letter recipient")
    company_name: str = Field(..., description="Recipient company")
    subject: str = Field(..., description="Letter subject")
    iteration: int = Field(..., description="Current letter iteration")
    has_address: bool = Field(..., description="Whether a postal address is known")
    created_at: datetime = Field(..., description="Record creation time")
    waiting_time_hours: float = Field(..., description="Hours waiting for a decision")

    @classmethod
    def from_record(cls, record: ApprovalRecord) -> "ApprovalQueueItem":
        waiting = (utcnow() - record.updated_at).total_seconds() / 3600
        return cls(
            approval_id=record.approval_id,
            task_id=record.task_id,
            recipient_name=record.current_letter.recipient_name,
            company_name=record.current_letter.company_name,
            subject=record.current_letter.subject,
            iteration=record.iteration,
            has_address=record.mailing_address is not None,
            created_at=record.created_at,
            waiting_time_hours=round(waiting, 2),
        )


class PendingApprovalsResponse(BaseModel):
    """Response schema for pending approvals list."""

    pending_approvals: List[ApprovalQueueItem] = Field(
        ..., description="Approvals waiting for a decision, oldest first"
    )
    total_count: int = Field(..., description="Total number of pending approvals")


class TelegramWebhookResponse(BaseModel):
    """Acknowledgement returned to the Telegram webhook."""

    ok: bool = True
    handled: bool = Field(..., description="Whether the update carried a decision")
    approval_id: Optional[str] = None
    decision: Optional[DecisionType] = None
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error detail body."""

    error: str
    error_code: str
    timestamp: datetime = Field(default_factory=utcnow)
