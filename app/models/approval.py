"""
Approval record model: the durable unit tracking one letter from draft to
delivery or rejection.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
from uuid import uuid4
from pydantic import BaseModel, Field

from app.models.workflow import (
    ContactRecord,
    DossierBundle,
    LetterContent,
    PostalAddress,
    TaskReference,
    utcnow,
)

# Canonical uuid4 text form; approval ids become file names in the store
APPROVAL_ID_REGEX = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
_APPROVAL_ID_PATTERN = re.compile(rf"^{APPROVAL_ID_REGEX}$")


def is_valid_approval_id(approval_id: Optional[str]) -> bool:
    return bool(approval_id) and _APPROVAL_ID_PATTERN.match(approval_id) is not None


class ApprovalState(str, Enum):
    """Approval state enumeration"""
    PENDING_APPROVAL = "pending_approval"
    NEEDS_IMPROVEMENT = "needs_improvement"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class LetterHistoryEntry(BaseModel):
    """One letter iteration and the feedback it received, if any."""
    iteration: int
    content: LetterContent
    feedback: Optional[str] = None
    feedback_at: Optional[datetime] = None
    feedback_source: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class ApprovalRecord(BaseModel):
    """Durable approval state for a single task attempt."""
    approval_id: str = Field(default_factory=lambda: str(uuid4()))
    task: TaskReference
    contact: ContactRecord
    state: ApprovalState = ApprovalState.PENDING_APPROVAL
    current_letter: LetterContent
    letter_history: List[LetterHistoryEntry] = Field(default_factory=list)
    mailing_address: Optional[PostalAddress] = None
    dossier: Optional[DossierBundle] = None
    pdf_base64: Optional[str] = None
    # Set once the current iteration reached the approval channel
    dispatched_at: Optional[datetime] = None
    approval_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    error: Optional[Dict[str, Any]] = None

    # Decision bookkeeping
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None

    # Delivery bookkeeping. delivery_started_at is written before the carrier
    # is called and never cleared.
    delivery_started_at: Optional[datetime] = None
    tracking_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        task: TaskReference,
        contact: ContactRecord,
        letter: LetterContent,
        mailing_address: Optional[PostalAddress] = None,
        dossier: Optional[DossierBundle] = None,
    ) -> "ApprovalRecord":
        """Create a record for a freshly generated first letter."""
        return cls(
            task=task,
            contact=contact,
            current_letter=letter,
            letter_history=[LetterHistoryEntry(iteration=1, content=letter)],
            mailing_address=mailing_address,
            dossier=dossier,
        )

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def iteration(self) -> int:
        return len(self.letter_history)

    @property
    def is_delivered(self) -> bool:
        return self.state == ApprovalState.APPROVED and self.completed_at is not None

    @property
    def is_terminal(self) -> bool:
        if self.state in (ApprovalState.REJECTED, ApprovalState.FAILED):
            return True
        return self.is_delivered

    @property
    def awaiting_delivery(self) -> bool:
        """Approved by a human but not yet delivered and recorded."""
        return self.state == ApprovalState.APPROVED and self.completed_at is None

    def latest_feedback(self) -> Optional[str]:
        if not self.letter_history:
            return None
        return self.letter_history[-1].feedback


class ArchivedApproval(BaseModel):
    """Immutable archive entry for a record that reached a terminal state."""
    record: ApprovalRecord
    archived_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @property
    def approval_id(self) -> str:
        return self.record.approval_id


class DecisionType(str, Enum):
    """Decision kinds accepted from the approval channel"""
    APPROVE = "approve"
    REJECT = "reject"
    REVISE = "revise"


class InboundDecision(BaseModel):
    """A reviewer decision matched to an approval by identifier."""
    approval_id: str
    decision: DecisionType
    feedback: Optional[str] = None
    decided_by: str = "approval_channel"
