"""
Approval state machine.

``apply_event`` is the only function that changes an ``ApprovalRecord``. It
is pure: it validates the event against the record's current state and
returns a new record, leaving the input untouched. Persistence and locking
are the approval store's job.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Type

from app.core.exceptions import ConflictError, PolicyError
from app.core.logging import log_business_event
from app.models.approval import ApprovalRecord, ApprovalState, LetterHistoryEntry
from app.models.workflow import LetterContent, utcnow


@dataclass(frozen=True)
class RevisionRequested:
    feedback: str
    source: str = "approval_channel"


@dataclass(frozen=True)
class LetterRegenerated:
    letter: LetterContent


@dataclass(frozen=True)
class PreviewRendered:
    pdf_base64: str


@dataclass(frozen=True)
class ApprovalDispatched:
    """The current letter reached the approval channel."""

    message_id: Optional[str] = None


@dataclass(frozen=True)
class ApproveDecision:
    decided_by: str = "approval_channel"


@dataclass(frozen=True)
class RejectDecision:
    decided_by: str = "approval_channel"
    reason: Optional[str] = None


@dataclass(frozen=True)
class DeliveryStarted:
    """Recorded immediately before the mail carrier is called."""


@dataclass(frozen=True)
class DeliverySucceeded:
    tracking_id: str


@dataclass(frozen=True)
class WorkflowCompleted:
    """Carrier submission and CRM update both committed."""


@dataclass(frozen=True)
class StepFailed:
    error: Dict[str, Any] = field(default_factory=dict)


PENDING = ApprovalState.PENDING_APPROVAL
REVISING = ApprovalState.NEEDS_IMPROVEMENT
APPROVED = ApprovalState.APPROVED

# Source states from which each event is accepted
VALID_TRANSITIONS: Dict[Type, Tuple[ApprovalState, ...]] = {
    RevisionRequested: (PENDING,),
    LetterRegenerated: (REVISING,),
    PreviewRendered: (PENDING, REVISING),
    ApprovalDispatched: (PENDING,),
    ApproveDecision: (PENDING,),
    RejectDecision: (PENDING,),
    DeliveryStarted: (APPROVED,),
    DeliverySucceeded: (APPROVED,),
    WorkflowCompleted: (APPROVED,),
    StepFailed: (PENDING, REVISING, APPROVED),
}


def _validate_transition(record: ApprovalRecord, event: Any) -> None:
    """Raise ConflictError unless ``event`` may be applied to ``record``."""
    event_name = type(event).__name__

    if record.is_terminal:
        raise ConflictError(
            f"Approval is already in terminal state '{record.state.value}'",
            approval_id=record.approval_id,
            state=record.state.value,
            event=event_name,
        )

    allowed = VALID_TRANSITIONS.get(type(event))
    if allowed is None:
        raise TypeError(f"Unknown approval event: {event_name}")

    if record.state not in allowed:
        raise ConflictError(
            f"Event '{event_name}' not allowed in state '{record.state.value}'",
            approval_id=record.approval_id,
            state=record.state.value,
            event=event_name,
        )


def apply_event(
    record: ApprovalRecord,
    event: Any,
    max_revision_iterations: Optional[int] = None,
) -> ApprovalRecord:
    """
    Apply a state machine event to an approval record.

    Args:
        record: Current record
        event: One of the event classes defined in this module
        max_revision_iterations: Revision cap; ``None`` disables it

    Returns:
        The updated record (a new object)

    Raises:
        ConflictError: The record is terminal or the event is not valid in its state
        PolicyError: A revision was requested beyond the configured cap
    """
    _validate_transition(record, event)

    now = utcnow()
    update: Dict[str, Any] = {"updated_at": now}

    if isinstance(event, RevisionRequested):
        if max_revision_iterations is not None and record.iteration >= max_revision_iterations:
            raise PolicyError(
                f"Revision limit of {max_revision_iterations} iterations reached",
                approval_id=record.approval_id,
                iteration=record.iteration,
            )
        if not event.feedback or not event.feedback.strip():
            raise PolicyError(
                "Revision requests require feedback text",
                approval_id=record.approval_id,
            )
        history = list(record.letter_history)
        history[-1] = history[-1].model_copy(
            update={
                "feedback": event.feedback.strip(),
                "feedback_at": now,
                "feedback_source": event.source,
            }
        )
        update.update(state=REVISING, letter_history=history)

    elif isinstance(event, LetterRegenerated):
        entry = LetterHistoryEntry(iteration=record.iteration + 1, content=event.letter)
        update.update(
            state=PENDING,
            current_letter=event.letter,
            letter_history=[*record.letter_history, entry],
            pdf_base64=None,
            dispatched_at=None,
            approval_message_id=None,
        )

    elif isinstance(event, PreviewRendered):
        update.update(pdf_base64=event.pdf_base64)

    elif isinstance(event, ApprovalDispatched):
        update.update(dispatched_at=now, approval_message_id=event.message_id)

    elif isinstance(event, ApproveDecision):
        update.update(state=APPROVED, decided_by=event.decided_by, decided_at=now)

    elif isinstance(event, RejectDecision):
        error = {"reason": event.reason} if event.reason else record.error
        update.update(
            state=ApprovalState.REJECTED,
            decided_by=event.decided_by,
            decided_at=now,
            error=error,
        )

    elif isinstance(event, DeliveryStarted):
        if record.delivery_started_at is not None:
            raise ConflictError(
                "Delivery was already started for this approval",
                approval_id=record.approval_id,
            )
        update.update(delivery_started_at=now)

    elif isinstance(event, DeliverySucceeded):
        if record.delivery_started_at is None or record.tracking_id is not None:
            raise ConflictError(
                "Delivery result does not match recorded delivery state",
                approval_id=record.approval_id,
            )
        update.update(tracking_id=event.tracking_id)

    elif isinstance(event, WorkflowCompleted):
        if record.tracking_id is None:
            raise ConflictError(
                "Cannot complete an approval without a tracking reference",
                approval_id=record.approval_id,
            )
        update.update(completed_at=now)

    elif isinstance(event, StepFailed):
        update.update(state=ApprovalState.FAILED, error=dict(event.error))

    new_record = record.model_copy(update=update)

    if new_record.state != record.state:
        log_business_event(
            "approval_state_changed",
            approval_id=record.approval_id,
            task_id=record.task_id,
            from_state=record.state.value,
            to_state=new_record.state.value,
            iteration=new_record.iteration,
        )

    return new_record
