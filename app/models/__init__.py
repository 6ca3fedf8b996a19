"""
Models package for the letter workflow orchestrator.
"""
from .approval import (
    ApprovalRecord,
    ApprovalState,
    ArchivedApproval,
    DecisionType,
    InboundDecision,
    LetterHistoryEntry,
)
from .workflow import (
    ContactRecord,
    DossierBundle,
    LetterContent,
    PostalAddress,
    ProfileRecord,
    TaskReference,
)

__all__ = [
    "ApprovalRecord",
    "ApprovalState",
    "ArchivedApproval",
    "DecisionType",
    "InboundDecision",
    "LetterHistoryEntry",
    "ContactRecord",
    "DossierBundle",
    "LetterContent",
    "PostalAddress",
    "ProfileRecord",
    "TaskReference",
]
