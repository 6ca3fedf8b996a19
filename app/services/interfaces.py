"""
Capability interfaces for external services.

The orchestrator, intake and notification sink depend only on these
protocols. Production adapters live in the adapter modules of this package;
tests substitute in-memory fakes.
"""
from typing import List, Optional, Protocol

from app.models.approval import ApprovalRecord
from app.models.workflow import (
    ContactRecord,
    DeliveryReceipt,
    DossierBundle,
    LetterContent,
    PostalAddress,
    ProfileRecord,
    TaskReference,
)


class TaskSource(Protocol):
    """CRM: tasks, contacts and status write-back."""

    async def search_tasks(
        self, status: str, subject: Optional[str], owner_id: Optional[str]
    ) -> List[TaskReference]: ...

    async def get_contact(self, contact_id: str) -> ContactRecord: ...

    async def update_contact_address(self, contact_id: str, address: PostalAddress) -> None: ...

    async def update_task_status(self, task_id: str, status: str, description: str) -> None: ...

    async def attach_document(self, task_id: str, filename: str, content: bytes) -> None: ...

    async def create_follow_up_task(
        self, task: TaskReference, subject: str, due_in_days: int
    ) -> Optional[str]: ...


class ProfileStore(Protocol):
    """Profile rows keyed by external profile identifier."""

    async def get_profile(self, profile_id: str) -> Optional[ProfileRecord]: ...


class DossierGenerator(Protocol):
    """Person and company narrative generation. Slow on cache miss."""

    async def generate_dossiers(
        self, profile_id: str, company_name: Optional[str], profile_url: Optional[str]
    ) -> DossierBundle: ...


class LetterGenerator(Protocol):
    """AI letter drafting."""

    async def generate_letter(
        self,
        contact: ContactRecord,
        dossier: DossierBundle,
        address: Optional[PostalAddress],
        task: TaskReference,
        profile: Optional[ProfileRecord] = None,
    ) -> LetterContent: ...

    async def revise_letter(self, record: ApprovalRecord, feedback: str) -> LetterContent: ...


class DocumentRenderer(Protocol):
    """Letter template rendering to PDF bytes."""

    async def render(self, letter: LetterContent, address: Optional[PostalAddress]) -> bytes: ...


class MailCarrier(Protocol):
    """Physical mail submission. Each call sends a real letter."""

    async def submit_letter(self, pdf: bytes, address: PostalAddress) -> DeliveryReceipt: ...


class ApprovalChannel(Protocol):
    """Outbound decision prompts and plain text messages."""

    async def send_approval_request(self, record: ApprovalRecord, pdf: bytes) -> Optional[str]: ...

    async def send_message(self, text: str) -> None: ...


