from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class TaskReference(BaseModel):
    """CRM task selected for processing. Owned by the CRM, read-only here."""
    task_id: str
    contact_id: Optional[str] = None
    company_id: Optional[str] = None
    subject: Optional[str] = None
    status: Optional[str] = None
    owner_id: Optional[str] = None
    created_at: datetime

    model_config = {"frozen": True}


class PostalAddress(BaseModel):
    """Postal address as stored on a CRM contact."""
    street: str = ""
    street2: Optional[str] = None
    city: str = ""
    state: Optional[str] = None
    postal_code: str = ""
    country: str = ""

    model_config = {"frozen": True}

    def is_complete(self) -> bool:
        """True when every field the mail carrier needs is present."""
        return all(
            value and value.strip()
            for value in (self.street, self.city, self.postal_code, self.country)
        )

    def is_international(self, home_country: str = "Germany") -> bool:
        return self.country.strip().lower() not in (home_country.lower(), "deutschland", "de")


class ContactRecord(BaseModel):
    """CRM contact resolved from a task."""
    contact_id: str
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    profile_id: Optional[str] = None
    mailing_address: Optional[PostalAddress] = None

    @property
    def first_name(self) -> str:
        parts = self.full_name.split()
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        return " ".join(self.full_name.split()[1:])

    @property
    def profile_url(self) -> Optional[str]:
        if not self.profile_id:
            return None
        return f"https://www.linkedin.com/in/{self.profile_id}"


class ProfileRecord(BaseModel):
    """Professional profile row from the profile store."""
    profile_id: str
    profile_url: Optional[str] = None
    full_name: Optional[str] = None
    headline: Optional[str] = None
    company_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DossierBundle(BaseModel):
    """Person and company narratives produced for one approval."""
    person_dossier: str
    company_dossier: str
    company_name: str
    mailing_address: Optional[PostalAddress] = None
    generated_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class LetterContent(BaseModel):
    """One drafted letter. Markdown text; never modified once produced."""
    subject: str
    greeting: str
    body: str
    sender_name: str
    recipient_name: str
    company_name: str

    model_config = {"frozen": True}


class DeliveryReceipt(BaseModel):
    """Mail carrier acknowledgement of a submitted letter."""
    tracking_id: str
    status: str = "queued"
    submitted_at: datetime = Field(default_factory=utcnow)
    raw_response: Dict[str, Any] = Field(default_factory=dict)


class TaskFailure(BaseModel):
    """A task that could not be brought to the approval pause point."""
    task_id: str
    error_code: str
    message: str


class TriggerResult(BaseModel):
    """Outcome of one intake cycle."""
    selected_task_ids: List[str] = Field(default_factory=list)
    started_approval_ids: List[str] = Field(default_factory=list)
    skipped_task_ids: List[str] = Field(default_factory=list)
    failed: List[TaskFailure] = Field(default_factory=list)
    dry_run: bool = False
    degraded: bool = False


class WorkflowTrigger(BaseModel):
    """Caller request to run an intake cycle, keyed for idempotent retry."""
    trigger_id: str
    requested_by: str = "api"
    requested_at: datetime = Field(default_factory=utcnow)
    max_tasks: Optional[int] = None
    dry_run: bool = False
    processed: bool = False
    processed_at: Optional[datetime] = None
    result: Optional[TriggerResult] = None
