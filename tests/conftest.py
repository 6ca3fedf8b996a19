"""
Pytest configuration and fixtures for the letter workflow orchestrator.
"""
import os
import tempfile

# Fast retries and a throwaway store before the settings module is imported
os.environ.setdefault("RETRY_BASE_DELAY_SECONDS", "0.01")
os.environ.setdefault("RETRY_MAX_DELAY_SECONDS", "0.02")
os.environ.setdefault("APPROVAL_STORE_PATH", tempfile.mkdtemp(prefix="approvals-"))
os.environ.setdefault("INTAKE_POLL_INTERVAL_SECONDS", "0")

from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.core.exceptions import ValidationError
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
from app.services.approval_store import ApprovalStore
from app.services.intake import TaskIntake
from app.services.notification_service import NotificationService
from app.services.orchestrator import WorkflowOrchestrator
from app.services.progress import ProgressPublisher
from app.services.trigger_service import TriggerRegistry

PDF_BYTES = b"%PDF-1.4 test letter"
BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
REVIEW_CHAT_ID = "-100200"
WEBHOOK_SECRET = "hook-secret"


def make_address(**overrides) -> PostalAddress:
    data = {
        "street": "Hauptstraße 1",
        "city": "Berlin",
        "postal_code": "10115",
        "country": "Germany",
    }
    data.update(overrides)
    return PostalAddress(**data)


def make_task(task_id: str = "task-1", minutes: int = 0, **overrides) -> TaskReference:
    data = {
        "task_id": task_id,
        "contact_id": f"contact-{task_id}",
        "company_id": "company-1",
        "subject": "Connect on LinkedIn",
        "status": "Nicht gestartet",
        "owner_id": None,
        "created_at": BASE_TIME + timedelta(minutes=minutes),
    }
    data.update(overrides)
    return TaskReference(**data)


def make_contact(contact_id: str = "contact-task-1", **overrides) -> ContactRecord:
    data = {
        "contact_id": contact_id,
        "full_name": "Erika Mustermann",
        "email": "erika@example.com",
        "company_name": "Muster GmbH",
        "profile_id": "erika-mustermann",
        "mailing_address": make_address(),
    }
    data.update(overrides)
    return ContactRecord(**data)


def make_letter(iteration: int = 1, body: Optional[str] = None) -> LetterContent:
    return LetterContent(
        subject=f"Ihre Immobilien (v{iteration})",
        greeting="Sehr geehrte Frau Mustermann,",
        body=body or f"Brieftext Version {iteration}",
        sender_name="Max Sender",
        recipient_name="Erika Mustermann",
        company_name="Muster GmbH",
    )


def make_record(task: Optional[TaskReference] = None, **overrides) -> ApprovalRecord:
    task = task or make_task()
    record = ApprovalRecord.create(
        task=task,
        contact=make_contact(task.contact_id),
        letter=make_letter(),
        mailing_address=make_address(),
    )
    if overrides:
        record = record.model_copy(update=overrides)
    return record


class FakeCRM:
    """In-memory task source."""

    def __init__(self):
        self.tasks: List[TaskReference] = []
        self.contacts: Dict[str, ContactRecord] = {}
        self.search_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.completion_error: Optional[Exception] = None
        self.status_updates: List[tuple] = []
        self.address_updates: List[tuple] = []
        self.attachments: List[tuple] = []
        self.follow_ups: List[tuple] = []

    def add_task(self, task: TaskReference, contact: Optional[ContactRecord] = None) -> None:
        self.tasks.append(task)
        if task.contact_id:
            self.contacts[task.contact_id] = contact or make_contact(task.contact_id)

    async def search_tasks(self, status, subject, owner_id):
        if self.search_error:
            raise self.search_error
        return list(self.tasks)

    async def get_contact(self, contact_id):
        if contact_id not in self.contacts:
            raise ValidationError("Contact not found in CRM", field="contact_id")
        return self.contacts[contact_id]

    async def update_contact_address(self, contact_id, address):
        self.address_updates.append((contact_id, address))

    async def update_task_status(self, task_id, status, description):
        if self.completion_error and status == "Abgeschlossen":
            raise self.completion_error
        if self.status_error:
            raise self.status_error
        self.status_updates.append((task_id, status, description))

    async def attach_document(self, task_id, filename, content):
        self.attachments.append((task_id, filename, content))

    async def create_follow_up_task(self, task, subject, due_in_days):
        self.follow_ups.append((task.task_id, subject, due_in_days))
        return f"follow-{task.task_id}"

    def statuses_for(self, task_id: str) -> List[str]:
        return [status for tid, status, _ in self.status_updates if tid == task_id]


class FakeProfiles:
    def __init__(self):
        self.calls: List[str] = []
        self.missing = False

    async def get_profile(self, profile_id):
        self.calls.append(profile_id)
        if self.missing:
            return None
        return ProfileRecord(
            profile_id=profile_id,
            profile_url=f"https://www.linkedin.com/in/{profile_id}",
            headline="Geschäftsführerin",
            company_name="Muster GmbH",
        )


class FakeDossiers:
    def __init__(self):
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None
        self.mailing_address: Optional[PostalAddress] = None

    async def generate_dossiers(self, profile_id, company_name, profile_url):
        self.calls.append((profile_id, company_name, profile_url))
        if self.error:
            raise self.error
        return DossierBundle(
            person_dossier="Person narrative",
            company_dossier="Company narrative",
            company_name=company_name or "Muster GmbH",
            mailing_address=self.mailing_address,
        )


class FakeLetters:
    def __init__(self):
        self.generate_calls: List[str] = []
        self.revise_calls: List[tuple] = []
        self.error: Optional[Exception] = None
        self.revise_error: Optional[Exception] = None

    async def generate_letter(self, contact, dossier, address, task, profile=None):
        self.generate_calls.append(task.task_id)
        if self.error:
            raise self.error
        return make_letter(1)

    async def revise_letter(self, record, feedback):
        self.revise_calls.append((record.approval_id, feedback))
        if self.revise_error:
            raise self.revise_error
        return make_letter(record.iteration + 1, body=f"Überarbeitet: {feedback}")


class FakeRenderer:
    def __init__(self):
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    async def render(self, letter, address):
        self.calls.append((letter, address))
        if self.error:
            raise self.error
        return PDF_BYTES


class FakeCarrier:
    def __init__(self):
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    async def submit_letter(self, pdf, address):
        self.calls.append((pdf, address))
        if self.error:
            raise self.error
        return DeliveryReceipt(tracking_id=f"JOB-{len(self.calls)}")


class FakeChannel:
    def __init__(self):
        self.approval_requests: List[tuple] = []
        self.messages: List[str] = []
        self.callback_answers: List[tuple] = []
        self.error: Optional[Exception] = None

    async def send_approval_request(self, record, pdf):
        if self.error:
            raise self.error
        self.approval_requests.append((record.approval_id, record.iteration, pdf))
        return str(len(self.approval_requests))

    async def send_message(self, text):
        self.messages.append(text)

    async def answer_callback(self, callback_query_id, text):
        self.callback_answers.append((callback_query_id, text))

    def get_circuit_status(self):
        return {"service": "Telegram", "state": "closed", "is_available": True}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        approval_store_path=str(tmp_path / "approvals"),
        max_revision_iterations=5,
        max_concurrent_workflows=2,
        max_tasks_per_cycle=10,
        follow_up_task_enabled=True,
        follow_up_days=14,
        telegram_chat_id=REVIEW_CHAT_ID,
        telegram_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def store(settings) -> ApprovalStore:
    return ApprovalStore(settings.approval_store_path, max_revision_iterations=settings.max_revision_iterations)


@pytest.fixture
def crm() -> FakeCRM:
    fake = FakeCRM()
    fake.add_task(make_task("task-1"))
    return fake


@pytest.fixture
def profiles() -> FakeProfiles:
    return FakeProfiles()


@pytest.fixture
def dossiers() -> FakeDossiers:
    return FakeDossiers()


@pytest.fixture
def letters() -> FakeLetters:
    return FakeLetters()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def carrier() -> FakeCarrier:
    return FakeCarrier()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def publisher() -> ProgressPublisher:
    return ProgressPublisher()


@pytest.fixture
def notifier(channel, publisher) -> NotificationService:
    return NotificationService(channel=channel, publisher=publisher)


@pytest.fixture
def orchestrator(store, crm, profiles, dossiers, letters, renderer, carrier, channel, notifier, settings):
    return WorkflowOrchestrator(
        store=store,
        crm=crm,
        profiles=profiles,
        dossiers=dossiers,
        letters=letters,
        renderer=renderer,
        carrier=carrier,
        channel=channel,
        notifier=notifier,
        settings=settings,
    )


@pytest.fixture
def intake(crm, orchestrator, store, settings) -> TaskIntake:
    return TaskIntake(crm=crm, orchestrator=orchestrator, store=store, settings=settings)


@pytest.fixture
def trigger_registry(settings, intake) -> TriggerRegistry:
    return TriggerRegistry(settings.approval_store_path, intake)


@pytest.fixture
def client(settings, store, orchestrator, intake, trigger_registry, publisher, notifier, channel) -> Generator[TestClient, None, None]:
    """
    Test client with every service dependency replaced by the in-memory fixtures.
    """
    from app.core import dependencies
    from app.core.config import get_settings
    from app.main import app

    overrides = {
        get_settings: lambda: settings,
        dependencies.get_approval_store: lambda: store,
        dependencies.get_orchestrator: lambda: orchestrator,
        dependencies.get_intake: lambda: intake,
        dependencies.get_trigger_registry: lambda: trigger_registry,
        dependencies.get_progress_publisher: lambda: publisher,
        dependencies.get_notification_service: lambda: notifier,
        dependencies.get_approval_channel: lambda: channel,
        dependencies.get_adapters: lambda: {"approval_channel": channel},
    }
    app.dependency_overrides.update(overrides)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def api_prefix() -> str:
    return "/api/v1"


@pytest.fixture
def sample_headers() -> Dict[str, str]:
    """Sample headers for API requests."""
    return {"X-Correlation-ID": "test-correlation-123"}


@pytest.fixture
def pending_approval_id(client: TestClient, api_prefix: str) -> str:
    """Run one intake cycle through the API and return the approval it started."""
    response = client.post(f"{api_prefix}/workflows/trigger", json={"trigger_id": "fixture-run"})
    assert response.status_code == 200
    return response.json()["result"]["started_approval_ids"][0]
