"""
Dependency injection for FastAPI application.

Provides factory functions building the adapters and services once per
process. Route handlers receive them through ``Depends``; tests replace them
with ``app.dependency_overrides``.
"""

from functools import lru_cache

import structlog

from app.core.config import get_settings
from app.services.approval_channel import TelegramApprovalChannel
from app.services.approval_store import ApprovalStore
from app.services.crm_client import ZohoCRMClient
from app.services.dossier_client import DossierServiceClient
from app.services.intake import TaskIntake
from app.services.letter_client import LetterServiceClient
from app.services.mail_carrier import LetterExpressClient
from app.services.notification_service import NotificationService
from app.services.orchestrator import WorkflowOrchestrator
from app.services.pdf_renderer import PDFRendererClient
from app.services.profile_store import BaserowProfileStore
from app.services.progress import ProgressPublisher
from app.services.trigger_service import TriggerRegistry

logger = structlog.get_logger(__name__)


@lru_cache()
def get_approval_store() -> ApprovalStore:
    """Get the approval store rooted at the configured path."""
    settings = get_settings()
    return ApprovalStore(
        base_path=settings.approval_store_path,
        max_revision_iterations=settings.max_revision_iterations,
    )


@lru_cache()
def get_crm_client() -> ZohoCRMClient:
    return ZohoCRMClient(get_settings())


@lru_cache()
def get_profile_store() -> BaserowProfileStore:
    return BaserowProfileStore(get_settings())


@lru_cache()
def get_dossier_client() -> DossierServiceClient:
    return DossierServiceClient(get_settings())


@lru_cache()
def get_letter_client() -> LetterServiceClient:
    return LetterServiceClient(get_settings())


@lru_cache()
def get_pdf_renderer() -> PDFRendererClient:
    return PDFRendererClient(get_settings())


@lru_cache()
def get_mail_carrier() -> LetterExpressClient:
    return LetterExpressClient(get_settings())


@lru_cache()
def get_approval_channel() -> TelegramApprovalChannel:
    return TelegramApprovalChannel(get_settings())


@lru_cache()
def get_progress_publisher() -> ProgressPublisher:
    return ProgressPublisher()


@lru_cache()
def get_notification_service() -> NotificationService:
    """Get notification service writing to the approval chat and the progress stream."""
    return NotificationService(
        channel=get_approval_channel(),
        publisher=get_progress_publisher(),
        enabled=get_settings().notifications_enabled,
    )


@lru_cache()
def get_orchestrator() -> WorkflowOrchestrator:
    """
    Get the workflow orchestrator with all adapters injected.

    Returns:
        Configured WorkflowOrchestrator instance
    """
    return WorkflowOrchestrator(
        store=get_approval_store(),
        crm=get_crm_client(),
        profiles=get_profile_store(),
        dossiers=get_dossier_client(),
        letters=get_letter_client(),
        renderer=get_pdf_renderer(),
        carrier=get_mail_carrier(),
        channel=get_approval_channel(),
        notifier=get_notification_service(),
        settings=get_settings(),
    )


@lru_cache()
def get_intake() -> TaskIntake:
    return TaskIntake(
        crm=get_crm_client(),
        orchestrator=get_orchestrator(),
        store=get_approval_store(),
        settings=get_settings(),
    )


@lru_cache()
def get_trigger_registry() -> TriggerRegistry:
    return TriggerRegistry(get_settings().approval_store_path, get_intake())


def get_adapters() -> dict:
    """Adapters exposing circuit breaker status, keyed by service name."""
    return {
        "crm": get_crm_client(),
        "profile_store": get_profile_store(),
        "dossier": get_dossier_client(),
        "letter": get_letter_client(),
        "pdf_renderer": get_pdf_renderer(),
        "mail_carrier": get_mail_carrier(),
        "approval_channel": get_approval_channel(),
    }


async def close_adapters() -> None:
    """Close the HTTP clients of every adapter built so far."""
    factories = (
        get_crm_client,
        get_profile_store,
        get_dossier_client,
        get_letter_client,
        get_pdf_renderer,
        get_mail_carrier,
        get_approval_channel,
    )
    for factory in factories:
        if factory.cache_info().currsize == 0:
            continue
        adapter = factory()
        try:
            await adapter.close()
        except Exception as e:
            logger.warning("Adapter close failed", adapter=type(adapter).__name__, error=str(e))
