"""
Letter drafting service client.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from app.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from app.core.config import Settings, get_settings
from app.core.exceptions import AdapterRequestError
from app.core.retry import create_async_retry_decorator, get_slow_service_retry_config
from app.models.approval import ApprovalRecord
from app.models.workflow import (
    ContactRecord,
    DossierBundle,
    LetterContent,
    PostalAddress,
    ProfileRecord,
    TaskReference,
)

logger = structlog.get_logger(__name__)


def _address_payload(address: Optional[PostalAddress]) -> Dict[str, Any]:
    if address is None:
        return {}
    return address.model_dump(exclude_none=True)


class LetterServiceClient:
    """Client for the AI letter drafting service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        self.service_name = "Letter Service"
        self.language = settings.letter_language
        self.sender_company_info = settings.sender_company_info

        self.service_client = ServiceClient(
            service_name=self.service_name,
            base_url=settings.letter_service_url,
            timeout_seconds=settings.letter_timeout,
            circuit_breaker_config=CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                timeout=settings.circuit_breaker_timeout_seconds,
            ),
            transport=transport,
        )

        self.retry_decorator = create_async_retry_decorator(
            config=get_slow_service_retry_config(),
            service_name=self.service_name,
        )

    def _parse_letter(
        self, data: Dict[str, Any], recipient_name: str, company_name: str
    ) -> LetterContent:
        letter = data.get("letter") or data
        missing = [key for key in ("subject", "greeting", "body") if not letter.get(key)]
        if missing:
            raise AdapterRequestError(
                self.service_name,
                f"Letter response is missing fields: {', '.join(missing)}",
            )
        return LetterContent(
            subject=letter["subject"],
            greeting=letter["greeting"],
            body=letter["body"],
            sender_name=letter.get("sender_name") or "",
            recipient_name=recipient_name,
            company_name=company_name,
        )

    async def generate_letter(
        self,
        contact: ContactRecord,
        dossier: DossierBundle,
        address: Optional[PostalAddress],
        task: TaskReference,
        profile: Optional[ProfileRecord] = None,
    ) -> LetterContent:
        """
        Draft the first letter for a contact.

        Args:
            contact: Recipient
            dossier: Person and company dossiers
            address: Resolved postal address, if any
            task: CRM task the letter belongs to
            profile: Profile store row, if found

        Returns:
            Structured letter content
        """
        company_name = dossier.company_name or contact.company_name or ""
        payload = {
            "recipient": {
                "first_name": contact.first_name,
                "last_name": contact.last_name,
                "full_name": contact.full_name,
                "email": contact.email,
                "title": profile.headline if profile else None,
                "company_name": company_name,
                "address": _address_payload(address),
            },
            "sender_company_info": self.sender_company_info,
            "dossiers": {
                "person": dossier.person_dossier,
                "company": dossier.company_dossier,
            },
            "task": {"task_id": task.task_id, "subject": task.subject},
            "language": self.language,
        }

        @self.retry_decorator
        async def _generate():
            return await self.service_client.post("/letters/generate", json=payload)

        data = await _generate()
        letter = self._parse_letter(data, contact.full_name, company_name)

        logger.info(
            "Letter generated",
            task_id=task.task_id,
            recipient=contact.full_name,
            company_name=company_name,
            body_chars=len(letter.body),
        )
        return letter

    async def revise_letter(self, record: ApprovalRecord, feedback: str) -> LetterContent:
        """Draft an improved letter from the previous one and reviewer feedback."""
        payload = {
            "previous_letter": record.current_letter.model_dump(),
            "feedback": feedback,
            "history": [
                {
                    "iteration": entry.iteration,
                    "letter": entry.content.model_dump(),
                    "feedback": entry.feedback,
                }
                for entry in record.letter_history
            ],
            "recipient": {
                "full_name": record.contact.full_name,
                "company_name": record.current_letter.company_name,
                "address": _address_payload(record.mailing_address),
            },
            "dossiers": {
                "person": record.dossier.person_dossier if record.dossier else "",
                "company": record.dossier.company_dossier if record.dossier else "",
            },
            "language": self.language,
        }

        @self.retry_decorator
        async def _revise():
            return await self.service_client.post("/letters/revise", json=payload)

        data = await _revise()
        letter = self._parse_letter(
            data, record.current_letter.recipient_name, record.current_letter.company_name
        )

        logger.info(
            "Letter revised",
            approval_id=record.approval_id,
            iteration=record.iteration + 1,
            feedback_chars=len(feedback),
        )
        return letter

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.service_client.get_circuit_status()

    async def close(self) -> None:
        await self.service_client.close()
