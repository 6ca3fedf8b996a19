"""
PDF rendering service client.

The renderer fills an ODT letter template with JSON data and returns a PDF.
Letters are limited to one page; the service rejects longer ones with a 400.
"""
import json
import re
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import structlog

from app.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from app.core.config import Settings, get_settings
from app.core.exceptions import AdapterRequestError, ValidationError
from app.core.retry import create_async_retry_decorator, get_default_retry_config
from app.models.workflow import LetterContent, PostalAddress

logger = structlog.get_logger(__name__)

ODT_MIME_TYPE = "application/vnd.oasis.opendocument.text"
PAGE_COUNT_PATTERN = re.compile(r"generated (\d+) pages")


def build_template_data(letter: LetterContent, address: Optional[PostalAddress]) -> Dict[str, str]:
    """Field names expected by the letter template."""
    address = address or PostalAddress()
    return {
        "Betreff": letter.subject,
        "Anrede": letter.greeting,
        "Brieftext": letter.body,
        "Sender-Name": letter.sender_name,
        "Company": letter.company_name,
        "Recipient": letter.recipient_name,
        "Street 1": address.street,
        "Street-2": address.street2 or "",
        "City": address.city,
        "ZipCode": address.postal_code,
        "Country": address.country,
    }


def is_pdf(data: bytes) -> bool:
    return len(data) >= 4 and data[:4] == b"%PDF"


class PDFRendererClient:
    """Client for the PDF rendering service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        template_bytes: Optional[bytes] = None,
    ):
        settings = settings or get_settings()
        self.service_name = "PDF Service"
        self.template_path = Path(settings.pdf_template_path)
        self._template_bytes = template_bytes

        self.service_client = ServiceClient(
            service_name=self.service_name,
            base_url=settings.pdf_service_url,
            timeout_seconds=settings.pdf_timeout,
            circuit_breaker_config=CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                timeout=settings.circuit_breaker_timeout_seconds,
            ),
            transport=transport,
        )

        self.retry_decorator = create_async_retry_decorator(
            config=get_default_retry_config(),
            service_name=self.service_name,
        )

    def _load_template(self) -> bytes:
        if self._template_bytes is None:
            try:
                self._template_bytes = self.template_path.read_bytes()
            except OSError as e:
                raise ValidationError(
                    f"Letter template not readable: {e}",
                    field="pdf_template_path",
                    path=str(self.template_path),
                )
        return self._template_bytes

    @staticmethod
    def _page_limit_error(error: AdapterRequestError) -> Optional[ValidationError]:
        """Translate the renderer's one-page-limit rejection, if that is what this is."""
        if error.status_code != 400:
            return None
        message = str(error)
        if "exceeds one page limit" not in message and not ("exceeds" in message and "page" in message):
            return None
        match = PAGE_COUNT_PATTERN.search(message)
        pages = int(match.group(1)) if match else 2
        return ValidationError(
            f"Letter exceeds one page limit ({pages} pages)",
            field="body",
            pages=pages,
            limit=1,
        )

    async def render(self, letter: LetterContent, address: Optional[PostalAddress]) -> bytes:
        """
        Render a letter to PDF.

        Args:
            letter: Letter content
            address: Recipient address printed in the address window

        Returns:
            PDF bytes

        Raises:
            ValidationError: Letter longer than one page, or template missing
            TransientAdapterError: Renderer unavailable after retries
            AdapterRequestError: Renderer rejected the request or returned a non-PDF body
        """
        template = self._load_template()
        data: Dict[str, Any] = build_template_data(letter, address)
        files = {
            "odt_file": (self.template_path.name, template, ODT_MIME_TYPE),
            "json_data": ("data.json", json.dumps(data, ensure_ascii=False), "application/json"),
        }

        @self.retry_decorator
        async def _render():
            return await self.service_client.post_for_bytes("/generate-pdf", files=files)

        try:
            pdf = await _render()
        except AdapterRequestError as e:
            page_error = self._page_limit_error(e)
            if page_error is not None:
                logger.warning("Letter exceeds page limit", pages=page_error.context.get("pages"))
                raise page_error
            raise

        if not is_pdf(pdf):
            raise AdapterRequestError(self.service_name, "Renderer returned a non-PDF body")

        logger.info("PDF rendered", size_bytes=len(pdf), recipient=letter.recipient_name)
        return pdf

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.service_client.get_circuit_status()

    async def close(self) -> None:
        await self.service_client.close()
