"""
LetterExpress mail carrier client.

Every successful ``setJob`` call prints and posts a real letter. The client
therefore never retries: a timeout after the request left this process may
mean the letter was accepted, and only an operator can tell.
"""
import base64
from typing import Any, Dict, Optional

import httpx
import structlog

from app.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    AdapterRequestError,
    IrrecoverableDeliveryError,
    TransientAdapterError,
)
from app.models.workflow import DeliveryReceipt, PostalAddress

logger = structlog.get_logger(__name__)


def extract_tracking_id(data: Dict[str, Any]) -> Optional[str]:
    """The carrier reports the job id under one of several keys, sometimes nested in ``data``."""
    for source in (data.get("data") if isinstance(data.get("data"), dict) else None, data):
        if not source:
            continue
        for key in ("job_id", "id", "jid"):
            value = source.get(key)
            if value not in (None, ""):
                return str(value)
    return None


class LetterExpressClient:
    """Client for LetterExpress print-and-mail submissions."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        self.service_name = "LetterExpress"
        self.username = settings.letterexpress_username
        self.api_key = settings.letterexpress_api_key
        self.mode = settings.letterexpress_mode
        self.color = settings.letterexpress_color
        self.print_mode = settings.letterexpress_print_mode
        self.ship = settings.letterexpress_ship

        self.service_client = ServiceClient(
            service_name=self.service_name,
            base_url=settings.letterexpress_base_url,
            timeout_seconds=settings.letterexpress_timeout,
            circuit_breaker_config=CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                timeout=settings.circuit_breaker_timeout_seconds,
            ),
            transport=transport,
        )

    def _build_job(self, pdf: bytes, address: PostalAddress) -> Dict[str, Any]:
        ship = self.ship
        if ship == "national" and address.is_international():
            ship = "international"
        return {
            "auth": {
                "username": self.username,
                "apikey": self.api_key,
                "mode": self.mode,
            },
            "letter": {
                "base64_file": base64.b64encode(pdf).decode("ascii"),
                "specification": {
                    "color": 1 if self.color else 0,
                    "mode": self.print_mode,
                    "ship": ship,
                },
            },
        }

    async def submit_letter(self, pdf: bytes, address: PostalAddress) -> DeliveryReceipt:
        """
        Submit a rendered letter for printing and postage.

        Args:
            pdf: Rendered letter
            address: Recipient address; must be complete

        Returns:
            Delivery receipt with the carrier tracking id

        Raises:
            IrrecoverableDeliveryError: Any failure, including an incomplete
                address, a rejection, a timeout, or a response without a job id
        """
        if not address.is_complete():
            raise IrrecoverableDeliveryError(
                "Recipient address is incomplete",
                step="delivery",
                address=address.model_dump_json(),
            )

        job = self._build_job(pdf, address)

        try:
            data = await self.service_client.post("/setJob", json=job)
        except (TransientAdapterError, AdapterRequestError) as e:
            logger.error(
                "Mail carrier submission failed",
                service=self.service_name,
                error=str(e),
                status_code=e.status_code,
            )
            raise IrrecoverableDeliveryError(
                f"Mail carrier submission failed: {e}",
                step="delivery",
                status_code=e.status_code,
            )

        tracking_id = extract_tracking_id(data)
        if not tracking_id:
            raise IrrecoverableDeliveryError(
                "Mail carrier response has no job id",
                step="delivery",
                response=str(data)[:500],
            )

        receipt = DeliveryReceipt(
            tracking_id=tracking_id,
            status=str(data.get("message") or data.get("status") or "queued"),
            raw_response=data,
        )
        logger.info(
            "Letter submitted to mail carrier",
            tracking_id=tracking_id,
            mode=self.mode,
            ship=job["letter"]["specification"]["ship"],
        )
        return receipt

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.service_client.get_circuit_status()

    async def close(self) -> None:
        await self.service_client.close()
