"""
Dossier service client.

Dossier generation scrapes and summarizes public sources; a cache hit
returns immediately, a cache miss can take several tens of seconds, so the
client timeout defaults to five minutes.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from app.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from app.core.config import Settings, get_settings
from app.core.exceptions import AdapterRequestError
from app.core.logging import performance_timing
from app.core.retry import create_async_retry_decorator, get_slow_service_retry_config
from app.models.workflow import DossierBundle, PostalAddress

logger = structlog.get_logger(__name__)


def parse_address(data: Optional[Dict[str, Any]]) -> Optional[PostalAddress]:
    if not data:
        return None
    address = PostalAddress(
        street=data.get("street") or "",
        street2=data.get("street2"),
        city=data.get("city") or "",
        state=data.get("state"),
        postal_code=data.get("postal_code") or "",
        country=data.get("country") or "",
    )
    return address if address.is_complete() else None


class DossierServiceClient:
    """Client for the dossier generation service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        self.service_name = "Dossier Service"

        self.service_client = ServiceClient(
            service_name=self.service_name,
            base_url=settings.dossier_service_url,
            timeout_seconds=settings.dossier_timeout,
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

    async def generate_dossiers(
        self, profile_id: str, company_name: Optional[str], profile_url: Optional[str]
    ) -> DossierBundle:
        """
        Generate person and company dossiers.

        Args:
            profile_id: External profile identifier of the person
            company_name: Company name known from the CRM, if any
            profile_url: Public profile URL, if known

        Returns:
            Dossier bundle including any postal address the service extracted

        Raises:
            TransientAdapterError: Service unavailable after retries
            AdapterRequestError: Service rejected the request or returned no dossier
        """
        payload = {
            "person_id": profile_id,
            "company_name": company_name,
            "profile_url": profile_url,
            "extract_address": True,
        }

        @self.retry_decorator
        async def _generate():
            return await self.service_client.post("/dossiers", json=payload)

        with performance_timing("dossier_generation", profile_id=profile_id):
            data = await _generate()

        person = data.get("person_dossier") or ""
        company = data.get("company_dossier") or ""
        if not person and not company:
            raise AdapterRequestError(self.service_name, "Service returned no dossier content")

        bundle = DossierBundle(
            person_dossier=person,
            company_dossier=company,
            company_name=data.get("company_name") or company_name or "",
            mailing_address=parse_address(data.get("mailing_address")),
            metadata=data.get("metadata") or {},
        )

        logger.info(
            "Dossiers generated",
            profile_id=profile_id,
            company_name=bundle.company_name,
            person_chars=len(bundle.person_dossier),
            company_chars=len(bundle.company_dossier),
            address_extracted=bundle.mailing_address is not None,
            cache_hit=bundle.metadata.get("cache_hit"),
        )
        return bundle

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.service_client.get_circuit_status()

    async def close(self) -> None:
        await self.service_client.close()
