"""
Baserow profile store client.
"""
import json
from typing import Any, Dict, Optional

import httpx
import structlog

from app.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from app.core.config import Settings, get_settings
from app.core.exceptions import AdapterRequestError
from app.core.retry import create_async_retry_decorator, get_default_retry_config
from app.models.workflow import ProfileRecord

logger = structlog.get_logger(__name__)


def parse_profile_row(row: Dict[str, Any], json_field: str) -> ProfileRecord:
    """
    Build a ProfileRecord from a Baserow row.

    The scraped profile is stored as a JSON export in ``json_field``; rows
    without it fall back to their plain columns.
    """
    raw = row.get(json_field)
    if isinstance(raw, str) and raw.strip():
        data = json.loads(raw)
    elif isinstance(raw, dict):
        data = raw
    else:
        data = row

    return ProfileRecord(
        profile_id=str(data.get("id") or data.get("profile_id") or ""),
        profile_url=data.get("profile_url"),
        full_name=data.get("full_name"),
        headline=data.get("headline"),
        company_name=data.get("current_company") or data.get("company_name"),
        metadata={
            key: data[key]
            for key in ("location_name", "summary", "industry")
            if data.get(key)
        },
    )


class BaserowProfileStore:
    """Client for profile lookups in a Baserow table."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        json_field: str = "profile_json",
    ):
        settings = settings or get_settings()
        self.service_name = "Baserow"
        self.table_id = settings.baserow_table_id
        self.profile_field = settings.baserow_profile_field
        self.json_field = json_field

        self.service_client = ServiceClient(
            service_name=self.service_name,
            base_url=settings.baserow_base_url,
            timeout_seconds=settings.baserow_timeout,
            circuit_breaker_config=CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                timeout=settings.circuit_breaker_timeout_seconds,
            ),
            headers={"Authorization": f"Token {settings.baserow_token}"},
            transport=transport,
        )

        self.retry_decorator = create_async_retry_decorator(
            config=get_default_retry_config(),
            service_name=self.service_name,
        )

    async def get_profile(self, profile_id: str) -> Optional[ProfileRecord]:
        """
        Look up a profile by its external identifier.

        Returns:
            The profile, or None when the table has no matching row
        """
        params = {
            "user_field_names": "true",
            f"filter__{self.profile_field}__equal": profile_id,
            "size": 1,
        }

        @self.retry_decorator
        async def _get():
            return await self.service_client.get(
                f"/api/database/rows/table/{self.table_id}/", params=params
            )

        data = await _get()
        results = data.get("results") or []
        if not results:
            logger.info("No profile found", profile_id=profile_id)
            return None

        try:
            profile = parse_profile_row(results[0], self.json_field)
        except ValueError as e:
            raise AdapterRequestError(self.service_name, f"Malformed profile row: {e}")
        if not profile.profile_id:
            profile = profile.model_copy(update={"profile_id": profile_id})

        logger.info("Profile loaded", profile_id=profile_id, has_headline=bool(profile.headline))
        return profile

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.service_client.get_circuit_status()

    async def close(self) -> None:
        await self.service_client.close()
