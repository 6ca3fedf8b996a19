"""
Zoho CRM client: task search, contact lookup and status write-back.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog

from app.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from app.core.config import Settings, get_settings
from app.core.exceptions import AdapterRequestError, ValidationError
from app.core.retry import create_async_retry_decorator, get_default_retry_config
from app.models.workflow import ContactRecord, PostalAddress, TaskReference

logger = structlog.get_logger(__name__)

API_PATH = "/crm/v2"


def _lookup_id(value: Any) -> Optional[str]:
    """Zoho lookup fields arrive either as ``{"id": ..., "name": ...}`` or a bare id."""
    if isinstance(value, dict):
        return value.get("id")
    if isinstance(value, str) and value:
        return value
    return None


def _parse_created_time(value: Optional[str]) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_task(data: Dict[str, Any]) -> TaskReference:
    """Build a TaskReference from a Zoho Tasks record."""
    return TaskReference(
        task_id=str(data["id"]),
        contact_id=_lookup_id(data.get("Who_Id")),
        company_id=_lookup_id(data.get("What_Id")),
        subject=data.get("Subject"),
        status=data.get("Status"),
        owner_id=_lookup_id(data.get("Owner")),
        created_at=_parse_created_time(data.get("Created_Time")),
    )


def parse_mailing_address(data: Dict[str, Any]) -> Optional[PostalAddress]:
    """Mailing_* fields of a contact; None unless street, city, code and country are set."""
    street = data.get("Mailing_Street")
    city = data.get("Mailing_City")
    postal_code = data.get("Mailing_Code")
    country = data.get("Mailing_Country")
    if not (street and city and postal_code and country):
        return None
    return PostalAddress(
        street=street,
        city=city,
        state=data.get("Mailing_State"),
        postal_code=postal_code,
        country=country,
    )


def parse_contact(data: Dict[str, Any]) -> ContactRecord:
    """Build a ContactRecord from a Zoho Contacts record."""
    account = data.get("Account_Name")
    company_name = account.get("name") if isinstance(account, dict) else account
    return ContactRecord(
        contact_id=str(data["id"]),
        full_name=data.get("Full_Name") or "",
        email=data.get("Email"),
        phone=data.get("Phone"),
        company_name=company_name,
        profile_id=data.get("LinkedIn_ID") or None,
        mailing_address=parse_mailing_address(data),
    )


def build_search_criteria(
    status: Optional[str], subject: Optional[str], owner_id: Optional[str]
) -> str:
    """Search API criteria string, e.g. ``((Status:equals:X)and(Owner.id:equals:Y))``."""
    parts = []
    if subject:
        parts.append(f"(Subject:equals:{subject})")
    if status:
        parts.append(f"(Status:equals:{status})")
    if owner_id:
        parts.append(f"(Owner.id:equals:{owner_id})")
    if len(parts) > 1:
        return f"({'and'.join(parts)})"
    return "".join(parts)


class ZohoCRMClient:
    """Client for Zoho CRM REST API integration."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        self.service_name = "Zoho CRM"

        self.service_client = ServiceClient(
            service_name=self.service_name,
            base_url=f"{settings.zoho_base_url.rstrip('/')}{API_PATH}",
            timeout_seconds=settings.zoho_timeout,
            circuit_breaker_config=CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                timeout=settings.circuit_breaker_timeout_seconds,
            ),
            headers={"Authorization": f"Zoho-oauthtoken {settings.zoho_access_token}"},
            transport=transport,
        )

        self.retry_decorator = create_async_retry_decorator(
            config=get_default_retry_config(),
            service_name=self.service_name,
        )

    async def search_tasks(
        self, status: str, subject: Optional[str], owner_id: Optional[str]
    ) -> List[TaskReference]:
        """
        Search tasks matching the intake filters.

        Args:
            status: Task status value to match
            subject: Task subject to match, if set
            owner_id: Task owner id to match, if set

        Returns:
            Matching tasks in CRM order (callers sort)
        """
        criteria = build_search_criteria(status, subject, owner_id)

        @self.retry_decorator
        async def _search():
            return await self.service_client.get("/Tasks/search", params={"criteria": criteria})

        data = await _search()
        tasks = []
        for item in data.get("data", []):
            try:
                tasks.append(parse_task(item))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping unparseable task", task=item.get("id"), error=str(e))

        logger.info("Zoho task search completed", criteria=criteria, task_count=len(tasks))
        return tasks

    async def get_task(self, task_id: str) -> TaskReference:
        @self.retry_decorator
        async def _get():
            return await self.service_client.get(f"/Tasks/{task_id}")

        data = await _get()
        records = data.get("data") or []
        if not records:
            raise ValidationError("Task not found in CRM", field="task_id", task_id=task_id)
        return parse_task(records[0])

    async def get_contact(self, contact_id: str) -> ContactRecord:
        """
        Fetch a contact by id.

        Raises:
            ValidationError: The CRM has no such contact
        """
        @self.retry_decorator
        async def _get():
            return await self.service_client.get(f"/Contacts/{contact_id}")

        try:
            data = await _get()
        except AdapterRequestError as e:
            if e.status_code == 404:
                raise ValidationError("Contact not found in CRM", field="contact_id", contact_id=contact_id)
            raise

        records = data.get("data") or []
        if not records:
            raise ValidationError("Contact not found in CRM", field="contact_id", contact_id=contact_id)
        return parse_contact(records[0])

    async def update_contact_address(self, contact_id: str, address: PostalAddress) -> None:
        payload = {
            "data": [
                {
                    "Mailing_Street": address.street,
                    "Mailing_City": address.city,
                    "Mailing_State": address.state or "",
                    "Mailing_Code": address.postal_code,
                    "Mailing_Country": address.country,
                }
            ]
        }

        @self.retry_decorator
        async def _put():
            return await self.service_client.put(f"/Contacts/{contact_id}", json=payload)

        await _put()
        logger.info("Updated contact mailing address", contact_id=contact_id)

    async def update_task_status(self, task_id: str, status: str, description: str) -> None:
        payload = {"data": [{"Status": status, "Description": description}]}

        @self.retry_decorator
        async def _put():
            return await self.service_client.put(f"/Tasks/{task_id}", json=payload)

        await _put()
        logger.info("Updated task status", task_id=task_id, status=status)

    async def attach_document(self, task_id: str, filename: str, content: bytes) -> None:
        @self.retry_decorator
        async def _post():
            return await self.service_client.post(
                f"/Tasks/{task_id}/Attachments",
                files={"file": (filename, content, "application/pdf")},
            )

        await _post()
        logger.info("Attached document to task", task_id=task_id, filename=filename, size=len(content))

    async def create_follow_up_task(
        self, task: TaskReference, subject: str, due_in_days: int
    ) -> Optional[str]:
        due_date = (datetime.now(timezone.utc) + timedelta(days=due_in_days)).date().isoformat()
        record: Dict[str, Any] = {"Subject": subject, "Due_Date": due_date}
        if task.contact_id:
            record["Who_Id"] = task.contact_id
        if task.owner_id:
            record["Owner"] = task.owner_id

        @self.retry_decorator
        async def _post():
            return await self.service_client.post("/Tasks", json={"data": [record]})

        data = await _post()
        created = (data.get("data") or [{}])[0]
        follow_up_id = (created.get("details") or {}).get("id")
        logger.info("Created follow-up task", task_id=task.task_id, follow_up_id=follow_up_id, due_date=due_date)
        return follow_up_id

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.service_client.get_circuit_status()

    async def close(self) -> None:
        await self.service_client.close()
