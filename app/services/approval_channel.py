"""
Telegram approval channel.

Outbound: the rendered letter goes to the review chat as a document with
inline approve / request-changes / reject buttons. Inbound: webhook updates
are parsed into ``InboundDecision`` values by ``parse_update``.
"""
import html
import json
import re
from typing import Any, Dict, Optional

import httpx
import structlog

from app.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from app.core.config import Settings, get_settings
from app.core.retry import create_async_retry_decorator, get_default_retry_config
from app.models.approval import APPROVAL_ID_REGEX, ApprovalRecord, DecisionType, InboundDecision

logger = structlog.get_logger(__name__)

CAPTION_LIMIT = 1024
CALLBACK_PATTERN = re.compile(rf"^(approve|change|reject)_({APPROVAL_ID_REGEX})$")
REVISE_COMMAND_PATTERN = re.compile(rf"^/revise\s+({APPROVAL_ID_REGEX})\s+(.+)$", re.DOTALL)


def escape_html(text: Optional[str]) -> str:
    return html.escape(text or "", quote=False)


def build_caption(record: ApprovalRecord) -> str:
    """HTML caption summarizing the letter for the reviewer."""
    letter = record.current_letter
    lines = [
        "<b>📬 Brief zur Freigabe</b>",
        f"<b>Empfänger:</b> {escape_html(letter.recipient_name)}",
        f"<b>Firma:</b> {escape_html(letter.company_name)}",
        f"<b>Betreff:</b> {escape_html(letter.subject)}",
        f"<b>Version:</b> {record.iteration}",
    ]
    if record.mailing_address is None:
        lines.append("⚠️ <b>Keine Postanschrift hinterlegt</b>")
    lines.append(f"<code>{escape_html(record.approval_id)}</code>")
    caption = "\n".join(lines)
    return caption[:CAPTION_LIMIT]


def build_keyboard(approval_id: str) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                {"text": "✅ Genehmigen", "callback_data": f"approve_{approval_id}"},
                {"text": "📝 Änderungen anfordern", "callback_data": f"change_{approval_id}"},
            ],
            [
                {"text": "❌ Ablehnen", "callback_data": f"reject_{approval_id}"},
            ],
        ]
    }


def _sender_name(sender: Optional[Dict[str, Any]]) -> str:
    if not sender:
        return "approval_channel"
    return sender.get("username") or str(sender.get("id") or "approval_channel")


def update_chat_id(update: Dict[str, Any]) -> Optional[str]:
    """Chat an update was sent from, for button presses and plain messages alike."""
    callback = update.get("callback_query") or {}
    message = callback.get("message") or update.get("message") or {}
    chat_id = (message.get("chat") or {}).get("id")
    return str(chat_id) if chat_id is not None else None


def parse_update(update: Dict[str, Any]) -> Optional[InboundDecision]:
    """
    Turn a Telegram webhook update into a decision.

    ``change_<id>`` button presses carry no feedback text and yield a REVISE
    decision with ``feedback=None``; the caller asks the reviewer for text.
    Reviewers send the text as ``/revise <approval_id> <feedback>``.

    Returns:
        The decision, or None if the update is not a decision
    """
    callback = update.get("callback_query")
    if callback:
        match = CALLBACK_PATTERN.match(callback.get("data") or "")
        if not match:
            return None
        action, approval_id = match.groups()
        decision = {
            "approve": DecisionType.APPROVE,
            "reject": DecisionType.REJECT,
            "change": DecisionType.REVISE,
        }[action]
        return InboundDecision(
            approval_id=approval_id,
            decision=decision,
            decided_by=_sender_name(callback.get("from")),
        )

    message = update.get("message")
    if message:
        match = REVISE_COMMAND_PATTERN.match((message.get("text") or "").strip())
        if not match:
            return None
        approval_id, feedback = match.groups()
        return InboundDecision(
            approval_id=approval_id,
            decision=DecisionType.REVISE,
            feedback=feedback.strip(),
            decided_by=_sender_name(message.get("from")),
        )

    return None


class TelegramApprovalChannel:
    """Client for the Telegram Bot API review chat."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        self.service_name = "Telegram"
        self.chat_id = settings.telegram_chat_id

        self.service_client = ServiceClient(
            service_name=self.service_name,
            base_url=f"{settings.telegram_api_url.rstrip('/')}/bot{settings.telegram_bot_token}",
            timeout_seconds=settings.telegram_timeout,
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

    async def send_approval_request(self, record: ApprovalRecord, pdf: bytes) -> Optional[str]:
        """
        Send the letter PDF with decision buttons to the review chat.

        Returns:
            Telegram message id, if reported
        """
        data = {
            "chat_id": self.chat_id,
            "caption": build_caption(record),
            "parse_mode": "HTML",
            "reply_markup": json.dumps(build_keyboard(record.approval_id)),
        }
        files = {
            "document": (f"letter_{record.approval_id}.pdf", pdf, "application/pdf"),
        }

        @self.retry_decorator
        async def _send():
            return await self.service_client.post("/sendDocument", data=data, files=files)

        response = await _send()
        message_id = (response.get("result") or {}).get("message_id")

        logger.info(
            "Approval request sent",
            approval_id=record.approval_id,
            iteration=record.iteration,
            message_id=message_id,
        )
        return str(message_id) if message_id is not None else None

    async def send_message(self, text: str) -> None:
        payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"}

        @self.retry_decorator
        async def _send():
            return await self.service_client.post("/sendMessage", json=payload)

        await _send()

    async def answer_callback(self, callback_query_id: str, text: str) -> None:
        payload = {"callback_query_id": callback_query_id, "text": text}
        await self.service_client.post("/answerCallbackQuery", json=payload)

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.service_client.get_circuit_status()

    async def close(self) -> None:
        await self.service_client.close()
