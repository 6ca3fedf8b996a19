"""
Notification sink for workflow progress and failures.

Every method is best-effort: failures are logged and reported as ``False``,
never raised into the pipeline.
"""
from typing import Any, Dict, Optional
import structlog

from app.models.approval import ApprovalRecord
from app.services.approval_channel import escape_html
from app.services.interfaces import ApprovalChannel
from app.services.progress import ProgressEvent, ProgressPublisher

logger = structlog.get_logger(__name__)


class NotificationService:
    """Service for publishing progress events and operator messages."""

    def __init__(
        self,
        channel: Optional[ApprovalChannel] = None,
        publisher: Optional[ProgressPublisher] = None,
        enabled: bool = True,
    ):
        self.channel = channel
        self.publisher = publisher or ProgressPublisher()
        self.enabled = enabled

    def progress(
        self,
        event_type: str,
        message: str = "",
        task_id: Optional[str] = None,
        approval_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        """Publish a progress event to stream subscribers."""
        try:
            self.publisher.publish(
                ProgressEvent(
                    event_type=event_type,
                    task_id=task_id,
                    approval_id=approval_id,
                    message=message,
                    data=data,
                )
            )
        except Exception as e:
            logger.warning("Failed to publish progress event", event_type=event_type, error=str(e))

    async def send_error_notification(
        self,
        task_id: Optional[str],
        error: Exception,
        approval_id: Optional[str] = None,
        step: Optional[str] = None,
    ) -> bool:
        """
        Report a pipeline failure.

        Args:
            task_id: CRM task id
            error: The classified error that stopped the pipeline
            approval_id: Approval id, if a record existed
            step: Pipeline step that failed

        Returns:
            True if the operator message was delivered, False otherwise
        """
        error_code = getattr(error, "error_code", type(error).__name__)
        self.progress(
            "workflow_failed",
            message=str(error),
            task_id=task_id,
            approval_id=approval_id,
            step=step,
            error_code=error_code,
        )

        text = (
            "<b>❌ Workflow fehlgeschlagen</b>\n"
            f"<b>Task:</b> {escape_html(task_id)}\n"
            f"<b>Schritt:</b> {escape_html(step or 'unbekannt')}\n"
            f"<b>Fehler:</b> {escape_html(error_code)}: {escape_html(str(error))[:500]}"
        )
        if approval_id:
            text += f"\n<code>{escape_html(approval_id)}</code>"

        return await self._send_message(text, notification_type="error", task_id=task_id)

    async def send_rejection_notification(self, record: ApprovalRecord) -> bool:
        self.progress(
            "approval_rejected",
            message="Letter rejected",
            task_id=record.task_id,
            approval_id=record.approval_id,
            decided_by=record.decided_by,
        )
        text = (
            "<b>🚫 Brief abgelehnt</b>\n"
            f"<b>Empfänger:</b> {escape_html(record.current_letter.recipient_name)}\n"
            f"<code>{escape_html(record.approval_id)}</code>"
        )
        return await self._send_message(text, notification_type="rejection", task_id=record.task_id)

    async def send_delivery_notification(self, record: ApprovalRecord) -> bool:
        self.progress(
            "workflow_completed",
            message="Letter submitted to mail carrier",
            task_id=record.task_id,
            approval_id=record.approval_id,
            tracking_id=record.tracking_id,
        )
        text = (
            "<b>✅ Brief versendet</b>\n"
            f"<b>Empfänger:</b> {escape_html(record.current_letter.recipient_name)}\n"
            f"<b>Tracking:</b> {escape_html(record.tracking_id)}"
        )
        return await self._send_message(text, notification_type="delivery", task_id=record.task_id)

    async def send_feedback_prompt(self, approval_id: str) -> bool:
        """Ask the reviewer for revision text after a request-changes button press."""
        text = (
            "📝 Bitte Änderungswünsche senden:\n"
            f"<code>/revise {escape_html(approval_id)} &lt;Feedback&gt;</code>"
        )
        return await self._send_message(text, notification_type="feedback_prompt")

    async def _send_message(self, text: str, notification_type: str, **context: Any) -> bool:
        """
        Send a text message to the operator chat.

        Returns:
            True if successful, False otherwise
        """
        if not self.enabled or self.channel is None:
            return False

        try:
            await self.channel.send_message(text)
        except Exception as e:
            logger.warning(
                "Failed to send notification",
                notification_type=notification_type,
                error=str(e),
                **context,
            )
            return False

        logger.info("Notification sent", notification_type=notification_type, **context)
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "channel_configured": self.channel is not None,
            "stream_subscribers": self.publisher.subscriber_count(),
        }
