"""
Tests for progress publishing and operator notifications.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import make_record

from app.core.exceptions import ValidationError
from app.services.notification_service import NotificationService
from app.services.progress import ProgressEvent, ProgressPublisher


class TestProgressPublisher:
    """Fan-out of progress events."""

    @pytest.mark.asyncio
    async def test_global_and_per_approval_subscribers(self):
        publisher = ProgressPublisher()
        everything = publisher.subscribe()
        one = publisher.subscribe("appr-1")
        other = publisher.subscribe("appr-2")

        publisher.publish(ProgressEvent(event_type="awaiting_approval", approval_id="appr-1"))

        assert everything.qsize() == 1
        assert one.qsize() == 1
        assert other.qsize() == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self):
        publisher = ProgressPublisher(max_queue_size=1)
        queue = publisher.subscribe()

        publisher.publish(ProgressEvent(event_type="first"))
        publisher.publish(ProgressEvent(event_type="second"))

        assert queue.qsize() == 1
        assert queue.get_nowait().event_type == "first"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        publisher = ProgressPublisher()
        queue = publisher.subscribe("appr-1")
        assert publisher.subscriber_count("appr-1") == 1

        publisher.unsubscribe(queue, "appr-1")
        publisher.unsubscribe(queue, "appr-1")

        assert publisher.subscriber_count("appr-1") == 0

    def test_event_to_dict(self):
        event = ProgressEvent(event_type="task_started", task_id="task-1", data={"step": "contact"})
        payload = event.to_dict()

        assert payload["event_type"] == "task_started"
        assert payload["data"] == {"step": "contact"}
        assert "T" in payload["timestamp"]


class TestNotificationService:
    @pytest.fixture
    def channel(self):
        channel = MagicMock()
        channel.send_message = AsyncMock()
        return channel

    @pytest.mark.asyncio
    async def test_error_notification(self, channel):
        publisher = ProgressPublisher()
        queue = publisher.subscribe()
        service = NotificationService(channel=channel, publisher=publisher)

        sent = await service.send_error_notification(
            "task-1", ValidationError("missing", field="profile_id"), step="contact"
        )

        assert sent is True
        text = channel.send_message.await_args.args[0]
        assert "ORC_101" in text
        assert "contact" in text
        event = queue.get_nowait()
        assert event.event_type == "workflow_failed"
        assert event.data["error_code"] == "ORC_101"

    @pytest.mark.asyncio
    async def test_message_text_is_escaped(self, channel):
        service = NotificationService(channel=channel)

        await service.send_error_notification("<task>", RuntimeError("a & b"))

        text = channel.send_message.await_args.args[0]
        assert "&lt;task&gt;" in text
        assert "a &amp; b" in text

    @pytest.mark.asyncio
    async def test_channel_failure_is_swallowed(self, channel):
        channel.send_message.side_effect = RuntimeError("telegram down")
        service = NotificationService(channel=channel)

        assert await service.send_rejection_notification(make_record()) is False

    @pytest.mark.asyncio
    async def test_disabled_service_sends_nothing(self, channel):
        service = NotificationService(channel=channel, enabled=False)

        assert await service.send_feedback_prompt("appr-1") is False
        channel.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delivery_notification(self, channel):
        service = NotificationService(channel=channel)
        record = make_record(tracking_id="JOB-7")

        assert await service.send_delivery_notification(record) is True
        assert "JOB-7" in channel.send_message.await_args.args[0]

    def test_progress_publish_failure_is_logged(self):
        publisher = MagicMock()
        publisher.publish.side_effect = RuntimeError("boom")
        service = NotificationService(publisher=publisher)

        service.progress("task_started", task_id="task-1")

    def test_status(self):
        service = NotificationService()
        assert service.get_status() == {
            "enabled": True,
            "channel_configured": False,
            "stream_subscribers": 0,
        }
