"""
In-process progress publisher feeding the streaming endpoint.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.models.workflow import utcnow

ALL_EVENTS = "*"


@dataclass
class ProgressEvent:
    """Event published as a pipeline advances."""
    event_type: str
    task_id: Optional[str] = None
    approval_id: Optional[str] = None
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "task_id": self.task_id,
            "approval_id": self.approval_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class ProgressPublisher:
    """Fan-out of progress events to subscriber queues."""

    def __init__(self, max_queue_size: int = 1000):
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.max_queue_size = max_queue_size

    def subscribe(self, approval_id: Optional[str] = None) -> asyncio.Queue:
        """Subscribe to one approval's events, or to all events when no id is given."""
        key = approval_id or ALL_EVENTS
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(key, []).append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue, approval_id: Optional[str] = None) -> None:
        key = approval_id or ALL_EVENTS
        queues = self._subscribers.get(key)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[key]

    def publish(self, event: ProgressEvent) -> None:
        """Deliver to matching subscribers; a full queue drops the event for that subscriber."""
        targets = list(self._subscribers.get(ALL_EVENTS, []))
        if event.approval_id:
            targets.extend(self._subscribers.get(event.approval_id, []))
        for queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                continue

    def subscriber_count(self, approval_id: Optional[str] = None) -> int:
        return len(self._subscribers.get(approval_id or ALL_EVENTS, []))
