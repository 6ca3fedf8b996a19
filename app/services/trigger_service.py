"""
Idempotent workflow triggers.

Each trigger is stored under ``<store>/triggers/<trigger_id>.json`` once its
cycle has run. A repeated trigger id returns the stored result without
running another cycle.
"""
import asyncio
import re
from pathlib import Path
from typing import Dict, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError
from app.core.logging import log_business_event
from app.models.workflow import WorkflowTrigger, utcnow
from app.services.approval_store import ApprovalStore
from app.services.intake import TaskIntake

logger = structlog.get_logger(__name__)

TRIGGER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,100}$")


class TriggerRegistry:
    """Runs intake cycles keyed by caller-supplied trigger ids."""

    def __init__(self, base_path: str, intake: TaskIntake):
        self.trigger_dir = Path(base_path) / "triggers"
        self.trigger_dir.mkdir(parents=True, exist_ok=True)
        self.intake = intake
        self._locks: Dict[str, asyncio.Lock] = {}

    def _validate_trigger_id(self, trigger_id: str) -> None:
        """
        Validate trigger_id before it is used as a file name.

        Raises:
            ValidationError: If trigger_id is empty, too long or has invalid characters
        """
        if not TRIGGER_ID_PATTERN.match(trigger_id or "") or trigger_id.strip(".") == "":
            raise ValidationError(
                "Trigger id must be 1-100 characters of letters, digits, '.', '_' or '-'",
                field="trigger_id",
            )

    def _path(self, trigger_id: str) -> Path:
        return self.trigger_dir / f"{trigger_id}.json"

    def get(self, trigger_id: str) -> Optional[WorkflowTrigger]:
        self._validate_trigger_id(trigger_id)
        path = self._path(trigger_id)
        if not path.exists():
            return None
        return WorkflowTrigger.model_validate_json(path.read_text(encoding="utf-8"))

    async def trigger(self, request: WorkflowTrigger) -> WorkflowTrigger:
        """
        Run an intake cycle for a trigger, or return the stored outcome.

        Args:
            request: Trigger with caller-supplied id

        Returns:
            The processed trigger including its result
        """
        self._validate_trigger_id(request.trigger_id)
        lock = self._locks.setdefault(request.trigger_id, asyncio.Lock())

        async with lock:
            existing = self.get(request.trigger_id)
            if existing is not None and existing.processed:
                logger.info("Duplicate trigger, returning stored result", trigger_id=request.trigger_id)
                return existing

            result = await self.intake.run_cycle(request.max_tasks, dry_run=request.dry_run)
            processed = request.model_copy(
                update={"processed": True, "processed_at": utcnow(), "result": result}
            )
            ApprovalStore._atomic_write(self._path(request.trigger_id), processed.model_dump_json(indent=2))

        log_business_event(
            "workflow_triggered",
            trigger_id=request.trigger_id,
            requested_by=request.requested_by,
            dry_run=request.dry_run,
            started=len(result.started_approval_ids),
        )
        return processed

    def list_recent(self, limit: int = 20) -> List[WorkflowTrigger]:
        """Processed triggers, newest first."""
        triggers = []
        for path in self.trigger_dir.glob("*.json"):
            try:
                triggers.append(WorkflowTrigger.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, PydanticValidationError) as e:
                logger.error("Unreadable trigger record", path=str(path), error=str(e))
        triggers.sort(key=lambda t: t.requested_at, reverse=True)
        return triggers[:limit]
