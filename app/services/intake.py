"""
Task intake: selects eligible CRM tasks and launches one orchestration per
task, bounded by the configured concurrency.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from app.core.config import Settings, get_settings
from app.core.exceptions import ConflictError, OrchestrationError
from app.core.logging import log_business_event, performance_timing
from app.models.workflow import TaskFailure, TaskReference, TriggerResult, utcnow
from app.services.approval_store import ApprovalStore
from app.services.interfaces import TaskSource
from app.services.orchestrator import WorkflowOrchestrator

logger = structlog.get_logger(__name__)


class TaskIntake:
    """Polls the task source and feeds the orchestrator."""

    def __init__(
        self,
        crm: TaskSource,
        orchestrator: WorkflowOrchestrator,
        store: ApprovalStore,
        settings: Optional[Settings] = None,
    ):
        self.crm = crm
        self.orchestrator = orchestrator
        self.store = store
        self.settings = settings or get_settings()

        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_workflows)
        self._poll_task: Optional[asyncio.Task] = None

        # Health and counters
        self.healthy = True
        self.last_error: Optional[str] = None
        self.last_poll_at: Optional[datetime] = None
        self.cycles_run = 0
        self.tasks_started = 0
        self.tasks_failed = 0

    def _matches(self, task: TaskReference) -> bool:
        if task.status is not None and task.status != self.settings.task_status_filter:
            return False
        if self.settings.task_subject_filter and task.subject != self.settings.task_subject_filter:
            return False
        if self.settings.task_owner_id and task.owner_id != self.settings.task_owner_id:
            return False
        return True

    async def select_tasks(self, max_count: Optional[int] = None) -> List[TaskReference]:
        """
        Fetch eligible tasks, oldest first.

        An unreachable task source yields an empty list and marks intake as
        degraded instead of raising.

        Args:
            max_count: Upper bound on returned tasks; defaults to the configured cycle size

        Returns:
            Eligible tasks ordered by creation time
        """
        max_count = max_count or self.settings.max_tasks_per_cycle
        self.last_poll_at = utcnow()

        try:
            with performance_timing("select_tasks"):
                tasks = await asyncio.wait_for(
                    self.crm.search_tasks(
                        status=self.settings.task_status_filter,
                        subject=self.settings.task_subject_filter,
                        owner_id=self.settings.task_owner_id,
                    ),
                    timeout=self.settings.intake_timeout_seconds,
                )
        except (OrchestrationError, asyncio.TimeoutError) as e:
            self.healthy = False
            self.last_error = str(e) or type(e).__name__
            logger.error("Task source unavailable, intake degraded", error=self.last_error)
            return []

        self.healthy = True
        self.last_error = None

        eligible = sorted((t for t in tasks if self._matches(t)), key=lambda t: t.created_at)
        selected = eligible[:max_count]
        logger.info("Tasks selected", found=len(tasks), eligible=len(eligible), selected=len(selected))
        return selected

    async def _run_one(self, task: TaskReference):
        async with self._semaphore:
            return await self.orchestrator.process_task(task)

    async def run_cycle(self, max_count: Optional[int] = None, dry_run: bool = False) -> TriggerResult:
        """
        Select tasks and start an orchestration for each.

        Tasks that already have an approval in flight are skipped. With
        ``dry_run`` nothing is started.
        """
        self.cycles_run += 1
        tasks = await self.select_tasks(max_count)
        result = TriggerResult(
            selected_task_ids=[t.task_id for t in tasks],
            dry_run=dry_run,
            degraded=not self.healthy,
        )

        runnable: List[TaskReference] = []
        for task in tasks:
            if await self.store.get_active_for_task(task.task_id) is not None:
                result.skipped_task_ids.append(task.task_id)
            else:
                runnable.append(task)

        if dry_run or not runnable:
            return result

        outcomes = await asyncio.gather(
            *(self._run_one(task) for task in runnable),
            return_exceptions=True,
        )

        for task, outcome in zip(runnable, outcomes):
            if isinstance(outcome, ConflictError):
                result.skipped_task_ids.append(task.task_id)
            elif isinstance(outcome, OrchestrationError):
                result.failed.append(
                    TaskFailure(task_id=task.task_id, error_code=outcome.error_code, message=outcome.message)
                )
            elif isinstance(outcome, Exception):
                logger.error("Unexpected orchestration error", task_id=task.task_id, error=str(outcome))
                result.failed.append(
                    TaskFailure(task_id=task.task_id, error_code="INTERNAL_SERVER_ERROR", message=str(outcome))
                )
            else:
                result.started_approval_ids.append(outcome.approval_id)

        self.tasks_started += len(result.started_approval_ids)
        self.tasks_failed += len(result.failed)

        log_business_event(
            "intake_cycle_completed",
            selected=len(result.selected_task_ids),
            started=len(result.started_approval_ids),
            skipped=len(result.skipped_task_ids),
            failed=len(result.failed),
        )
        return result

    # Background polling

    def start(self) -> None:
        """Start the polling loop if a poll interval is configured."""
        interval = self.settings.intake_poll_interval_seconds
        if interval <= 0 or self._poll_task is not None:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(interval))
        logger.info("Intake polling started", interval_seconds=interval)

    async def stop(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None
        logger.info("Intake polling stopped")

    async def _poll_loop(self, interval: int) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error("Intake cycle failed", error=str(e))
            await asyncio.sleep(interval)

    def get_status(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "last_error": self.last_error,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "polling": self._poll_task is not None,
            "cycles_run": self.cycles_run,
            "tasks_started": self.tasks_started,
            "tasks_failed": self.tasks_failed,
        }
