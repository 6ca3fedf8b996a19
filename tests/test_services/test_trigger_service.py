"""
Tests for idempotent workflow triggers.
"""
import pytest

from app.core.exceptions import ValidationError
from app.models.workflow import WorkflowTrigger


class TestTriggerRegistry:
    @pytest.mark.asyncio
    async def test_trigger_runs_cycle_and_stores_result(self, trigger_registry, letters):
        processed = await trigger_registry.trigger(WorkflowTrigger(trigger_id="run-2024-03-01"))

        assert processed.processed is True
        assert processed.processed_at is not None
        assert len(processed.result.started_approval_ids) == 1
        assert trigger_registry.get("run-2024-03-01") == processed
        assert len(letters.generate_calls) == 1

    @pytest.mark.asyncio
    async def test_repeated_trigger_returns_stored_result(self, trigger_registry, letters, crm):
        first = await trigger_registry.trigger(WorkflowTrigger(trigger_id="run-1"))
        crm.search_error = RuntimeError("must not be called again")

        second = await trigger_registry.trigger(WorkflowTrigger(trigger_id="run-1", requested_by="cron"))

        assert second == first
        assert len(letters.generate_calls) == 1

    @pytest.mark.asyncio
    async def test_dry_run_trigger(self, trigger_registry, letters):
        processed = await trigger_registry.trigger(
            WorkflowTrigger(trigger_id="preview", dry_run=True, max_tasks=1)
        )

        assert processed.result.dry_run is True
        assert processed.result.selected_task_ids == ["task-1"]
        assert letters.generate_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("trigger_id", ["../escape", "a/b", "", "..", "x" * 101])
    async def test_invalid_trigger_ids_rejected(self, trigger_registry, trigger_id):
        with pytest.raises(ValidationError) as exc_info:
            await trigger_registry.trigger(WorkflowTrigger(trigger_id=trigger_id))
        assert exc_info.value.field == "trigger_id"

    def test_get_unknown_trigger(self, trigger_registry):
        assert trigger_registry.get("never-run") is None

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, trigger_registry):
        await trigger_registry.trigger(WorkflowTrigger(trigger_id="first", dry_run=True))
        await trigger_registry.trigger(WorkflowTrigger(trigger_id="second", dry_run=True))

        recent = trigger_registry.list_recent(limit=1)

        assert [t.trigger_id for t in recent] == ["second"]
