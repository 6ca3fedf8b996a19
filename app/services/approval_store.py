"""
Durable approval store backed by JSON files.

Layout under the configured base path::

    active/<approval_id>.json    in-flight records, rewritten on every transition
    archive/<approval_id>.json   terminal records, written once and never changed

All mutation goes through ``transition``, which serializes access per
approval id and applies the state machine.
"""
import asyncio
import os
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ApprovalNotFoundError, ConflictError
from app.models.approval import (
    ApprovalRecord,
    ApprovalState,
    ArchivedApproval,
    is_valid_approval_id,
)
from app.services.state_machine import apply_event

logger = structlog.get_logger(__name__)


class ApprovalStore:
    """File-backed store for approval records."""

    def __init__(self, base_path: str, max_revision_iterations: Optional[int] = None):
        self.base_path = Path(base_path)
        self.active_dir = self.base_path / "active"
        self.archive_dir = self.base_path / "archive"
        self.active_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        self.max_revision_iterations = max_revision_iterations

        self._locks: Dict[str, asyncio.Lock] = {}
        # Guards the one-in-flight-approval-per-task check
        self._create_lock = asyncio.Lock()

    def lock_for(self, approval_id: str) -> asyncio.Lock:
        """Per-approval lock serializing reads-for-update and writes."""
        lock = self._locks.get(approval_id)
        if lock is None:
            lock = self._locks.setdefault(approval_id, asyncio.Lock())
        return lock

    @staticmethod
    def _check_id(approval_id: str) -> None:
        """Only canonical UUIDs are accepted, so an id can never leave its partition."""
        if not is_valid_approval_id(approval_id):
            raise ApprovalNotFoundError(approval_id)

    def _exists(self, approval_id: str) -> bool:
        return self._active_path(approval_id).exists() or self._archive_path(approval_id).exists()

    # File helpers

    def _active_path(self, approval_id: str) -> Path:
        return self.active_dir / f"{approval_id}.json"

    def _archive_path(self, approval_id: str) -> Path:
        return self.archive_dir / f"{approval_id}.json"

    @staticmethod
    def _atomic_write(path: Path, payload: str) -> None:
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)

    def _read_active(self, approval_id: str) -> Optional[ApprovalRecord]:
        path = self._active_path(approval_id)
        if not path.exists():
            return None
        if self._archive_path(approval_id).exists():
            # Archive written but active copy not yet removed before a restart
            path.unlink(missing_ok=True)
            return None
        return ApprovalRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _read_archived(self, approval_id: str) -> Optional[ArchivedApproval]:
        path = self._archive_path(approval_id)
        if not path.exists():
            return None
        return ArchivedApproval.model_validate_json(path.read_text(encoding="utf-8"))

    def _iter_active(self) -> List[ApprovalRecord]:
        records = []
        for path in sorted(self.active_dir.glob("*.json")):
            approval_id = path.stem
            if not is_valid_approval_id(approval_id):
                logger.warning("Ignoring file with invalid approval id", path=str(path))
                continue
            try:
                record = self._read_active(approval_id)
            except (OSError, PydanticValidationError) as e:
                logger.error("Unreadable approval record", path=str(path), error=str(e))
                continue
            if record is not None:
                records.append(record)
        return records

    def _write_active(self, record: ApprovalRecord) -> None:
        self._atomic_write(self._active_path(record.approval_id), record.model_dump_json(indent=2))

    def _archive(self, record: ApprovalRecord) -> ArchivedApproval:
        archive_path = self._archive_path(record.approval_id)
        if archive_path.exists():
            raise ConflictError(
                "Approval is already archived",
                approval_id=record.approval_id,
            )
        archived = ArchivedApproval(record=record)
        self._atomic_write(archive_path, archived.model_dump_json(indent=2))
        self._active_path(record.approval_id).unlink(missing_ok=True)

        logger.info(
            "Approval record archived",
            approval_id=record.approval_id,
            task_id=record.task_id,
            state=record.state.value,
        )
        return archived

    # Public API

    async def create(self, record: ApprovalRecord) -> ApprovalRecord:
        """
        Persist a new approval record.

        Raises:
            ConflictError: The task already has a non-terminal approval, or the
                identifier is already in use
        """
        self._check_id(record.approval_id)
        async with self._create_lock:
            existing = self._find_active_for_task(record.task_id)
            if existing is not None:
                raise ConflictError(
                    "Task already has an approval in flight",
                    task_id=record.task_id,
                    approval_id=existing.approval_id,
                )
            if self._exists(record.approval_id):
                raise ConflictError("Approval id already exists", approval_id=record.approval_id)

            async with self.lock_for(record.approval_id):
                self._write_active(record)

        logger.info(
            "Approval record created",
            approval_id=record.approval_id,
            task_id=record.task_id,
            state=record.state.value,
        )
        return record

    async def get(self, approval_id: str) -> ApprovalRecord:
        """Load a record from the active or archive partition."""
        record = await self.find(approval_id)
        if record is None:
            raise ApprovalNotFoundError(approval_id)
        return record

    async def find(self, approval_id: str) -> Optional[ApprovalRecord]:
        if not is_valid_approval_id(approval_id):
            return None
        if self._active_path(approval_id).exists():
            async with self.lock_for(approval_id):
                record = self._read_active(approval_id)
            if record is not None:
                return record
            # Archived while this lookup waited for the lock
            self._locks.pop(approval_id, None)
        archived = self._read_archived(approval_id)
        return archived.record if archived else None

    async def load_archived(self, approval_id: str) -> ArchivedApproval:
        self._check_id(approval_id)
        archived = self._read_archived(approval_id)
        if archived is None:
            raise ApprovalNotFoundError(approval_id)
        return archived

    async def transition(self, approval_id: str, event: Any) -> ApprovalRecord:
        """
        Apply a state machine event to a stored record.

        The read, transition and write happen under the record's lock. A record
        that reaches a terminal state is moved to the archive.

        Raises:
            ApprovalNotFoundError: No record with this id exists
            ConflictError: The record is archived or the event is not allowed
            PolicyError: The revision cap is exceeded
        """
        self._check_id(approval_id)
        if not self._active_path(approval_id).exists():
            self._raise_inactive(approval_id, event)

        async with self.lock_for(approval_id):
            record = self._read_active(approval_id)
            if record is None:
                self._locks.pop(approval_id, None)
                self._raise_inactive(approval_id, event)

            updated = apply_event(record, event, self.max_revision_iterations)

            if updated.is_terminal:
                self._archive(updated)
                # Archived records are read-only from here on
                self._locks.pop(approval_id, None)
            else:
                self._write_active(updated)

            return updated

    def _raise_inactive(self, approval_id: str, event: Any) -> None:
        archived = self._read_archived(approval_id)
        if archived is None:
            raise ApprovalNotFoundError(approval_id)
        raise ConflictError(
            f"Approval is already in terminal state '{archived.record.state.value}'",
            approval_id=approval_id,
            state=archived.record.state.value,
            event=type(event).__name__,
        )

    def _find_active_for_task(self, task_id: str) -> Optional[ApprovalRecord]:
        for record in self._iter_active():
            if record.task_id == task_id and not record.is_terminal:
                return record
        return None

    async def get_active_for_task(self, task_id: str) -> Optional[ApprovalRecord]:
        """The non-terminal approval for a task, if any."""
        return self._find_active_for_task(task_id)

    async def find_by_task(self, task_id: str) -> List[ApprovalRecord]:
        """All approvals for a task, active and archived, oldest first."""
        records = [r for r in self._iter_active() if r.task_id == task_id]
        records.extend(a.record for a in self._iter_archived() if a.record.task_id == task_id)
        return sorted(records, key=lambda r: r.created_at)

    async def list_active(self, state: Optional[ApprovalState] = None) -> List[ApprovalRecord]:
        """In-flight records, optionally filtered by state, oldest first."""
        records = self._iter_active()
        if state is not None:
            records = [r for r in records if r.state == state]
        return sorted(records, key=lambda r: r.created_at)

    def _iter_archived(self) -> List[ArchivedApproval]:
        archived = []
        for path in sorted(self.archive_dir.glob("*.json")):
            try:
                archived.append(ArchivedApproval.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, PydanticValidationError) as e:
                logger.error("Unreadable archived approval", path=str(path), error=str(e))
        return archived

    async def list_archived(self, limit: Optional[int] = None) -> List[ArchivedApproval]:
        """Archived records, most recently archived first."""
        archived = sorted(self._iter_archived(), key=lambda a: a.archived_at, reverse=True)
        return archived[:limit] if limit else archived

    async def state_counts(self) -> Dict[str, int]:
        """Number of records per state, across both partitions."""
        counts: Counter = Counter({state.value: 0 for state in ApprovalState})
        for record in self._iter_active():
            counts[record.state.value] += 1
        for archived in self._iter_archived():
            counts[archived.record.state.value] += 1
        return dict(counts)
