"""
Operation registry for clone operations.

Every clone registers one record here. The record is mutated only through the
``OperationWriter`` handed to the task running the clone; everyone else reads
immutable ``OperationSnapshot`` copies. Records are kept after completion so
the status of a finished clone can still be queried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from envclone.events import EventChannel, EventType
from envclone.exceptions import InvalidPhaseTransitionError, OperationNotFoundError
from envclone.models import ClonePhase, LogEntry, LogLevel, OperationStatus

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class OperationSnapshot:
    """
    Point-in-time copy of a clone operation.

    Attributes:
        operation_id: Operation identifier ("clone_<hex>").
        source_environment_id: Environment cloned from.
        target_environment_id: Environment cloned into.
        status: Coarse status derived from the phase.
        phase: Current phase.
        progress: Percentage 0-100, never decreasing.
        logs: Append-only operation log.
        backup_id: Backup point taken before writing, if any.
        started_at: Registration time (UTC).
        completed_at: Time a terminal phase was reached.
        cancel_requested: Whether cancellation has been requested.
    """

    operation_id: str
    source_environment_id: str
    target_environment_id: str
    status: OperationStatus
    phase: ClonePhase
    progress: int
    logs: tuple[LogEntry, ...]
    backup_id: str | None
    started_at: datetime
    completed_at: datetime | None
    cancel_requested: bool

    @property
    def is_finished(self) -> bool:
        return self.phase.is_terminal

    def errors(self) -> list[str]:
        """Messages of all error log entries."""
        return [entry.message for entry in self.logs if entry.level == LogLevel.ERROR]


@dataclass
class _OperationRecord:
    operation_id: str
    source_environment_id: str
    target_environment_id: str
    phase: ClonePhase = ClonePhase.PENDING
    progress: int = 0
    logs: list[LogEntry] = field(default_factory=list)
    backup_id: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    cancel_requested: bool = False

    def snapshot(self) -> OperationSnapshot:
        return OperationSnapshot(
            operation_id=self.operation_id,
            source_environment_id=self.source_environment_id,
            target_environment_id=self.target_environment_id,
            status=self.phase.operation_status,
            phase=self.phase,
            progress=self.progress,
            logs=tuple(self.logs),
            backup_id=self.backup_id,
            started_at=self.started_at,
            completed_at=self.completed_at,
            cancel_requested=self.cancel_requested,
        )


class OperationWriter:
    """
    Write access to one operation record.

    Only the task that owns the clone holds a writer. Every mutation is
    mirrored to the event channel when one is configured.
    """

    def __init__(self, record: _OperationRecord, events: EventChannel | None) -> None:
        self._record = record
        self._events = events

    @property
    def operation_id(self) -> str:
        return self._record.operation_id

    @property
    def phase(self) -> ClonePhase:
        return self._record.phase

    @property
    def progress(self) -> int:
        return self._record.progress

    @property
    def cancel_requested(self) -> bool:
        return self._record.cancel_requested

    def snapshot(self) -> OperationSnapshot:
        return self._record.snapshot()

    def transition(self, phase: ClonePhase) -> None:
        """
        Move the operation to ``phase``.

        Raises:
            InvalidPhaseTransitionError: If the state machine forbids the move.
        """
        current = self._record.phase
        if not current.can_transition_to(phase):
            raise InvalidPhaseTransitionError(current, phase, operation_id=self.operation_id)
        self._record.phase = phase
        logger.debug(
            "Operation %s: %s -> %s", self.operation_id, current.value, phase.value
        )
        self._publish(
            EventType.PHASE_CHANGED,
            {"from_phase": current.value, "to_phase": phase.value},
        )

    def set_progress(self, progress: int) -> None:
        """Raise progress to ``progress`` (clamped to 0-100); lower values are ignored."""
        progress = max(0, min(100, progress))
        if progress <= self._record.progress:
            return
        self._record.progress = progress
        self._publish(EventType.PROGRESS, {"progress": progress, "phase": self.phase.value})

    def log(self, level: LogLevel, component: str, message: str, **metadata: Any) -> LogEntry:
        """Append an entry to the operation log and mirror it to the logger."""
        entry = LogEntry(datetime.now(UTC), level, component, message, dict(metadata))
        self._record.logs.append(entry)
        logger.log(
            _LOG_LEVELS[level],
            "[%s] %s: %s",
            self.operation_id,
            component,
            message,
        )
        self._publish(
            EventType.LOG,
            {"level": level.value, "component": component, "message": message},
        )
        return entry

    def info(self, component: str, message: str, **metadata: Any) -> LogEntry:
        return self.log(LogLevel.INFO, component, message, **metadata)

    def warning(self, component: str, message: str, **metadata: Any) -> LogEntry:
        return self.log(LogLevel.WARNING, component, message, **metadata)

    def error(self, component: str, message: str, **metadata: Any) -> LogEntry:
        return self.log(LogLevel.ERROR, component, message, **metadata)

    def set_backup_id(self, backup_id: str) -> None:
        self._record.backup_id = backup_id

    def complete(self) -> None:
        self.set_progress(100)
        self._finish(ClonePhase.COMPLETED)

    def fail(self, message: str) -> None:
        self.error("CloneOrchestrator", message)
        self._finish(ClonePhase.FAILED)

    def cancel(self) -> None:
        self.warning("CloneOrchestrator", "Operation cancelled")
        self._finish(ClonePhase.CANCELLED)

    def _finish(self, phase: ClonePhase) -> None:
        if self._record.phase.is_terminal:
            return
        self.transition(phase)
        self._record.completed_at = datetime.now(UTC)
        self._publish(
            EventType.OPERATION_COMPLETED,
            {"status": phase.operation_status.value, "progress": self._record.progress},
        )

    def _publish(self, event_type: EventType, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.publish(event_type, self.operation_id, payload)


class OperationRegistry:
    """
    Process-wide registry of clone operations.

    Example:
        >>> registry = OperationRegistry()
        >>> writer = registry.create("prod", "training")
        >>> writer.transition(ClonePhase.ANALYZING_SCHEMA)
        >>> registry.get(writer.operation_id).phase
        <ClonePhase.ANALYZING_SCHEMA: 'analyzing_schema'>
    """

    def __init__(self, events: EventChannel | None = None) -> None:
        self._events = events
        self._records: dict[str, _OperationRecord] = {}

    def create(
        self,
        source_environment_id: str,
        target_environment_id: str,
        operation_id: str | None = None,
    ) -> OperationWriter:
        """
        Register a new operation in the PENDING phase.

        Raises:
            ValueError: If ``operation_id`` is already registered.
        """
        operation_id = operation_id or f"clone_{uuid4().hex}"
        if operation_id in self._records:
            raise ValueError(f"Operation {operation_id} already exists")
        record = _OperationRecord(operation_id, source_environment_id, target_environment_id)
        self._records[operation_id] = record
        return OperationWriter(record, self._events)

    def get(self, operation_id: str) -> OperationSnapshot | None:
        record = self._records.get(operation_id)
        return record.snapshot() if record is not None else None

    def require(self, operation_id: str) -> OperationSnapshot:
        """
        Like ``get`` but raising.

        Raises:
            OperationNotFoundError: If the operation is unknown.
        """
        snapshot = self.get(operation_id)
        if snapshot is None:
            raise OperationNotFoundError(operation_id)
        return snapshot

    def request_cancel(self, operation_id: str) -> bool:
        """
        Flag a running operation for cancellation.

        Returns:
            True if the flag was set; False for unknown or finished operations.
        """
        record = self._records.get(operation_id)
        if record is None or record.phase.is_terminal:
            return False
        record.cancel_requested = True
        return True

    def list(self, status: OperationStatus | None = None) -> list[OperationSnapshot]:
        """Snapshots of all operations, optionally filtered by status, oldest first."""
        snapshots = [record.snapshot() for record in self._records.values()]
        if status is not None:
            snapshots = [s for s in snapshots if s.status == status]
        return snapshots

    def __len__(self) -> int:
        return len(self._records)
