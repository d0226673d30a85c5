"""
Operation Status Models
=======================

Shared data model for the daemon (producer) and GUI clients (consumers).

Wire format is JSON with camelCase keys. Timestamps are float seconds since
the Unix epoch. Decoding is forward compatible: unknown keys are ignored and
optional fields may be absent.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class SnapshotDecodeError(ValueError):
    """Raised when a snapshot or event payload has an unusable shape."""


def clamp_progress(value: Any) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return min(max(value, 0.0), 1.0)


def _opt_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


# =============================================================================
# ENUMS
# =============================================================================


class OperationStatus(str, Enum):
    """Overall status of a tracked operation."""
    IDLE = "idle"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def description(self) -> str:
        return _STATUS_DESCRIPTIONS[self]

    @property
    def is_active(self) -> bool:
        return self in (
            OperationStatus.DOWNLOADING,
            OperationStatus.PROCESSING,
            OperationStatus.UPLOADING,
        )

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.COMPLETED,
            OperationStatus.ERROR,
            OperationStatus.CANCELLED,
        )

    def can_transition_to(self, target: "OperationStatus") -> bool:
        """Idle and active statuses move to any non-idle status; terminal statuses never move."""
        if self.is_terminal:
            return False
        return target is not OperationStatus.IDLE


_STATUS_DESCRIPTIONS = {
    OperationStatus.IDLE: "Ready",
    OperationStatus.DOWNLOADING: "Downloading",
    OperationStatus.PROCESSING: "Processing",
    OperationStatus.UPLOADING: "Uploading",
    OperationStatus.COMPLETED: "Completed Successfully",
    OperationStatus.ERROR: "Error Occurred",
    OperationStatus.CANCELLED: "Operation Cancelled",
}


class EventAction(str, Enum):
    """Broadcast event kinds."""
    UPDATE = "update"
    REMOVED = "removed"
    CLEANUP = "cleanup"


# =============================================================================
# OPERATION
# =============================================================================


@dataclass(frozen=True)
class OperationPhase:
    """Sub-status within the current operation status."""
    name: str = "Ready"
    progress: float = 0.0
    detail: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "progress", clamp_progress(self.progress))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "progress": self.progress,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "OperationPhase":
        if not isinstance(data, dict):
            return cls()
        return cls(
            name=str(data.get("name", "Ready")),
            progress=data.get("progress", 0.0),
            detail=_opt_str(data.get("detail")),
        )


@dataclass(frozen=True)
class Operation:
    """One tracked unit of daemon-performed work."""
    operation_id: str
    label_name: str
    app_name: str
    status: OperationStatus = OperationStatus.IDLE
    current_phase: OperationPhase = field(default_factory=OperationPhase)
    overall_progress: float = 0.0
    start_time: float = field(default_factory=time.time)
    last_update: float = field(default_factory=time.time)
    error_message: Optional[str] = None
    estimated_time_remaining: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "overall_progress", clamp_progress(self.overall_progress))

    def updated(self, **changes: Any) -> "Operation":
        """Copy with ``changes`` applied (dataclass field names)."""
        return replace(self, **changes)

    def same_run(self, other: "Operation") -> bool:
        return self.operation_id == other.operation_id and self.start_time == other.start_time

    # -------------------------------------------------------------------------
    # Display helpers
    # -------------------------------------------------------------------------

    @property
    def progress_percentage(self) -> str:
        return f"{int(self.overall_progress * 100)}%"

    @property
    def time_remaining_text(self) -> Optional[str]:
        eta = self.estimated_time_remaining
        if eta is None or eta <= 0:
            return None
        if eta < 60:
            return f"{int(eta)}s remaining"
        if eta < 3600:
            return f"{int(eta / 60)}m remaining"
        return f"{int(eta / 3600)}h {int((eta % 3600) / 60)}m remaining"

    def elapsed_text(self, now: Optional[float] = None) -> str:
        elapsed = max(0.0, (now if now is not None else time.time()) - self.start_time)
        if elapsed < 60:
            return f"{int(elapsed)}s"
        if elapsed < 3600:
            return f"{int(elapsed / 60)}m {int(elapsed % 60)}s"
        return f"{int(elapsed / 3600)}h {int((elapsed % 3600) / 60)}m"

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "labelName": self.label_name,
            "appName": self.app_name,
            "status": self.status.value,
            "currentPhase": self.current_phase.to_dict(),
            "overallProgress": self.overall_progress,
            "startTime": self.start_time,
            "lastUpdate": self.last_update,
            "errorMessage": self.error_message,
            "estimatedTimeRemaining": self.estimated_time_remaining,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Operation":
        """
        Decode one operation record.

        Raises:
            SnapshotDecodeError: missing ``operationId`` or unknown status
        """
        if not isinstance(data, dict):
            raise SnapshotDecodeError(f"operation record is {type(data).__name__}, expected object")
        operation_id = data.get("operationId")
        if not operation_id:
            raise SnapshotDecodeError("operation record without operationId")
        try:
            status = OperationStatus(data.get("status", OperationStatus.IDLE.value))
        except ValueError:
            raise SnapshotDecodeError(f"unknown status {data.get('status')!r} for {operation_id}")

        start_time = _opt_float(data.get("startTime")) or 0.0
        last_update = _opt_float(data.get("lastUpdate"))
        return cls(
            operation_id=str(operation_id),
            label_name=str(data.get("labelName", "")),
            app_name=str(data.get("appName", "")),
            status=status,
            current_phase=OperationPhase.from_dict(data.get("currentPhase")),
            overall_progress=data.get("overallProgress", 0.0),
            start_time=start_time,
            last_update=last_update if last_update is not None else start_time,
            error_message=_opt_str(data.get("errorMessage")) if status is OperationStatus.ERROR else None,
            estimated_time_remaining=_opt_float(data.get("estimatedTimeRemaining")),
        )


# =============================================================================
# SYSTEM STATE (SNAPSHOT)
# =============================================================================


@dataclass
class SystemState:
    """Serializable snapshot of every tracked operation."""
    operations: Dict[str, Operation] = field(default_factory=dict)
    last_update: float = 0.0
    producer_version: str = ""
    producer_pid: Optional[int] = None
    producer_id: str = ""

    def copy(self) -> "SystemState":
        # Operations are frozen, a shallow copy of the mapping is enough
        return SystemState(
            operations=dict(self.operations),
            last_update=self.last_update,
            producer_version=self.producer_version,
            producer_pid=self.producer_pid,
            producer_id=self.producer_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operations": {op_id: op.to_dict() for op_id, op in self.operations.items()},
            "lastUpdate": self.last_update,
            "producerVersion": self.producer_version,
            "producerPid": self.producer_pid,
            "producerId": self.producer_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Any) -> "SystemState":
        """
        Decode a snapshot, dropping individual bad records.

        Raises:
            SnapshotDecodeError: the top-level shape is unusable
        """
        if not isinstance(data, dict):
            raise SnapshotDecodeError(f"snapshot is {type(data).__name__}, expected object")
        raw_operations = data.get("operations", {})
        if raw_operations is None:
            raw_operations = {}
        if not isinstance(raw_operations, dict):
            raise SnapshotDecodeError("snapshot 'operations' is not a mapping")

        operations: Dict[str, Operation] = {}
        for key, raw in raw_operations.items():
            try:
                operation = Operation.from_dict(raw)
            except SnapshotDecodeError as e:
                logger.warning(f"[SystemState] Dropping undecodable record {key!r}: {e}")
                continue
            operations[operation.operation_id] = operation

        pid = data.get("producerPid")
        try:
            producer_pid = int(pid) if pid is not None else None
        except (TypeError, ValueError):
            producer_pid = None

        return cls(
            operations=operations,
            last_update=_opt_float(data.get("lastUpdate")) or 0.0,
            producer_version=str(data.get("producerVersion", "")),
            producer_pid=producer_pid,
            producer_id=str(data.get("producerId", "") or ""),
        )

    @classmethod
    def from_json(cls, content: str) -> "SystemState":
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise SnapshotDecodeError(f"invalid JSON: {e}") from e
        return cls.from_dict(data)


# =============================================================================
# BROADCAST EVENT
# =============================================================================


@dataclass(frozen=True)
class StatusEvent:
    """Minimal delta pushed over the broadcast channel."""
    operation_id: str
    action: EventAction = EventAction.UPDATE
    status: Optional[OperationStatus] = None
    phase_name: Optional[str] = None
    phase_progress: Optional[float] = None
    overall_progress: Optional[float] = None
    error_message: Optional[str] = None
    last_update: Optional[float] = None
    start_time: Optional[float] = None

    @classmethod
    def for_update(cls, operation: Operation) -> "StatusEvent":
        return cls(
            operation_id=operation.operation_id,
            action=EventAction.UPDATE,
            status=operation.status,
            phase_name=operation.current_phase.name,
            phase_progress=operation.current_phase.progress,
            overall_progress=operation.overall_progress,
            error_message=operation.error_message,
            last_update=operation.last_update,
            start_time=operation.start_time,
        )

    @classmethod
    def for_removal(cls, operation_id: str, timestamp: Optional[float] = None) -> "StatusEvent":
        return cls(
            operation_id=operation_id,
            action=EventAction.REMOVED,
            last_update=timestamp if timestamp is not None else time.time(),
        )

    def apply_to(self, operation: Operation) -> Operation:
        """Merge this delta into ``operation``; fields absent from the delta are kept."""
        status = self.status or operation.status
        phase = operation.current_phase
        if self.phase_name is not None or self.phase_progress is not None:
            phase = OperationPhase(
                name=self.phase_name if self.phase_name is not None else phase.name,
                progress=self.phase_progress if self.phase_progress is not None else phase.progress,
                detail=phase.detail if (self.phase_name in (None, phase.name)) else None,
            )
        return operation.updated(
            status=status,
            current_phase=phase,
            overall_progress=(
                self.overall_progress if self.overall_progress is not None else operation.overall_progress
            ),
            error_message=self.error_message if status is OperationStatus.ERROR else None,
            last_update=self.last_update if self.last_update is not None else operation.last_update,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "operationId": self.operation_id,
            "action": self.action.value,
        }
        optional = {
            "status": self.status.value if self.status is not None else None,
            "phaseName": self.phase_name,
            "phaseProgress": self.phase_progress,
            "overallProgress": self.overall_progress,
            "errorMessage": self.error_message,
            "lastUpdate": self.last_update,
            "startTime": self.start_time,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> "StatusEvent":
        if not isinstance(data, dict):
            raise SnapshotDecodeError("event payload is not an object")
        operation_id = data.get("operationId")
        if not operation_id:
            raise SnapshotDecodeError("event without operationId")
        try:
            action = EventAction(data.get("action", EventAction.UPDATE.value))
        except ValueError:
            raise SnapshotDecodeError(f"unknown event action {data.get('action')!r}")

        status = None
        if data.get("status") is not None:
            try:
                status = OperationStatus(data["status"])
            except ValueError:
                raise SnapshotDecodeError(f"unknown status {data['status']!r}")

        phase_progress = _opt_float(data.get("phaseProgress"))
        overall_progress = _opt_float(data.get("overallProgress"))
        return cls(
            operation_id=str(operation_id),
            action=action,
            status=status,
            phase_name=_opt_str(data.get("phaseName")),
            phase_progress=clamp_progress(phase_progress) if phase_progress is not None else None,
            overall_progress=clamp_progress(overall_progress) if overall_progress is not None else None,
            error_message=_opt_str(data.get("errorMessage")),
            last_update=_opt_float(data.get("lastUpdate")),
            start_time=_opt_float(data.get("startTime")),
        )

    @classmethod
    def from_bytes(cls, payload: bytes) -> "StatusEvent":
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SnapshotDecodeError(f"invalid event payload: {e}") from e
        return cls.from_dict(data)

