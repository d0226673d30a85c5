"""
Operation Registry
==================

Producer-side single source of truth for operation status.

Work-performing code (downloads, packaging, uploads) reports progress here
while it runs. Every mutation, under one lock:

    1. updates the in-memory map
    2. writes the full snapshot atomically (best-effort)
    3. broadcasts a minimal delta to subscribed clients (best-effort)

Status tracking never blocks or aborts the work it describes: I/O failures
are logged, protocol misuse (unknown or terminal ids) is a logged no-op.

Progress convention:
    - ``current_phase.progress`` is progress within the current phase and
      resets to 0 when the phase name changes
    - ``overall_progress`` never decreases for one run of an operation
    - convenience wrappers map phases onto fixed overall bands:
      download 0.0-0.3, processing 0.3-0.7, upload 0.7-1.0

Usage:
    registry = OperationRegistry(config)
    registry.start()
    registry.start_operation("firefox_1", "firefox", "Firefox")
    registry.update_download_progress("firefox_1", 4_000_000, 10_000_000)
    registry.complete_operation("firefox_1")
    registry.stop()
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from .._version import PRODUCER_VERSION
from .broadcast import BroadcastPublisher
from .config import StatusSyncConfig
from .models import (
    EventAction,
    Operation,
    OperationPhase,
    OperationStatus,
    StatusEvent,
    SystemState,
    clamp_progress,
)
from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

DOWNLOAD_BAND: Tuple[float, float] = (0.0, 0.3)
PROCESSING_BAND: Tuple[float, float] = (0.3, 0.7)
UPLOAD_BAND: Tuple[float, float] = (0.7, 1.0)

# Strictly increasing lastUpdate even when the clock stalls
_MIN_TICK = 1e-6


def _in_band(band: Tuple[float, float], fraction: float) -> float:
    low, high = band
    return low + (high - low) * clamp_progress(fraction)


class OperationRegistry:
    """
    Thread-safe registry of tracked operations.

    All public methods may be called from any thread. Mutators return
    ``True`` when applied and ``False`` when rejected; none of them raise
    because of snapshot or broadcast failures.
    """

    def __init__(
        self,
        config: Optional[StatusSyncConfig] = None,
        store: Optional[SnapshotStore] = None,
        publisher: Optional[BroadcastPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or StatusSyncConfig()
        self._store = store or SnapshotStore(self.config.state_file)
        if publisher is None and self.config.broadcast_enabled:
            publisher = BroadcastPublisher(self.config.broadcast_dir)
        self._publisher = publisher
        self._clock = clock

        self._lock = threading.RLock()
        self._state = SystemState(
            producer_version=PRODUCER_VERSION,
            producer_pid=os.getpid(),
            producer_id=uuid.uuid4().hex,
        )

        self._running = False
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._write_failures = 0

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def producer_id(self) -> str:
        return self._state.producer_id

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def write_failures(self) -> int:
        return self._write_failures

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Prepare directories, publish a fresh snapshot for this producer
        instance and start the retention sweeper.

        Records left by a previous producer instance are discarded: in-flight
        operations are never resumed across a daemon restart.
        """
        if self._running:
            logger.warning("[OperationRegistry] Already running")
            return

        try:
            self.config.ensure_producer_directories()
        except OSError as e:
            logger.error(f"[OperationRegistry] Cannot create status directories: {e}")

        previous = self._store.load()
        with self._lock:
            self._stamp()
            self._persist()
            if previous.operations and previous.producer_id != self._state.producer_id:
                logger.info(
                    f"[OperationRegistry] Discarded {len(previous.operations)} operations "
                    f"from previous producer instance"
                )
                self._publish(StatusEvent(
                    operation_id="*",
                    action=EventAction.CLEANUP,
                    last_update=self._state.last_update,
                ))

        self._running = True
        self._stop_event.clear()
        if self.config.sweep_interval > 0:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                name="opstatus-retention",
                daemon=True,
            )
            self._sweeper.start()

        logger.info(f"[OperationRegistry] Started - snapshot: {self._store.path}")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5.0)
            self._sweeper = None
        if self._publisher is not None:
            self._publisher.close()
        logger.info("[OperationRegistry] Stopped")

    def __enter__(self) -> "OperationRegistry":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.config.sweep_interval):
            try:
                self.cleanup_stale_operations()
            except Exception as e:
                logger.error(f"[OperationRegistry] Retention sweep error: {e}")

    # =========================================================================
    # PRODUCER API
    # =========================================================================

    def start_operation(self, operation_id: str, label_name: str, app_name: str) -> Operation:
        """
        Start tracking an operation in status Idle.

        An existing record with the same id is replaced; nothing from the
        previous run survives.
        """
        with self._lock:
            timestamp = self._stamp()
            replaced = operation_id in self._state.operations
            operation = Operation(
                operation_id=operation_id,
                label_name=label_name,
                app_name=app_name,
                status=OperationStatus.IDLE,
                current_phase=OperationPhase(name="Ready", progress=0.0),
                overall_progress=0.0,
                start_time=timestamp,
                last_update=timestamp,
            )
            self._state.operations[operation_id] = operation
            self._commit(StatusEvent.for_update(operation))

        suffix = " (replacing previous run)" if replaced else ""
        logger.info(f"[OperationRegistry] Started tracking operation: {operation_id} ({app_name}){suffix}")
        return operation

    def update_operation(
        self,
        operation_id: str,
        status: Optional[OperationStatus] = None,
        phase_name: Optional[str] = None,
        phase_detail: Optional[str] = None,
        overall_progress: Optional[float] = None,
        *,
        phase_progress: Optional[float] = None,
        error_message: Optional[str] = None,
        estimated_time_remaining: Optional[float] = None,
    ) -> bool:
        """
        Transition status and phase of an operation.

        Args:
            operation_id: Operation to update
            status: New status; None keeps the current one
            phase_name: New phase name; a different name resets phase progress
            phase_detail: Detail message for the phase
            overall_progress: Overall completion, clamped to [0, 1], never lowered
            phase_progress: Progress within the phase, never lowered within one phase
            error_message: Error text, kept only when the status is Error
            estimated_time_remaining: Advisory ETA in seconds

        Returns:
            True if applied, False for unknown or terminal operations and
            invalid transitions
        """
        if status is not None:
            try:
                status = OperationStatus(status)
            except ValueError:
                logger.warning(f"[OperationRegistry] Unknown status for {operation_id}: {status!r}")
                return False

        with self._lock:
            current = self._state.operations.get(operation_id)
            if current is None:
                logger.warning(f"[OperationRegistry] Attempted to update unknown operation: {operation_id}")
                return False
            if current.status.is_terminal:
                logger.warning(
                    f"[OperationRegistry] Ignoring update for {operation_id}: "
                    f"already {current.status.value}"
                )
                return False
            if status is not None and not current.status.can_transition_to(status):
                logger.warning(
                    f"[OperationRegistry] Invalid transition for {operation_id}: "
                    f"{current.status.value} -> {status.value}"
                )
                return False

            new_status = status or current.status
            phase = current.current_phase
            if phase_name is not None and phase_name != phase.name:
                phase = OperationPhase(
                    name=phase_name,
                    progress=phase_progress if phase_progress is not None else 0.0,
                    detail=phase_detail,
                )
            else:
                progress = phase.progress
                if phase_progress is not None:
                    progress = max(progress, clamp_progress(phase_progress))
                phase = OperationPhase(
                    name=phase.name,
                    progress=progress,
                    detail=phase_detail if phase_detail is not None else phase.detail,
                )

            overall = current.overall_progress
            if overall_progress is not None:
                overall = max(overall, clamp_progress(overall_progress))

            if new_status is OperationStatus.ERROR:
                error = error_message or current.error_message or "Unknown error"
            else:
                error = None

            eta = estimated_time_remaining
            if eta is None and not new_status.is_terminal:
                eta = current.estimated_time_remaining
            if new_status.is_terminal:
                eta = None

            timestamp = self._stamp()
            operation = current.updated(
                status=new_status,
                current_phase=phase,
                overall_progress=overall,
                last_update=timestamp,
                error_message=error,
                estimated_time_remaining=eta,
            )
            self._state.operations[operation_id] = operation
            self._commit(StatusEvent.for_update(operation))

        if status is not None and status is not current.status:
            message = f"[OperationRegistry] Operation {operation_id}: {status.description}"
            if status is OperationStatus.ERROR:
                logger.error(f"{message} - {error}")
            else:
                logger.info(message)
        return True

    def update_download_progress(
        self,
        operation_id: str,
        downloaded_bytes: int,
        total_bytes: int,
        download_url: Optional[str] = None,
    ) -> bool:
        """Download phase; a non-positive total is indeterminate and leaves progress unchanged."""
        detail = None
        if download_url:
            detail = f"Downloading from {urlparse(download_url).hostname or download_url}"

        if total_bytes <= 0:
            return self.update_operation(
                operation_id,
                OperationStatus.DOWNLOADING,
                "Downloading",
                detail,
            )

        fraction = clamp_progress(downloaded_bytes / total_bytes)
        return self.update_operation(
            operation_id,
            OperationStatus.DOWNLOADING,
            "Downloading",
            detail,
            _in_band(DOWNLOAD_BAND, fraction),
            phase_progress=fraction,
        )

    def update_processing_progress(
        self,
        operation_id: str,
        processing_step: str,
        step_progress: float = 0.0,
    ) -> bool:
        fraction = clamp_progress(step_progress)
        return self.update_operation(
            operation_id,
            OperationStatus.PROCESSING,
            "Processing",
            processing_step,
            _in_band(PROCESSING_BAND, fraction),
            phase_progress=fraction,
        )

    def update_upload_progress(self, operation_id: str, uploaded_bytes: int, total_bytes: int) -> bool:
        """Upload phase; a non-positive total is indeterminate and leaves progress unchanged."""
        if total_bytes <= 0:
            return self.update_operation(operation_id, OperationStatus.UPLOADING, "Uploading")

        fraction = clamp_progress(uploaded_bytes / total_bytes)
        return self.update_operation(
            operation_id,
            OperationStatus.UPLOADING,
            "Uploading",
            None,
            _in_band(UPLOAD_BAND, fraction),
            phase_progress=fraction,
        )

    def complete_operation(self, operation_id: str) -> bool:
        return self.update_operation(
            operation_id,
            OperationStatus.COMPLETED,
            "Completed",
            "Operation completed successfully",
            1.0,
            phase_progress=1.0,
        )

    def fail_operation(self, operation_id: str, error_message: str) -> bool:
        return self.update_operation(
            operation_id,
            OperationStatus.ERROR,
            "Error",
            "Operation failed",
            phase_progress=0.0,
            error_message=error_message or "Unknown error",
        )

    def cancel_operation(self, operation_id: str) -> bool:
        return self.update_operation(
            operation_id,
            OperationStatus.CANCELLED,
            "Cancelled",
            "Operation was cancelled",
        )

    def remove_operation(self, operation_id: str) -> bool:
        """Delete a record and broadcast its removal."""
        with self._lock:
            if self._state.operations.pop(operation_id, None) is None:
                logger.debug(f"[OperationRegistry] Remove of unknown operation ignored: {operation_id}")
                return False
            timestamp = self._stamp()
            self._commit(StatusEvent.for_removal(operation_id, timestamp))

        logger.info(f"[OperationRegistry] Removed operation tracking: {operation_id}")
        return True

    # =========================================================================
    # RETENTION
    # =========================================================================

    def _ttl_for(self, status: OperationStatus) -> float:
        if status is OperationStatus.COMPLETED:
            return self.config.completed_ttl
        if status is OperationStatus.CANCELLED:
            return self.config.cancelled_ttl
        if status is OperationStatus.ERROR:
            return self.config.error_ttl
        return self.config.max_age

    def cleanup_stale_operations(self, now: Optional[float] = None) -> int:
        """Remove records older than their status TTL; returns the number removed."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                operation_id
                for operation_id, operation in self._state.operations.items()
                if now - operation.last_update > self._ttl_for(operation.status)
            ]
            if not expired:
                return 0
            self._remove_many(expired)
            kept = len(self._state.operations)

        logger.info(f"[OperationRegistry] Cleaned up {len(expired)} stale operations (kept {kept})")
        return len(expired)

    def clear_error_operations(self) -> int:
        with self._lock:
            failed = [
                operation_id
                for operation_id, operation in self._state.operations.items()
                if operation.status is OperationStatus.ERROR
            ]
            if not failed:
                return 0
            self._remove_many(failed)

        logger.info(f"[OperationRegistry] Cleared {len(failed)} error operations")
        return len(failed)

    def _remove_many(self, operation_ids: List[str]) -> None:
        for operation_id in operation_ids:
            del self._state.operations[operation_id]
        timestamp = self._stamp()
        self._persist()
        for operation_id in operation_ids:
            self._publish(StatusEvent.for_removal(operation_id, timestamp))

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        with self._lock:
            return self._state.operations.get(operation_id)

    def get_all_operations(self) -> Dict[str, Operation]:
        with self._lock:
            return dict(self._state.operations)

    def get_active_operation_count(self) -> int:
        with self._lock:
            return sum(1 for op in self._state.operations.values() if op.status.is_active)

    def snapshot(self) -> SystemState:
        """Consistent copy of the current state."""
        with self._lock:
            return self._state.copy()

    # =========================================================================
    # INTERNALS (call with the lock held)
    # =========================================================================

    def _stamp(self) -> float:
        timestamp = max(self._clock(), self._state.last_update + _MIN_TICK)
        self._state.last_update = timestamp
        return timestamp

    def _commit(self, event: StatusEvent) -> None:
        self._persist()
        self._publish(event)

    def _persist(self) -> None:
        try:
            self._store.save(self._state)
        except OSError as e:
            self._write_failures += 1
            logger.warning(f"[OperationRegistry] Failed to save status file {self._store.path}: {e}")

    def _publish(self, event: StatusEvent) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher.publish(event)
        except Exception as e:
            logger.warning(f"[OperationRegistry] Broadcast failed for {event.operation_id}: {e}")
