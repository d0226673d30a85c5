"""
Status Client
=============

Consumer-side facade over the producer's operation status.

Three independent triggers feed one merge point:

    ┌───────────────────┐
    │ BroadcastTrigger  │──── delta ────► apply_event() ──┐
    ├───────────────────┤                                 │
    │ ChangeWatcher     │──┐                              ▼
    ├───────────────────┤  ├── request_reload() ──► reconcile() ──► subscribers
    │ PollFallback      │──┘    (coalesced)
    └───────────────────┘

Merge rules:
    - a snapshot whose lastUpdate is not newer than the last one merged is
      skipped, unless it was written by a different producer instance
    - a cached record from the same run that is newer than the snapshot's
      copy (it came from a broadcast delta) is kept
    - ids evicted by a ``removed`` event are not resurrected by a snapshot
      that predates the removal
    - an update delta for an unknown id or a different run triggers a
      reload instead of synthesizing a record

Views expose records of a dead producer (or active records that have not
moved for ``stale_after`` seconds) as Error / "Abandoned".

Usage:
    client = StatusClient(config)
    unsubscribe = client.subscribe(lambda change: print(client.status_summary))
    await client.start()
    ...
    await client.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import psutil

from ..core.config import StatusSyncConfig
from ..core.models import (
    EventAction,
    Operation,
    OperationPhase,
    OperationStatus,
    StatusEvent,
    SystemState,
)
from ..core.snapshot_store import SnapshotStore
from .base import UpdateTrigger
from .broadcast_trigger import BroadcastTrigger
from .change_watcher import ChangeWatcher
from .poll_fallback import PollFallback

logger = logging.getLogger(__name__)

ABANDONED_PHASE = "Abandoned"


class UpdateSource(str, Enum):
    """How an update reached the client."""
    BROADCAST = "broadcast"
    WATCHER = "watcher"
    POLL = "poll"
    INITIAL = "initial"
    MANUAL = "manual"


@dataclass(frozen=True)
class StatusChange:
    """Passed to subscribers after every effective change."""
    source: UpdateSource
    changed_ids: Tuple[str, ...] = ()
    removed_ids: Tuple[str, ...] = ()
    timestamp: float = 0.0


ChangeCallback = Callable[[StatusChange], Union[None, Awaitable[None]]]


class StatusClient:
    """
    Cached, reactive view of the producer's operations.

    ``reconcile`` and ``apply_event`` may be called from any thread; views
    are consistent copies. Subscribers are always called on the client's
    event loop.
    """

    def __init__(
        self,
        config: Optional[StatusSyncConfig] = None,
        store: Optional[SnapshotStore] = None,
        clock: Callable[[], float] = time.time,
        pid_exists: Callable[[int], bool] = psutil.pid_exists,
    ):
        self.config = config or StatusSyncConfig()
        self._store = store or SnapshotStore(self.config.state_file)
        self._clock = clock
        self._pid_exists = pid_exists

        self._lock = threading.RLock()
        self._operations: Dict[str, Operation] = {}
        self._tombstones: Dict[str, float] = {}
        self._snapshot_time = 0.0
        self._last_update = 0.0
        self._producer_id = ""
        self._producer_pid: Optional[int] = None
        self._producer_alive = True

        self._subscribers: List[ChangeCallback] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False
        self._triggers: List[UpdateTrigger] = []
        self._watcher: Optional[ChangeWatcher] = None
        self._reload_task: Optional[asyncio.Task] = None
        self._reload_pending: Optional[UpdateSource] = None
        self._callback_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def is_monitoring(self) -> bool:
        return self._running

    @property
    def triggers(self) -> List[UpdateTrigger]:
        return list(self._triggers)

    async def start(self) -> None:
        """Subscribe to every enabled trigger and load the current snapshot."""
        if self._running:
            logger.warning("[StatusClient] Already monitoring")
            return

        self._loop = asyncio.get_running_loop()
        self._running = True

        # Push channels first so nothing published during the initial load is missed
        if self.config.broadcast_enabled:
            self._triggers.append(BroadcastTrigger(self.config.broadcast_dir, self._on_broadcast_event))
        if self.config.watcher_enabled:
            self._watcher = ChangeWatcher(self.config.state_file, self._on_file_changed)
            self._triggers.append(self._watcher)
        for trigger in self._triggers:
            active = await trigger.start()
            logger.debug(f"[StatusClient] Trigger {trigger.name}: {'active' if active else 'unavailable'}")

        await self.reload(UpdateSource.INITIAL)

        if self.config.poll_enabled:
            poller = PollFallback(self.config.poll_interval, self._on_poll_tick)
            await poller.start()
            self._triggers.append(poller)

        active_names = [trigger.name for trigger in self._triggers if trigger.is_active]
        logger.info(
            f"[StatusClient] Monitoring {self.config.state_file} "
            f"via {', '.join(active_names) or 'manual reloads only'}"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        for trigger in reversed(self._triggers):
            try:
                await trigger.stop()
            except Exception as e:
                logger.error(f"[StatusClient] Error stopping {trigger.name}: {e}")
        self._triggers = []
        self._watcher = None

        if self._reload_task is not None:
            self._reload_task.cancel()
            try:
                await self._reload_task
            except asyncio.CancelledError:
                pass
            self._reload_task = None
        self._reload_pending = None

        logger.info("[StatusClient] Stopped monitoring")

    async def __aenter__(self) -> "StatusClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """
        Register ``callback`` for every effective change.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, change: StatusChange) -> None:
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        if loop is None or loop.is_closed():
            self._deliver(change)
            return
        loop.call_soon_threadsafe(self._deliver, change)

    def _deliver(self, change: StatusChange) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                result = callback(change)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(self._await_subscriber(result))
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._callback_tasks.discard)
            except Exception as e:
                logger.error(f"[StatusClient] Subscriber error: {e}")

    @staticmethod
    async def _await_subscriber(result: Awaitable[None]) -> None:
        try:
            await result
        except Exception as e:
            logger.error(f"[StatusClient] Subscriber error: {e}")

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def reconcile(self, state: SystemState, source: UpdateSource = UpdateSource.MANUAL) -> bool:
        """
        Merge a freshly loaded snapshot into the cache.

        Returns:
            True if any record was added, changed or removed
        """
        if not state.producer_id and not state.operations and state.last_update == 0.0:
            # No snapshot on disk (yet); keep whatever we have
            return False

        with self._lock:
            producer_changed = state.producer_id != self._producer_id
            if state.last_update <= self._snapshot_time and not producer_changed:
                return False

            if producer_changed:
                if self._producer_id:
                    logger.info(f"[StatusClient] New producer instance {state.producer_id[:8]}")
                self._tombstones.clear()
                self._producer_id = state.producer_id
                self._producer_pid = state.producer_pid
                self._producer_alive = self._check_pid(state.producer_pid)

            merged: Dict[str, Operation] = {}
            for operation_id, incoming in state.operations.items():
                removed_at = self._tombstones.get(operation_id)
                if removed_at is not None:
                    if incoming.start_time <= removed_at:
                        continue
                    del self._tombstones[operation_id]

                cached = self._operations.get(operation_id)
                if (
                    cached is not None
                    and cached.same_run(incoming)
                    and cached.last_update > incoming.last_update
                ):
                    merged[operation_id] = cached
                else:
                    merged[operation_id] = incoming

            # Tombstones older than this snapshot are covered by it
            self._tombstones = {
                operation_id: removed_at
                for operation_id, removed_at in self._tombstones.items()
                if removed_at > state.last_update
            }

            changed = tuple(
                operation_id
                for operation_id, operation in merged.items()
                if self._operations.get(operation_id) != operation
            )
            removed = tuple(operation_id for operation_id in self._operations if operation_id not in merged)

            self._operations = merged
            self._snapshot_time = state.last_update
            if producer_changed:
                self._last_update = state.last_update
            else:
                self._last_update = max(self._last_update, state.last_update)

        if not changed and not removed:
            return False

        logger.debug(
            f"[StatusClient] Reconciled from {source.value}: "
            f"{len(changed)} changed, {len(removed)} removed"
        )
        self._emit(StatusChange(source, changed, removed, self._clock()))
        return True

    def apply_event(self, event: StatusEvent, source: UpdateSource = UpdateSource.BROADCAST) -> bool:
        """
        Apply one broadcast delta.

        Returns:
            True if the cache changed immediately; False if the event was
            stale or a reload was requested instead
        """
        operation_id = event.operation_id

        if event.action is EventAction.REMOVED:
            with self._lock:
                existed = self._operations.pop(operation_id, None) is not None
                removed_at = event.last_update if event.last_update is not None else self._clock()
                self._tombstones[operation_id] = max(removed_at, self._tombstones.get(operation_id, 0.0))
                self._last_update = max(self._last_update, removed_at)
            if not existed:
                return False
            logger.debug(f"[StatusClient] Evicted {operation_id} ({source.value})")
            self._emit(StatusChange(source, (), (operation_id,), self._clock()))
            return True

        if event.action is EventAction.CLEANUP:
            self.request_reload(source)
            return False

        with self._lock:
            cached = self._operations.get(operation_id)
            same_run = cached is not None and (
                event.start_time is None or event.start_time == cached.start_time
            )
            if same_run:
                if event.last_update is not None and event.last_update <= cached.last_update:
                    return False
                updated = event.apply_to(cached)
                self._operations[operation_id] = updated
                self._last_update = max(self._last_update, updated.last_update)

        if not same_run:
            # A partial delta cannot build labelName/appName/startTime
            self.request_reload(source)
            return False

        self._emit(StatusChange(source, (operation_id,), (), self._clock()))
        return True

    async def reload(self, source: UpdateSource = UpdateSource.MANUAL) -> bool:
        """Load the snapshot and reconcile it; never raises for I/O or decode problems."""
        state = await self._store.load_async()
        return self.reconcile(state, source)

    def request_reload(self, source: UpdateSource) -> Optional[asyncio.Task]:
        """
        Schedule a reload on the client loop, coalescing concurrent requests:
        at most one reload runs and at most one more is queued.

        Safe to call from any thread; returns the reload task when called on
        the loop. Requests arriving while the client is not monitoring,
        including thread hops queued before ``stop()``, are dropped.
        """
        if not self._running:
            logger.debug(f"[StatusClient] Reload from {source.value} dropped: not monitoring")
            return None

        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is None or (loop is not None and running is not loop):
            if loop is None or loop.is_closed():
                logger.debug(f"[StatusClient] Reload from {source.value} dropped: no event loop")
                return None
            loop.call_soon_threadsafe(self.request_reload, source)
            return None

        if self._reload_task is not None and not self._reload_task.done():
            self._reload_pending = source
            return self._reload_task

        self._reload_task = running.create_task(self._reload_worker(source))
        return self._reload_task

    async def _reload_worker(self, source: UpdateSource) -> None:
        while True:
            try:
                await self.reload(source)
            except Exception as e:
                logger.error(f"[StatusClient] Reload from {source.value} failed: {e}")
            if self._reload_pending is None:
                return
            source, self._reload_pending = self._reload_pending, None

    # =========================================================================
    # TRIGGER HANDLERS
    # =========================================================================

    def _on_broadcast_event(self, event: StatusEvent) -> None:
        self.apply_event(event, UpdateSource.BROADCAST)

    def _on_file_changed(self) -> None:
        self.request_reload(UpdateSource.WATCHER)

    async def _on_poll_tick(self) -> None:
        if self._watcher is not None:
            self._watcher.ensure_watching()
        self.refresh_producer_liveness()
        task = self.request_reload(UpdateSource.POLL)
        if task is not None:
            await task

    # =========================================================================
    # ABANDONMENT
    # =========================================================================

    def _check_pid(self, pid: Optional[int]) -> bool:
        if pid is None:
            return True
        try:
            return bool(self._pid_exists(pid))
        except Exception as e:
            logger.debug(f"[StatusClient] Cannot check producer pid {pid}: {e}")
            return True

    @property
    def producer_alive(self) -> bool:
        return self._producer_alive

    def refresh_producer_liveness(self) -> bool:
        """Re-check the producer process; notifies subscribers when it died or came back."""
        with self._lock:
            alive = self._check_pid(self._producer_pid)
            if alive == self._producer_alive:
                return alive
            self._producer_alive = alive
            affected = tuple(
                operation_id
                for operation_id, operation in self._operations.items()
                if not operation.status.is_terminal
            )

        if alive:
            logger.info("[StatusClient] Producer is running again")
        else:
            logger.warning(f"[StatusClient] Producer process {self._producer_pid} is gone")
        if affected:
            self._emit(StatusChange(UpdateSource.POLL, affected, (), self._clock()))
        return alive

    def _present(self, operation: Operation, now: float) -> Operation:
        if operation.status.is_terminal:
            return operation
        if not self._producer_alive:
            reason = f"Daemon process {self._producer_pid} is no longer running"
        elif (
            operation.status.is_active
            and self.config.stale_after > 0
            and now - operation.last_update > self.config.stale_after
        ):
            reason = f"No progress reported for {int(now - operation.last_update)}s"
        else:
            return operation

        return operation.updated(
            status=OperationStatus.ERROR,
            current_phase=OperationPhase(
                name=ABANDONED_PHASE,
                progress=operation.current_phase.progress,
                detail=operation.current_phase.detail,
            ),
            error_message=reason,
            estimated_time_remaining=None,
        )

    def _presented(self) -> List[Operation]:
        now = self._clock()
        with self._lock:
            operations = list(self._operations.values())
        return [self._present(operation, now) for operation in operations]

    # =========================================================================
    # VIEWS
    # =========================================================================

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        with self._lock:
            operation = self._operations.get(operation_id)
        if operation is None:
            return None
        return self._present(operation, self._clock())

    def get_active_operations(self) -> List[Operation]:
        """Active operations, oldest first."""
        active = [operation for operation in self._presented() if operation.status.is_active]
        return sorted(active, key=lambda operation: operation.start_time)

    def get_all_operations(self) -> List[Operation]:
        """Every cached operation, most recently updated first."""
        return sorted(self._presented(), key=lambda operation: operation.last_update, reverse=True)

    @property
    def operations(self) -> Dict[str, Operation]:
        now = self._clock()
        with self._lock:
            return {
                operation_id: self._present(operation, now)
                for operation_id, operation in self._operations.items()
            }

    @property
    def active_operation_count(self) -> int:
        return len(self.get_active_operations())

    @property
    def has_active_operations(self) -> bool:
        return self.active_operation_count > 0

    @property
    def most_recent_operation(self) -> Optional[Operation]:
        operations = self._presented()
        if not operations:
            return None
        return max(operations, key=lambda operation: operation.last_update)

    @property
    def status_summary(self) -> str:
        active = self.get_active_operations()
        if not active:
            return "No active operations"
        if len(active) == 1:
            operation = active[0]
            return f"{operation.app_name}: {operation.status.description} ({operation.progress_percentage})"
        return f"{len(active)} operations running"

    @property
    def last_update(self) -> float:
        """Producer timestamp of the newest change merged into the cache."""
        return self._last_update

    @property
    def snapshot_time(self) -> float:
        return self._snapshot_time
