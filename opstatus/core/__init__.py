"""
OpStatus Core
=============

Shared model, configuration and the producer-side building blocks:
snapshot store, broadcast channel and operation registry.
"""

from .broadcast import BroadcastPublisher, BroadcastSubscriber
from .config import StatusSyncConfig, default_status_dir
from .models import (
    EventAction,
    Operation,
    OperationPhase,
    OperationStatus,
    SnapshotDecodeError,
    StatusEvent,
    SystemState,
)
from .registry import OperationRegistry
from .snapshot_store import SnapshotStore

__all__ = [
    "BroadcastPublisher",
    "BroadcastSubscriber",
    "EventAction",
    "Operation",
    "OperationPhase",
    "OperationRegistry",
    "OperationStatus",
    "SnapshotDecodeError",
    "SnapshotStore",
    "StatusEvent",
    "StatusSyncConfig",
    "SystemState",
    "default_status_dir",
]
