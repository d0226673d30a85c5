"""
OpStatus - Cross-Process Operation Status Synchronization
=========================================================

A privileged daemon tracks long-running install operations
(download -> process -> upload) and GUI clients in other processes
observe them in near real time.

Producer side:
    OperationRegistry  - single source of truth, writes snapshots, broadcasts deltas
    StatusDaemon       - registry + optional read-only HTTP endpoint

Consumer side:
    StatusClient       - cached view merged from broadcast, file watch and poll
"""
from __future__ import annotations

import logging

from ._version import PRODUCER_VERSION, __version__

__author__ = "OpStatus Team"

logger = logging.getLogger(__name__)

from .core.config import StatusSyncConfig  # noqa: E402
from .core.models import (  # noqa: E402
    Operation,
    OperationPhase,
    OperationStatus,
    StatusEvent,
    SystemState,
)
from .core.registry import OperationRegistry  # noqa: E402
from .clients.status_client import StatusChange, StatusClient, UpdateSource  # noqa: E402
from .daemon import StatusDaemon  # noqa: E402

__all__ = [
    "__version__",
    "PRODUCER_VERSION",
    "StatusSyncConfig",
    "Operation",
    "OperationPhase",
    "OperationStatus",
    "StatusEvent",
    "SystemState",
    "OperationRegistry",
    "StatusClient",
    "StatusChange",
    "UpdateSource",
    "StatusDaemon",
]
