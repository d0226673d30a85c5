"""
OpStatus Clients
================

Consumer side: the status client facade and the triggers that feed it.
"""

from .base import UpdateTrigger
from .broadcast_trigger import BroadcastTrigger
from .change_watcher import ChangeWatcher
from .poll_fallback import PollFallback
from .status_client import StatusChange, StatusClient, UpdateSource

__all__ = [
    "BroadcastTrigger",
    "ChangeWatcher",
    "PollFallback",
    "StatusChange",
    "StatusClient",
    "UpdateSource",
    "UpdateTrigger",
]
