"""
Update Triggers
===============

The status client learns about producer changes through independent,
overlapping mechanisms. Each one is a trigger with the same lifecycle;
none of them merges state itself, they all funnel into
``StatusClient.reconcile``.

    BroadcastTrigger  - push deltas over the broadcast channel
    ChangeWatcher     - snapshot file write events
    PollFallback      - fixed-interval reload
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class UpdateTrigger(ABC):
    """Lifecycle shared by every delivery mechanism."""

    name: str = "trigger"

    @abstractmethod
    async def start(self) -> bool:
        """Begin delivering; returns False if the mechanism is unavailable."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering. Idempotent."""

    @property
    @abstractmethod
    def is_active(self) -> bool:
        ...

    def __repr__(self) -> str:
        state = "active" if self.is_active else "inactive"
        return f"<{type(self).__name__} {self.name} {state}>"
