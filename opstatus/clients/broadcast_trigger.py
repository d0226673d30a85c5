"""
Broadcast Trigger
=================

Adapts ``BroadcastSubscriber`` to the trigger lifecycle so the client can
start and stop push delivery alongside the watcher and the poller.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from ..core.broadcast import BroadcastSubscriber, EventCallback
from .base import UpdateTrigger


class BroadcastTrigger(UpdateTrigger):
    name = "broadcast"

    def __init__(self, broadcast_dir: Path, on_event: EventCallback):
        self._subscriber = BroadcastSubscriber(broadcast_dir, on_event)

    @property
    def is_active(self) -> bool:
        return self._subscriber.is_listening

    @property
    def socket_path(self) -> Optional[Path]:
        return self._subscriber.socket_path

    @property
    def received_count(self) -> int:
        return self._subscriber.received_count

    async def start(self) -> bool:
        return await self._subscriber.start()

    async def stop(self) -> None:
        await self._subscriber.stop()
