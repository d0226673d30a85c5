"""
Status Daemon
=============

Producer-side service: owns the ``OperationRegistry`` (snapshot writes,
broadcasts, retention sweeper) and, when enabled, the read-only HTTP
endpoint.

Work-performing code in the daemon process reports through
``daemon.registry``.

Usage:
    daemon = StatusDaemon(config)
    await daemon.start()
    daemon.registry.start_operation("firefox_1", "firefox", "Firefox")
    ...
    await daemon.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .api.status_server import StatusServer
from .core.config import StatusSyncConfig
from .core.registry import OperationRegistry

logger = logging.getLogger(__name__)


class StatusDaemon:
    def __init__(
        self,
        config: Optional[StatusSyncConfig] = None,
        registry: Optional[OperationRegistry] = None,
    ):
        self.config = config or StatusSyncConfig()
        self.registry = registry or OperationRegistry(self.config)
        self.server: Optional[StatusServer] = None
        self._running = False
        self._stopped = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("[StatusDaemon] Already running")
            return

        # Directory setup and the first snapshot write are blocking file I/O
        await asyncio.get_running_loop().run_in_executor(None, self.registry.start)

        if self.config.http_enabled:
            server = StatusServer(self.registry, self.config.http_host, self.config.http_port)
            try:
                await server.start()
                self.server = server
            except OSError as e:
                logger.error(
                    f"[StatusDaemon] HTTP endpoint unavailable on "
                    f"{self.config.http_host}:{self.config.http_port}: {e}"
                )

        self._running = True
        self._stopped.clear()
        logger.info(f"[StatusDaemon] Started (producer {self.registry.producer_id[:8]})")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self.server is not None:
            await self.server.stop()
            self.server = None
        await asyncio.get_running_loop().run_in_executor(None, self.registry.stop)

        self._stopped.set()
        logger.info("[StatusDaemon] Stopped")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def __aenter__(self) -> "StatusDaemon":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
