"""
Status HTTP Endpoint
====================

Read-only aiohttp view of the producer's registry for tooling that cannot
read the snapshot file or bind a broadcast socket.

Endpoints:
    GET /health                        - liveness
    GET /api/operations                - full snapshot (ETag / 304 support)
    GET /api/operations/active         - active operations, oldest first
    GET /api/operations/{operation_id} - one operation or 404

Mutation only happens through the in-process ``OperationRegistry``.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from aiohttp import web

from .._version import __version__
from ..core.registry import OperationRegistry

logger = logging.getLogger(__name__)

REGISTRY_KEY = web.AppKey("registry", OperationRegistry)
STARTED_AT_KEY = web.AppKey("started_at", float)


def _etag(last_update: float) -> str:
    return f'"{last_update:.6f}"'


async def health_check(request: web.Request) -> web.Response:
    """Fast liveness check; does not touch the registry lock."""
    uptime = time.time() - request.app[STARTED_AT_KEY]
    return web.json_response({
        "status": "ok",
        "service": "opstatus",
        "version": __version__,
        "uptime_seconds": round(uptime, 2),
    })


async def get_operations(request: web.Request) -> web.Response:
    """Full snapshot with ETag caching."""
    state = request.app[REGISTRY_KEY].snapshot()
    current_etag = _etag(state.last_update)

    if request.headers.get("If-None-Match") == current_etag:
        return web.Response(status=304, headers={"ETag": current_etag})

    return web.json_response(
        state.to_dict(),
        headers={
            "ETag": current_etag,
            "Cache-Control": "no-cache",
        },
    )


async def get_active_operations(request: web.Request) -> web.Response:
    operations = request.app[REGISTRY_KEY].get_all_operations().values()
    active = sorted(
        (operation for operation in operations if operation.status.is_active),
        key=lambda operation: operation.start_time,
    )
    return web.json_response({"operations": [operation.to_dict() for operation in active]})


async def get_operation(request: web.Request) -> web.Response:
    operation_id = request.match_info["operation_id"]
    operation = request.app[REGISTRY_KEY].get_operation(operation_id)
    if operation is None:
        return web.json_response({"error": "not_found", "operationId": operation_id}, status=404)
    return web.json_response(operation.to_dict())


def create_status_app(registry: OperationRegistry) -> web.Application:
    app = web.Application()
    app[REGISTRY_KEY] = registry
    app[STARTED_AT_KEY] = time.time()

    app.router.add_get("/health", health_check)
    app.router.add_get("/api/operations", get_operations)
    # Registered before the catch-all id route
    app.router.add_get("/api/operations/active", get_active_operations)
    app.router.add_get("/api/operations/{operation_id}", get_operation)
    return app


class StatusServer:
    """
    Runs the status app on ``host:port``.

    Usage:
        server = StatusServer(registry, "127.0.0.1", 8765)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, registry: OperationRegistry, host: str = "127.0.0.1", port: int = 8765):
        self.registry = registry
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual port, useful when started with port 0."""
        if self._runner is None:
            return None
        for address in self._runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return address[1]
        return None

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(create_status_app(self.registry), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info(f"[StatusServer] Serving on http://{self.host}:{self.bound_port or self.port}")

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info("[StatusServer] Stopped")
