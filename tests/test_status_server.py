"""
Test Suite for the Status HTTP Endpoint
=======================================

Read-only aiohttp routes served from a live registry.
"""

import pytest
from aiohttp import test_utils

from opstatus.api.status_server import StatusServer, create_status_app
from opstatus.core.models import OperationStatus


class TestStatusRoutes:

    @pytest.fixture
    def app(self, registry):
        return create_status_app(registry)

    @pytest.mark.asyncio
    async def test_health(self, app):
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            response = await client.get("/health")
            assert response.status == 200
            body = await response.json()
            assert body["status"] == "ok"
            assert body["service"] == "opstatus"
            assert "uptime_seconds" in body

    @pytest.mark.asyncio
    async def test_operations_snapshot_and_etag(self, app, registry):
        registry.start_operation("fx_1", "firefox", "Firefox")
        registry.update_download_progress("fx_1", 1, 2)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            response = await client.get("/api/operations")
            assert response.status == 200
            body = await response.json()
            assert body["operations"]["fx_1"]["status"] == "downloading"
            assert body["producerId"] == registry.producer_id
            etag = response.headers["ETag"]

            cached = await client.get("/api/operations", headers={"If-None-Match": etag})
            assert cached.status == 304

            registry.complete_operation("fx_1")
            changed = await client.get("/api/operations", headers={"If-None-Match": etag})
            assert changed.status == 200
            assert changed.headers["ETag"] != etag
            assert (await changed.json())["operations"]["fx_1"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_active_operations_oldest_first(self, app, registry):
        registry.start_operation("first", "first", "First")
        registry.start_operation("second", "second", "Second")
        registry.start_operation("done", "done", "Done")
        registry.update_operation("second", OperationStatus.UPLOADING, "Uploading")
        registry.update_operation("first", OperationStatus.PROCESSING, "Processing")
        registry.complete_operation("done")

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            response = await client.get("/api/operations/active")
            body = await response.json()
            assert [op["operationId"] for op in body["operations"]] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_single_operation(self, app, registry):
        registry.start_operation("fx_1", "firefox", "Firefox")

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            response = await client.get("/api/operations/fx_1")
            assert response.status == 200
            assert (await response.json())["appName"] == "Firefox"

            missing = await client.get("/api/operations/ghost")
            assert missing.status == 404
            assert (await missing.json())["error"] == "not_found"


class TestStatusServer:

    @pytest.mark.asyncio
    async def test_start_and_stop_on_ephemeral_port(self, registry):
        server = StatusServer(registry, "127.0.0.1", 0)
        await server.start()
        try:
            assert server.is_running
            assert server.bound_port
        finally:
            await server.stop()
        assert not server.is_running
        assert server.bound_port is None
        await server.stop()
