"""
Integration tests for the SDK client.

Tests cover:
- Request construction (paths, headers, query parameters)
- Mapping of error responses to SDK exceptions
- A round trip against the real HTTP application
"""

import json
import tempfile
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from backend.inventdb_server.api.http_server import ApiContext, create_http_app
from backend.inventdb_server.notify.notifier import ChangeNotifier
from backend.inventdb_server.snapshot.manager import SnapshotManager
from backend.inventdb_server.stats.aggregator import StatisticsAggregator
from backend.inventdb_server.store.collection_store import CollectionStore
from sdk.inventdb_sdk import (
    AccessDeniedError,
    ApiError,
    ConnectionError,
    InventClient,
    NotFoundError,
    SnapshotError,
    ValidationError,
)


def mock_client(handler, **kwargs):
    return InventClient(
        "http://inventdb.test", transport=httpx.MockTransport(handler), **kwargs
    )


class TestRequests:
    """Tests for how the client builds requests."""

    @pytest.mark.asyncio
    async def test_actor_and_role_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        async with mock_client(handler, actor="alice", role="admin") as db:
            await db.list("devices")

        assert seen[0].url.path == "/api/devices"
        assert seen[0].headers["X-Actor"] == "alice"
        assert seen[0].headers["X-Role"] == "admin"

    @pytest.mark.asyncio
    async def test_create_sends_json(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": "r1", **body})

        async with mock_client(handler) as db:
            record = await db.create("employees", {"name": "A", "department": "IT"})
        assert record == {"id": "r1", "name": "A", "department": "IT"}

    @pytest.mark.asyncio
    async def test_history_omits_unset_filters(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        async with mock_client(handler) as db:
            await db.history("devices", limit=5)

        params = dict(seen[0].url.params)
        assert params == {"collection": "devices", "limit": "5"}

    @pytest.mark.asyncio
    async def test_path_segments_are_quoted(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        async with mock_client(handler) as db:
            await db.get("devices", "a/b")

        assert seen[0].url.raw_path == b"/api/devices/a%2Fb"

    @pytest.mark.asyncio
    async def test_requires_connect(self):
        db = InventClient("http://inventdb.test")
        with pytest.raises(ConnectionError):
            await db.list("devices")

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with mock_client(handler) as db:
            with pytest.raises(ConnectionError, match="refused"):
                await db.stats()


class TestErrorMapping:
    """Tests for mapping error responses to exceptions."""

    @staticmethod
    def responder(status, body):
        def handler(request):
            return httpx.Response(status, json=body)

        return handler

    @pytest.mark.asyncio
    async def test_not_found(self):
        body = {
            "error": "devices not found: x",
            "error_code": "NOT_FOUND",
            "details": {"kind": "devices", "key": "x"},
        }
        async with mock_client(self.responder(404, body)) as db:
            with pytest.raises(NotFoundError) as exc_info:
                await db.get("devices", "x")
        assert exc_info.value.resource_type == "devices"
        assert exc_info.value.resource_id == "x"
        assert exc_info.value.message == "devices not found: x"

    @pytest.mark.asyncio
    async def test_validation(self):
        body = {
            "error": "Invalid devices record",
            "error_code": "VALIDATION_FAILED",
            "details": {"collection": "devices", "errors": ["Field 'model' is required"]},
        }
        async with mock_client(self.responder(400, body)) as db:
            with pytest.raises(ValidationError) as exc_info:
                await db.create("devices", {})
        assert exc_info.value.errors == ["Field 'model' is required"]

    @pytest.mark.asyncio
    async def test_access_denied(self):
        body = {"error": "Access denied", "error_code": "ACCESS_DENIED", "details": {"role": "user"}}
        async with mock_client(self.responder(403, body)) as db:
            with pytest.raises(AccessDeniedError) as exc_info:
                await db.create_backup()
        assert exc_info.value.role == "user"

    @pytest.mark.asyncio
    async def test_snapshot_corrupt(self):
        body = {"error": "bad", "error_code": "SNAPSHOT_CORRUPT", "details": {"name": None}}
        async with mock_client(self.responder(422, body)) as db:
            with pytest.raises(SnapshotError):
                await db.import_db({"devices": "x"})

    @pytest.mark.asyncio
    async def test_other_status(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        async with mock_client(handler) as db:
            with pytest.raises(ApiError) as exc_info:
                await db.stats()
        assert exc_info.value.status == 500
        assert exc_info.value.message == "HTTP 500"

    @pytest.mark.asyncio
    async def test_unhealthy_server_reports_body(self):
        body = {"healthy": False, "error": "disk I/O error"}
        async with mock_client(self.responder(503, body)) as db:
            assert await db.health() == body


class TestAgainstServer:
    """Round trip through the real aiohttp application."""

    @pytest_asyncio.fixture
    async def base_url(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            notifier = ChangeNotifier()
            store = CollectionStore(str(Path(tmpdir) / "data"), notifier=notifier)
            await store.initialize()
            ctx = ApiContext(
                store=store,
                snapshots=SnapshotManager(store, str(Path(tmpdir) / "backups")),
                notifier=notifier,
                aggregator=StatisticsAggregator(store),
            )
            server = TestServer(create_http_app(ctx))
            await server.start_server()
            try:
                yield str(server.make_url("")).rstrip("/")
            finally:
                await server.close()

    @pytest.mark.asyncio
    async def test_record_and_backup_flow(self, base_url):
        async with InventClient(base_url, actor="alice", role="admin") as db:
            item = await db.create(
                "storageItems", {"name": "Cable", "category": "Cables", "price": 2.0}
            )
            assert item["quantity"] == 0

            updated = await db.update("storageItems", item["id"], {"quantity": 10})
            assert updated["quantity"] == 10

            history = await db.history("storageItems", item["id"])
            assert [e["action"] for e in history] == ["update", "create"]
            assert history[0]["user"] == "alice"

            meta = await db.create_backup("flow")
            assert meta["name"] == "flow"

            await db.delete("storageItems", item["id"])
            with pytest.raises(NotFoundError):
                await db.get("storageItems", item["id"])

            await db.restore_backup("flow")
            restored = await db.get("storageItems", item["id"])
            assert restored["quantity"] == 10

            stats = await db.stats()
            assert stats["total_value"] == 20.0
            assert (await db.health())["healthy"] is True

    @pytest.mark.asyncio
    async def test_user_role_cannot_restore(self, base_url):
        async with InventClient(base_url) as db:
            with pytest.raises(AccessDeniedError):
                await db.restore_backup("anything")
