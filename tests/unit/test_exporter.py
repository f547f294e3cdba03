"""
Unit tests for the S3 snapshot exporter.

The aiobotocore client is replaced with a mock; no network access.
"""

import json
from unittest.mock import AsyncMock

import pytest

from backend.inventdb_server.config import S3Config
from backend.inventdb_server.snapshot.exporter import S3SnapshotExporter
from backend.inventdb_server.snapshot.manager import SnapshotMeta


@pytest.fixture
def body():
    return b'{"data": {}}'


@pytest.fixture
def meta():
    return SnapshotMeta(name="snap", created_at=1000, size=12, checksum="abc", store_version=4)


@pytest.fixture
def exporter():
    exporter = S3SnapshotExporter(S3Config(enabled=True, bucket="bucket", snapshot_prefix="inv"))
    exporter._s3_client = AsyncMock()
    return exporter


class TestS3SnapshotExporter:
    """Tests for S3SnapshotExporter."""

    def test_key_for(self, exporter):
        assert exporter.key_for("snap") == "inv/snap.json"

    @pytest.mark.asyncio
    async def test_export_uploads_body_then_manifest(self, exporter, meta, body):
        key = await exporter.export(meta, body)
        assert key == "inv/snap.json"

        calls = exporter._s3_client.put_object.await_args_list
        assert len(calls) == 2
        assert calls[0].kwargs["Key"] == "inv/snap.json"
        assert calls[0].kwargs["Body"] == b'{"data": {}}'
        assert calls[1].kwargs["Key"] == "inv/snap.manifest.json"

        manifest = json.loads(calls[1].kwargs["Body"])
        assert manifest["checksum"] == "abc"
        assert manifest["store_version"] == 4
        assert manifest["s3_key"] == "inv/snap.json"
        assert exporter.stats()["exports"] == 1

    @pytest.mark.asyncio
    async def test_manifest_not_written_when_body_fails(self, exporter, meta, body):
        exporter._s3_client.put_object.side_effect = RuntimeError("denied")
        with pytest.raises(RuntimeError):
            await exporter.export(meta, body)
        assert exporter._s3_client.put_object.await_count == 1

    @pytest.mark.asyncio
    async def test_best_effort_swallows_failure(self, exporter, meta, body):
        exporter._s3_client.put_object.side_effect = RuntimeError("denied")
        assert await exporter.export_best_effort(meta, body) is None
        assert exporter.stats()["failures"] == 1

    @pytest.mark.asyncio
    async def test_export_requires_start(self, meta, body):
        exporter = S3SnapshotExporter(S3Config(enabled=True))
        assert not exporter.started
        with pytest.raises(RuntimeError, match="not started"):
            await exporter.export(meta, body)
