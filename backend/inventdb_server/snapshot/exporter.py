"""
Off-site export of snapshots to S3.

Every snapshot the manager creates can be copied to an S3 bucket (or a
MinIO endpoint) together with a small manifest, so the backup directory
is not the only copy.

S3 layout:
    s3://<bucket>/<prefix>/<name>.json
    s3://<bucket>/<prefix>/<name>.manifest.json

Manifest contains:
    - name, created_at, store_version
    - checksum: SHA-256 of the snapshot file
    - size_bytes
    - s3_key

Invariants:
    - The manifest is written after the snapshot body upload succeeds
    - Export failures never fail snapshot creation
"""

from __future__ import annotations

import json
import logging
from typing import Any

from aiobotocore.session import get_session

from ..config import S3Config

logger = logging.getLogger(__name__)


class S3SnapshotExporter:
    """Uploads snapshot files and manifests to S3.

    Example:
        >>> exporter = S3SnapshotExporter(config.s3)
        >>> await exporter.start()
        >>> await exporter.export(meta, body)
        >>> await exporter.stop()
    """

    def __init__(self, s3_config: S3Config) -> None:
        self.s3_config = s3_config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None
        self._export_count = 0
        self._failure_count = 0

    @property
    def started(self) -> bool:
        return self._s3_client is not None

    async def start(self) -> None:
        """Open the S3 client."""
        if self._s3_client is not None:
            return
        self._session = get_session()

        client_kwargs: dict[str, Any] = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info(
            "S3 snapshot export enabled",
            extra={"bucket": self.s3_config.bucket, "prefix": self.s3_config.snapshot_prefix},
        )

    async def stop(self) -> None:
        """Close the S3 client."""
        if self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    def key_for(self, name: str) -> str:
        return f"{self.s3_config.snapshot_prefix}/{name}.json"

    async def export(self, meta: Any, body: bytes) -> str:
        """Upload one snapshot body and its manifest.

        Args:
            meta: SnapshotMeta of the snapshot
            body: Snapshot file contents as written to the catalog

        Returns:
            S3 key of the uploaded snapshot

        Raises:
            RuntimeError: If the exporter has not been started
        """
        if self._s3_client is None:
            raise RuntimeError("S3 exporter not started")

        s3_key = self.key_for(meta.name)
        await self._s3_client.put_object(
            Bucket=self.s3_config.bucket,
            Key=s3_key,
            Body=body,
            ContentType="application/json",
        )

        manifest = {
            "name": meta.name,
            "created_at": meta.created_at,
            "store_version": meta.store_version,
            "checksum": meta.checksum,
            "size_bytes": meta.size,
            "s3_key": s3_key,
        }
        await self._s3_client.put_object(
            Bucket=self.s3_config.bucket,
            Key=f"{self.s3_config.snapshot_prefix}/{meta.name}.manifest.json",
            Body=json.dumps(manifest, indent=2).encode("utf-8"),
            ContentType="application/json",
        )

        self._export_count += 1
        logger.info(
            "Exported snapshot",
            extra={"snapshot": meta.name, "s3_key": s3_key, "size_bytes": meta.size},
        )
        return s3_key

    async def export_best_effort(self, meta: Any, body: bytes) -> str | None:
        """Export, logging instead of raising on failure."""
        try:
            return await self.export(meta, body)
        except Exception as e:
            self._failure_count += 1
            logger.error(f"Failed to export snapshot {meta.name}: {e}", exc_info=True)
            return None

    def stats(self) -> dict[str, Any]:
        return {
            "exports": self._export_count,
            "failures": self._failure_count,
            "bucket": self.s3_config.bucket,
        }
