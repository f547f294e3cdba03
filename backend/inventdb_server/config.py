"""
Configuration management for InventDB Server.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages
    - Configuration objects are immutable once loaded

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the SQLite database
        db_filename: Database file name inside data_dir
        wal_mode: SQLite WAL journal mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        history_limit: Default window for audit log queries
        reject_noop_updates: Fail updates that change nothing
    """

    data_dir: str = "./data"
    db_filename: str = "inventory.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    history_limit: int = 100
    reject_noop_updates: bool = False

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "./data"),
            db_filename=os.getenv("DB_FILENAME", "inventory.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            history_limit=int(os.getenv("HISTORY_LIMIT", "100")),
            reject_noop_updates=_env_bool("REJECT_NOOP_UPDATES", "false"),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Snapshot catalog configuration.

    Attributes:
        backup_dir: Directory holding snapshot JSON files
        max_snapshots: Retention limit (N most recent kept)
        pre_import_backup: Snapshot the live store before a bulk import
        auto_enabled: Whether periodic automatic backups run
        auto_interval_seconds: Interval between automatic backups
    """

    backup_dir: str = "./backups"
    max_snapshots: int = 10
    pre_import_backup: bool = True
    auto_enabled: bool = True
    auto_interval_seconds: int = 3 * 24 * 3600

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            backup_dir=os.getenv("BACKUP_DIR", "./backups"),
            max_snapshots=int(os.getenv("BACKUP_MAX_SNAPSHOTS", "10")),
            pre_import_backup=_env_bool("BACKUP_PRE_IMPORT", "true"),
            auto_enabled=_env_bool("BACKUP_AUTO_ENABLED", "true"),
            auto_interval_seconds=int(
                os.getenv("BACKUP_AUTO_INTERVAL_SECONDS", str(3 * 24 * 3600))
            ),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for off-site snapshot export.

    Attributes:
        enabled: Whether created snapshots are uploaded
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        snapshot_prefix: Key prefix for uploaded snapshots
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    enabled: bool = False
    bucket: str = "inventdb-backups"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    snapshot_prefix: str = "snapshots"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("S3_EXPORT_ENABLED", "false"),
            bucket=os.getenv("S3_BUCKET", "inventdb-backups"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            snapshot_prefix=os.getenv("S3_SNAPSHOT_PREFIX", "snapshots"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")
    ws_heartbeat_seconds: float = 25.0

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "3001")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            ws_heartbeat_seconds=float(os.getenv("WS_HEARTBEAT_SECONDS", "25")),
        )


@dataclass(frozen=True)
class NotifierConfig:
    """Change notifier configuration.

    Attributes:
        queue_size: Per-subscriber buffer; overflowing subscribers are closed
    """

    queue_size: int = 1000

    @classmethod
    def from_env(cls) -> NotifierConfig:
        """Load configuration from environment variables."""
        return cls(queue_size=int(os.getenv("NOTIFIER_QUEUE_SIZE", "1000")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Local storage configuration
        backup: Snapshot catalog configuration
        s3: Off-site export configuration
        http: HTTP server configuration
        notifier: Change notifier configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    s3: S3Config = field(default_factory=S3Config)
    http: HttpConfig = field(default_factory=HttpConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            backup=BackupConfig.from_env(),
            s3=S3Config.from_env(),
            http=HttpConfig.from_env(),
            notifier=NotifierConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.backup.max_snapshots < 1:
            raise ValueError("BACKUP_MAX_SNAPSHOTS must be at least 1")
        if self.backup.auto_enabled and self.backup.auto_interval_seconds <= 0:
            raise ValueError("BACKUP_AUTO_INTERVAL_SECONDS must be positive")
        if self.storage.history_limit < 1:
            raise ValueError("HISTORY_LIMIT must be at least 1")
        if self.notifier.queue_size < 1:
            raise ValueError("NOTIFIER_QUEUE_SIZE must be at least 1")
        if self.s3.enabled and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when S3_EXPORT_ENABLED=true")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_filename": self.storage.db_filename,
                "backup_dir": self.backup.backup_dir,
                "max_snapshots": self.backup.max_snapshots,
                "auto_backup": self.backup.auto_enabled,
                "s3_export": self.s3.enabled,
                "s3_bucket": self.s3.bucket if self.s3.enabled else None,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "log_level": self.observability.log_level,
            },
        )
