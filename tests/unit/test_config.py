"""
Unit tests for environment-based configuration.
"""

import pytest

from backend.inventdb_server.config import (
    BackupConfig,
    HttpConfig,
    S3Config,
    ServerConfig,
    StorageConfig,
)


class TestFromEnv:
    """Tests for loading configuration from environment variables."""

    def test_defaults(self, monkeypatch):
        for name in (
            "DATA_DIR",
            "BACKUP_MAX_SNAPSHOTS",
            "BACKUP_AUTO_INTERVAL_SECONDS",
            "HTTP_PORT",
            "S3_EXPORT_ENABLED",
            "LOG_FORMAT",
        ):
            monkeypatch.delenv(name, raising=False)
        config = ServerConfig.from_env()
        assert config.storage.data_dir == "./data"
        assert config.backup.max_snapshots == 10
        assert config.backup.auto_interval_seconds == 3 * 24 * 3600
        assert config.http.port == 3001
        assert config.s3.enabled is False

    def test_storage_overrides(self, monkeypatch):
        monkeypatch.setenv("DATA_DIR", "/srv/inventdb")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("REJECT_NOOP_UPDATES", "true")
        config = StorageConfig.from_env()
        assert config.data_dir == "/srv/inventdb"
        assert config.wal_mode is False
        assert config.reject_noop_updates is True

    def test_backup_overrides(self, monkeypatch):
        monkeypatch.setenv("BACKUP_MAX_SNAPSHOTS", "3")
        monkeypatch.setenv("BACKUP_PRE_IMPORT", "false")
        config = BackupConfig.from_env()
        assert config.max_snapshots == 3
        assert config.pre_import_backup is False

    def test_cors_origins_split(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "http://a, http://b,,")
        assert HttpConfig.from_env().cors_origins == ("http://a", "http://b")

    def test_s3_region_falls_back_to_aws_region(self, monkeypatch):
        monkeypatch.delenv("S3_REGION", raising=False)
        monkeypatch.setenv("AWS_REGION", "eu-west-1")
        assert S3Config.from_env().region == "eu-west-1"

    def test_configs_are_immutable(self):
        config = StorageConfig()
        with pytest.raises(AttributeError):
            config.data_dir = "/tmp"


class TestValidate:
    """Tests for ServerConfig.validate."""

    def test_valid_defaults(self):
        ServerConfig().validate()

    def test_retention_must_be_positive(self):
        config = ServerConfig(backup=BackupConfig(max_snapshots=0))
        with pytest.raises(ValueError, match="BACKUP_MAX_SNAPSHOTS"):
            config.validate()

    def test_auto_interval_must_be_positive(self):
        config = ServerConfig(backup=BackupConfig(auto_interval_seconds=0))
        with pytest.raises(ValueError, match="INTERVAL"):
            config.validate()

    def test_invalid_log_format(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            ServerConfig.from_env()

    def test_s3_requires_bucket(self):
        config = ServerConfig(s3=S3Config(enabled=True, bucket=""))
        with pytest.raises(ValueError, match="S3_BUCKET"):
            config.validate()
