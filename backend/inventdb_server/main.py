"""
InventDB Server - Main entry point.

This module starts the InventDB server with all components:
- Collection store (SQLite, audited)
- Change notifier (WebSocket fan-out)
- Snapshot manager with the automatic backup loop
- Optional S3 snapshot exporter
- HTTP/WebSocket API

Usage:
    python -m backend.inventdb_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is initialized before the HTTP server accepts requests
    - Components are constructed here and passed by handle; there are
      no module-level singletons
    - Graceful shutdown closes WebSockets before the store

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .api import ApiContext, HttpServer, create_http_app
from .config import ServerConfig
from .notify import ChangeNotifier
from .snapshot import S3SnapshotExporter, SnapshotManager
from .stats import StatisticsAggregator
from .store import CollectionStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class Server:
    """InventDB Server orchestrator.

    Manages the lifecycle of all server components:
    - Collection store and notifier
    - Snapshot manager and automatic backups
    - HTTP/WebSocket API

    Attributes:
        config: Server configuration
        store: Collection store
        notifier: Change notifier
        snapshots: Snapshot manager
        exporter: S3 exporter (None when export is disabled)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: CollectionStore | None = None
        self.notifier: ChangeNotifier | None = None
        self.snapshots: SnapshotManager | None = None
        self.exporter: S3SnapshotExporter | None = None
        self.http_server: HttpServer | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components, then wait for shutdown."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting InventDB server")
        self.config.log_config()

        try:
            data_dir = Path(self.config.storage.data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            Path(self.config.backup.backup_dir).mkdir(parents=True, exist_ok=True)

            self.notifier = ChangeNotifier(queue_size=self.config.notifier.queue_size)

            self.store = CollectionStore(
                data_dir=str(data_dir),
                db_filename=self.config.storage.db_filename,
                notifier=self.notifier,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
                history_limit=self.config.storage.history_limit,
                reject_noop_updates=self.config.storage.reject_noop_updates,
            )
            await self.store.initialize()

            if self.config.s3.enabled:
                self.exporter = S3SnapshotExporter(self.config.s3)
                await self.exporter.start()

            self.snapshots = SnapshotManager(
                store=self.store,
                backup_dir=self.config.backup.backup_dir,
                max_snapshots=self.config.backup.max_snapshots,
                pre_import_backup=self.config.backup.pre_import_backup,
                exporter=self.exporter,
            )

            ctx = ApiContext(
                store=self.store,
                snapshots=self.snapshots,
                notifier=self.notifier,
                aggregator=StatisticsAggregator(self.store),
            )
            self.http_server = HttpServer(
                create_http_app(ctx, self.config.http),
                host=self.config.http.host,
                port=self.config.http.port,
            )
            await self.http_server.start()

            if self.config.backup.auto_enabled:
                auto_task = asyncio.create_task(
                    self.snapshots.run_auto_backups(self.config.backup.auto_interval_seconds)
                )
                self._tasks.append(auto_task)

            self._running = True
            logger.info("InventDB server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping InventDB server")

        if self.snapshots:
            self.snapshots.stop_auto_backups()

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.http_server:
            await self.http_server.stop()

        if self.exporter:
            await self.exporter.stop()

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("InventDB server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
