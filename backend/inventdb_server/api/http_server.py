"""
HTTP and WebSocket API for InventDB.

This module exposes the store, the audit log and the snapshot catalog as
a JSON REST API, and fans committed changes out to browsers over a
WebSocket channel.

Routes:
    GET    /api/{collection}                 list records (newest first)
    GET    /api/{collection}/{id}            one record
    POST   /api/{collection}                 create
    PUT    /api/{collection}/{id}            update
    DELETE /api/{collection}/{id}            delete
    GET    /api/history                      audit query (collection, record_id, limit)
    GET    /api/history/{seq}                one audit entry
    GET    /api/backups                      snapshot catalog
    POST   /api/backup                       create snapshot            (admin)
    GET    /api/backup/{name}                snapshot contents          (admin)
    GET    /api/backup/{name}/compare        restore preview            (admin)
    DELETE /api/backup/{name}                delete snapshot            (admin)
    POST   /api/restore/{name}               restore snapshot           (admin)
    GET    /api/db.json                      full dump
    POST   /api/db.json                      bulk import                (admin)
    GET    /api/stats                        dashboard statistics
    GET    /api/health                       health check
    GET    /ws                               change notifications

Invariants:
    - X-Actor names the user recorded in the audit log (default anonymous)
    - X-Role is admin or user (default user); snapshot writes need admin
    - history is read-only; writes to it return 405
    - Errors are JSON bodies {"error", "error_code", "details"}

How to change safely:
    - Register fixed /api/<name> routes before the /api/{collection} ones
    - Add response fields, don't rename existing ones
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from ..config import HttpConfig
from ..errors import AccessDeniedError, InventDbError, NotFoundError, ValidationFailedError
from ..notify.notifier import ChangeNotifier
from ..schema.collections import COLLECTIONS, HISTORY
from ..snapshot.manager import SnapshotManager
from ..stats.aggregator import StatisticsAggregator
from ..store.collection_store import CollectionStore

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"

MAX_BODY_BYTES = 64 * 1024 * 1024

websockets_key = web.AppKey("websockets", weakref.WeakSet)


@dataclass
class ApiContext:
    """Components the handlers operate on.

    Attributes:
        store: Collection store
        snapshots: Snapshot manager
        notifier: Change notifier for the WebSocket channel
        aggregator: Statistics aggregator
        started_at: Server start time (Unix seconds)
    """

    store: CollectionStore
    snapshots: SnapshotManager
    notifier: ChangeNotifier
    aggregator: StatisticsAggregator
    started_at: float = 0.0


def create_http_app(ctx: ApiContext, config: HttpConfig | None = None) -> web.Application:
    """Create the aiohttp application.

    Args:
        ctx: Components to serve
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application(client_max_size=MAX_BODY_BYTES)
    app[websockets_key] = weakref.WeakSet()
    if not ctx.started_at:
        ctx.started_at = time.time()

    # Fixed routes first: /api/{collection} would shadow them
    app.router.add_get("/api/history", lambda r: handle_history(r, ctx))
    app.router.add_get("/api/history/{seq}", lambda r: handle_history_entry(r, ctx))
    app.router.add_get("/api/backups", lambda r: handle_list_backups(r, ctx))
    app.router.add_post("/api/backup", lambda r: handle_create_backup(r, ctx))
    app.router.add_get("/api/backup/{name}/compare", lambda r: handle_compare_backup(r, ctx))
    app.router.add_get("/api/backup/{name}", lambda r: handle_get_backup(r, ctx))
    app.router.add_delete("/api/backup/{name}", lambda r: handle_delete_backup(r, ctx))
    app.router.add_post("/api/restore/{name}", lambda r: handle_restore(r, ctx))
    app.router.add_get("/api/db.json", lambda r: handle_export_db(r, ctx))
    app.router.add_post("/api/db.json", lambda r: handle_import_db(r, ctx))
    app.router.add_get("/api/stats", lambda r: handle_stats(r, ctx))
    app.router.add_get("/api/health", lambda r: handle_health(r, ctx))
    app.router.add_get("/ws", lambda r: handle_ws(r, ctx, config))

    app.router.add_get("/api/{collection}", lambda r: handle_list(r, ctx))
    app.router.add_post("/api/{collection}", lambda r: handle_create(r, ctx))
    app.router.add_get("/api/{collection}/{id}", lambda r: handle_get(r, ctx))
    app.router.add_put("/api/{collection}/{id}", lambda r: handle_update(r, ctx))
    app.router.add_delete("/api/{collection}/{id}", lambda r: handle_delete(r, ctx))

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                _add_cors_headers(request, e, config)
                raise

        if not isinstance(response, web.WebSocketResponse):
            _add_cors_headers(request, response, config)
        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except InventDbError as e:
            log = logger.error if e.http_status >= 500 else logger.info
            log(
                "Request failed",
                extra={
                    "method": request.method,
                    "path": request.path,
                    "error_code": e.code,
                    "status": e.http_status,
                },
            )
            return web.json_response(e.to_dict(), status=e.http_status)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL", "details": {}},
                status=500,
            )

    # Runs inside cors_middleware
    app.middlewares.append(error_middleware)

    async def close_websockets(app: web.Application) -> None:
        ctx.notifier.close()
        for ws in set(app[websockets_key]):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    app.on_shutdown.append(close_websockets)

    return app


def _add_cors_headers(
    request: web.Request, response: web.StreamResponse, config: HttpConfig
) -> None:
    origin = request.headers.get("Origin")
    if origin and ("*" in config.cors_origins or origin in config.cors_origins):
        response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Actor, X-Role"


def extract_context(request: web.Request) -> tuple[str, str]:
    """Extract (actor, role) from request headers."""
    actor = request.headers.get("X-Actor", "").strip() or "anonymous"
    role = request.headers.get("X-Role", "").strip().lower() or ROLE_USER
    return actor, role


def require_admin(request: web.Request, operation: str) -> str:
    """Return the acting user if the caller is an admin.

    Raises:
        AccessDeniedError: If the caller's role is not admin
    """
    actor, role = extract_context(request)
    if role != ROLE_ADMIN:
        raise AccessDeniedError(role, operation)
    return actor


def _collection(request: web.Request) -> str:
    name = request.match_info["collection"]
    if name == HISTORY:
        # GET /api/history* is routed to the audit handlers; anything else is a write
        raise web.HTTPMethodNotAllowed(request.method, ["GET"])
    if name not in COLLECTIONS:
        raise NotFoundError("collection", name)
    return name


async def _json_body(request: web.Request, required: bool = True) -> Any:
    if not request.can_read_body:
        if required:
            raise ValidationFailedError("Request body is required")
        return None
    try:
        return await request.json()
    except json.JSONDecodeError as e:
        raise ValidationFailedError("Invalid JSON body", errors=[str(e)]) from e


def _int_param(value: str | None, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationFailedError(f"{name} must be an integer", errors=[value]) from None


async def handle_list(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/{collection} - All records, newest first."""
    collection = _collection(request)
    records = await ctx.store.list(collection)
    return web.json_response([r.to_dict() for r in records])


async def handle_get(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/{collection}/{id} - One record."""
    collection = _collection(request)
    record = await ctx.store.get(collection, request.match_info["id"])
    return web.json_response(record.to_dict())


async def handle_create(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/{collection} - Create a record."""
    collection = _collection(request)
    actor, _ = extract_context(request)
    body = await _json_body(request)
    record = await ctx.store.create(collection, body, actor=actor)
    return web.json_response(record.to_dict())


async def handle_update(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle PUT /api/{collection}/{id} - Merge fields into a record."""
    collection = _collection(request)
    actor, _ = extract_context(request)
    body = await _json_body(request)
    record = await ctx.store.update(collection, request.match_info["id"], body, actor=actor)
    return web.json_response(record.to_dict())


async def handle_delete(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle DELETE /api/{collection}/{id} - Delete a record."""
    collection = _collection(request)
    actor, _ = extract_context(request)
    await ctx.store.delete(collection, request.match_info["id"], actor=actor)
    return web.json_response({"status": "ok"})


async def handle_history(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/history - Audit entries, newest first."""
    collection = request.query.get("collection") or None
    record_id = request.query.get("record_id") or None
    limit = _int_param(request.query.get("limit"), "limit")

    if collection is not None and collection not in COLLECTIONS:
        raise NotFoundError("collection", collection)
    if record_id is not None and collection is None:
        raise ValidationFailedError("record_id requires collection")

    entries = await ctx.store.audit.query(collection=collection, record_id=record_id, limit=limit)
    return web.json_response([e.to_dict() for e in entries])


async def handle_history_entry(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/history/{seq} - One audit entry."""
    seq = _int_param(request.match_info["seq"], "seq")
    entry = await ctx.store.audit.get(seq)
    return web.json_response(entry.to_dict())


async def handle_list_backups(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/backups - Snapshot catalog, newest first."""
    snapshots = await ctx.snapshots.list_snapshots()
    return web.json_response([m.to_dict() for m in snapshots])


async def handle_create_backup(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/backup - Create a snapshot."""
    actor = require_admin(request, "create backups")
    body = await _json_body(request, required=False)
    name = body.get("name") if isinstance(body, dict) else None

    meta = await ctx.snapshots.create_snapshot(name or None)
    logger.info("Backup requested", extra={"snapshot": meta.name, "actor": actor})
    return web.json_response(
        {"status": "success", "message": "Backup created successfully", **meta.to_dict()}
    )


async def handle_get_backup(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/backup/{name} - Snapshot contents."""
    require_admin(request, "read backups")
    contents = await ctx.snapshots.read_snapshot_contents(request.match_info["name"])
    return web.json_response(contents)


async def handle_compare_backup(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/backup/{name}/compare - What a restore would change."""
    require_admin(request, "compare backups")
    diffs = await ctx.snapshots.compare(request.match_info["name"])
    return web.json_response({name: diff.to_dict() for name, diff in diffs.items()})


async def handle_delete_backup(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle DELETE /api/backup/{name} - Delete a snapshot."""
    actor = require_admin(request, "delete backups")
    name = request.match_info["name"]
    await ctx.snapshots.delete_snapshot(name)
    logger.info("Backup deleted", extra={"snapshot": name, "actor": actor})
    return web.json_response({"status": "success", "message": "Backup deleted successfully"})


async def handle_restore(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/restore/{name} - Replace the store with a snapshot."""
    actor = require_admin(request, "restore backups")
    meta = await ctx.snapshots.restore(request.match_info["name"])
    logger.info("Backup restored", extra={"snapshot": meta.name, "actor": actor})
    return web.json_response(
        {
            "status": "success",
            "message": "Database restored successfully",
            "name": meta.name,
            "timestamp": meta.timestamp,
        }
    )


async def handle_export_db(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/db.json - Whole store dump."""
    return web.json_response(await ctx.store.dump())


async def handle_import_db(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/db.json - Replace the store with an external dump."""
    actor = require_admin(request, "import data")
    body = await _json_body(request)
    result = await ctx.snapshots.import_external(body)
    logger.info("Database imported", extra={"actor": actor, "missing": result.missing})
    return web.json_response(result.to_dict())


async def handle_stats(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/stats - Dashboard statistics."""
    stats = await ctx.aggregator.compute()
    return web.json_response(stats.to_dict())


async def handle_health(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /api/health - Health check."""
    try:
        counts = await ctx.store.get_stats()
        version = await ctx.store.store_version()
    except Exception as e:
        logger.error(f"Health check failed: {e}", exc_info=True)
        return web.json_response({"healthy": False, "error": str(e)}, status=503)

    return web.json_response(
        {
            "healthy": True,
            "store_version": version,
            "counts": counts,
            "subscribers": ctx.notifier.subscriber_count,
            "uptime_seconds": int(time.time() - ctx.started_at),
        }
    )


async def handle_ws(request: web.Request, ctx: ApiContext, config: HttpConfig) -> web.WebSocketResponse:
    """Handle GET /ws - Push db_update messages for every committed change."""
    ws = web.WebSocketResponse(heartbeat=config.ws_heartbeat_seconds)
    await ws.prepare(request)
    request.app[websockets_key].add(ws)

    actor, _ = extract_context(request)
    subscription = ctx.notifier.subscribe(f"ws:{actor}@{request.remote}")
    logger.info("WebSocket client connected", extra={"subscription_id": subscription.id})

    async def pump() -> None:
        try:
            async for event in subscription:
                await ws.send_json(event.to_message())
        except ConnectionResetError:
            logger.debug("WebSocket client went away", extra={"subscription_id": subscription.id})
            return
        if subscription.overflowed and not ws.closed:
            await ws.close(code=WSCloseCode.TRY_AGAIN_LATER, message=b"Subscriber overflowed")

    pump_task = asyncio.create_task(pump())
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT and msg.data == "ping":
                await ws.send_str("pong")
            elif msg.type == WSMsgType.ERROR:
                logger.warning(
                    "WebSocket error",
                    extra={"subscription_id": subscription.id, "error": str(ws.exception())},
                )
    finally:
        ctx.notifier.unsubscribe(subscription)
        await pump_task
        request.app[websockets_key].discard(ws)
        logger.info("WebSocket client disconnected", extra={"subscription_id": subscription.id})

    return ws


class HttpServer:
    """Runs the aiohttp application on a TCP site.

    Example:
        >>> server = HttpServer(create_http_app(ctx), "0.0.0.0", 3001)
        >>> await server.start()
        >>> await server.stop()
    """

    def __init__(self, app: web.Application, host: str = "0.0.0.0", port: int = 3001) -> None:
        self.app = app
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"HTTP server running on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("HTTP server stopped")
