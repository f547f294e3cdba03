"""
API module for InventDB server.

This module provides the external interfaces:
- HTTP REST API over every collection, the audit log and the snapshot catalog
- WebSocket channel pushing committed changes

Invariants:
    - Mutations record the X-Actor header as the audit user
    - Snapshot writes, restore and import require the admin role
    - Change messages are sent only after the change has committed

How to change safely:
    - Add new endpoints, don't change the shape of existing responses
    - Keep the db_update message fields stable for connected browsers
"""

from .http_server import ApiContext, HttpServer, create_http_app

__all__ = [
    "ApiContext",
    "HttpServer",
    "create_http_app",
]
