"""API module for HTTP routes and WebSocket handlers.

This module exposes the FastAPI routers for the app builder backend.
"""

from api.routes import debug_router, router
from api.websocket import websocket_router

__all__ = ["debug_router", "router", "websocket_router"]
