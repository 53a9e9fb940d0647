"""
API package - FastAPI routes and schemas.
"""

from nodeflow.api.routes import flow, handlers, websocket

__all__ = ["flow", "handlers", "websocket"]
