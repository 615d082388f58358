"""
API package - FastAPI routes and schemas.
"""

from contentflow.api.routes import node_types, runs, websocket, workflows

__all__ = ["node_types", "runs", "websocket", "workflows"]
