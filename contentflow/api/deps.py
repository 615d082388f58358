"""
Shared FastAPI dependencies.
"""

from fastapi import Request

from contentflow.engine.service import WorkflowEngine


def get_engine(request: Request) -> WorkflowEngine:
    """The engine attached to the running application."""
    return request.app.state.engine
