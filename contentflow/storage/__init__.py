"""
Storage package - In-memory storage for workflows and runs.
"""

from contentflow.storage.memory import (
    GraphStorage,
    RunStore,
    StoredWorkflow,
)

__all__ = [
    "GraphStorage",
    "RunStore",
    "StoredWorkflow",
]
