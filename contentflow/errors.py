"""
Error taxonomy for the workflow engine.

Every engine error carries a ``kind`` (stable string used in run outcomes
and API payloads) and a ``retryable`` flag consulted by the scheduler's
retry policy.
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    kind = "workflow_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class GraphValidationError(WorkflowError):
    """The graph violates one or more invariants; the run is rejected."""

    kind = "validation_error"

    def __init__(self, violations: List[Any]):
        self.violations = list(violations)
        summary = "; ".join(str(v) for v in self.violations[:5])
        if len(self.violations) > 5:
            summary += f"; ... ({len(self.violations) - 5} more)"
        super().__init__(f"Graph validation failed: {summary}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [
            v.to_dict() if hasattr(v, "to_dict") else str(v)
            for v in self.violations
        ]
        return data


class GraphEditError(WorkflowError):
    """An edit would break a graph invariant; the graph is left unchanged."""

    kind = "graph_edit_error"


class UnregisteredNodeType(WorkflowError):
    """No behavior is registered for a node type tag."""

    kind = "unregistered_node_type"

    def __init__(self, type_tag: str):
        self.type_tag = type_tag
        super().__init__(f"No behavior registered for node type '{type_tag}'")


class CycleError(WorkflowError):
    """The dependency graph contains a cycle."""

    kind = "cycle_error"

    def __init__(self, node_ids: List[str]):
        self.node_ids = list(node_ids)
        super().__init__(
            f"Workflow contains a cycle through nodes: {', '.join(self.node_ids)}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["node_ids"] = self.node_ids
        return data


class NodeSettingsError(WorkflowError):
    """Node settings do not match the behavior's settings schema."""

    kind = "settings_error"


class CapabilityError(WorkflowError):
    """A transient failure in an external capability."""

    kind = "capability_error"
    retryable = True


class GenerationError(CapabilityError):
    """The AI generation service failed."""

    kind = "generation_error"


class SearchError(CapabilityError):
    """The vector search service failed."""

    kind = "search_error"


class ExecutionTimeoutError(CapabilityError):
    """A node attempt or capability call exceeded its time budget."""

    kind = "timeout"


class GraphLockedError(WorkflowError):
    """The graph is being executed and cannot be edited."""

    kind = "graph_locked"

    def __init__(self, graph_id: str, run_id: Optional[str] = None):
        self.graph_id = graph_id
        self.run_id = run_id
        super().__init__(
            f"Workflow '{graph_id}' is locked by active run '{run_id}'"
        )


class RunAlreadyTerminal(WorkflowError):
    """A finished run was asked to change."""

    kind = "run_already_terminal"

    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run '{run_id}' is already {status}")


class RunNotFoundError(WorkflowError):
    kind = "run_not_found"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")


class WorkflowNotFoundError(WorkflowError):
    kind = "workflow_not_found"

    def __init__(self, graph_id: str):
        self.graph_id = graph_id
        super().__init__(f"Workflow '{graph_id}' not found")


class RunCancelled(WorkflowError):
    """Raised inside a node when its run has been cancelled."""

    kind = "cancelled"
