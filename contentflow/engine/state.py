"""
Run State for the Workflow Engine.

A Run is one execution attempt of a workflow graph. It holds the overall
status plus one NodeOutcome per node. Runs are mutated only by the
scheduler through the run store and are frozen once terminal.
"""

from typing import Any, Dict, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class NodeStatus(str, Enum):
    """Status of a node within a run."""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETE = "complete"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETE, NodeStatus.ERROR, NodeStatus.SKIPPED)


class RunStatus(str, Enum):
    """Overall status of a run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially-failed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


@dataclass
class ErrorRecord:
    """What went wrong in a node."""
    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorRecord":
        kind = getattr(exc, "kind", None) or type(exc).__name__
        return cls(kind=kind, message=str(exc) or type(exc).__name__)

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass
class NodeOutcome:
    """The outcome of one node in one run."""
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorRecord] = None
    retry_count: int = 0  # Failed attempts so far
    progress: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "outputs": self.outputs,
            "error": self.error.to_dict() if self.error else None,
            "retry_count": self.retry_count,
            "progress": self.progress,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class Run:
    """One execution attempt of a workflow graph."""
    run_id: str
    graph_id: str
    generation: int
    status: RunStatus = RunStatus.PENDING
    outcomes: Dict[str, NodeOutcome] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds() * 1000
        return None

    def outcome(self, node_id: str) -> NodeOutcome:
        return self.outcomes[node_id]

    def count(self, status: NodeStatus) -> int:
        return sum(1 for o in self.outcomes.values() if o.status == status)

    def failed_nodes(self) -> Dict[str, ErrorRecord]:
        """Per-node error detail, used to re-run only the failed subgraph."""
        return {
            node_id: o.error
            for node_id, o in self.outcomes.items()
            if o.status == NodeStatus.ERROR and o.error is not None
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "generation": self.generation,
            "status": self.status.value,
            "outcomes": {k: o.to_dict() for k, o in self.outcomes.items()},
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "cancel_requested": self.cancel_requested,
        }


def summarize_status(run: Run) -> RunStatus:
    """
    Compute the overall status of a finished run from its node outcomes.

    completed: every node complete (including the empty graph)
    partially-failed: at least one node complete and one error/skipped
    failed: no node completed
    cancelled: cancellation was requested before the run finished
    """
    if run.cancel_requested:
        return RunStatus.CANCELLED
    outcomes = list(run.outcomes.values())
    complete = sum(1 for o in outcomes if o.status == NodeStatus.COMPLETE)
    if complete == len(outcomes):
        return RunStatus.COMPLETED
    if complete == 0:
        return RunStatus.FAILED
    return RunStatus.PARTIALLY_FAILED
