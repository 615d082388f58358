"""
In-Memory Storage for the Workflow Engine.

Provides storage for workflow graphs (with their edit history) and the
run state store. Can be replaced with a database implementation.
"""

from typing import Dict, List, Optional
from datetime import datetime
from dataclasses import dataclass, field
from copy import deepcopy
import asyncio
import logging
import uuid

from contentflow.engine.edits import GraphHistory
from contentflow.engine.graph import Graph
from contentflow.engine.state import NodeOutcome, NodeStatus, Run, RunStatus, summarize_status
from contentflow.errors import (
    GraphLockedError,
    RunAlreadyTerminal,
    RunNotFoundError,
    WorkflowNotFoundError,
)


logger = logging.getLogger(__name__)


@dataclass
class StoredWorkflow:
    """A stored workflow graph with its undo/redo history."""
    graph_id: str
    history: GraphHistory
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def graph(self) -> Graph:
        return self.history.current

    def to_dict(self) -> Dict:
        graph = self.history.current
        return {
            "graph_id": self.graph_id,
            "name": graph.name,
            "definition": graph.to_dict(),
            "can_undo": self.history.can_undo,
            "can_redo": self.history.can_redo,
            "locked_by": self.history.locked_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class GraphStorage:
    """
    In-memory storage for workflow graphs, keyed by workflow id.
    """

    def __init__(self, registry=None):
        self._workflows: Dict[str, StoredWorkflow] = {}
        self._registry = registry
        self._lock = asyncio.Lock()

    async def save(self, graph: Graph) -> StoredWorkflow:
        """
        Save a graph as a new workflow, replacing any unlocked workflow
        with the same id.
        """
        async with self._lock:
            existing = self._workflows.get(graph.graph_id)
            if existing is not None and existing.history.is_locked:
                raise GraphLockedError(graph.graph_id, existing.history.locked_by)
            stored = StoredWorkflow(
                graph_id=graph.graph_id,
                history=GraphHistory(graph, registry=self._registry),
            )
            self._workflows[graph.graph_id] = stored
            return stored

    async def get(self, graph_id: str) -> Optional[StoredWorkflow]:
        """Get a workflow by ID."""
        async with self._lock:
            return self._workflows.get(graph_id)

    async def require(self, graph_id: str) -> StoredWorkflow:
        stored = await self.get(graph_id)
        if stored is None:
            raise WorkflowNotFoundError(graph_id)
        return stored

    async def touch(self, graph_id: str) -> None:
        async with self._lock:
            if graph_id in self._workflows:
                self._workflows[graph_id].updated_at = datetime.now()

    async def delete(self, graph_id: str) -> bool:
        """Delete a workflow unless a run holds it."""
        async with self._lock:
            stored = self._workflows.get(graph_id)
            if stored is None:
                return False
            if stored.history.is_locked:
                raise GraphLockedError(graph_id, stored.history.locked_by)
            del self._workflows[graph_id]
            return True

    async def list_all(self) -> List[StoredWorkflow]:
        """List all stored workflows."""
        async with self._lock:
            return list(self._workflows.values())

    def __len__(self) -> int:
        return len(self._workflows)


class RunStore:
    """
    Run state store.

    Holds every run and its per-node outcomes. ``update_outcome`` is the
    only mutation point for outcomes. Writes are keyed by node id, so
    concurrent workers never touch the same entry; the overall status is
    recomputed under a per-run lock.
    """

    def __init__(self):
        self._runs: Dict[str, Run] = {}
        self._generations: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def lock_for(self, run_id: str) -> asyncio.Lock:
        self._get(run_id)
        return self._locks[run_id]

    async def create_run(self, graph: Graph, run_id: Optional[str] = None) -> Run:
        """Create a pending run with one pending outcome per node."""
        generation = self._generations.get(graph.graph_id, 0) + 1
        self._generations[graph.graph_id] = generation
        run = Run(
            run_id=run_id or str(uuid.uuid4()),
            graph_id=graph.graph_id,
            generation=generation,
            outcomes={node_id: NodeOutcome(node_id=node_id) for node_id in graph.nodes},
        )
        self._runs[run.run_id] = run
        self._locks[run.run_id] = asyncio.Lock()
        logger.info(
            f"Created run {run.run_id} (generation {generation}) for workflow {graph.graph_id}"
        )
        return deepcopy(run)

    async def update_outcome(self, run_id: str, node_id: str, outcome: NodeOutcome) -> None:
        """Replace a node's outcome."""
        run = self._get(run_id)
        if run.is_terminal:
            raise RunAlreadyTerminal(run_id, run.status.value)
        if node_id not in run.outcomes:
            raise KeyError(f"Node '{node_id}' is not part of run '{run_id}'")
        run.outcomes[node_id] = deepcopy(outcome)

    async def set_status(self, run_id: str, status: RunStatus) -> Run:
        """Set the overall status; terminal statuses freeze the run."""
        async with self.lock_for(run_id):
            run = self._get(run_id)
            if run.is_terminal:
                raise RunAlreadyTerminal(run_id, run.status.value)
            run.status = status
            if status == RunStatus.RUNNING and run.started_at is None:
                run.started_at = datetime.now()
            if status.is_terminal:
                run.finished_at = datetime.now()
            return deepcopy(run)

    async def request_cancel(self, run_id: str) -> None:
        run = self._get(run_id)
        if run.is_terminal:
            raise RunAlreadyTerminal(run_id, run.status.value)
        run.cancel_requested = True

    async def finalize(self, run_id: str) -> Run:
        """Compute the terminal status from the outcomes and freeze the run."""
        async with self.lock_for(run_id):
            run = self._get(run_id)
            if run.is_terminal:
                raise RunAlreadyTerminal(run_id, run.status.value)
            pending = [
                node_id for node_id, o in run.outcomes.items()
                if not o.status.is_terminal
            ]
            if pending:
                raise RuntimeError(
                    f"Run '{run_id}' cannot finish with non-terminal nodes: {pending}"
                )
            run.status = summarize_status(run)
            run.finished_at = datetime.now()
            logger.info(f"Run {run_id} finished: {run.status.value}")
            return deepcopy(run)

    async def counts(self, run_id: str) -> Dict[str, int]:
        """Consistent per-status node counts, read under the run lock."""
        async with self.lock_for(run_id):
            run = self._get(run_id)
            return {status.value: run.count(status) for status in NodeStatus}

    async def get_run(self, run_id: str) -> Run:
        """A read-only snapshot of the run."""
        return deepcopy(self._get(run_id))

    async def list_runs(self, graph_id: Optional[str] = None) -> List[Run]:
        runs = [
            r for r in self._runs.values()
            if graph_id is None or r.graph_id == graph_id
        ]
        return [deepcopy(r) for r in runs]

    def latest_generation(self, graph_id: str) -> int:
        return self._generations.get(graph_id, 0)

    def __len__(self) -> int:
        return len(self._runs)
