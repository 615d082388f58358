"""
Graph Edits and Undo/Redo History.

Every structural change to a workflow graph is one atomic edit. Applying
an edit never mutates the input graph: it returns a new snapshot, or
raises ``GraphEditError`` and leaves the original as it was.
"""

from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field
from copy import deepcopy
import logging

from contentflow.engine.graph import Edge, Graph, Node, TRANSFORMS, validate_edge
from contentflow.errors import GraphEditError, GraphLockedError, NodeSettingsError


logger = logging.getLogger(__name__)


@dataclass
class AddNode:
    node: Node


@dataclass
class RemoveNode:
    node_id: str


@dataclass
class AddEdge:
    edge: Edge


@dataclass
class RemoveEdge:
    edge_id: str


@dataclass
class UpdateSettings:
    node_id: str
    settings: Dict[str, Any]
    replace: bool = False  # Merge into existing settings unless set


GraphEdit = Union[AddNode, RemoveNode, AddEdge, RemoveEdge, UpdateSettings]


def _check_settings(node: Node, registry) -> None:
    if registry is None:
        return
    behavior = registry.resolve(node.node_type)
    try:
        behavior.validate_settings(node.settings)
    except NodeSettingsError as e:
        raise GraphEditError(str(e)) from e


def apply_edit(graph: Graph, edit: GraphEdit, registry=None) -> Graph:
    """
    Apply a single edit and return the resulting graph.

    Args:
        graph: The current graph (not modified)
        edit: One of AddNode, RemoveNode, AddEdge, RemoveEdge, UpdateSettings
        registry: Optional node registry; when given, node types and
            settings are checked as part of the edit

    Raises:
        GraphEditError: If the edit would violate a graph invariant
    """
    new = graph.copy()

    if isinstance(edit, AddNode):
        node = deepcopy(edit.node)
        if node.node_id in new.nodes:
            raise GraphEditError(f"Node '{node.node_id}' already exists")
        if registry is not None and not registry.has(node.node_type):
            raise GraphEditError(f"Unknown node type '{node.node_type}'")
        _check_settings(node, registry)
        new.nodes[node.node_id] = node

    elif isinstance(edit, RemoveNode):
        if edit.node_id not in new.nodes:
            raise GraphEditError(f"Node '{edit.node_id}' not found")
        del new.nodes[edit.node_id]
        new.edges = [
            e for e in new.edges
            if e.source != edit.node_id and e.target != edit.node_id
        ]

    elif isinstance(edit, AddEdge):
        edge = deepcopy(edit.edge)
        if new.get_edge(edge.edge_id) is not None:
            raise GraphEditError(f"Edge '{edge.edge_id}' already exists")
        existing = new.incoming_edge(edge.target, edge.target_port)
        if existing is not None:
            raise GraphEditError(
                f"Input {edge.target}.{edge.target_port} already has incoming "
                f"edge '{existing.edge_id}'"
            )
        problems = validate_edge(new, edge)
        if problems:
            raise GraphEditError("; ".join(p.message for p in problems))
        new.edges.append(edge)

    elif isinstance(edit, RemoveEdge):
        if new.get_edge(edit.edge_id) is None:
            raise GraphEditError(f"Edge '{edit.edge_id}' not found")
        new.edges = [e for e in new.edges if e.edge_id != edit.edge_id]

    elif isinstance(edit, UpdateSettings):
        node = new.nodes.get(edit.node_id)
        if node is None:
            raise GraphEditError(f"Node '{edit.node_id}' not found")
        if edit.replace:
            node.settings = deepcopy(edit.settings)
        else:
            node.settings.update(deepcopy(edit.settings))
        _check_settings(node, registry)

    else:
        raise GraphEditError(f"Unsupported edit: {type(edit).__name__}")

    return new


class GraphHistory:
    """
    Undo/redo history for one workflow graph.

    Holds an append-only list of graph snapshots plus a cursor pointing at
    the current one. While a run holds the lock, every mutation raises
    ``GraphLockedError``.
    """

    def __init__(self, graph: Graph, registry=None, max_history: int = 200):
        self._snapshots: List[Graph] = [graph.copy()]
        self._cursor = 0
        self._registry = registry
        self._max_history = max_history
        self._locked_by: Optional[str] = None

    @property
    def graph_id(self) -> str:
        return self._snapshots[0].graph_id

    @property
    def current(self) -> Graph:
        """The current snapshot (a copy; snapshots are never shared)."""
        return self._snapshots[self._cursor].copy()

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._snapshots) - 1

    @property
    def locked_by(self) -> Optional[str]:
        return self._locked_by

    @property
    def is_locked(self) -> bool:
        return self._locked_by is not None

    def lock(self, run_id: str) -> None:
        if self._locked_by is not None and self._locked_by != run_id:
            raise GraphLockedError(self.graph_id, self._locked_by)
        self._locked_by = run_id

    def unlock(self, run_id: str) -> None:
        if self._locked_by == run_id:
            self._locked_by = None

    def _ensure_unlocked(self) -> None:
        if self._locked_by is not None:
            raise GraphLockedError(self.graph_id, self._locked_by)

    def apply(self, edit: GraphEdit) -> Graph:
        """Apply an edit, discarding any redo tail."""
        self._ensure_unlocked()
        new = apply_edit(self._snapshots[self._cursor], edit, self._registry)
        del self._snapshots[self._cursor + 1:]
        self._snapshots.append(new)
        if len(self._snapshots) > self._max_history:
            self._snapshots.pop(0)
        self._cursor = len(self._snapshots) - 1
        logger.debug(f"Applied {type(edit).__name__} to workflow {self.graph_id}")
        return self.current

    def undo(self) -> Graph:
        self._ensure_unlocked()
        if not self.can_undo:
            raise GraphEditError("Nothing to undo")
        self._cursor -= 1
        return self.current

    def redo(self) -> Graph:
        self._ensure_unlocked()
        if not self.can_redo:
            raise GraphEditError("Nothing to redo")
        self._cursor += 1
        return self.current

    def record_run(self, run) -> None:
        """Copy a run's per-node outcome summary onto the current snapshot."""
        snapshot = self._snapshots[self._cursor]
        for node_id, outcome in run.outcomes.items():
            node = snapshot.nodes.get(node_id)
            if node is None:
                continue
            node.status = outcome.status.value
            node.error = outcome.error.to_dict() if outcome.error else None
            node.duration_ms = outcome.duration_ms
            node.progress = outcome.progress

    def __len__(self) -> int:
        return len(self._snapshots)
