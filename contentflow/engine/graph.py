"""
Graph Definition for the Workflow Engine.

A workflow graph is a set of typed nodes connected port-to-port by edges.
This module holds the data model, type compatibility rules and the
``validate`` pass that reports every invariant violation at once.
"""

from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass, field
from collections import deque
from enum import Enum
from copy import deepcopy
import uuid


class DataType(str, Enum):
    """Types carried by ports and edges."""
    TEXT = "text"
    RESEARCH = "research"      # Ordered search hits
    CONTENT = "content"        # Draft post body
    FORMATTED = "formatted"    # Platform-ready text
    ANY = "any"


class NodeType(str, Enum):
    """Closed set of node type tags."""
    RESEARCH = "research"
    CONTENT_GENERATION = "content-generation"
    CONTENT_EDITING = "content-editing"
    FORMAT = "format"
    OUTPUT = "output"
    UTILITY = "utility"


def _research_to_text(value: Any) -> str:
    if not value:
        return ""
    lines = []
    for hit in value:
        text = (hit.get("metadata") or {}).get("text") or hit.get("content_id", "")
        lines.append(f"- {text}")
    return "\n".join(lines)


def _identity(value: Any) -> Any:
    return value


# (source type, target type) -> conversion applied when data crosses the edge
_coercions: Dict[Tuple[DataType, DataType], Callable[[Any], Any]] = {
    (DataType.RESEARCH, DataType.TEXT): _research_to_text,
    (DataType.CONTENT, DataType.TEXT): _identity,
    (DataType.FORMATTED, DataType.TEXT): _identity,
    (DataType.TEXT, DataType.CONTENT): _identity,
    (DataType.CONTENT, DataType.FORMATTED): _identity,
}


def register_coercion(
    source: DataType,
    target: DataType,
    func: Callable[[Any], Any] = _identity,
) -> None:
    """Allow values of ``source`` type to flow into ``target`` ports."""
    _coercions[(DataType(source), DataType(target))] = func


def is_compatible(source: DataType, target: DataType) -> bool:
    """Check whether data of type ``source`` may feed a ``target`` port."""
    source, target = DataType(source), DataType(target)
    if source == target or DataType.ANY in (source, target):
        return True
    return (source, target) in _coercions


def coerce(value: Any, source: DataType, target: DataType) -> Any:
    """Convert a value crossing an edge from ``source`` to ``target`` type."""
    source, target = DataType(source), DataType(target)
    if source == target or DataType.ANY in (source, target):
        return value
    func = _coercions.get((source, target))
    if func is None:
        raise ValueError(f"No coercion from '{source.value}' to '{target.value}'")
    return func(value)


def coerce_across(value: Any, source: DataType, carried: Optional[DataType], target: DataType) -> Any:
    """
    Convert a value leaving a ``source`` port, declared on the edge as
    ``carried``, into the ``target`` port type.

    An edge declared as ``any`` carries the value unchanged, so the
    conversion goes straight from the source port type to the target.
    """
    carried = DataType(carried or source)
    if carried == DataType.ANY:
        return coerce(value, source, target)
    return coerce(coerce(value, source, carried), carried, target)


def _truncate(value: Any, limit: int = 280) -> Any:
    if isinstance(value, str) and len(value) > limit:
        return value[:limit]
    return value


# Named edge transforms
TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "identity": _identity,
    "strip": lambda v: v.strip() if isinstance(v, str) else v,
    "upper": lambda v: v.upper() if isinstance(v, str) else v,
    "lower": lambda v: v.lower() if isinstance(v, str) else v,
    "truncate": _truncate,
}


@dataclass
class Port:
    """A named, typed input or output slot on a node."""
    name: str
    data_type: DataType = DataType.TEXT
    required: bool = True
    default: Any = None
    description: str = ""

    @property
    def has_default(self) -> bool:
        return self.default is not None or not self.required

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": DataType(self.data_type).value,
            "required": self.required,
            "default": self.default,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Port":
        return cls(
            name=data["name"],
            data_type=DataType(data.get("type", DataType.TEXT)),
            required=data.get("required", True),
            default=data.get("default"),
            description=data.get("description", ""),
        )


@dataclass
class Node:
    """
    A node in the workflow graph.

    Attributes:
        node_id: Unique identifier within the graph
        node_type: Type tag selecting the behavior from the registry
        inputs: Ordered input ports
        outputs: Ordered output ports
        settings: Type-specific settings, validated by the behavior
        label: Human-readable label shown on the canvas
        max_attempts: Per-node override of the retry limit
        timeout: Per-node override of the attempt timeout (seconds)
        status/error/duration_ms/progress: data from the most recent run
    """

    node_id: str
    node_type: str
    inputs: List[Port] = field(default_factory=list)
    outputs: List[Port] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
    label: str = ""
    max_attempts: Optional[int] = None
    timeout: Optional[float] = None

    # Last-run data
    status: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    duration_ms: Optional[float] = None
    progress: Optional[float] = None

    def __post_init__(self):
        if not self.node_id:
            raise ValueError("Node id cannot be empty")

    def input_port(self, name: str) -> Optional[Port]:
        return next((p for p in self.inputs if p.name == name), None)

    def output_port(self, name: str) -> Optional[Port]:
        return next((p for p in self.outputs if p.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.node_id,
            "type": self.node_type,
            "label": self.label,
            "inputs": [p.to_dict() for p in self.inputs],
            "outputs": [p.to_dict() for p in self.outputs],
            "settings": self.settings,
            "max_attempts": self.max_attempts,
            "timeout": self.timeout,
            "status": self.status,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            node_id=data["id"],
            node_type=data["type"],
            inputs=[Port.from_dict(p) for p in data.get("inputs", [])],
            outputs=[Port.from_dict(p) for p in data.get("outputs", [])],
            settings=dict(data.get("settings") or {}),
            label=data.get("label", ""),
            max_attempts=data.get("max_attempts"),
            timeout=data.get("timeout"),
            status=data.get("status"),
            error=data.get("error"),
            duration_ms=data.get("duration_ms"),
            progress=data.get("progress"),
        )


@dataclass
class Edge:
    """A directed data connection from an output port to an input port."""
    source: str
    source_port: str
    target: str
    target_port: str
    edge_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    data_type: Optional[DataType] = None
    transform: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.edge_id,
            "source": self.source,
            "source_port": self.source_port,
            "target": self.target,
            "target_port": self.target_port,
            "type": DataType(self.data_type).value if self.data_type else None,
            "transform": self.transform,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        kwargs = {}
        if data.get("id"):
            kwargs["edge_id"] = data["id"]
        return cls(
            source=data["source"],
            source_port=data["source_port"],
            target=data["target"],
            target_port=data["target_port"],
            data_type=DataType(data["type"]) if data.get("type") else None,
            transform=data.get("transform"),
            **kwargs,
        )


@dataclass
class Graph:
    """
    A workflow graph: nodes keyed by id (insertion ordered) and edges.

    Graphs are treated as values by the engine; edits produce new graphs
    (see ``contentflow.engine.edits``).
    """

    graph_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Unnamed Workflow"
    description: str = ""
    nodes: Dict[str, Node] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "Graph":
        return deepcopy(self)

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        return next((e for e in self.edges if e.edge_id == edge_id), None)

    def incoming_edge(self, node_id: str, port: str) -> Optional[Edge]:
        """The edge feeding ``node_id.port``, if any."""
        return next(
            (e for e in self.edges if e.target == node_id and e.target_port == port),
            None,
        )

    def incoming_edges(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the graph document exchanged with the canvas."""
        return {
            "graph_id": self.graph_id,
            "name": self.name,
            "description": self.description,
            "nodes": [n.to_dict() for n in self.nodes.values()],
            "edges": [e.to_dict() for e in self.edges],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Graph":
        nodes: Dict[str, Node] = {}
        for raw in data.get("nodes", []):
            node = Node.from_dict(raw)
            if node.node_id in nodes:
                raise ValueError(f"Duplicate node id '{node.node_id}'")
            nodes[node.node_id] = node
        kwargs = {}
        if data.get("graph_id"):
            kwargs["graph_id"] = data["graph_id"]
        return cls(
            name=data.get("name", "Unnamed Workflow"),
            description=data.get("description", ""),
            nodes=nodes,
            edges=[Edge.from_dict(e) for e in data.get("edges", [])],
            metadata=dict(data.get("metadata") or {}),
            **kwargs,
        )

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        lines = ["graph LR"]
        for node in self.nodes.values():
            label = node.label or node.node_id
            lines.append(f'    {node.node_id}["{label} ({node.node_type})"]')
        for edge in self.edges:
            lines.append(
                f"    {edge.source} -->|{edge.source_port}:{edge.target_port}| {edge.target}"
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Graph(name='{self.name}', nodes={list(self.nodes.keys())})"


# ============================================================
# Validation
# ============================================================

@dataclass(frozen=True)
class Violation:
    """A single invariant violation found by ``validate``."""
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "node_id": self.node_id,
            "edge_id": self.edge_id,
        }

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationResult:
    violations: List[Violation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.violations

    def codes(self) -> Set[str]:
        return {v.code for v in self.violations}

    def for_node(self, node_id: str) -> List[Violation]:
        return [v for v in self.violations if v.node_id == node_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.is_valid,
            "violations": [v.to_dict() for v in self.violations],
        }


def find_cycle_nodes(graph: Graph) -> List[str]:
    """Nodes left over after repeatedly removing zero-indegree nodes."""
    indegree = {node_id: 0 for node_id in graph.nodes}
    successors: Dict[str, List[str]] = {node_id: [] for node_id in graph.nodes}
    for edge in graph.edges:
        if edge.source in graph.nodes and edge.target in graph.nodes:
            indegree[edge.target] += 1
            successors[edge.source].append(edge.target)

    queue = deque(n for n, d in indegree.items() if d == 0)
    removed: Set[str] = set()
    while queue:
        node_id = queue.popleft()
        removed.add(node_id)
        for succ in successors[node_id]:
            indegree[succ] -= 1
            if indegree[succ] == 0:
                queue.append(succ)
    return [n for n in graph.nodes if n not in removed]


def validate_edge(graph: Graph, edge: Edge) -> List[Violation]:
    """Check a single edge's endpoints, types and transform."""
    violations = []
    source = graph.nodes.get(edge.source)
    target = graph.nodes.get(edge.target)
    if source is None:
        violations.append(Violation(
            "unknown_node", f"Edge '{edge.edge_id}' source node '{edge.source}' not found",
            edge_id=edge.edge_id,
        ))
    if target is None:
        violations.append(Violation(
            "unknown_node", f"Edge '{edge.edge_id}' target node '{edge.target}' not found",
            edge_id=edge.edge_id,
        ))
    if source is None or target is None:
        return violations

    out_port = source.output_port(edge.source_port)
    in_port = target.input_port(edge.target_port)
    if out_port is None:
        violations.append(Violation(
            "unknown_port",
            f"Node '{source.node_id}' has no output port '{edge.source_port}'",
            node_id=source.node_id, edge_id=edge.edge_id,
        ))
    if in_port is None:
        violations.append(Violation(
            "unknown_port",
            f"Node '{target.node_id}' has no input port '{edge.target_port}'",
            node_id=target.node_id, edge_id=edge.edge_id,
        ))

    if out_port is not None and in_port is not None:
        declared = edge.data_type or out_port.data_type
        if DataType(declared) == DataType.ANY:
            compatible = is_compatible(out_port.data_type, in_port.data_type)
        else:
            compatible = (is_compatible(out_port.data_type, declared)
                          and is_compatible(declared, in_port.data_type))
        if not compatible:
            violations.append(Violation(
                "type_mismatch",
                f"Edge '{edge.edge_id}' carries '{DataType(declared).value}' which is not "
                f"compatible with {source.node_id}.{out_port.name} "
                f"('{DataType(out_port.data_type).value}') -> {target.node_id}.{in_port.name} "
                f"('{DataType(in_port.data_type).value}')",
                edge_id=edge.edge_id,
            ))

    if edge.transform is not None and edge.transform not in TRANSFORMS:
        violations.append(Violation(
            "unknown_transform",
            f"Edge '{edge.edge_id}' uses unknown transform '{edge.transform}'",
            edge_id=edge.edge_id,
        ))
    return violations


def validate(graph: Graph, registry=None) -> ValidationResult:
    """
    Validate the graph, collecting every violation.

    Checks per-node retry and timeout overrides, node type registration and
    settings (when a registry is given), edge endpoints and type
    compatibility, fan-in uniqueness, orphan input ports and acyclicity.
    The graph is not modified.
    """
    violations: List[Violation] = []

    for node in graph.nodes.values():
        if node.max_attempts is not None and node.max_attempts < 1:
            violations.append(Violation(
                "invalid_node_config",
                f"Node '{node.node_id}' max_attempts must be at least 1, got {node.max_attempts}",
                node_id=node.node_id,
            ))
        if node.timeout is not None and node.timeout <= 0:
            violations.append(Violation(
                "invalid_node_config",
                f"Node '{node.node_id}' timeout must be positive, got {node.timeout}",
                node_id=node.node_id,
            ))

    if registry is not None:
        for node in graph.nodes.values():
            if not registry.has(node.node_type):
                violations.append(Violation(
                    "unregistered_node_type",
                    f"Node '{node.node_id}' has unregistered type '{node.node_type}'",
                    node_id=node.node_id,
                ))
                continue
            behavior = registry.resolve(node.node_type)
            for message in behavior.settings_errors(node.settings):
                violations.append(Violation(
                    "invalid_settings",
                    f"Node '{node.node_id}' settings: {message}",
                    node_id=node.node_id,
                ))
            known_inputs = {p.name for p in behavior.input_schema}
            known_outputs = {p.name for p in behavior.output_schema}
            for port in node.inputs:
                if port.name not in known_inputs:
                    violations.append(Violation(
                        "unknown_port",
                        f"Node '{node.node_id}' declares input '{port.name}' "
                        f"unknown to type '{node.node_type}'",
                        node_id=node.node_id,
                    ))
            for port in node.outputs:
                if port.name not in known_outputs:
                    violations.append(Violation(
                        "unknown_port",
                        f"Node '{node.node_id}' declares output '{port.name}' "
                        f"unknown to type '{node.node_type}'",
                        node_id=node.node_id,
                    ))

    seen_edge_ids: Set[str] = set()
    fed_ports: Dict[Tuple[str, str], str] = {}
    for edge in graph.edges:
        if edge.edge_id in seen_edge_ids:
            violations.append(Violation(
                "duplicate_edge", f"Duplicate edge id '{edge.edge_id}'",
                edge_id=edge.edge_id,
            ))
        seen_edge_ids.add(edge.edge_id)

        violations.extend(validate_edge(graph, edge))

        key = (edge.target, edge.target_port)
        if key in fed_ports:
            violations.append(Violation(
                "fan_in",
                f"Input {edge.target}.{edge.target_port} already fed by edge "
                f"'{fed_ports[key]}'",
                node_id=edge.target, edge_id=edge.edge_id,
            ))
        else:
            fed_ports[key] = edge.edge_id

    for node in graph.nodes.values():
        for port in node.inputs:
            if (node.node_id, port.name) not in fed_ports and not port.has_default:
                violations.append(Violation(
                    "orphan_input",
                    f"Input {node.node_id}.{port.name} has no incoming edge and no default",
                    node_id=node.node_id,
                ))

    cycle = find_cycle_nodes(graph)
    if cycle:
        violations.append(Violation(
            "cycle", f"Cycle through nodes: {', '.join(cycle)}",
        ))

    return ValidationResult(violations=violations)
