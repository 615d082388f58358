"""
Pydantic Schemas for API Request/Response Models.

These schemas define the structure of data flowing through the API,
providing automatic validation and documentation.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field
from copy import deepcopy

from contentflow.engine.edits import AddEdge, AddNode, RemoveEdge, RemoveNode, UpdateSettings
from contentflow.engine.graph import DataType, Edge, Graph, Node, Port
from contentflow.errors import NodeSettingsError


# ============================================================
# Graph Document Schemas
# ============================================================

class PortSchema(BaseModel):
    """An input or output port."""
    name: str
    type: DataType = DataType.TEXT
    required: bool = True
    default: Any = None
    description: str = ""


class NodeSchema(BaseModel):
    """Definition of a node in the graph document."""
    id: str = Field(..., description="Unique node id")
    type: str = Field(..., description="Node type tag, e.g. 'content-generation'")
    label: str = ""
    settings: Dict[str, Any] = Field(default_factory=dict)
    inputs: Optional[List[PortSchema]] = Field(
        None, description="Input ports (defaults to the node type's ports)"
    )
    outputs: Optional[List[PortSchema]] = Field(
        None, description="Output ports (defaults to the node type's ports)"
    )
    max_attempts: Optional[int] = Field(None, ge=1, le=10)
    timeout: Optional[float] = Field(None, gt=0)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "draft",
                "type": "content-generation",
                "label": "Draft post",
                "settings": {"topic": "remote work", "tone": "friendly"},
            }
        }


class EdgeSchema(BaseModel):
    """A port-to-port connection."""
    id: Optional[str] = None
    source: str
    source_port: str
    target: str
    target_port: str
    type: Optional[DataType] = None
    transform: Optional[str] = None

    def to_edge(self) -> Edge:
        data = self.model_dump(mode="json")
        return Edge.from_dict(data)


class WorkflowCreateRequest(BaseModel):
    """Request to create a new workflow."""
    name: str = Field(..., description="Name of the workflow")
    description: Optional[str] = None
    nodes: List[NodeSchema] = Field(default_factory=list)
    edges: List[EdgeSchema] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Quick tweet",
                "nodes": [
                    {"id": "draft", "type": "content-generation", "settings": {"topic": "AI"}},
                    {"id": "fmt", "type": "format", "settings": {"platform": "twitter"}},
                ],
                "edges": [
                    {"source": "draft", "source_port": "content",
                     "target": "fmt", "target_port": "content"},
                ],
            }
        }


def build_node(schema: NodeSchema, registry) -> Node:
    """Turn a node schema into a Node, taking ports from the registry when omitted."""
    node = Node(
        node_id=schema.id, node_type=schema.type, settings=dict(schema.settings),
        label=schema.label, max_attempts=schema.max_attempts, timeout=schema.timeout,
    )
    if registry.has(schema.type):
        behavior = registry.resolve(schema.type)
        node.inputs = deepcopy(behavior.input_schema)
        node.outputs = deepcopy(behavior.output_schema)
        try:
            node.settings = behavior.validate_settings(schema.settings).model_dump(mode="json")
        except NodeSettingsError:
            # Kept as given; reported by validation
            pass
    if schema.inputs is not None:
        node.inputs = [Port.from_dict(p.model_dump(mode="json")) for p in schema.inputs]
    if schema.outputs is not None:
        node.outputs = [Port.from_dict(p.model_dump(mode="json")) for p in schema.outputs]
    return node


def build_graph(request: WorkflowCreateRequest, registry) -> Graph:
    graph = Graph(
        name=request.name,
        description=request.description or "",
        metadata=dict(request.metadata),
    )
    for schema in request.nodes:
        if schema.id in graph.nodes:
            raise ValueError(f"Duplicate node id '{schema.id}'")
        graph.nodes[schema.id] = build_node(schema, registry)
    graph.edges = [e.to_edge() for e in request.edges]
    return graph


class WorkflowResponse(BaseModel):
    """A workflow with its graph document."""
    graph_id: str
    name: str
    definition: Dict[str, Any]
    can_undo: bool = False
    can_redo: bool = False
    locked_by: Optional[str] = None
    mermaid_diagram: Optional[str] = None


class WorkflowListResponse(BaseModel):
    workflows: List[WorkflowResponse]
    total: int


# ============================================================
# Edit Schemas
# ============================================================

class AddNodeEdit(BaseModel):
    op: Literal["add_node"] = "add_node"
    node: NodeSchema


class RemoveNodeEdit(BaseModel):
    op: Literal["remove_node"] = "remove_node"
    node_id: str


class AddEdgeEdit(BaseModel):
    op: Literal["add_edge"] = "add_edge"
    edge: EdgeSchema


class RemoveEdgeEdit(BaseModel):
    op: Literal["remove_edge"] = "remove_edge"
    edge_id: str


class UpdateSettingsEdit(BaseModel):
    op: Literal["update_settings"] = "update_settings"
    node_id: str
    settings: Dict[str, Any]
    replace: bool = False


EditRequest = Annotated[
    Union[AddNodeEdit, RemoveNodeEdit, AddEdgeEdit, RemoveEdgeEdit, UpdateSettingsEdit],
    Field(discriminator="op"),
]


def to_graph_edit(request, registry):
    """Convert an API edit into an engine edit."""
    if isinstance(request, AddNodeEdit):
        return AddNode(build_node(request.node, registry))
    if isinstance(request, RemoveNodeEdit):
        return RemoveNode(request.node_id)
    if isinstance(request, AddEdgeEdit):
        return AddEdge(request.edge.to_edge())
    if isinstance(request, RemoveEdgeEdit):
        return RemoveEdge(request.edge_id)
    return UpdateSettings(request.node_id, request.settings, replace=request.replace)


class EditEnvelope(BaseModel):
    edit: EditRequest

    class Config:
        json_schema_extra = {
            "example": {
                "edit": {
                    "op": "update_settings",
                    "node_id": "draft",
                    "settings": {"tone": "playful"},
                }
            }
        }


# ============================================================
# Validation / Plan Schemas
# ============================================================

class ViolationSchema(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None


class ValidationResponse(BaseModel):
    valid: bool
    violations: List[ViolationSchema]


class PlanResponse(BaseModel):
    levels: List[List[str]]
    dependencies: Dict[str, List[str]]


# ============================================================
# Run Schemas
# ============================================================

class ErrorRecordSchema(BaseModel):
    kind: str
    message: str


class NodeOutcomeSchema(BaseModel):
    node_id: str
    status: str
    outputs: Dict[str, Any]
    error: Optional[ErrorRecordSchema] = None
    retry_count: int
    progress: Optional[float] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: Optional[float] = None


class RunResponse(BaseModel):
    """State of a run."""
    run_id: str
    graph_id: str
    generation: int
    status: str
    outcomes: Dict[str, NodeOutcomeSchema]
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: Optional[float] = None
    cancel_requested: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "run_id": "0b6f3c4e-1f7e-4a55-9a51-5f0c6d1e8a11",
                "graph_id": "linkedin-post-demo",
                "generation": 3,
                "status": "partially-failed",
                "outcomes": {
                    "research": {"node_id": "research", "status": "complete",
                                 "outputs": {"summary": "..."}, "retry_count": 0},
                    "generate": {"node_id": "generate", "status": "error",
                                 "outputs": {}, "retry_count": 3,
                                 "error": {"kind": "timeout", "message": "..."}},
                },
                "created_at": "2024-01-01T12:00:00",
            }
        }


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int


class NodeTypeListResponse(BaseModel):
    node_types: List[Dict[str, Any]]
    total: int


class ErrorResponse(BaseModel):
    """Error payload."""
    error: str
    kind: str
    detail: Any = None
