"""
Engine package - Workflow graph model, planning and execution.
"""

from contentflow.engine.graph import DataType, Edge, Graph, Node, NodeType, Port, validate
from contentflow.engine.edits import (
    AddEdge,
    AddNode,
    GraphHistory,
    RemoveEdge,
    RemoveNode,
    UpdateSettings,
    apply_edit,
)
from contentflow.engine.registry import NodeBehavior, NodeRegistry
from contentflow.engine.planner import ExecutionPlan, plan
from contentflow.engine.state import NodeOutcome, NodeStatus, Run, RunStatus
from contentflow.engine.events import RunEvent, RunEventFeed, RunEventType
from contentflow.engine.scheduler import Scheduler, SchedulerSettings, execute_graph

__all__ = [
    "DataType",
    "Edge",
    "Graph",
    "Node",
    "NodeType",
    "Port",
    "validate",
    "AddEdge",
    "AddNode",
    "GraphHistory",
    "RemoveEdge",
    "RemoveNode",
    "UpdateSettings",
    "apply_edit",
    "NodeBehavior",
    "NodeRegistry",
    "ExecutionPlan",
    "plan",
    "NodeOutcome",
    "NodeStatus",
    "Run",
    "RunStatus",
    "RunEvent",
    "RunEventFeed",
    "RunEventType",
    "Scheduler",
    "SchedulerSettings",
    "execute_graph",
]
