"""
Dependency Resolver.

Turns a graph into an execution plan: a sequence of levels where every
node depends only on nodes in strictly earlier levels.
"""

from typing import Dict, List, Set
from dataclasses import dataclass, field
import logging

from contentflow.engine.graph import Graph
from contentflow.errors import CycleError


logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """
    Levels of nodes that can run concurrently.

    Attributes:
        levels: Node ids grouped by level, each in graph insertion order
        dependencies: node id -> direct upstream node ids
        dependents: node id -> direct downstream node ids
    """
    levels: List[List[str]] = field(default_factory=list)
    dependencies: Dict[str, Set[str]] = field(default_factory=dict)
    dependents: Dict[str, Set[str]] = field(default_factory=dict)

    @property
    def node_ids(self) -> List[str]:
        return [node_id for level in self.levels for node_id in level]

    def level_of(self, node_id: str) -> int:
        for index, level in enumerate(self.levels):
            if node_id in level:
                return index
        raise KeyError(f"Node '{node_id}' is not in the plan")

    def upstream(self, node_id: str) -> Set[str]:
        """All transitive dependencies of a node."""
        seen: Set[str] = set()
        stack = list(self.dependencies.get(node_id, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependencies.get(current, ()))
        return seen

    def to_dict(self) -> Dict:
        return {
            "levels": self.levels,
            "dependencies": {k: sorted(v) for k, v in self.dependencies.items()},
        }


def plan(graph: Graph) -> ExecutionPlan:
    """
    Build the execution plan for a graph.

    Each round removes every node whose dependencies have all been
    removed; those nodes form one level.

    Raises:
        CycleError: naming the nodes that could not be scheduled
    """
    order = {node_id: i for i, node_id in enumerate(graph.nodes)}
    dependencies: Dict[str, Set[str]] = {node_id: set() for node_id in graph.nodes}
    dependents: Dict[str, Set[str]] = {node_id: set() for node_id in graph.nodes}

    for edge in graph.edges:
        if edge.source not in order or edge.target not in order:
            continue
        dependencies[edge.target].add(edge.source)
        dependents[edge.source].add(edge.target)

    indegree = {node_id: len(deps) for node_id, deps in dependencies.items()}
    ready = [node_id for node_id in graph.nodes if indegree[node_id] == 0]
    levels: List[List[str]] = []
    placed = 0

    while ready:
        levels.append(ready)
        placed += len(ready)
        next_ready = set()
        for node_id in ready:
            for succ in dependents[node_id]:
                indegree[succ] -= 1
                if indegree[succ] == 0:
                    next_ready.add(succ)
        ready = sorted(next_ready, key=order.__getitem__)

    if placed < len(graph.nodes):
        remaining = [node_id for node_id in graph.nodes if indegree[node_id] > 0]
        logger.warning(f"Cycle detected in workflow {graph.graph_id}: {remaining}")
        raise CycleError(remaining)

    return ExecutionPlan(levels=levels, dependencies=dependencies, dependents=dependents)
