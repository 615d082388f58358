"""
Async Execution Scheduler.

The scheduler runs an execution plan against a graph: level by level,
with bounded concurrency inside each level, per-node timeouts, retries
with exponential backoff, pause/resume and cooperative cancellation.
Every state change is written to the run store and published on the
run event feed.
"""

from typing import Any, Dict, Optional
from dataclasses import dataclass
from datetime import datetime
from copy import deepcopy
import asyncio
import logging
import os

from contentflow.capabilities.base import Capabilities
from contentflow.engine.context import ExecutionContext
from contentflow.engine.events import RunEventFeed, RunEventType
from contentflow.engine.graph import TRANSFORMS, Graph, Node, coerce_across, validate
from contentflow.engine.planner import ExecutionPlan, plan
from contentflow.engine.registry import NodeRegistry
from contentflow.engine.state import ErrorRecord, NodeOutcome, NodeStatus, Run, RunStatus
from contentflow.errors import (
    ExecutionTimeoutError,
    GraphValidationError,
    RunCancelled,
    WorkflowError,
)


logger = logging.getLogger(__name__)


@dataclass
class SchedulerSettings:
    """Tunable limits for a run."""
    max_concurrency: int = os.cpu_count() or 4
    max_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    node_timeout: Optional[float] = 120.0
    capability_latency_threshold: Optional[float] = 30.0

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def backoff(self, failures: int) -> float:
        """Delay before the next attempt after ``failures`` failed attempts."""
        return min(self.retry_base_delay * (2 ** (failures - 1)), self.retry_max_delay)

    @classmethod
    def from_settings(cls, settings) -> "SchedulerSettings":
        return cls(
            max_concurrency=settings.MAX_CONCURRENCY,
            max_attempts=settings.MAX_ATTEMPTS,
            retry_base_delay=settings.RETRY_BASE_DELAY,
            retry_max_delay=settings.RETRY_MAX_DELAY,
            node_timeout=settings.NODE_TIMEOUT,
            capability_latency_threshold=settings.CAPABILITY_LATENCY_THRESHOLD,
        )


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, WorkflowError):
        return error.retryable
    return True


def accept_graph(graph: Graph, registry: NodeRegistry) -> ExecutionPlan:
    """
    Check that a graph may run and return its plan.

    Raises:
        UnregisteredNodeType: If any node type has no behavior
        CycleError: If the graph is cyclic
        GraphValidationError: For any other invariant violation
    """
    for node in graph.nodes.values():
        registry.resolve(node.node_type)
    execution_plan = plan(graph)
    result = validate(graph, registry)
    if not result.is_valid:
        raise GraphValidationError(result.violations)
    return execution_plan


class Scheduler:
    """
    Executes one run of a graph.

    Usage:
        scheduler = Scheduler(graph, plan(graph), registry, capabilities, store)
        run = await scheduler.run()
    """

    def __init__(
        self,
        graph: Graph,
        plan: ExecutionPlan,
        registry: NodeRegistry,
        capabilities: Capabilities,
        store,
        feed: Optional[RunEventFeed] = None,
        settings: Optional[SchedulerSettings] = None,
    ):
        self.graph = graph
        self.plan = plan
        self.registry = registry
        self.capabilities = capabilities
        self.store = store
        self.feed = feed
        self.settings = settings or SchedulerSettings()

        self.run_id: Optional[str] = None
        self._outcomes: Dict[str, NodeOutcome] = {}
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        self._cancel_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._cancelled_at: Optional[datetime] = None
        self._finished = False

    # ------------------------------------------------------------
    # Control
    # ------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def paused(self) -> bool:
        return not self._resume_event.is_set()

    @property
    def cancelled_at(self) -> Optional[datetime]:
        return self._cancelled_at

    async def cancel(self) -> None:
        """Stop launching work and skip everything not yet finished."""
        if self._cancel_event.is_set():
            return
        logger.info(f"Cancellation requested for run {self.run_id}")
        self._cancelled_at = datetime.now()
        self._cancel_event.set()
        self._resume_event.set()

    async def stop(self) -> None:
        await self.cancel()

    async def pause(self) -> None:
        """Stop launching nodes; in-flight nodes finish."""
        if self.cancelled or self.paused or self._finished:
            return
        self._resume_event.clear()
        logger.info(f"Run {self.run_id} paused")
        await self._emit(RunEventType.RUN_PAUSED)

    async def resume(self) -> None:
        if not self.paused or self._finished:
            return
        self._resume_event.set()
        logger.info(f"Run {self.run_id} resumed")
        await self._emit(RunEventType.RUN_RESUMED)

    # ------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------

    async def prepare(self, run_id: Optional[str] = None) -> Run:
        """Create the run record (pending) without executing anything."""
        if self.run_id is not None:
            return await self.store.get_run(self.run_id)
        run = await self.store.create_run(self.graph, run_id=run_id)
        self.run_id = run.run_id
        self._outcomes = {node_id: deepcopy(o) for node_id, o in run.outcomes.items()}
        if self.feed is not None:
            self.feed.open(run.run_id)
        return run

    async def run(self) -> Run:
        """
        Execute every level of the plan and return the terminal run.
        """
        await self.prepare()
        await self.store.set_status(self.run_id, RunStatus.RUNNING)
        await self._emit(RunEventType.RUN_STARTED, levels=self.plan.levels)
        logger.info(
            f"Run {self.run_id}: {len(self.graph.nodes)} nodes in {len(self.plan.levels)} levels"
        )

        for index, level in enumerate(self.plan.levels):
            if self.cancelled:
                break
            await asyncio.gather(*(self._run_node(node_id) for node_id in level))
            counts = await self.store.counts(self.run_id)
            logger.info(f"Run {self.run_id}: level {index} done {counts}")

        for node_id in self.plan.node_ids:
            if not self._outcomes[node_id].status.is_terminal:
                await self._skip(node_id, "cancelled")

        if self.cancelled:
            await self.store.request_cancel(self.run_id)
        run = await self.store.finalize(self.run_id)
        self._finished = True
        await self._emit(
            RunEventType.RUN_TERMINAL,
            status=run.status.value,
            failed={k: v.to_dict() for k, v in run.failed_nodes().items()},
        )
        return run

    async def _run_node(self, node_id: str) -> None:
        node = self.graph.nodes[node_id]
        blocked = [
            dep for dep in sorted(self.plan.dependencies.get(node_id, ()))
            if self._outcomes[dep].status != NodeStatus.COMPLETE
        ]
        if blocked:
            await self._skip(node_id, "upstream", blocked_by=blocked)
            return

        async with self._semaphore:
            if self.paused:
                await self._resume_event.wait()
            if self.cancelled:
                await self._skip(node_id, "cancelled")
                return
            await self._execute_with_retries(node)

    async def _execute_with_retries(self, node: Node) -> None:
        outcome = self._outcomes[node.node_id]
        outcome.status = NodeStatus.RUNNING
        outcome.started_at = datetime.now()
        await self._commit(outcome)
        await self._emit(RunEventType.NODE_STARTED, node.node_id, type=node.node_type)
        logger.info(f"Executing node: {node.node_id} ({node.node_type})")

        max_attempts = (
            node.max_attempts if node.max_attempts is not None else self.settings.max_attempts
        )
        timeout = node.timeout if node.timeout is not None else self.settings.node_timeout

        try:
            behavior = self.registry.resolve(node.node_type)
            inputs = self._gather_inputs(node)
        except Exception as e:
            await self._fail(outcome, e)
            return

        for attempt in range(1, max_attempts + 1):
            ctx = ExecutionContext(
                run_id=self.run_id,
                node_id=node.node_id,
                capabilities=self.capabilities,
                cancel_event=self._cancel_event,
                latency_threshold=self.settings.capability_latency_threshold,
                on_progress=self._on_progress,
                attempt=attempt,
            )
            try:
                call = behavior.execute(deepcopy(inputs), node.settings, self.capabilities, ctx)
                if timeout is None:
                    outputs = await call
                else:
                    outputs = await asyncio.wait_for(call, timeout=timeout)
            except RunCancelled:
                await self._skip(node.node_id, "cancelled")
                return
            except asyncio.TimeoutError:
                error: BaseException = ExecutionTimeoutError(
                    f"Node '{node.node_id}' timed out after {timeout}s"
                )
            except Exception as e:
                error = e
            else:
                outcome.status = NodeStatus.COMPLETE
                outcome.outputs = outputs
                outcome.error = None
                self._finish(outcome)
                await self._commit(outcome)
                await self._emit(
                    RunEventType.NODE_COMPLETED, node.node_id,
                    duration_ms=outcome.duration_ms, attempts=attempt,
                )
                logger.info(f"Node {node.node_id} complete ({outcome.duration_ms:.1f} ms)")
                return

            outcome.retry_count += 1
            logger.warning(
                f"Node {node.node_id} attempt {attempt}/{max_attempts} failed: {error}"
            )
            if self.cancelled:
                await self._skip(node.node_id, "cancelled")
                return
            if not is_retryable(error) or attempt >= max_attempts:
                await self._fail(outcome, error)
                return

            delay = self.settings.backoff(outcome.retry_count)
            outcome.status = NodeStatus.RETRYING
            outcome.error = ErrorRecord.from_exception(error)
            await self._commit(outcome)
            await self._emit(
                RunEventType.NODE_RETRYING, node.node_id,
                attempt=attempt, max_attempts=max_attempts, delay=delay,
                error=outcome.error.to_dict(),
            )
            if await self._sleep_unless_cancelled(delay):
                await self._skip(node.node_id, "cancelled")
                return
            outcome.status = NodeStatus.RUNNING
            await self._commit(outcome)

    async def _sleep_unless_cancelled(self, delay: float) -> bool:
        """Back off for ``delay`` seconds; True if cancelled meanwhile."""
        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _gather_inputs(self, node: Node) -> Dict[str, Any]:
        """Collect input values from upstream outputs or port defaults."""
        inputs: Dict[str, Any] = {}
        for port in node.inputs:
            edge = self.graph.incoming_edge(node.node_id, port.name)
            if edge is None:
                inputs[port.name] = deepcopy(port.default)
                continue
            source = self.graph.nodes[edge.source]
            out_port = source.output_port(edge.source_port)
            value = self._outcomes[edge.source].outputs.get(edge.source_port)
            value = coerce_across(value, out_port.data_type, edge.data_type, port.data_type)
            if edge.transform:
                value = TRANSFORMS[edge.transform](value)
            inputs[port.name] = deepcopy(value)
        return inputs

    # ------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------

    def _finish(self, outcome: NodeOutcome) -> None:
        outcome.finished_at = datetime.now()
        if outcome.started_at is not None:
            outcome.duration_ms = (
                outcome.finished_at - outcome.started_at
            ).total_seconds() * 1000

    async def _commit(self, outcome: NodeOutcome) -> None:
        await self.store.update_outcome(self.run_id, outcome.node_id, outcome)

    async def _fail(self, outcome: NodeOutcome, error: BaseException) -> None:
        outcome.status = NodeStatus.ERROR
        outcome.error = ErrorRecord.from_exception(error)
        self._finish(outcome)
        await self._commit(outcome)
        await self._emit(
            RunEventType.NODE_ERRORED, outcome.node_id,
            error=outcome.error.to_dict(), retry_count=outcome.retry_count,
        )
        logger.error(f"Node {outcome.node_id} failed: {outcome.error.message}")

    async def _skip(self, node_id: str, reason: str, **data: Any) -> None:
        outcome = self._outcomes[node_id]
        if outcome.status.is_terminal:
            return
        outcome.status = NodeStatus.SKIPPED
        outcome.outputs = {}
        self._finish(outcome)
        await self._commit(outcome)
        await self._emit(RunEventType.NODE_SKIPPED, node_id, reason=reason, **data)

    async def _on_progress(self, node_id: str, fraction: float, data: Dict[str, Any]) -> None:
        outcome = self._outcomes[node_id]
        outcome.progress = fraction
        await self._commit(outcome)
        await self._emit(RunEventType.NODE_PROGRESS, node_id, progress=fraction, **data)

    async def _emit(self, event_type: RunEventType, node_id: Optional[str] = None, **data: Any) -> None:
        if self.feed is not None and self.run_id is not None:
            await self.feed.publish(self.run_id, event_type, node_id, **data)


async def execute_graph(
    graph: Graph,
    registry: Optional[NodeRegistry] = None,
    capabilities: Optional[Capabilities] = None,
    store=None,
    feed: Optional[RunEventFeed] = None,
    settings: Optional[SchedulerSettings] = None,
) -> Run:
    """
    Convenience function to validate, plan and execute a graph.

    Args:
        graph: The workflow graph
        registry: Node registry (defaults to the built-in behaviors)
        capabilities: External services (defaults to in-memory ones)
        store: Run store (a fresh in-memory store by default)
        feed: Optional event feed
        settings: Scheduler settings

    Returns:
        The terminal Run
    """
    if registry is None:
        from contentflow.engine.behaviors import default_registry
        registry = default_registry
    if capabilities is None:
        from contentflow.capabilities.memory import InMemoryVectorIndex, TemplateGenerator
        capabilities = Capabilities(generator=TemplateGenerator(), vector_index=InMemoryVectorIndex())
    if store is None:
        from contentflow.storage.memory import RunStore
        store = RunStore()

    execution_plan = accept_graph(graph, registry)
    scheduler = Scheduler(graph, execution_plan, registry, capabilities, store, feed, settings)
    return await scheduler.run()
