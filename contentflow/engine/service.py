"""
Workflow Engine Service.

Front door used by the API: stores workflows, applies edits, accepts runs
(validate, plan, lock the graph, schedule) and exposes run control and
the progress feed.
"""

from typing import AsyncIterator, Dict, List, Optional
import asyncio
import logging
import uuid

from contentflow.capabilities.base import Capabilities
from contentflow.capabilities.http import HttpGenerator
from contentflow.capabilities.memory import InMemoryVectorIndex, TemplateGenerator
from contentflow.engine.edits import GraphEdit
from contentflow.engine.events import RunEvent, RunEventFeed, RunEventType
from contentflow.engine.graph import Graph, ValidationResult, validate
from contentflow.engine.planner import ExecutionPlan, plan
from contentflow.engine.registry import NodeRegistry
from contentflow.engine.scheduler import Scheduler, SchedulerSettings, accept_graph
from contentflow.engine.state import NodeStatus, Run, RunStatus
from contentflow.errors import RunAlreadyTerminal
from contentflow.storage.memory import GraphStorage, RunStore, StoredWorkflow


logger = logging.getLogger(__name__)


def build_capabilities(settings) -> Capabilities:
    """Pick capability implementations from application settings."""
    if settings.GENERATION_URL:
        generator = HttpGenerator(
            url=settings.GENERATION_URL,
            model=settings.GENERATION_MODEL,
            api_key=settings.GENERATION_API_KEY,
            timeout=settings.NODE_TIMEOUT,
        )
    else:
        generator = TemplateGenerator()
    return Capabilities(generator=generator, vector_index=InMemoryVectorIndex())


class WorkflowEngine:
    """
    Owns workflow storage, the run store, the event feed and every active
    scheduler.
    """

    def __init__(
        self,
        registry: Optional[NodeRegistry] = None,
        capabilities: Optional[Capabilities] = None,
        settings: Optional[SchedulerSettings] = None,
        run_store: Optional[RunStore] = None,
        feed: Optional[RunEventFeed] = None,
    ):
        if registry is None:
            from contentflow.engine.behaviors import default_registry
            registry = default_registry
        self.registry = registry
        self.capabilities = capabilities or Capabilities(
            generator=TemplateGenerator(), vector_index=InMemoryVectorIndex()
        )
        self.settings = settings or SchedulerSettings()
        self.graphs = GraphStorage(registry=registry)
        self.runs = run_store or RunStore()
        self.feed = feed or RunEventFeed()
        self._schedulers: Dict[str, Scheduler] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------

    async def create_workflow(self, graph: Graph) -> StoredWorkflow:
        stored = await self.graphs.save(graph)
        logger.info(f"Stored workflow {graph.graph_id} ({graph.name})")
        return stored

    async def get_graph(self, graph_id: str) -> Graph:
        return (await self.graphs.require(graph_id)).graph

    async def apply_edit(self, graph_id: str, edit: GraphEdit) -> Graph:
        stored = await self.graphs.require(graph_id)
        graph = stored.history.apply(edit)
        await self.graphs.touch(graph_id)
        return graph

    async def undo(self, graph_id: str) -> Graph:
        stored = await self.graphs.require(graph_id)
        graph = stored.history.undo()
        await self.graphs.touch(graph_id)
        return graph

    async def redo(self, graph_id: str) -> Graph:
        stored = await self.graphs.require(graph_id)
        graph = stored.history.redo()
        await self.graphs.touch(graph_id)
        return graph

    async def validate_workflow(self, graph_id: str) -> ValidationResult:
        return validate(await self.get_graph(graph_id), self.registry)

    async def plan_workflow(self, graph_id: str) -> ExecutionPlan:
        return plan(await self.get_graph(graph_id))

    async def delete_workflow(self, graph_id: str) -> bool:
        return await self.graphs.delete(graph_id)

    # ------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------

    async def start_run(self, graph_id: str) -> Run:
        """
        Accept a run of the workflow and start it in the background.

        Raises:
            WorkflowNotFoundError, UnregisteredNodeType, CycleError,
            GraphValidationError, GraphLockedError
        """
        stored = await self.graphs.require(graph_id)
        graph = stored.history.current
        execution_plan = accept_graph(graph, self.registry)

        run_id = str(uuid.uuid4())
        stored.history.lock(run_id)
        try:
            scheduler = Scheduler(
                graph, execution_plan, self.registry, self.capabilities,
                self.runs, self.feed, self.settings,
            )
            run = await scheduler.prepare(run_id)
        except Exception:
            stored.history.unlock(run_id)
            raise

        self._schedulers[run_id] = scheduler
        self._tasks[run_id] = asyncio.create_task(self._drive(stored, scheduler))
        return run

    async def _drive(self, stored: StoredWorkflow, scheduler: Scheduler) -> Run:
        run_id = scheduler.run_id
        try:
            run = await scheduler.run()
        except Exception:
            logger.exception(f"Run {run_id} crashed")
            run = await self._abort(run_id)
        finally:
            stored.history.unlock(run_id)
            self._schedulers.pop(run_id, None)
            self._tasks.pop(run_id, None)
        stored.history.record_run(run)
        return run

    async def _abort(self, run_id: str) -> Run:
        """Force a crashed run into a terminal failed state."""
        run = await self.runs.get_run(run_id)
        if run.is_terminal:
            return run
        for node_id, outcome in run.outcomes.items():
            if not outcome.status.is_terminal:
                outcome.status = NodeStatus.SKIPPED
                await self.runs.update_outcome(run_id, node_id, outcome)
        run = await self.runs.set_status(run_id, RunStatus.FAILED)
        if not self.feed.is_closed(run_id):
            await self.feed.publish(run_id, RunEventType.RUN_TERMINAL, status=run.status.value)
        return run

    async def wait_for_run(self, run_id: str) -> Run:
        """Wait until the run is terminal and return it."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.runs.get_run(run_id)

    async def run_workflow(self, graph_id: str) -> Run:
        """Start a run and wait for it to finish."""
        run = await self.start_run(graph_id)
        return await self.wait_for_run(run.run_id)

    async def _active(self, run_id: str) -> Scheduler:
        scheduler = self._schedulers.get(run_id)
        if scheduler is not None:
            return scheduler
        run = await self.runs.get_run(run_id)
        raise RunAlreadyTerminal(run_id, run.status.value)

    async def cancel_run(self, run_id: str) -> None:
        await (await self._active(run_id)).cancel()

    async def pause_run(self, run_id: str) -> None:
        await (await self._active(run_id)).pause()

    async def resume_run(self, run_id: str) -> None:
        await (await self._active(run_id)).resume()

    async def get_run(self, run_id: str) -> Run:
        return await self.runs.get_run(run_id)

    async def list_runs(self, graph_id: Optional[str] = None) -> List[Run]:
        return await self.runs.list_runs(graph_id)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._schedulers

    async def subscribe(self, run_id: str) -> AsyncIterator[RunEvent]:
        """Events of a run, from the first one until it is terminal."""
        await self.runs.get_run(run_id)
        async for event in self.feed.subscribe(run_id):
            yield event

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to finish."""
        for scheduler in list(self._schedulers.values()):
            await scheduler.cancel()
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def create_engine(app_settings) -> WorkflowEngine:
    """Build an engine configured from application settings."""
    return WorkflowEngine(
        capabilities=build_capabilities(app_settings),
        settings=SchedulerSettings.from_settings(app_settings),
    )
