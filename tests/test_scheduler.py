"""
Tests for the async execution scheduler.
"""

import pytest
import asyncio
from collections import defaultdict

from pydantic import BaseModel

from contentflow.capabilities.base import Capabilities
from contentflow.capabilities.memory import InMemoryVectorIndex, TemplateGenerator
from contentflow.engine.behaviors import default_registry
from contentflow.engine.events import RunEventFeed, RunEventType
from contentflow.engine.graph import DataType, Edge, Graph, NodeType, Port
from contentflow.engine.planner import plan
from contentflow.engine.registry import NodeRegistry
from contentflow.engine.scheduler import Scheduler, SchedulerSettings, execute_graph
from contentflow.engine.state import NodeStatus, RunStatus
from contentflow.errors import (
    CapabilityError,
    CycleError,
    GraphValidationError,
    UnregisteredNodeType,
    WorkflowError,
)
from contentflow.storage.memory import RunStore
from contentflow.workflows.linkedin_post import (
    SAMPLE_CORPUS,
    create_linkedin_post_workflow,
    seed_research_index,
)


FAST = SchedulerSettings(max_concurrency=4, max_attempts=3, retry_base_delay=0.0, node_timeout=5.0)


class StepSettings(BaseModel):
    value: str = ""
    delay: float = 0.0
    fail_times: int = 0
    fatal: bool = False


def step_registry():
    """
    A registry with one test behavior on the utility tag.

    The step joins its inputs and its ``value`` with "+", optionally
    sleeping and failing its first ``fail_times`` attempts.
    """
    registry = NodeRegistry()
    stats = {"attempts": defaultdict(int), "active": 0, "max_active": 0}

    @registry.behavior(
        NodeType.UTILITY,
        inputs=[
            Port("left", DataType.TEXT, required=False),
            Port("right", DataType.TEXT, required=False),
        ],
        outputs=[Port("text", DataType.TEXT)],
        settings=StepSettings,
    )
    async def step(inputs, settings, capabilities, ctx):
        stats["attempts"][ctx.node_id] += 1
        stats["active"] += 1
        stats["max_active"] = max(stats["max_active"], stats["active"])
        try:
            if settings.delay:
                await asyncio.sleep(settings.delay)
            ctx.check_cancelled()
            if stats["attempts"][ctx.node_id] <= settings.fail_times:
                if settings.fatal:
                    raise WorkflowError(f"{ctx.node_id} cannot proceed")
                raise CapabilityError(f"{ctx.node_id} attempt {ctx.attempt} failed")
        finally:
            stats["active"] -= 1
        parts = [p for p in (inputs.get("left"), inputs.get("right"), settings.value) if p]
        return {"text": "+".join(parts)}

    return registry, stats


def step_graph(registry, nodes, edges):
    """Build a graph from ``{node_id: settings}`` and ``(source, target, port)`` tuples."""
    graph = Graph(name="Steps")
    for node_id, settings in nodes.items():
        graph.nodes[node_id] = registry.create_node(node_id, "utility", settings)
    for source, target, port, *rest in edges:
        graph.edges.append(Edge(
            source, "text", target, port, edge_id=f"{source}-{target}-{port}",
            transform=rest[0] if rest else None,
        ))
    return graph


# ============================================================
# Execution Tests
# ============================================================

class TestExecution:
    """Tests for plain execution."""

    @pytest.mark.asyncio
    async def test_chain(self):
        """Test outputs flow along a chain."""
        registry, _ = step_registry()
        graph = step_graph(
            registry,
            {"a": {"value": "a"}, "b": {"value": "b"}, "c": {"value": "c"}},
            [("a", "b", "left"), ("b", "c", "left")],
        )

        run = await execute_graph(graph, registry, settings=FAST)

        assert run.status == RunStatus.COMPLETED
        assert run.outcomes["c"].outputs == {"text": "a+b+c"}
        assert all(o.duration_ms is not None for o in run.outcomes.values())

    @pytest.mark.asyncio
    async def test_diamond(self):
        """Test a diamond runs its middle level concurrently."""
        registry, stats = step_registry()
        graph = step_graph(
            registry,
            {
                "a": {"value": "a"},
                "b": {"value": "b", "delay": 0.05},
                "c": {"value": "c", "delay": 0.05},
                "d": {"value": "d"},
            },
            [("a", "b", "left"), ("a", "c", "left"), ("b", "d", "left"), ("c", "d", "right")],
        )

        run = await execute_graph(graph, registry, settings=FAST)

        assert run.status == RunStatus.COMPLETED
        assert run.outcomes["d"].outputs["text"] == "a+b+a+c+d"
        assert stats["max_active"] == 2

    @pytest.mark.asyncio
    async def test_fan_out_gets_identical_content(self):
        """Test every downstream consumer receives the same value."""
        registry, _ = step_registry()
        graph = step_graph(
            registry,
            {"src": {"value": "shared"}, "x": {}, "y": {}, "z": {}},
            [("src", "x", "left"), ("src", "y", "left"), ("src", "z", "right")],
        )

        run = await execute_graph(graph, registry, settings=FAST)

        texts = {run.outcomes[n].outputs["text"] for n in ("x", "y", "z")}
        assert texts == {"shared"}

    @pytest.mark.asyncio
    async def test_edge_transform(self):
        """Test named transforms apply to values crossing an edge."""
        registry, _ = step_registry()
        graph = step_graph(
            registry,
            {"a": {"value": "loud"}, "b": {}},
            [("a", "b", "left", "upper")],
        )

        run = await execute_graph(graph, registry, settings=FAST)
        assert run.outcomes["b"].outputs["text"] == "LOUD"

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        """Test no more than max_concurrency nodes execute at once."""
        registry, stats = step_registry()
        graph = step_graph(registry, {f"n{i}": {"delay": 0.02} for i in range(6)}, [])
        settings = SchedulerSettings(max_concurrency=2, retry_base_delay=0.0)

        run = await execute_graph(graph, registry, settings=settings)

        assert run.status == RunStatus.COMPLETED
        assert stats["max_active"] == 2

    @pytest.mark.asyncio
    async def test_empty_graph(self):
        """Test an empty graph completes immediately."""
        registry, _ = step_registry()
        run = await execute_graph(Graph(), registry, settings=FAST)
        assert run.status == RunStatus.COMPLETED
        assert run.outcomes == {}


    @pytest.mark.asyncio
    async def test_any_edge_coerces_between_ports(self):
        """Test an edge declared as any still converts research hits to text."""
        generator = TemplateGenerator()
        index = InMemoryVectorIndex()
        await index.add_text("d1", "remote teams write design docs")
        graph = Graph()
        graph.nodes["research"] = default_registry.create_node("research", "research", {"query": "remote teams"})
        graph.nodes["gen"] = default_registry.create_node("gen", "content-generation", {"topic": "remote teams"})
        graph.edges.append(Edge(
            "research", "research", "gen", "research", edge_id="e1", data_type=DataType.ANY,
        ))

        run = await execute_graph(
            graph, capabilities=Capabilities(generator=generator, vector_index=index), settings=FAST,
        )

        assert run.status == RunStatus.COMPLETED
        prompt = generator.calls[0][0]
        assert "- remote teams write design docs" in prompt
        assert "content_id" not in prompt


class TestAcceptance:
    """Tests for graphs rejected before execution."""

    @pytest.mark.asyncio
    async def test_unregistered_type(self):
        """Test a node type without a behavior."""
        registry, _ = step_registry()
        graph = Graph()
        graph.nodes["fmt"] = default_registry.create_node("fmt", "format")

        with pytest.raises(UnregisteredNodeType):
            await execute_graph(graph, registry, settings=FAST)

    @pytest.mark.asyncio
    async def test_cycle(self):
        """Test a cyclic graph."""
        registry, _ = step_registry()
        graph = step_graph(registry, {"a": {}, "b": {}}, [("a", "b", "left"), ("b", "a", "left")])

        with pytest.raises(CycleError):
            await execute_graph(graph, registry, settings=FAST)

    @pytest.mark.asyncio
    async def test_invalid_graph(self):
        """Test invariant violations reject the whole run."""
        graph = Graph()
        graph.nodes["edit"] = default_registry.create_node("edit", "content-editing")

        with pytest.raises(GraphValidationError):
            await execute_graph(graph, settings=FAST)

    @pytest.mark.asyncio
    async def test_invalid_attempt_override(self):
        """Test a node that would never be attempted rejects the run."""
        registry, stats = step_registry()
        graph = step_graph(registry, {"a": {"value": "a"}}, [])
        graph.nodes["a"].max_attempts = -1

        with pytest.raises(GraphValidationError, match="max_attempts"):
            await execute_graph(graph, registry, settings=FAST)
        assert stats["attempts"]["a"] == 0


# ============================================================
# Failure Tests
# ============================================================

class TestFailures:
    """Tests for retries and failure propagation."""

    @pytest.mark.asyncio
    async def test_retry_bound(self):
        """Test a node failing every attempt is tried exactly max_attempts times."""
        registry, stats = step_registry()
        feed = RunEventFeed()
        graph = step_graph(
            registry,
            {"a": {"value": "a"}, "b": {"fail_times": 99}, "c": {}},
            [("a", "b", "left"), ("b", "c", "left")],
        )

        run = await execute_graph(graph, registry, feed=feed, settings=FAST)

        assert stats["attempts"]["b"] == 3
        assert run.outcomes["b"].status == NodeStatus.ERROR
        assert run.outcomes["b"].retry_count == 3
        assert run.outcomes["b"].error.kind == "capability_error"
        assert run.outcomes["c"].status == NodeStatus.SKIPPED
        assert stats["attempts"]["c"] == 0
        assert run.status == RunStatus.PARTIALLY_FAILED
        assert set(run.failed_nodes()) == {"b"}

        retrying = [e for e in feed.history(run.run_id) if e.type == RunEventType.NODE_RETRYING]
        assert [e.data["attempt"] for e in retrying] == [1, 2]

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self):
        """Test a node that fails once and then succeeds."""
        registry, stats = step_registry()
        graph = step_graph(registry, {"a": {"value": "ok", "fail_times": 1}}, [])

        run = await execute_graph(graph, registry, settings=FAST)

        assert run.status == RunStatus.COMPLETED
        assert run.outcomes["a"].retry_count == 1
        assert run.outcomes["a"].error is None
        assert stats["attempts"]["a"] == 2

    @pytest.mark.asyncio
    async def test_non_retryable_failure(self):
        """Test a non-retryable error fails the node on the first attempt."""
        registry, stats = step_registry()
        graph = step_graph(registry, {"a": {"fail_times": 1, "fatal": True}}, [])

        run = await execute_graph(graph, registry, settings=FAST)

        assert stats["attempts"]["a"] == 1
        assert run.outcomes["a"].error.kind == "workflow_error"
        assert run.status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_node_max_attempts_override(self):
        """Test a per-node retry limit."""
        registry, stats = step_registry()
        graph = step_graph(registry, {"a": {"fail_times": 99}}, [])
        graph.nodes["a"].max_attempts = 1

        await execute_graph(graph, registry, settings=FAST)
        assert stats["attempts"]["a"] == 1

    def test_backoff_doubles_and_caps(self):
        """Test the retry delay doubles per failure up to the cap."""
        settings = SchedulerSettings(retry_base_delay=0.5, retry_max_delay=3.0)
        assert [settings.backoff(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_retry_waits_follow_backoff(self):
        """Test each retry waits the backoff delay for its failure count."""
        registry, stats = step_registry()
        feed = RunEventFeed()
        graph = step_graph(registry, {"a": {"fail_times": 99}}, [])
        settings = SchedulerSettings(
            max_attempts=4, retry_base_delay=0.01, retry_max_delay=0.03, node_timeout=5.0,
        )

        run = await execute_graph(graph, registry, feed=feed, settings=settings)

        delays = [e.data["delay"] for e in feed.history(run.run_id) if e.type == RunEventType.NODE_RETRYING]
        assert delays == pytest.approx([0.01, 0.02, 0.03])
        assert stats["attempts"]["a"] == 4
        assert run.outcomes["a"].retry_count == 4

    @pytest.mark.asyncio
    async def test_independent_branch_keeps_running(self):
        """Test a failure only skips its own downstream nodes."""
        registry, _ = step_registry()
        graph = step_graph(
            registry,
            {"bad": {"fail_times": 99, "fatal": True}, "after": {}, "good": {"value": "g"}, "next": {}},
            [("bad", "after", "left"), ("good", "next", "left")],
        )

        run = await execute_graph(graph, registry, settings=FAST)

        assert run.outcomes["after"].status == NodeStatus.SKIPPED
        assert run.outcomes["next"].outputs["text"] == "g"
        assert run.status == RunStatus.PARTIALLY_FAILED

    @pytest.mark.asyncio
    async def test_node_timeout(self):
        """Test slow attempts become retryable timeouts."""
        registry, stats = step_registry()
        graph = step_graph(registry, {"slow": {"delay": 1.0}}, [])
        settings = SchedulerSettings(max_attempts=2, retry_base_delay=0.0, node_timeout=0.05)

        run = await execute_graph(graph, registry, settings=settings)

        outcome = run.outcomes["slow"]
        assert outcome.status == NodeStatus.ERROR
        assert outcome.error.kind == "timeout"
        assert outcome.retry_count == 2
        assert stats["attempts"]["slow"] == 2

    @pytest.mark.asyncio
    async def test_capability_latency_threshold(self):
        """Test a stalled generation stream times out."""
        capabilities = Capabilities(
            generator=TemplateGenerator(delay=0.5), vector_index=InMemoryVectorIndex()
        )
        graph = Graph()
        graph.nodes["gen"] = default_registry.create_node("gen", "content-generation", {"topic": "x"})
        settings = SchedulerSettings(
            max_attempts=1, retry_base_delay=0.0, capability_latency_threshold=0.05
        )

        run = await execute_graph(graph, capabilities=capabilities, settings=settings)

        assert run.outcomes["gen"].error.kind == "timeout"
        assert run.status == RunStatus.FAILED


# ============================================================
# Control Tests
# ============================================================

class TestRunControl:
    """Tests for cancel, pause and resume."""

    def make_scheduler(self, registry, graph, feed=None, settings=FAST, capabilities=None):
        return Scheduler(
            graph, plan(graph), registry, capabilities or Capabilities(), RunStore(), feed, settings,
        )

    @pytest.mark.asyncio
    async def test_cancel_skips_remaining_nodes(self):
        """Test cancelling while a node is executing."""
        registry, stats = step_registry()
        graph = step_graph(
            registry,
            {"slow": {"delay": 0.2}, "after": {}},
            [("slow", "after", "left")],
        )
        scheduler = self.make_scheduler(registry, graph)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        await scheduler.cancel()
        run = await asyncio.wait_for(task, timeout=2.0)

        assert run.status == RunStatus.CANCELLED
        assert run.cancel_requested
        assert run.outcomes["slow"].status == NodeStatus.SKIPPED
        assert run.outcomes["after"].status == NodeStatus.SKIPPED
        assert stats["attempts"]["after"] == 0
        assert scheduler.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_cancel_during_generation(self):
        """Test cancellation is observed between streamed chunks."""
        generator = TemplateGenerator(chunk_words=1, delay=0.02)
        graph = Graph()
        graph.nodes["gen"] = default_registry.create_node("gen", "content-generation", {"topic": "cats"})
        scheduler = self.make_scheduler(
            default_registry, graph, capabilities=Capabilities(generator=generator),
        )

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        await scheduler.stop()
        run = await asyncio.wait_for(task, timeout=2.0)

        assert run.status == RunStatus.CANCELLED
        assert run.outcomes["gen"].status == NodeStatus.SKIPPED
        assert run.outcomes["gen"].retry_count == 0

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        """Test a paused run launches nothing until resumed."""
        registry, stats = step_registry()
        feed = RunEventFeed()
        graph = step_graph(registry, {"a": {"value": "a"}, "b": {}}, [("a", "b", "left")])
        scheduler = self.make_scheduler(registry, graph, feed=feed)

        run = await scheduler.prepare()
        await scheduler.pause()
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)

        snapshot = await scheduler.store.get_run(run.run_id)
        assert snapshot.status == RunStatus.RUNNING
        assert snapshot.outcomes["a"].status == NodeStatus.PENDING
        assert stats["attempts"]["a"] == 0

        await scheduler.resume()
        finished = await asyncio.wait_for(task, timeout=2.0)

        assert finished.status == RunStatus.COMPLETED
        types = [e.type for e in feed.history(run.run_id)]
        assert RunEventType.RUN_PAUSED in types
        assert RunEventType.RUN_RESUMED in types

    @pytest.mark.asyncio
    async def test_pause_lets_in_flight_node_finish(self):
        """Test pausing mid-run finishes the running node and holds the next level."""
        registry, stats = step_registry()
        graph = step_graph(
            registry,
            {"a": {"value": "a", "delay": 0.1}, "b": {"value": "b"}},
            [("a", "b", "left")],
        )
        scheduler = self.make_scheduler(registry, graph)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.03)
        assert stats["active"] == 1
        await scheduler.pause()
        await asyncio.sleep(0.2)

        snapshot = await scheduler.store.get_run(scheduler.run_id)
        assert snapshot.outcomes["a"].status == NodeStatus.COMPLETE
        assert snapshot.outcomes["b"].status == NodeStatus.PENDING
        assert stats["attempts"]["b"] == 0
        assert not task.done()

        await scheduler.resume()
        run = await asyncio.wait_for(task, timeout=2.0)

        assert run.status == RunStatus.COMPLETED
        assert run.outcomes["b"].outputs == {"text": "a+b"}

    @pytest.mark.asyncio
    async def test_cancel_while_paused(self):
        """Test cancelling a paused run."""
        registry, stats = step_registry()
        graph = step_graph(registry, {"a": {}}, [])
        scheduler = self.make_scheduler(registry, graph)

        await scheduler.prepare()
        await scheduler.pause()
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.02)
        await scheduler.cancel()
        run = await asyncio.wait_for(task, timeout=2.0)

        assert run.status == RunStatus.CANCELLED
        assert stats["attempts"]["a"] == 0


# ============================================================
# Event Tests
# ============================================================

class TestRunEvents:
    """Tests for events published during a run."""

    @pytest.mark.asyncio
    async def test_event_sequence(self):
        """Test a run starts and ends with run-level events."""
        registry, _ = step_registry()
        feed = RunEventFeed()
        graph = step_graph(registry, {"a": {"value": "a"}, "b": {}}, [("a", "b", "left")])

        run = await execute_graph(graph, registry, feed=feed, settings=FAST)
        events = feed.history(run.run_id)

        assert events[0].type == RunEventType.RUN_STARTED
        assert events[0].data["levels"] == [["a"], ["b"]]
        assert events[-1].type == RunEventType.RUN_TERMINAL
        assert events[-1].data["status"] == "completed"
        assert [e.sequence for e in events] == list(range(len(events)))

        completed = [e.node_id for e in events if e.type == RunEventType.NODE_COMPLETED]
        assert completed == ["a", "b"]

    @pytest.mark.asyncio
    async def test_progress_events(self):
        """Test streaming nodes report progress ending at 1.0."""
        feed = RunEventFeed()
        graph = Graph()
        graph.nodes["gen"] = default_registry.create_node("gen", "content-generation", {"topic": "cats"})
        capabilities = Capabilities(generator=TemplateGenerator(chunk_words=2))

        run = await execute_graph(graph, capabilities=capabilities, feed=feed, settings=FAST)

        progress = [e.data["progress"] for e in feed.history(run.run_id) if e.type == RunEventType.NODE_PROGRESS]
        assert len(progress) > 1
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert run.outcomes["gen"].progress == 1.0


# ============================================================
# Integration Tests
# ============================================================

class TestLinkedInPostWorkflow:
    """Integration tests for the LinkedIn post workflow."""

    @pytest.mark.asyncio
    async def test_linkedin_post_workflow(self):
        """Test the full workflow with the offline capabilities."""
        generator = TemplateGenerator()
        index = InMemoryVectorIndex()
        await seed_research_index(index)
        capabilities = Capabilities(generator=generator, vector_index=index)

        workflow = create_linkedin_post_workflow(topic="AI writing for marketers", hashtags=["AI"])
        run = await execute_graph(workflow, capabilities=capabilities, settings=FAST)

        assert run.status == RunStatus.COMPLETED
        assert len(run.outcomes["research"].outputs["research"]) == 3

        draft_prompt = generator.calls[0][0]
        assert any(text in draft_prompt for text in SAMPLE_CORPUS.values())

        published = run.outcomes["publish"].outputs["published"]
        assert published["text"].endswith("#AI")
        assert published["content_id"] == f"{run.run_id}:publish"
        assert published["content_id"] in index


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
