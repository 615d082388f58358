"""
LinkedIn Post Workflow.

The sample workflow demonstrating the engine:
1. Research related content in the vector index
2. Generate a draft post (streaming)
3. Edit the draft
4. Format it for LinkedIn
5. Output the post and index it for future research
"""

from typing import Optional
import logging

from contentflow.engine.behaviors import default_registry
from contentflow.engine.graph import Edge, Graph
from contentflow.engine.registry import NodeRegistry


logger = logging.getLogger(__name__)

DEMO_WORKFLOW_ID = "linkedin-post-demo"

# Seed documents for the in-memory research index
SAMPLE_CORPUS = {
    "post-remote-teams": "Remote teams ship faster with written design reviews and async standups.",
    "post-ai-writing": "AI writing assistants help marketers draft posts but editing keeps the voice human.",
    "post-hiring": "Hiring for curiosity beats hiring for a checklist of frameworks.",
    "post-content-ops": "Content operations teams reuse research across LinkedIn and Twitter campaigns.",
}


def create_linkedin_post_workflow(
    topic: str = "AI writing assistants for marketing teams",
    hashtags: Optional[list] = None,
    registry: Optional[NodeRegistry] = None,
    graph_id: Optional[str] = None,
) -> Graph:
    """
    Create the LinkedIn post workflow graph.

    Workflow flow:
    ```
    research → generate → edit → format → publish
    ```

    Args:
        topic: What the post is about
        hashtags: Hashtags appended by the format node
        registry: Node registry used to build nodes
        graph_id: Optional fixed workflow id

    Returns:
        Configured Graph instance
    """
    registry = registry or default_registry
    graph = Graph(
        name="LinkedIn Post Workflow",
        description="Researches a topic, drafts and edits a post, formats it for LinkedIn.",
    )
    if graph_id:
        graph.graph_id = graph_id

    nodes = [
        registry.create_node("research", "research", {"query": topic, "limit": 3}, label="Research"),
        registry.create_node(
            "generate", "content-generation",
            {"topic": topic, "tone": "friendly", "max_tokens": 120},
            label="Draft post",
        ),
        registry.create_node(
            "edit", "content-editing",
            {"instructions": "Keep it under three short paragraphs."},
            label="Edit",
        ),
        registry.create_node(
            "format", "format",
            {"platform": "linkedin", "hashtags": hashtags or ["ContentMarketing", "AI"]},
            label="Format for LinkedIn",
        ),
        registry.create_node(
            "publish", "output",
            {"destination": "linkedin", "index_content": True},
            label="Publish",
        ),
    ]
    for node in nodes:
        graph.nodes[node.node_id] = node

    graph.edges = [
        Edge("research", "research", "generate", "research", edge_id="e-research"),
        Edge("generate", "content", "edit", "content", edge_id="e-draft"),
        Edge("edit", "content", "format", "content", edge_id="e-edited"),
        Edge("format", "formatted", "publish", "formatted", edge_id="e-formatted"),
    ]
    return graph


async def seed_research_index(index) -> None:
    """Load the sample corpus into an in-memory vector index."""
    for content_id, text in SAMPLE_CORPUS.items():
        await index.add_text(content_id, text, source="sample")


async def register_linkedin_post_workflow(engine) -> Graph:
    """
    Register the pre-built LinkedIn workflow with an engine.

    This makes the workflow available immediately via the API
    without needing to create it first.
    """
    workflow = create_linkedin_post_workflow(registry=engine.registry, graph_id=DEMO_WORKFLOW_ID)
    await engine.create_workflow(workflow)

    index = engine.capabilities.vector_index
    if hasattr(index, "add_text"):
        await seed_research_index(index)

    logger.info(f"Registered LinkedIn post workflow with ID: {DEMO_WORKFLOW_ID}")
    return workflow


async def run_linkedin_post_demo():
    """
    Demo function running the workflow end to end.

    Usage:
        import asyncio
        from contentflow.workflows.linkedin_post import run_linkedin_post_demo
        asyncio.run(run_linkedin_post_demo())
    """
    from contentflow.engine.service import WorkflowEngine

    engine = WorkflowEngine()
    await register_linkedin_post_workflow(engine)

    print("Starting LinkedIn post workflow...")
    run = await engine.run_workflow(DEMO_WORKFLOW_ID)

    print(f"\nRun Status: {run.status.value}")
    print(f"Total Duration: {run.duration_ms:.2f}ms")
    for node_id, outcome in run.outcomes.items():
        print(f"  {node_id}: {outcome.status.value} ({outcome.retry_count} retries)")
    published = run.outcomes["publish"].outputs.get("published") or {}
    print(f"\n{published.get('text', '')}")
    return run


if __name__ == "__main__":
    import asyncio
    asyncio.run(run_linkedin_post_demo())
