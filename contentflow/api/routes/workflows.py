"""
Workflow API Routes.

Endpoints for creating, editing, validating and running workflow graphs.
"""

from typing import Union
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
import logging

from contentflow.api.deps import get_engine
from contentflow.api.schemas import (
    EditEnvelope,
    ErrorResponse,
    PlanResponse,
    RunListResponse,
    RunResponse,
    ValidationResponse,
    WorkflowCreateRequest,
    WorkflowListResponse,
    WorkflowResponse,
    build_graph,
    to_graph_edit,
)
from contentflow.engine.service import WorkflowEngine
from contentflow.storage.memory import StoredWorkflow


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["Workflows"])


def _workflow_response(stored: StoredWorkflow) -> WorkflowResponse:
    graph = stored.graph
    return WorkflowResponse(
        graph_id=stored.graph_id,
        name=graph.name,
        definition=graph.to_dict(),
        can_undo=stored.history.can_undo,
        can_redo=stored.history.can_redo,
        locked_by=stored.history.locked_by,
        mermaid_diagram=graph.to_mermaid(),
    )


# ============================================================
# Workflow CRUD Endpoints
# ============================================================

@router.post(
    "",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Invalid graph document"}},
)
async def create_workflow(
    request: WorkflowCreateRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowResponse:
    """
    Create a new workflow from a graph document.

    The graph is stored as given; use the validate endpoint to see
    every problem before running it.
    """
    try:
        graph = build_graph(request, engine.registry)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    stored = await engine.create_workflow(graph)
    return _workflow_response(stored)


@router.get("", response_model=WorkflowListResponse)
async def list_workflows(engine: WorkflowEngine = Depends(get_engine)) -> WorkflowListResponse:
    """List all stored workflows."""
    stored = await engine.graphs.list_all()
    workflows = [_workflow_response(s) for s in stored]
    return WorkflowListResponse(workflows=workflows, total=len(workflows))


@router.get("/{graph_id}", response_model=WorkflowResponse)
async def get_workflow(graph_id: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowResponse:
    """Get a workflow and its graph document."""
    return _workflow_response(await engine.graphs.require(graph_id))


@router.delete("/{graph_id}")
async def delete_workflow(graph_id: str, engine: WorkflowEngine = Depends(get_engine)):
    """Delete a workflow (rejected while a run holds it)."""
    deleted = await engine.delete_workflow(graph_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Workflow '{graph_id}' not found")
    return {"message": f"Workflow '{graph_id}' deleted successfully"}


# ============================================================
# Editing
# ============================================================

@router.post(
    "/{graph_id}/edits",
    response_model=WorkflowResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Edit violates a graph invariant"},
        409: {"model": ErrorResponse, "description": "Workflow is locked by a run"},
    },
)
async def apply_edit(
    graph_id: str,
    request: EditEnvelope,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowResponse:
    """Apply one atomic edit; it becomes one step of undo history."""
    await engine.apply_edit(graph_id, to_graph_edit(request.edit, engine.registry))
    return _workflow_response(await engine.graphs.require(graph_id))


@router.post("/{graph_id}/undo", response_model=WorkflowResponse)
async def undo(graph_id: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowResponse:
    await engine.undo(graph_id)
    return _workflow_response(await engine.graphs.require(graph_id))


@router.post("/{graph_id}/redo", response_model=WorkflowResponse)
async def redo(graph_id: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowResponse:
    await engine.redo(graph_id)
    return _workflow_response(await engine.graphs.require(graph_id))


# ============================================================
# Validation and Planning
# ============================================================

@router.get("/{graph_id}/validate", response_model=ValidationResponse)
async def validate_workflow(
    graph_id: str, engine: WorkflowEngine = Depends(get_engine)
) -> ValidationResponse:
    """Report every invariant violation in the workflow."""
    result = await engine.validate_workflow(graph_id)
    return ValidationResponse(**result.to_dict())


@router.get(
    "/{graph_id}/plan",
    response_model=PlanResponse,
    responses={400: {"model": ErrorResponse, "description": "Workflow contains a cycle"}},
)
async def plan_workflow(graph_id: str, engine: WorkflowEngine = Depends(get_engine)) -> PlanResponse:
    """Show the execution levels of the workflow."""
    execution_plan = await engine.plan_workflow(graph_id)
    return PlanResponse(**execution_plan.to_dict())


# ============================================================
# Runs
# ============================================================

@router.post(
    "/{graph_id}/runs",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "Workflow cannot run"},
        409: {"model": ErrorResponse, "description": "Workflow already running"},
    },
)
async def start_run(
    graph_id: str,
    wait: bool = Query(False, description="Wait for the run to finish before responding"),
    engine: WorkflowEngine = Depends(get_engine),
) -> Union[RunResponse, JSONResponse]:
    """
    Start a run of the workflow.

    By default the run continues in the background; follow it with
    ``GET /runs/{run_id}`` or the ``/ws/runs/{run_id}`` WebSocket.
    """
    run = await engine.start_run(graph_id)
    logger.info(f"Started run {run.run_id} for workflow {graph_id}")
    if not wait:
        return RunResponse(**run.to_dict())
    run = await engine.wait_for_run(run.run_id)
    return JSONResponse(status_code=status.HTTP_200_OK, content=run.to_dict())


@router.get("/{graph_id}/runs", response_model=RunListResponse)
async def list_workflow_runs(
    graph_id: str, engine: WorkflowEngine = Depends(get_engine)
) -> RunListResponse:
    """List all runs of a workflow, oldest first."""
    await engine.graphs.require(graph_id)
    runs = sorted(await engine.list_runs(graph_id), key=lambda r: r.generation)
    return RunListResponse(runs=[RunResponse(**r.to_dict()) for r in runs], total=len(runs))
