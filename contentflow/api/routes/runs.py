"""
Run API Routes.

Endpoints for inspecting and controlling runs.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
import logging

from contentflow.api.deps import get_engine
from contentflow.api.schemas import ErrorResponse, RunListResponse, RunResponse
from contentflow.engine.service import WorkflowEngine


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["Runs"])

_CONTROL_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Run not found"},
    409: {"model": ErrorResponse, "description": "Run already finished"},
}


@router.get("", response_model=RunListResponse)
async def list_runs(
    graph_id: Optional[str] = Query(None, description="Only runs of this workflow"),
    engine: WorkflowEngine = Depends(get_engine),
) -> RunListResponse:
    runs = await engine.list_runs(graph_id)
    return RunListResponse(runs=[RunResponse(**r.to_dict()) for r in runs], total=len(runs))


@router.get("/{run_id}", response_model=RunResponse, responses={404: {"model": ErrorResponse}})
async def get_run(run_id: str, engine: WorkflowEngine = Depends(get_engine)) -> RunResponse:
    """Current snapshot of a run, including per-node outcomes and errors."""
    run = await engine.get_run(run_id)
    return RunResponse(**run.to_dict())


@router.post("/{run_id}/cancel", response_model=RunResponse, responses=_CONTROL_RESPONSES)
async def cancel_run(run_id: str, engine: WorkflowEngine = Depends(get_engine)) -> RunResponse:
    """Cancel a run; nodes that have not finished end up skipped."""
    await engine.cancel_run(run_id)
    return RunResponse(**(await engine.get_run(run_id)).to_dict())


@router.post("/{run_id}/pause", response_model=RunResponse, responses=_CONTROL_RESPONSES)
async def pause_run(run_id: str, engine: WorkflowEngine = Depends(get_engine)) -> RunResponse:
    """Stop launching nodes; nodes already executing finish."""
    await engine.pause_run(run_id)
    return RunResponse(**(await engine.get_run(run_id)).to_dict())


@router.post("/{run_id}/resume", response_model=RunResponse, responses=_CONTROL_RESPONSES)
async def resume_run(run_id: str, engine: WorkflowEngine = Depends(get_engine)) -> RunResponse:
    await engine.resume_run(run_id)
    return RunResponse(**(await engine.get_run(run_id)).to_dict())
