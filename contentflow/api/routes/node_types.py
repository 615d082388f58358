"""
Node Type API Routes.

Endpoints for discovering the node types the canvas can place.
"""

from fastapi import APIRouter, Depends, HTTPException

from contentflow.api.deps import get_engine
from contentflow.api.schemas import NodeTypeListResponse
from contentflow.engine.service import WorkflowEngine


router = APIRouter(prefix="/node-types", tags=["Node Types"])


@router.get("", response_model=NodeTypeListResponse)
async def list_node_types(engine: WorkflowEngine = Depends(get_engine)) -> NodeTypeListResponse:
    """
    List all registered node types with their ports and settings schema.
    """
    node_types = engine.registry.list_behaviors()
    return NodeTypeListResponse(node_types=node_types, total=len(node_types))


@router.get("/{type_tag}")
async def get_node_type(type_tag: str, engine: WorkflowEngine = Depends(get_engine)):
    """Get a single node type by tag."""
    if not engine.registry.has(type_tag):
        raise HTTPException(status_code=404, detail=f"Node type '{type_tag}' not found")
    return engine.registry.resolve(type_tag).to_dict()
