"""
ContentFlow - FastAPI Application Entry Point.

A visual content workflow engine: validate, plan and run node graphs that
research, draft, edit and format content.
"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from contentflow.config import settings
from contentflow.api.routes import node_types, runs, websocket, workflows
from contentflow.engine.service import WorkflowEngine, create_engine
from contentflow.errors import (
    GraphLockedError,
    RunAlreadyTerminal,
    RunNotFoundError,
    WorkflowError,
    WorkflowNotFoundError,
)
from contentflow.workflows.linkedin_post import DEMO_WORKFLOW_ID, register_linkedin_post_workflow


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


DESCRIPTION = """
## ContentFlow API

Build content pipelines as graphs of typed nodes and run them.

### Features
- **Nodes**: research, content generation, editing, formatting, output and utility steps
- **Edges**: typed port-to-port connections with optional transforms
- **Editing**: atomic edits with undo/redo
- **Runs**: level-parallel execution with retries, timeouts, pause/resume and cancellation
- **Real-time Updates**: WebSocket feed of node progress

### Quick Start
1. List node types: `GET /node-types`
2. Create a workflow: `POST /workflows`
3. Check it: `GET /workflows/{graph_id}/validate`
4. Run it: `POST /workflows/{graph_id}/runs`
5. Follow the run: `GET /runs/{run_id}` or `ws://.../ws/runs/{run_id}`

### Demo Workflow
A pre-registered LinkedIn post workflow is available with ID: `linkedin-post-demo`
"""


def _status_for(exc: WorkflowError) -> int:
    if isinstance(exc, (WorkflowNotFoundError, RunNotFoundError)):
        return 404
    if isinstance(exc, (GraphLockedError, RunAlreadyTerminal)):
        return 409
    return 400


def create_app(engine: Optional[WorkflowEngine] = None) -> FastAPI:
    """Create the FastAPI application around an engine."""
    engine = engine or create_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

        # Register the demo workflow
        await register_linkedin_post_workflow(app.state.engine)

        yield

        # Shutdown
        logger.info("Shutting down...")
        await app.state.engine.shutdown()

    app = FastAPI(
        title=settings.APP_NAME,
        description=DESCRIPTION,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(workflows.router)
    app.include_router(runs.router)
    app.include_router(node_types.router)
    app.include_router(websocket.router)

    # ============================================================
    # Root Endpoints
    # ============================================================

    @app.get("/", tags=["Root"])
    async def root():
        """API root - returns basic info and links."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "description": "A visual content workflow engine",
            "docs": "/docs",
            "redoc": "/redoc",
            "endpoints": {
                "workflows": "/workflows",
                "runs": "/runs",
                "node_types": "/node-types",
                "websocket_run": "/ws/runs/{run_id}",
            },
            "demo_workflow": DEMO_WORKFLOW_ID,
        }

    @app.get("/health", tags=["Root"])
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "workflows_count": len(app.state.engine.graphs),
            "runs_count": len(app.state.engine.runs),
        }

    # ============================================================
    # Error Handlers
    # ============================================================

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        """Map engine errors to HTTP status codes."""
        status_code = _status_for(exc)
        if status_code == 400:
            logger.info(f"Rejected request to {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, "kind": exc.kind, "detail": exc.to_dict()},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"error": str(exc), "kind": "invalid_request", "detail": None},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.exception(f"Unhandled error: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "kind": "internal_error",
                "detail": str(exc) if settings.DEBUG else "An unexpected error occurred",
            },
        )

    return app


# Create FastAPI application
app = create_app()
