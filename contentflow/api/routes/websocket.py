"""
WebSocket Routes for Real-time Run Updates.

Streams the run progress feed so the canvas can render live node status
without polling.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging

from contentflow.errors import RunNotFoundError


logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])


@router.websocket("/ws/runs/{run_id}")
async def websocket_subscribe(websocket: WebSocket, run_id: str):
    """
    Subscribe to the events of a run.

    Every event that already happened is replayed first, then live events
    follow. The server closes the connection after the ``run_terminal``
    event.

    Message format (server -> client):
    ```json
    {
        "run_id": "...",
        "type": "node_completed",
        "node_id": "generate",
        "data": {"duration_ms": 15.5, "attempts": 1},
        "sequence": 4,
        "timestamp": "2024-01-01T12:00:01"
    }
    ```
    """
    engine = websocket.app.state.engine
    try:
        await engine.get_run(run_id)
    except RunNotFoundError:
        await websocket.close(code=4004, reason=f"Run '{run_id}' not found")
        return

    await websocket.accept()
    logger.info(f"WebSocket subscribed to run: {run_id}")
    try:
        async for event in engine.subscribe(run_id):
            await websocket.send_json(event.to_dict())
        await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"Subscriber disconnected from run {run_id}")
