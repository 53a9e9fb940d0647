"""
WebSocket Routes for Real-time Execution Streaming.

Streams every snapshot mutation of a run while it executes.
"""

from typing import Any, Dict, Optional, Set
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
import asyncio
import logging

from nodeflow.api.schemas import FlowRunRequest
from nodeflow.engine.executor import Executor
from nodeflow.engine.graph import GraphValidationError
from nodeflow.engine.state_machine import ExecutionSnapshot
from nodeflow.storage.memory import run_storage


logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])


class ConnectionManager:
    """Manages WebSocket connections."""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    def attach(self, websocket: WebSocket, run_id: str):
        """Register an accepted connection as a listener of a run."""
        self.active_connections.setdefault(run_id, set()).add(websocket)
        logger.info(f"WebSocket attached to run: {run_id}")

    def disconnect(self, websocket: WebSocket, run_id: Optional[str]):
        """Remove a WebSocket connection."""
        if run_id in self.active_connections:
            self.active_connections[run_id].discard(websocket)
            if not self.active_connections[run_id]:
                del self.active_connections[run_id]
        logger.info(f"WebSocket disconnected for run: {run_id}")

    async def broadcast(self, run_id: str, message: Dict[str, Any]):
        """Broadcast a message to all connections for a run."""
        if run_id in self.active_connections:
            disconnected = set()
            for websocket in self.active_connections[run_id]:
                try:
                    await websocket.send_json(message)
                except Exception as e:
                    logger.debug(f"Dropping WebSocket of run {run_id}: {e}")
                    disconnected.add(websocket)

            # Clean up disconnected clients
            for ws in disconnected:
                self.active_connections[run_id].discard(ws)


# Global connection manager
manager = ConnectionManager()


@router.websocket("/ws/run")
async def websocket_run(websocket: WebSocket):
    """
    WebSocket endpoint for real-time graph execution.

    Connect to this endpoint and send the graph as JSON. You'll receive one
    snapshot message per state mutation, then the final result.

    Message format (client -> server):
    ```json
    {"action": "start", "payload": {"nodes": [...], "edges": [...], "inputs": {}}}
    ```

    Message format (server -> client):
    ```json
    {"type": "snapshot", "run_id": "...", "snapshot": {...}}
    {"type": "completed", "run_id": "...", "result": {...}}
    ```
    """
    await websocket.accept()
    run_id = None

    try:
        # Wait for start message
        data = await websocket.receive_json()

        if data.get("action") != "start":
            await websocket.send_json({
                "type": "error",
                "error": "Expected 'start' action"
            })
            return

        try:
            request = FlowRunRequest.model_validate(data.get("payload") or {})
        except ValidationError as e:
            await websocket.send_json({"type": "error", "error": str(e)})
            return

        # Snapshots are queued in mutation order and sent by a single task
        queue: asyncio.Queue = asyncio.Queue()

        async def on_snapshot(snapshot: ExecutionSnapshot) -> None:
            queue.put_nowait(snapshot.to_dict())
            await run_storage.update_snapshot(executor.run_id, snapshot)

        executor = Executor(
            request.nodes,
            request.edges,
            concurrency=request.concurrency,
            downstream_policy=request.downstream_policy,
            persist_hook=on_snapshot,
            workflow_id=request.workflow_id,
        )
        run_id = executor.run_id
        manager.attach(websocket, run_id)
        await run_storage.create(run_id, request.workflow_id)

        # Send acknowledgment
        await websocket.send_json({
            "type": "started",
            "run_id": run_id,
            "workflow_id": request.workflow_id,
        })

        sender = asyncio.create_task(_stream_snapshots(run_id, queue))
        try:
            result = await executor.run(request.inputs)
        except GraphValidationError as e:
            await run_storage.fail(run_id, str(e))
            await websocket.send_json({
                "type": "error",
                "run_id": run_id,
                "error": str(e),
                "errors": e.errors,
            })
            return
        finally:
            queue.put_nowait(None)
            await sender

        await run_storage.complete(run_id, result.to_dict())

        # Send completion
        await manager.broadcast(run_id, {
            "type": "completed",
            "run_id": run_id,
            "result": result.to_dict(),
        })

    except WebSocketDisconnect:
        logger.info(f"Client disconnected from run {run_id}")
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
        try:
            await websocket.send_json({
                "type": "error",
                "error": str(e),
            })
        except Exception as send_error:
            logger.debug(f"Could not report error to client: {send_error}")
    finally:
        manager.disconnect(websocket, run_id)


async def _stream_snapshots(run_id: str, queue: asyncio.Queue) -> None:
    """Forward queued snapshots to the run's listeners until a None arrives."""
    while True:
        snapshot = await queue.get()
        if snapshot is None:
            return
        await manager.broadcast(run_id, {
            "type": "snapshot",
            "run_id": run_id,
            "snapshot": snapshot,
        })
