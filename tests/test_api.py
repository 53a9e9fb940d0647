"""
Tests for the FastAPI endpoints.
"""

import pytest
import asyncio
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport

from nodeflow.main import app


# ============================================================
# Sync Test Client (for simple tests)
# ============================================================

client = TestClient(app)


def simple_flow(**extra):
    """Two pass-through nodes: source -> out."""
    return {
        "nodes": [
            {"id": "source", "type": "relay"},
            {"id": "out", "type": "output"},
        ],
        "edges": [{"source": "source", "target": "out"}],
        **extra,
    }


def cyclic_flow():
    return {
        "nodes": [{"id": "a", "type": "relay"}, {"id": "b", "type": "relay"}],
        "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
    }


class TestRootEndpoints:
    """Tests for root endpoints."""

    def test_root(self):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert "name" in data
        assert "version" in data
        assert "endpoints" in data

    def test_health(self):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["handlers_count"] >= 1


class TestHandlersEndpoints:
    """Tests for handler endpoints."""

    def test_list_handlers(self):
        """Test listing handlers."""
        response = client.get("/handlers/")
        assert response.status_code == 200

        data = response.json()
        assert data["total"] > 0
        node_types = [h["node_type"] for h in data["handlers"]]
        assert "passthrough" in node_types

    def test_get_handler(self):
        response = client.get("/handlers/passthrough")
        assert response.status_code == 200
        assert response.json()["handler"] == "passthrough"

    def test_get_unknown_handler(self):
        response = client.get("/handlers/does-not-exist")
        assert response.status_code == 404


class TestFlowEndpoints:
    """Tests for flow endpoints."""

    def test_validate_flow(self):
        response = client.post("/flow/validate", json=simple_flow())
        assert response.status_code == 200

        data = response.json()
        assert data["valid"] is True
        assert data["topological_order"] == ["source", "out"]
        assert data["mermaid_diagram"].startswith("graph TD")

    def test_validate_cycle(self):
        response = client.post("/flow/validate", json=cyclic_flow())
        assert response.status_code == 200

        data = response.json()
        assert data["valid"] is False
        assert data["errors"]
        assert data["topological_order"] is None

    def test_run_flow(self):
        """Test a synchronous run."""
        response = client.post("/flow/run", json=simple_flow(workflow_id="wf-sync"))
        assert response.status_code == 200

        data = response.json()
        assert data["workflow_status"] == "completed"
        assert data["node_status"] == {"source": "success", "out": "success"}
        assert [f["node_id"] for f in data["final_outputs"]] == ["out"]
        assert [e["type"] for e in data["logs"]].count("start") == 2
        assert data["waves"] == 2

    def test_run_invalid_flow(self):
        response = client.post("/flow/run", json=cyclic_flow())
        assert response.status_code == 400

    def test_run_malformed_payload(self):
        response = client.post("/flow/run", json={"edges": []})
        assert response.status_code == 422

    def test_get_run_state(self):
        run = client.post("/flow/run", json=simple_flow(workflow_id="wf-state")).json()

        response = client.get(f"/flow/runs/{run['run_id']}")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "completed"
        assert data["workflow_id"] == "wf-state"
        assert data["snapshot"]["node_status"]["out"] == "success"
        assert data["snapshot_count"] > 0
        assert data["result"]["run_id"] == run["run_id"]

    def test_list_runs_by_workflow(self):
        client.post("/flow/run", json=simple_flow(workflow_id="wf-list"))

        response = client.get("/flow/runs", params={"workflow_id": "wf-list"})
        assert response.status_code == 200

        data = response.json()
        assert data["total"] >= 1
        assert all(r["workflow_id"] == "wf-list" for r in data["runs"])

    def test_get_unknown_run(self):
        response = client.get("/flow/runs/nonexistent")
        assert response.status_code == 404

    def test_cancel_finished_run(self):
        run = client.post("/flow/run", json=simple_flow()).json()

        response = client.post(f"/flow/runs/{run['run_id']}/cancel")
        assert response.status_code == 409

    def test_cancel_unknown_run(self):
        response = client.post("/flow/runs/nonexistent/cancel")
        assert response.status_code == 404


class TestWebSocket:
    """Tests for the run streaming WebSocket."""

    def test_stream_run(self):
        with client.websocket_connect("/ws/run") as ws:
            ws.send_json({"action": "start", "payload": simple_flow()})

            started = ws.receive_json()
            assert started["type"] == "started"

            messages = []
            while True:
                message = ws.receive_json()
                messages.append(message)
                if message["type"] in ("completed", "error"):
                    break

        assert messages[-1]["type"] == "completed"
        assert messages[-1]["result"]["workflow_status"] == "completed"
        snapshots = [m["snapshot"] for m in messages if m["type"] == "snapshot"]
        assert snapshots
        assert snapshots[-1]["workflow_status"] == "completed"

    def test_rejects_unknown_action(self):
        with client.websocket_connect("/ws/run") as ws:
            ws.send_json({"action": "stop"})
            message = ws.receive_json()

        assert message["type"] == "error"

    def test_invalid_graph(self):
        with client.websocket_connect("/ws/run") as ws:
            ws.send_json({"action": "start", "payload": cyclic_flow()})
            assert ws.receive_json()["type"] == "started"
            message = ws.receive_json()

        assert message["type"] == "error"
        assert message["errors"]


# ============================================================
# Async Tests (for async endpoints)
# ============================================================

@pytest.mark.asyncio
async def test_run_flow_async_client():
    """Test running a flow through the async client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.post("/flow/run", json=simple_flow())
        assert response.status_code == 200

        data = response.json()
        assert "run_id" in data
        assert data["workflow_status"] == "completed"


@pytest.mark.asyncio
async def test_async_execution():
    """Test background execution mode."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.post("/flow/run", json=simple_flow(async_execution=True))
        assert response.status_code == 200

        data = response.json()
        assert "run_id" in data
        assert data["workflow_status"] == "pending"

        # Check run state
        run_id = data["run_id"]
        state_response = await ac.get(f"/flow/runs/{run_id}")
        assert state_response.status_code == 200


@pytest.mark.asyncio
async def test_stop_active_runs_cancels_background_runs():
    """Test that shutdown cancels in-flight background runs and waits for them."""
    from nodeflow.api.routes import flow
    from nodeflow.nodes.registry import handler_registry

    @handler_registry.register("test_wait")
    async def wait(node, ctx):
        await asyncio.sleep(0.05)
        ctx.set_output(node.id)

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/flow/run", json={
                "nodes": [{"id": "a", "type": "test_wait"}, {"id": "b", "type": "test_wait"}],
                "edges": [{"source": "a", "target": "b"}],
                "async_execution": True,
            })
            run_id = response.json()["run_id"]

            stopped = await flow.stop_active_runs()
            state = (await ac.get(f"/flow/runs/{run_id}")).json()
    finally:
        handler_registry.remove("test_wait")

    assert stopped == 1
    assert state["status"] == "cancelled"
    assert run_id not in flow._active_runs
    assert await flow.stop_active_runs() == 0
