"""
Flow API Routes.

Endpoints for validating and executing workflow graphs and for polling or
cancelling runs.
"""

from typing import Dict, Optional
from fastapi import APIRouter, HTTPException, status
import asyncio
import logging

from nodeflow.api.schemas import (
    CancelResponse,
    ErrorResponse,
    FlowRunRequest,
    FlowRunResponse,
    LogEntrySchema,
    RunListResponse,
    RunStateResponse,
    ValidationResponse,
)
from nodeflow.engine.executor import Executor, ExecutionResult
from nodeflow.engine.graph import FlowGraph, FlowPayload, GraphValidationError
from nodeflow.storage.memory import StoredRun, run_storage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/flow", tags=["Flow"])

# Executors of background runs that are still in flight, by run id
_active_runs: Dict[str, Executor] = {}
_background_tasks: Dict[str, asyncio.Task] = {}


# ============================================================
# Validation
# ============================================================

@router.post(
    "/validate",
    response_model=ValidationResponse,
)
async def validate_flow(request: FlowPayload) -> ValidationResponse:
    """
    Validate a graph without running it.

    Returns blocking errors (cycles, unknown edge endpoints, ...) and
    advisory warnings (disconnected nodes, depth).
    """
    graph = FlowGraph(request.nodes, request.edges)
    result = graph.validate()
    return ValidationResponse(
        valid=result.valid,
        errors=result.errors,
        warnings=result.warnings,
        topological_order=graph.topological_order() if result.valid else None,
        mermaid_diagram=graph.to_mermaid() if result.valid else None,
    )


# ============================================================
# Execution
# ============================================================

@router.post(
    "/run",
    response_model=FlowRunResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid graph"},
    }
)
async def run_flow_endpoint(request: FlowRunRequest) -> FlowRunResponse:
    """
    Execute a workflow graph with the given inputs.

    If `async_execution` is True, the run continues in the background and
    you can poll it with GET /flow/runs/{run_id}.
    """
    graph = FlowGraph(request.nodes, request.edges)
    validation = graph.validate()
    if not validation.valid:
        raise HTTPException(
            status_code=400,
            detail=f"Graph validation failed: {validation.errors}",
        )

    executor = Executor(
        graph,
        concurrency=request.concurrency,
        downstream_policy=request.downstream_policy,
        workflow_id=request.workflow_id,
    )
    executor.persist_hook = run_storage.persist_hook(executor.run_id)
    await run_storage.create(executor.run_id, request.workflow_id)

    if request.async_execution:
        _active_runs[executor.run_id] = executor
        _background_tasks[executor.run_id] = asyncio.create_task(
            _execute_in_background(executor, request.inputs)
        )
        return FlowRunResponse(
            run_id=executor.run_id,
            workflow_id=request.workflow_id,
            workflow_status="pending",
        )

    try:
        result = await executor.run(request.inputs)
    except GraphValidationError as e:
        await run_storage.fail(executor.run_id, str(e))
        raise HTTPException(status_code=400, detail=str(e))

    await run_storage.complete(executor.run_id, result.to_dict())
    return _result_to_response(result)


async def _execute_in_background(executor: Executor, inputs: Dict) -> None:
    """Execute a run in the background."""
    try:
        result = await executor.run(inputs)
        await run_storage.complete(executor.run_id, result.to_dict())
    except Exception as e:
        logger.exception(f"Background run {executor.run_id} failed: {e}")
        await run_storage.fail(executor.run_id, str(e))
    finally:
        _active_runs.pop(executor.run_id, None)
        _background_tasks.pop(executor.run_id, None)


async def stop_active_runs() -> int:
    """Cancel every in-flight background run and wait for it to finish."""
    tasks = list(_background_tasks.values())
    for executor in list(_active_runs.values()):
        executor.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    return len(tasks)


def _result_to_response(result: ExecutionResult) -> FlowRunResponse:
    """Convert ExecutionResult to API response."""
    return FlowRunResponse(**result.to_dict())


# ============================================================
# Run State Endpoints
# ============================================================

@router.get(
    "/runs",
    response_model=RunListResponse,
)
async def list_runs(workflow_id: Optional[str] = None) -> RunListResponse:
    """List all runs, optionally filtered by workflow_id."""
    if workflow_id:
        runs = await run_storage.list_by_workflow(workflow_id)
    else:
        runs = await run_storage.list_all()

    run_states = [_stored_to_response(stored) for stored in runs]
    return RunListResponse(runs=run_states, total=len(run_states))


@router.get(
    "/runs/{run_id}",
    response_model=RunStateResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run_state(run_id: str) -> RunStateResponse:
    """
    Get the current state of a run.

    Use this to poll the status of background executions.
    """
    stored = await run_storage.get(run_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return _stored_to_response(stored)


@router.post(
    "/runs/{run_id}/cancel",
    response_model=CancelResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_run(run_id: str) -> CancelResponse:
    """Ask an in-flight background run to stop at its next wave boundary."""
    executor = _active_runs.get(run_id)
    if executor is None:
        if await run_storage.get(run_id) is None:
            raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
        raise HTTPException(status_code=409, detail=f"Run '{run_id}' is not in flight")

    executor.cancel()
    logger.info(f"Cancellation requested for run {run_id}")
    return CancelResponse(run_id=run_id, message="Cancellation requested")


def _stored_to_response(stored: StoredRun) -> RunStateResponse:
    return RunStateResponse(
        run_id=stored.run_id,
        workflow_id=stored.workflow_id,
        status=stored.status,
        snapshot=stored.snapshot,
        result=stored.result,
        logs=[LogEntrySchema(**entry) for entry in stored.logs],
        snapshot_count=stored.snapshot_count,
        started_at=stored.started_at.isoformat(),
        completed_at=stored.completed_at.isoformat() if stored.completed_at else None,
        error=stored.error,
    )
