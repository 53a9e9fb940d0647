"""
Pydantic Schemas for API Request/Response Models.

These schemas define the structure of data flowing through the API,
providing automatic validation and documentation.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from nodeflow.engine.executor import DownstreamPolicy
from nodeflow.engine.graph import FlowPayload
from nodeflow.engine.state_machine import NodeStatus, WorkflowStatus


# ============================================================
# Run Schemas
# ============================================================

class FlowRunRequest(FlowPayload):
    """Request to run a workflow graph."""
    workflow_id: Optional[str] = Field(None, description="Id of the workflow being run")
    concurrency: Optional[int] = Field(None, ge=1, le=64, description="Max nodes per wave")
    downstream_policy: Optional[DownstreamPolicy] = Field(
        None, description="What to do with nodes behind a failed predecessor"
    )
    async_execution: bool = Field(
        False,
        description="If true, run in background and return immediately",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "nodes": [
                    {"id": "in", "type": "input", "config": {}},
                    {"id": "fetch", "type": "http-request", "config": {"timeout": 5000, "retries": 2}},
                    {"id": "out", "type": "output", "config": {}},
                ],
                "edges": [
                    {"source": "in", "target": "fetch"},
                    {"source": "fetch", "target": "out"},
                ],
                "inputs": {"in": "https://example.com"},
                "async_execution": False,
            }
        }


class LogEntrySchema(BaseModel):
    """A single entry in the run log."""
    type: str
    node_id: str
    node_type: str
    message: str
    timestamp: str


class FinalOutputSchema(BaseModel):
    node_id: str
    value: Any = None


class FlowRunResponse(BaseModel):
    """Response after running a graph."""
    run_id: str = Field(..., description="Unique identifier for this run")
    workflow_id: Optional[str] = None
    workflow_status: WorkflowStatus
    outputs_by_node: Dict[str, Any] = Field(default_factory=dict)
    final_outputs: List[FinalOutputSchema] = Field(default_factory=list)
    logs: List[LogEntrySchema] = Field(default_factory=list)
    node_status: Dict[str, NodeStatus] = Field(default_factory=dict)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_duration_ms: Optional[float] = None
    waves: int = 0


class RunStateResponse(BaseModel):
    """Response with the stored state of a run."""
    run_id: str
    workflow_id: Optional[str]
    status: str
    snapshot: Dict[str, Any]
    result: Optional[Dict[str, Any]]
    logs: List[LogEntrySchema]
    snapshot_count: int
    started_at: str
    completed_at: Optional[str]
    error: Optional[str]


class RunListResponse(BaseModel):
    """Response listing runs."""
    runs: List[RunStateResponse]
    total: int


class CancelResponse(BaseModel):
    run_id: str
    message: str


# ============================================================
# Validation Schemas
# ============================================================

class ValidationResponse(BaseModel):
    """Result of validating a graph."""
    valid: bool
    errors: List[str]
    warnings: List[str]
    topological_order: Optional[List[str]] = None
    mermaid_diagram: Optional[str] = Field(None, description="Mermaid diagram of the graph")


# ============================================================
# Handler Schemas
# ============================================================

class HandlerInfo(BaseModel):
    """Information about a registered node handler."""
    node_type: str
    description: str
    handler: str


class HandlerListResponse(BaseModel):
    """Response listing all registered handlers."""
    handlers: List[HandlerInfo]
    total: int


# ============================================================
# Error Schemas
# ============================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[Any] = None
    status_code: int
