"""
Engine package - Graph scheduler, status state machine and execution state.
"""

from nodeflow.engine.state_machine import (
    NodeStatus,
    WorkflowStatus,
    ExecutionSnapshot,
    InvalidTransitionError,
)
from nodeflow.engine.state import ExecutionStateManager
from nodeflow.engine.node import GraphNode
from nodeflow.engine.context import HandlerContext, HandlerContractError
from nodeflow.engine.graph import FlowGraph, GraphEdge, GraphValidationError, ValidationResult
from nodeflow.engine.policy import FailurePolicy, RunCircuitBreaker, is_retryable_error
from nodeflow.engine.executor import (
    Executor,
    ExecutionResult,
    DownstreamPolicy,
    LogEntry,
    NodeTimeoutError,
    run_flow,
)

__all__ = [
    "NodeStatus",
    "WorkflowStatus",
    "ExecutionSnapshot",
    "InvalidTransitionError",
    "ExecutionStateManager",
    "GraphNode",
    "HandlerContext",
    "HandlerContractError",
    "FlowGraph",
    "GraphEdge",
    "GraphValidationError",
    "ValidationResult",
    "FailurePolicy",
    "RunCircuitBreaker",
    "is_retryable_error",
    "Executor",
    "ExecutionResult",
    "DownstreamPolicy",
    "LogEntry",
    "NodeTimeoutError",
    "run_flow",
]
