"""
Status State Machine for the execution core.

Two independent transition tables, one for node status and one for workflow
status. Every status change in a run is validated here; an illegal request
raises instead of being coerced. This module holds no state of its own: the
snapshot helpers below build and copy ExecutionSnapshot values but never
mutate one in place.
"""

from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum


class NodeStatus(str, Enum):
    """Status of a single node within a run."""
    IDLE = "idle"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"


class WorkflowStatus(str, Enum):
    """Status of a whole run."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_SKIPS = "completed_with_skips"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, label: str, current: Enum, requested: Enum):
        self.label = label
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid {label} transition: {current.value} -> {requested.value}"
        )


NODE_TRANSITIONS: Dict[NodeStatus, FrozenSet[NodeStatus]] = {
    NodeStatus.IDLE: frozenset({
        NodeStatus.READY, NodeStatus.RUNNING, NodeStatus.SKIPPED,
        NodeStatus.BLOCKED, NodeStatus.FAILED,
    }),
    # ready -> failed covers setup errors raised before the handler starts
    NodeStatus.READY: frozenset({
        NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.BLOCKED, NodeStatus.FAILED,
    }),
    NodeStatus.RUNNING: frozenset({
        NodeStatus.SUCCESS, NodeStatus.FAILED, NodeStatus.TIMEOUT, NodeStatus.RETRYING,
    }),
    NodeStatus.RETRYING: frozenset({
        NodeStatus.RUNNING, NodeStatus.FAILED, NodeStatus.TIMEOUT,
    }),
    NodeStatus.SUCCESS: frozenset(),
    NodeStatus.FAILED: frozenset(),
    NodeStatus.SKIPPED: frozenset(),
    NodeStatus.BLOCKED: frozenset(),
    NodeStatus.TIMEOUT: frozenset(),
}

WORKFLOW_TRANSITIONS: Dict[WorkflowStatus, FrozenSet[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED}),
    WorkflowStatus.RUNNING: frozenset({
        WorkflowStatus.PAUSED, WorkflowStatus.COMPLETED,
        WorkflowStatus.COMPLETED_WITH_SKIPS, WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED, WorkflowStatus.TIMEOUT,
    }),
    WorkflowStatus.PAUSED: frozenset({WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED}),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.COMPLETED_WITH_SKIPS: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
    WorkflowStatus.TIMEOUT: frozenset(),
}

TERMINAL_NODE_STATUSES = frozenset(s for s, nxt in NODE_TRANSITIONS.items() if not nxt)
TERMINAL_WORKFLOW_STATUSES = frozenset(s for s, nxt in WORKFLOW_TRANSITIONS.items() if not nxt)

TransitionHook = Callable[[Enum, Enum, Optional[Dict[str, Any]]], None]


def _ensure_transition(table: Dict, current: Enum, requested: Enum, label: str) -> None:
    if requested not in table.get(current, frozenset()):
        raise InvalidTransitionError(label, current, requested)


def can_transition_node(current: NodeStatus, requested: NodeStatus) -> bool:
    return NodeStatus(requested) in NODE_TRANSITIONS[NodeStatus(current)]


def can_transition_workflow(current: WorkflowStatus, requested: WorkflowStatus) -> bool:
    return WorkflowStatus(requested) in WORKFLOW_TRANSITIONS[WorkflowStatus(current)]


def transition_node(
    current: NodeStatus,
    requested: NodeStatus,
    hook: Optional[TransitionHook] = None,
    context: Optional[Dict[str, Any]] = None,
) -> NodeStatus:
    """
    Validate a node status change and return the new status.

    Args:
        current: Status the node is in now
        requested: Status the caller wants to move to
        hook: Optional observer called after validation
        context: Extra data passed through to the hook

    Raises:
        InvalidTransitionError: If the table does not allow the change
    """
    current, requested = NodeStatus(current), NodeStatus(requested)
    _ensure_transition(NODE_TRANSITIONS, current, requested, "node")
    if hook:
        hook(current, requested, context)
    return requested


def transition_workflow(
    current: WorkflowStatus,
    requested: WorkflowStatus,
    hook: Optional[TransitionHook] = None,
    context: Optional[Dict[str, Any]] = None,
) -> WorkflowStatus:
    """Validate a workflow status change and return the new status."""
    current, requested = WorkflowStatus(current), WorkflowStatus(requested)
    _ensure_transition(WORKFLOW_TRANSITIONS, current, requested, "workflow")
    if hook:
        hook(current, requested, context)
    return requested


def is_terminal_node(status: NodeStatus) -> bool:
    return NodeStatus(status) in TERMINAL_NODE_STATUSES


def is_terminal_workflow(status: WorkflowStatus) -> bool:
    return WorkflowStatus(status) in TERMINAL_WORKFLOW_STATUSES


# ============================================================
# Snapshot
# ============================================================

class ExecutionSnapshot(BaseModel):
    """
    The full execution record for one run.

    Snapshots are treated as values: every change produces a new instance
    through with_updated_snapshot(), so a reference handed out earlier never
    changes underneath its holder.

    Attributes:
        workflow_id: Optional id of the workflow being run
        workflow_status: Status of the run as a whole
        node_status: node_id -> NodeStatus, one entry per node
        outputs_by_node: node_id -> last output (absent until written)
        started_at: When the snapshot was created
        updated_at: When the snapshot was last replaced
        metadata: Free-form data (wave counts, handler checkpoints, ...)
    """

    workflow_id: Optional[str] = None
    workflow_status: WorkflowStatus = WorkflowStatus.PENDING
    node_status: Dict[str, NodeStatus] = Field(default_factory=dict)
    outputs_by_node: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        arbitrary_types_allowed = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert the snapshot to a plain dictionary."""
        return {
            "workflow_id": self.workflow_id,
            "workflow_status": self.workflow_status.value,
            "node_status": {k: v.value for k, v in self.node_status.items()},
            "outputs_by_node": dict(self.outputs_by_node),
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": dict(self.metadata),
        }


def initialize_snapshot(
    node_ids: Iterable[str],
    workflow_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ExecutionSnapshot:
    """Create a pending snapshot with every node idle."""
    now = datetime.now()
    return ExecutionSnapshot(
        workflow_id=workflow_id,
        workflow_status=WorkflowStatus.PENDING,
        node_status={node_id: NodeStatus.IDLE for node_id in node_ids},
        outputs_by_node={},
        started_at=now,
        updated_at=now,
        metadata=dict(metadata or {}),
    )


def with_updated_snapshot(snapshot: ExecutionSnapshot, **updates: Any) -> ExecutionSnapshot:
    """
    Return a copy of the snapshot with updates applied.

    node_status, outputs_by_node and metadata are merged key by key into
    fresh dicts; any other field is replaced. updated_at is always bumped.
    """
    merged: Dict[str, Any] = dict(updates)
    for key in ("node_status", "outputs_by_node", "metadata"):
        merged[key] = {**getattr(snapshot, key), **(updates.get(key) or {})}
    merged["updated_at"] = datetime.now()
    return snapshot.model_copy(update=merged)
