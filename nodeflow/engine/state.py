"""
Execution State Manager.

The manager is the only object allowed to change a run's ExecutionSnapshot.
Status changes go through the state machine, output writes and checkpoints
go through copy-on-write updates, and every mutation is forwarded to an
optional persist hook (for example to stream state to a UI).
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union
from dataclasses import dataclass, field
from datetime import datetime
import asyncio
import inspect
import logging
import threading

from nodeflow.engine.state_machine import (
    ExecutionSnapshot,
    NodeStatus,
    WorkflowStatus,
    initialize_snapshot,
    transition_node,
    transition_workflow,
    with_updated_snapshot,
)


logger = logging.getLogger(__name__)

PersistHook = Callable[[ExecutionSnapshot], Union[None, Awaitable[None]]]

# Snapshot fields that checkpoint() may merge. Statuses and outputs have
# their own guarded setters.
CHECKPOINT_FIELDS = frozenset({"metadata"})


@dataclass
class StatusChange:
    """One validated status change, kept for auditing."""
    target: str  # node id, or "__workflow__"
    previous: str
    current: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "previous": self.previous,
            "current": self.current,
            "timestamp": self.timestamp.isoformat(),
        }


WORKFLOW_TARGET = "__workflow__"


class ExecutionStateManager:
    """
    Owns and mutates the snapshot for exactly one run.

    Mutations swap the snapshot reference under a lock, so the manager can be
    called from handler worker threads as well as from the event loop.

    Usage:
        manager = ExecutionStateManager(["a", "b"], persist_hook=print)
        manager.set_workflow_status(WorkflowStatus.RUNNING)
        manager.set_node_status("a", NodeStatus.READY)
    """

    def __init__(
        self,
        node_ids: Iterable[str],
        workflow_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        persist_hook: Optional[PersistHook] = None,
    ):
        self._snapshot = initialize_snapshot(node_ids, workflow_id, metadata)
        self._persist_hook = persist_hook
        self._lock = threading.RLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Set[asyncio.Future] = set()
        self.history: List[StatusChange] = []

    @classmethod
    def from_snapshot(
        cls,
        snapshot: ExecutionSnapshot,
        persist_hook: Optional[PersistHook] = None,
    ) -> "ExecutionStateManager":
        """Resume management of an existing snapshot."""
        manager = cls(
            snapshot.node_status.keys(),
            workflow_id=snapshot.workflow_id,
            metadata=snapshot.metadata,
            persist_hook=persist_hook,
        )
        manager._snapshot = snapshot
        return manager

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Event loop that async persist hooks are scheduled on from worker threads."""
        self._loop = loop

    def get_snapshot(self) -> ExecutionSnapshot:
        """Get the current snapshot."""
        return self._snapshot

    # ------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------

    def set_workflow_status(self, status: WorkflowStatus) -> WorkflowStatus:
        """Move the workflow to a new status, validated by the state machine."""
        with self._lock:
            previous = self._snapshot.workflow_status
            updated = transition_workflow(previous, status)
            self._snapshot = with_updated_snapshot(self._snapshot, workflow_status=updated)
            self.history.append(StatusChange(WORKFLOW_TARGET, previous.value, updated.value))
            self._persist()
        logger.debug(f"Workflow status: {previous.value} -> {updated.value}")
        return updated

    def set_node_status(self, node_id: str, status: NodeStatus) -> NodeStatus:
        """
        Move a node to a new status, validated by the state machine.

        Raises:
            KeyError: If the node is not part of this run
            InvalidTransitionError: If the transition is not allowed
        """
        with self._lock:
            if node_id not in self._snapshot.node_status:
                raise KeyError(f"Node '{node_id}' is not part of this run")
            previous = self._snapshot.node_status[node_id]
            updated = transition_node(previous, status)
            self._snapshot = with_updated_snapshot(
                self._snapshot, node_status={node_id: updated}
            )
            self.history.append(StatusChange(node_id, previous.value, updated.value))
            self._persist()
        logger.debug(f"Node {node_id}: {previous.value} -> {updated.value}")
        return updated

    def set_node_output(self, node_id: str, value: Any) -> None:
        """Record the latest output of a node."""
        with self._lock:
            if node_id not in self._snapshot.node_status:
                raise KeyError(f"Node '{node_id}' is not part of this run")
            self._snapshot = with_updated_snapshot(
                self._snapshot, outputs_by_node={node_id: value}
            )
            self._persist()

    def checkpoint(self, partial: Optional[Dict[str, Any]] = None) -> ExecutionSnapshot:
        """
        Merge a partial update into the snapshot and persist it.

        Only metadata can be checkpointed. Statuses must go through the
        status setters and outputs through set_node_output.

        Raises:
            ValueError: If partial contains any other field
        """
        partial = partial or {}
        rejected = set(partial) - CHECKPOINT_FIELDS
        if rejected:
            raise ValueError(
                f"Cannot checkpoint fields {sorted(rejected)}; "
                f"allowed: {sorted(CHECKPOINT_FIELDS)}"
            )
        with self._lock:
            self._snapshot = with_updated_snapshot(self._snapshot, **partial)
            self._persist()
            return self._snapshot

    # ------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------

    def _persist(self) -> None:
        if not self._persist_hook:
            return
        try:
            result = self._persist_hook(self._snapshot)
        except Exception as e:
            logger.warning(f"Snapshot persist failed: {e}")
            return
        if inspect.isawaitable(result):
            self._schedule(result)

    def _schedule(self, awaitable: Awaitable) -> None:
        try:
            asyncio.get_running_loop()
            on_loop = True
        except RuntimeError:
            on_loop = False

        if on_loop:
            self._track(asyncio.ensure_future(awaitable))
        elif self._loop is not None and not self._loop.is_closed():
            # Called from a handler worker thread
            self._loop.call_soon_threadsafe(
                lambda: self._track(asyncio.ensure_future(awaitable))
            )
        else:
            try:
                asyncio.run(_await(awaitable))
            except Exception as e:
                logger.warning(f"Snapshot persist failed: {e}")

    def _track(self, future: asyncio.Future) -> None:
        self._pending.add(future)
        future.add_done_callback(self._on_persist_done)

    def _on_persist_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"Snapshot persist failed: {error}")

    async def flush(self) -> None:
        """Wait for scheduled async persist calls to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_history(self) -> List[Dict[str, Any]]:
        """Get the status change history as a list of dictionaries."""
        return [change.to_dict() for change in self.history]


async def _await(awaitable: Awaitable) -> Any:
    return await awaitable
