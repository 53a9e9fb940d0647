"""
Handler Context.

Each handler invocation receives its own HandlerContext: the view of the run
a handler is allowed to see and touch.
"""

from typing import Any, Dict, List, Optional
import asyncio
import threading
import logging

from nodeflow.engine.node import GraphNode
from nodeflow.engine.state import ExecutionStateManager
from nodeflow.engine.state_machine import ExecutionSnapshot, NodeStatus


logger = logging.getLogger(__name__)


class HandlerContractError(RuntimeError):
    """Raised when a handler breaks the execution contract."""


class HandlerContext:
    """
    Per-invocation context handed to node handlers.

    Attributes:
        node_id: Id of the node being executed
        attempt: 1-based attempt number
        inputs: External inputs bag, keyed by node id
        cancel_event: Shared run-wide cancellation signal
    """

    def __init__(
        self,
        node: GraphNode,
        manager: ExecutionStateManager,
        inbound_sources: List[str],
        inputs: Dict[str, Any],
        attempt: int = 1,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.node_id = node.id
        self.attempt = attempt
        self.inputs = inputs
        self.cancel_event = cancel_event or asyncio.Event()
        self._manager = manager
        self._inbound_sources = inbound_sources
        self._written = False
        self._closed = False
        self._lock = threading.RLock()

    @property
    def output_written(self) -> bool:
        return self._written

    @property
    def cancelled(self) -> bool:
        """True once the run has been asked to stop."""
        return self.cancel_event.is_set()

    def get_inbound_values(self) -> List[Any]:
        """
        Current outputs of direct predecessors, in edge declaration order.

        A predecessor that failed or never wrote an output contributes None.
        """
        outputs = self._manager.get_snapshot().outputs_by_node
        return [outputs.get(source) for source in self._inbound_sources]

    def get_input(self, default: Any = None) -> Any:
        """External input supplied for this node, if any."""
        return self.inputs.get(self.node_id, default)

    def set_output(self, value: Any) -> None:
        """
        Write this node's output. Allowed once per invocation.

        Raises:
            HandlerContractError: On a second write in the same invocation
        """
        with self._lock:
            if self._closed:
                self._ignore_late("output")
                return
            if self._written:
                raise HandlerContractError(
                    f"Node '{self.node_id}' wrote its output more than once"
                )
            self._written = True
            self._manager.set_node_output(self.node_id, value)

    def set_status(self, status: NodeStatus) -> NodeStatus:
        """
        Direct status hook; goes through the state machine like any other change.

        Ignored once the attempt is over, so a timed-out attempt still running
        in a worker thread cannot overwrite the status of a later attempt.
        """
        with self._lock:
            if self._closed:
                self._ignore_late(f"status '{NodeStatus(status).value}'")
                return self._manager.get_snapshot().node_status[self.node_id]
            return self._manager.set_node_status(self.node_id, status)

    def checkpoint(self, metadata: Optional[Dict[str, Any]] = None) -> ExecutionSnapshot:
        """Persist handler progress under metadata[node_id]."""
        with self._lock:
            if self._closed:
                self._ignore_late("checkpoint")
                return self._manager.get_snapshot()
            return self._manager.checkpoint({"metadata": {self.node_id: dict(metadata or {})}})

    def close(self) -> None:
        """Stop accepting writes; called when the attempt is over."""
        with self._lock:
            self._closed = True

    def _ignore_late(self, what: str) -> None:
        logger.warning(
            f"Ignoring late {what} from node '{self.node_id}' (attempt {self.attempt})"
        )
