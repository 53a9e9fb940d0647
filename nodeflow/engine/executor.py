"""
Async Graph Executor.

The executor runs every node of a FlowGraph exactly once in dependency
order. Ready nodes are drained in concurrency-bounded waves; each node runs
inside its own timeout/retry wrapper, and the terminal workflow status is
derived from the node statuses once the last wave has finished.
"""

from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union
from dataclasses import dataclass, field
from collections import deque
from datetime import datetime
from enum import Enum
import asyncio
import uuid
import time
import logging

from nodeflow.config import settings
from nodeflow.engine.context import HandlerContext
from nodeflow.engine.graph import FlowGraph, FlowPayload, GraphValidationError
from nodeflow.engine.node import GraphNode, call_handler
from nodeflow.engine.policy import (
    FailurePolicy,
    RunCircuitBreaker,
    failure_policy_of,
    is_retryable_error,
)
from nodeflow.engine.redaction import redact_secrets
from nodeflow.engine.state import ExecutionStateManager, PersistHook
from nodeflow.engine.state_machine import (
    ExecutionSnapshot,
    InvalidTransitionError,
    NodeStatus,
    WorkflowStatus,
    is_terminal_node,
)
from nodeflow.nodes.registry import HandlerRegistry, handler_registry


logger = logging.getLogger(__name__)


class DownstreamPolicy(str, Enum):
    """What happens to a node whose predecessor did not succeed."""
    ATTEMPT_ANYWAY = "attempt_anyway"  # Run it with whatever inbound values exist
    SKIP = "skip"                      # Mark it skipped
    BLOCK = "block"                    # Mark it blocked


class LogEntryType(str, Enum):
    START = "start"
    SUCCESS = "success"
    ERROR = "error"


class NodeTimeoutError(TimeoutError):
    """A single handler invocation exceeded the node's timeout."""


FAILED_STATUSES = frozenset({NodeStatus.FAILED, NodeStatus.TIMEOUT})
SKIPPED_STATUSES = frozenset({NodeStatus.SKIPPED, NodeStatus.BLOCKED})


@dataclass
class LogEntry:
    """A single entry in the run log."""
    type: LogEntryType
    node_id: str
    node_type: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class FinalOutput:
    """The value of a sink/output node."""
    node_id: str
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"node_id": self.node_id, "value": self.value}


@dataclass
class ExecutionResult:
    """Result of a graph run."""
    run_id: str
    workflow_status: WorkflowStatus
    outputs_by_node: Dict[str, Any]
    final_outputs: List[FinalOutput]
    logs: List[LogEntry]
    node_status: Dict[str, NodeStatus]
    workflow_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    waves: int = 0

    @property
    def succeeded(self) -> bool:
        return self.workflow_status == WorkflowStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "workflow_status": self.workflow_status.value,
            "outputs_by_node": self.outputs_by_node,
            "final_outputs": [output.to_dict() for output in self.final_outputs],
            "logs": [entry.to_dict() for entry in self.logs],
            "node_status": {k: v.value for k, v in self.node_status.items()},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_duration_ms": self.total_duration_ms,
            "waves": self.waves,
        }


class Executor:
    """
    Wave-based graph executor.

    Handles:
    - Dependency ordering (a node is ready once every predecessor finished)
    - Concurrency-bounded waves, strictly sequential between waves
    - Per-node timeout and retry
    - Downstream policy for nodes behind a failed predecessor
    - Cooperative cancel / pause / resume and an optional run deadline

    Usage:
        executor = Executor(nodes, edges)
        result = await executor.run({"form": {"name": "Ada"}})
    """

    def __init__(
        self,
        nodes: Union[FlowGraph, Iterable[Any]],
        edges: Iterable[Any] = (),
        registry: Optional[HandlerRegistry] = None,
        concurrency: Optional[int] = None,
        downstream_policy: Union[DownstreamPolicy, str, None] = None,
        retry_backoff_ms: Optional[int] = None,
        run_timeout: Optional[float] = None,
        persist_hook: Optional[PersistHook] = None,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        retry_on: Optional[Callable[[Exception], bool]] = None,
        circuit_breaker_threshold: Optional[int] = None,
    ):
        """
        Initialize the executor.

        Args:
            nodes: A FlowGraph, or the nodes to build one from
            edges: Edges (ignored when nodes is already a FlowGraph)
            registry: Handler registry (defaults to the global one)
            concurrency: Max nodes per wave (defaults to settings.CONCURRENCY)
            downstream_policy: Policy for nodes behind a failed predecessor
            retry_backoff_ms: Base delay between attempts, 0 for immediate retry
            run_timeout: Run deadline in seconds, 0/None for none
            persist_hook: Called with the snapshot after every mutation
            run_id: Optional run ID (generated if not provided)
            workflow_id: Optional id of the workflow being run
            retry_on: Predicate deciding whether an error is worth retrying
                (defaults to retrying everything, or to is_retryable_error
                when settings.RETRY_ONLY_TRANSIENT is set)
            circuit_breaker_threshold: Failed attempts per run after which
                retries stop, 0 for no breaker
        """
        self.graph = nodes if isinstance(nodes, FlowGraph) else FlowGraph(nodes, edges)
        self.registry = registry or handler_registry
        self.concurrency = concurrency if concurrency is not None else settings.CONCURRENCY
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.downstream_policy = DownstreamPolicy(
            downstream_policy or settings.DOWNSTREAM_POLICY
        )
        self.retry_backoff_ms = (
            retry_backoff_ms if retry_backoff_ms is not None else settings.RETRY_BACKOFF_MS
        )
        self.run_timeout = run_timeout if run_timeout is not None else settings.EXECUTION_TIMEOUT
        self.persist_hook = persist_hook
        self.run_id = run_id or str(uuid.uuid4())
        self.workflow_id = workflow_id
        if retry_on is None and settings.RETRY_ONLY_TRANSIENT:
            retry_on = is_retryable_error
        self.retry_on = retry_on
        self.breaker = RunCircuitBreaker(
            circuit_breaker_threshold
            if circuit_breaker_threshold is not None
            else settings.CIRCUIT_BREAKER_THRESHOLD
        )

        # Execution state
        self._manager: Optional[ExecutionStateManager] = None
        self._inputs: Dict[str, Any] = {}
        self._logs: List[LogEntry] = []
        self._waves = 0
        self._active = 0
        self.max_active = 0
        self._started = False
        self._stop_reason: Optional[WorkflowStatus] = None
        self._cancel_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._pause_requested = False
        self._fail_fast = False

    @property
    def status(self) -> WorkflowStatus:
        """Get the current workflow status."""
        if self._manager is None:
            return WorkflowStatus.PENDING
        return self._manager.get_snapshot().workflow_status

    @property
    def snapshot(self) -> Optional[ExecutionSnapshot]:
        """Get the current snapshot (None before the run starts)."""
        return self._manager.get_snapshot() if self._manager else None

    @property
    def state_manager(self) -> Optional[ExecutionStateManager]:
        return self._manager

    @property
    def logs(self) -> List[LogEntry]:
        return list(self._logs)

    def cancel(self) -> None:
        """Stop the run at the next wave boundary."""
        self._cancel_event.set()
        self._resume_event.set()

    def pause(self) -> None:
        """Pause the run at the next wave boundary."""
        self._pause_requested = True

    def resume(self) -> None:
        """Resume a paused run."""
        self._pause_requested = False
        self._resume_event.set()

    async def run(self, inputs: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """
        Execute the graph with the given external inputs.

        Args:
            inputs: External inputs keyed by node id

        Returns:
            ExecutionResult with outputs, logs and statuses

        Raises:
            GraphValidationError: If the graph is not runnable
            RuntimeError: If this executor has already run
        """
        if self._started:
            raise RuntimeError("An Executor runs a graph once; create a new one")
        self._started = True

        validation = self.graph.validate()
        if not validation.valid:
            raise GraphValidationError(validation.errors)
        for warning in validation.warnings:
            logger.warning(f"Run {self.run_id}: {warning}")

        start_time = time.time()
        loop = asyncio.get_running_loop()
        self._inputs = dict(inputs or {})
        manager = ExecutionStateManager(
            self.graph.nodes.keys(),
            workflow_id=self.workflow_id,
            metadata={"run_id": self.run_id},
            persist_hook=self.persist_hook,
        )
        manager.bind_loop(loop)
        self._manager = manager

        manager.set_workflow_status(WorkflowStatus.RUNNING)
        logger.info(
            f"Run {self.run_id} started: {len(self.graph.nodes)} nodes, "
            f"concurrency {self.concurrency}"
        )

        indegree = self.graph.indegree()
        ready: Deque[str] = deque()
        for node_id in self.graph.roots():
            manager.set_node_status(node_id, NodeStatus.READY)
            ready.append(node_id)

        deadline = loop.time() + self.run_timeout if self.run_timeout else None

        while ready:
            if not await self._wave_gate(deadline):
                break

            wave = [ready.popleft() for _ in range(min(self.concurrency, len(ready)))]
            self._waves += 1
            manager.checkpoint({"metadata": {"waves": self._waves}})
            logger.debug(f"Run {self.run_id} wave {self._waves}: {wave}")

            if not await self._run_wave(wave, deadline):
                break

            for node_id in wave:
                self._release_successors(node_id, indegree, ready)

        return await self._finalize(start_time)

    # ------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------

    async def _wave_gate(self, deadline: Optional[float]) -> bool:
        """Honor pause/cancel/deadline between waves. False means stop."""
        manager = self._manager
        if self._pause_requested and not self._cancel_event.is_set():
            self._resume_event.clear()
            manager.set_workflow_status(WorkflowStatus.PAUSED)
            logger.info(f"Run {self.run_id} paused after wave {self._waves}")
            await self._resume_event.wait()
            if not self._cancel_event.is_set():
                manager.set_workflow_status(WorkflowStatus.RUNNING)
                logger.info(f"Run {self.run_id} resumed")

        if self._cancel_event.is_set():
            self._stop_reason = WorkflowStatus.CANCELLED
            logger.info(f"Run {self.run_id} cancelled after wave {self._waves}")
            return False

        if self._fail_fast:
            logger.warning(
                f"Run {self.run_id} stopped after wave {self._waves}: a fail_fast node failed"
            )
            return False

        if deadline is not None and asyncio.get_running_loop().time() >= deadline:
            self._stop_reason = WorkflowStatus.TIMEOUT
            logger.warning(f"Run {self.run_id} exceeded its {self.run_timeout}s deadline")
            return False

        return True

    async def _run_wave(self, wave: List[str], deadline: Optional[float]) -> bool:
        """
        Run one wave to completion. False means the run deadline cut it short.

        Raises:
            InvalidTransitionError: Once the rest of the wave has been
                cancelled and the run closed as failed
        """
        tasks = [asyncio.ensure_future(self._execute_node(node_id)) for node_id in wave]
        remaining = None
        if deadline is not None:
            remaining = max(deadline - asyncio.get_running_loop().time(), 0)

        try:
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=remaining)
            return True
        except asyncio.TimeoutError:
            self._stop_reason = WorkflowStatus.TIMEOUT
            logger.warning(f"Run {self.run_id} exceeded its {self.run_timeout}s deadline")
            for node_id in wave:
                status = self._manager.get_snapshot().node_status[node_id]
                if status in (NodeStatus.RUNNING, NodeStatus.RETRYING):
                    self._manager.set_node_status(node_id, NodeStatus.TIMEOUT)
                    node = self.graph.nodes[node_id]
                    self._log(
                        LogEntryType.ERROR, node,
                        f'Failed "{node.type}": run deadline of {self.run_timeout}s exceeded',
                    )
            return False
        except InvalidTransitionError as e:
            logger.error(f"Run {self.run_id} aborted: {e}")
            await self._abort(tasks)
            raise

    async def _abort(self, tasks: List[asyncio.Future]) -> None:
        """Cancel what is left of the wave and close the run as failed."""
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        manager = self._manager
        for node_id, status in manager.get_snapshot().node_status.items():
            if status in (NodeStatus.RUNNING, NodeStatus.RETRYING):
                manager.set_node_status(node_id, NodeStatus.FAILED)
            elif status in (NodeStatus.IDLE, NodeStatus.READY):
                manager.set_node_status(node_id, NodeStatus.SKIPPED)
        manager.set_workflow_status(WorkflowStatus.FAILED)
        await manager.flush()

    def _release_successors(self, node_id: str, indegree: Dict[str, int], ready: Deque[str]) -> None:
        """Consume the outgoing edges of a finished node and promote what became ready."""
        finished = deque([node_id])
        while finished:
            current = finished.popleft()
            for target in self.graph.adjacency[current]:
                indegree[target] -= 1
                if indegree[target] > 0:
                    continue
                if self._promote(target) == NodeStatus.READY:
                    ready.append(target)
                else:
                    # Skipped/blocked nodes count as finished straight away
                    finished.append(target)

    def _promote(self, node_id: str) -> NodeStatus:
        """Mark a node whose predecessors have all finished."""
        node_status = self._manager.get_snapshot().node_status
        not_ok = [
            source for source in self.graph.inbound[node_id]
            if node_status[source] != NodeStatus.SUCCESS
        ]
        policies = {self._policy_after(source, node_status[source]) for source in not_ok}
        if DownstreamPolicy.SKIP in policies:
            status = NodeStatus.SKIPPED
        elif DownstreamPolicy.BLOCK in policies:
            status = NodeStatus.BLOCKED
        else:
            status = NodeStatus.READY

        if status != NodeStatus.READY:
            logger.info(f"Node {node_id} {status.value}: an upstream node did not succeed")
        return self._manager.set_node_status(node_id, status)

    def _policy_after(self, source: str, status: NodeStatus) -> DownstreamPolicy:
        """Downstream policy for the successors of a source that did not succeed."""
        if status == NodeStatus.SKIPPED:
            # Skips cascade, so skip_downstream reaches every descendant
            return DownstreamPolicy.SKIP
        if status in FAILED_STATUSES:
            policy = failure_policy_of(self.graph.nodes[source].failure_policy)
            if policy == FailurePolicy.CONTINUE:
                return DownstreamPolicy.ATTEMPT_ANYWAY
            if policy == FailurePolicy.SKIP_DOWNSTREAM:
                return DownstreamPolicy.SKIP
        return self.downstream_policy

    # ------------------------------------------------------------
    # Per-node execution
    # ------------------------------------------------------------

    async def _execute_node(self, node_id: str) -> None:
        """Run one node: mark running, invoke with retry, record the outcome."""
        node = self.graph.nodes[node_id]
        manager = self._manager
        self._active += 1
        self.max_active = max(self.max_active, self._active)
        try:
            manager.set_node_status(node_id, NodeStatus.RUNNING)
            self._log(LogEntryType.START, node, f'Starting "{node.type}"')
            logger.info(f"Executing node: {node_id} ({node.type})")

            try:
                await self._invoke_with_retry(node)
            except InvalidTransitionError:
                raise
            except Exception as e:
                message = redact_secrets(str(e) or e.__class__.__name__)
                self._log(LogEntryType.ERROR, node, f'Failed "{node.type}": {message}')
                logger.error(f"Node {node_id} failed: {message}")
                self._on_failure(node)
                return

            self._settle(node_id, NodeStatus.SUCCESS)
            self._log(LogEntryType.SUCCESS, node, f'Finished "{node.type}"')
        finally:
            self._active -= 1

    def _on_failure(self, node: GraphNode) -> None:
        """Record a node whose attempts are exhausted, honoring its failurePolicy."""
        policy = failure_policy_of(node.failure_policy)
        current = self._manager.get_snapshot().node_status[node.id]
        if policy == FailurePolicy.USE_FALLBACK_VALUE and not is_terminal_node(current):
            self._manager.set_node_output(node.id, node.fallback_value)
            self._manager.set_node_status(node.id, NodeStatus.SUCCESS)
            self._log(LogEntryType.SUCCESS, node, f'Finished "{node.type}" with its fallback value')
            return

        self._settle(node.id, NodeStatus.FAILED)
        if policy == FailurePolicy.FAIL_FAST:
            self._fail_fast = True

    async def _invoke_with_retry(self, node: GraphNode) -> None:
        """
        Invoke the node's handler, retrying up to node.retries times.

        An attempt is not retried when retry_on rejects its error or the run's
        circuit breaker is open.

        Raises:
            Exception: The last attempt's error once retrying stops
        """
        handler = self.registry.resolve(node.type)
        attempts = node.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._invoke_once(node, handler, attempt)
                return
            except InvalidTransitionError:
                raise
            except Exception as e:
                self.breaker.record_failure()
                if attempt >= attempts:
                    raise
                if self.retry_on is not None and not self.retry_on(e):
                    logger.info(f"Node {node.id}: {e.__class__.__name__} is not retryable")
                    raise
                if self.breaker.is_open():
                    logger.warning(f"Node {node.id}: circuit breaker open, not retrying")
                    raise
                logger.warning(
                    f"Node {node.id} attempt {attempt}/{attempts} failed: {e}; retrying"
                )
                self._manager.set_node_status(node.id, NodeStatus.RETRYING)
                delay = self._backoff_seconds(attempt)
                if delay:
                    await asyncio.sleep(delay)
                self._manager.set_node_status(node.id, NodeStatus.RUNNING)

    async def _invoke_once(self, node: GraphNode, handler: Callable, attempt: int) -> None:
        ctx = HandlerContext(
            node,
            self._manager,
            self.graph.inbound[node.id],
            self._inputs,
            attempt=attempt,
            cancel_event=self._cancel_event,
        )
        timeout = node.timeout_seconds
        if timeout is None and settings.DEFAULT_NODE_TIMEOUT_MS > 0:
            timeout = settings.DEFAULT_NODE_TIMEOUT_MS / 1000
        try:
            if timeout is not None:
                try:
                    result = await asyncio.wait_for(
                        call_handler(handler, node, ctx), timeout=timeout
                    )
                except asyncio.TimeoutError:
                    raise NodeTimeoutError(
                        f"Node '{node.id}' timed out after {timeout * 1000:g}ms"
                    ) from None
            else:
                result = await call_handler(handler, node, ctx)

            if not ctx.output_written and result is not None:
                ctx.set_output(result)
        finally:
            ctx.close()

    def _backoff_seconds(self, attempt: int) -> float:
        if self.retry_backoff_ms <= 0:
            return 0.0
        delay_ms = min(settings.RETRY_BACKOFF_MAX_MS, self.retry_backoff_ms * 2 ** (attempt - 1))
        return delay_ms / 1000

    def _settle(self, node_id: str, status: NodeStatus) -> None:
        """Final node transition, unless the handler already ended the node itself."""
        current = self._manager.get_snapshot().node_status[node_id]
        if not is_terminal_node(current):
            self._manager.set_node_status(node_id, status)

    def _log(self, entry_type: LogEntryType, node: GraphNode, message: str) -> None:
        self._logs.append(LogEntry(
            type=entry_type,
            node_id=node.id,
            node_type=node.type,
            message=message,
        ))

    # ------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------

    async def _finalize(self, start_time: float) -> ExecutionResult:
        """Sweep unfinished nodes, derive the workflow status once, build the result."""
        manager = self._manager
        for node_id, status in manager.get_snapshot().node_status.items():
            if status in (NodeStatus.IDLE, NodeStatus.READY):
                manager.set_node_status(node_id, NodeStatus.SKIPPED)

        node_status = manager.get_snapshot().node_status
        manager.set_workflow_status(self._derive_workflow_status(node_status))
        await manager.flush()

        snapshot = manager.get_snapshot()
        completed_at = datetime.now()
        logger.info(
            f"Run {self.run_id} finished: {snapshot.workflow_status.value} "
            f"in {self._waves} wave(s)"
        )

        return ExecutionResult(
            run_id=self.run_id,
            workflow_id=self.workflow_id,
            workflow_status=snapshot.workflow_status,
            outputs_by_node=dict(snapshot.outputs_by_node),
            final_outputs=[
                FinalOutput(node_id, snapshot.outputs_by_node.get(node_id))
                for node_id in self.graph.sinks()
            ],
            logs=list(self._logs),
            node_status=dict(snapshot.node_status),
            started_at=snapshot.started_at,
            completed_at=completed_at,
            total_duration_ms=(time.time() - start_time) * 1000,
            waves=self._waves,
        )

    def _derive_workflow_status(self, node_status: Dict[str, NodeStatus]) -> WorkflowStatus:
        if self._stop_reason is not None:
            return self._stop_reason
        statuses = set(node_status.values())
        if statuses & FAILED_STATUSES:
            return WorkflowStatus.FAILED
        if statuses & SKIPPED_STATUSES:
            return WorkflowStatus.COMPLETED_WITH_SKIPS
        return WorkflowStatus.COMPLETED


async def run_flow(
    payload: Union[FlowPayload, Dict[str, Any], Iterable[Any]],
    edges: Optional[Iterable[Any]] = None,
    inputs: Optional[Dict[str, Any]] = None,
    **executor_options: Any,
) -> ExecutionResult:
    """
    Convenience function to run a graph.

    Args:
        payload: {"nodes": [...], "edges": [...], "inputs": {...}}, a
            FlowPayload, or a bare list of nodes
        edges: Edges when payload is a list of nodes
        inputs: External inputs (override payload inputs)
        **executor_options: Passed through to Executor

    Returns:
        ExecutionResult
    """
    if isinstance(payload, dict):
        payload = FlowPayload.model_validate(payload)
    if isinstance(payload, FlowPayload):
        nodes, edges, run_inputs = payload.nodes, payload.edges, payload.inputs
    else:
        nodes, edges, run_inputs = payload, edges or (), {}
    if inputs is not None:
        run_inputs = inputs
    executor = Executor(nodes, edges, **executor_options)
    return await executor.run(run_inputs)
