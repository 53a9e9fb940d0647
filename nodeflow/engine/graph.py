"""
Graph Definition for the execution core.

A FlowGraph wraps the user-authored nodes and edges of one run and derives
the structures the scheduler needs: adjacency, inbound sources, indegree and
sinks. It also validates the graph before anything executes.
"""

from typing import Any, Dict, Iterable, List, Optional, Set
from dataclasses import dataclass, field
from collections import deque
from pydantic import BaseModel, Field

from nodeflow.config import settings
from nodeflow.engine.node import GraphNode
from nodeflow.engine.policy import FailurePolicy


class GraphEdge(BaseModel):
    """A directed dependency from one node's output to another node's input."""

    source: str = Field(..., description="Source node id")
    target: str = Field(..., description="Target node id")
    id: Optional[str] = None
    source_handle: Optional[str] = Field(
        None, alias="sourceHandle", description="Output port on multi-port nodes"
    )
    target_handle: Optional[str] = Field(
        None, alias="targetHandle", description="Input port on multi-port nodes"
    )

    class Config:
        frozen = True
        populate_by_name = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "source_handle": self.source_handle,
            "target_handle": self.target_handle,
        }


class FlowPayload(BaseModel):
    """What a caller submits for one run: the graph plus external inputs."""

    nodes: List[GraphNode] = Field(..., description="Nodes in the graph")
    edges: List[GraphEdge] = Field(default_factory=list, description="Edges in declaration order")
    inputs: Dict[str, Any] = Field(
        default_factory=dict,
        description="External inputs keyed by node id (e.g. submitted form values)",
    )


@dataclass
class ValidationResult:
    """Outcome of FlowGraph.validate()."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


class GraphValidationError(ValueError):
    """Raised when a graph cannot be executed."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(f"Graph validation failed: {errors}")


class FlowGraph:
    """
    The nodes and edges of one run.

    Attributes:
        nodes: node_id -> GraphNode, in declaration order
        edges: Edges in declaration order
        adjacency: source -> targets (one entry per edge)
        inbound: target -> sources (one entry per edge, declaration order)
    """

    def __init__(
        self,
        nodes: Iterable[Any],
        edges: Iterable[Any] = (),
        output_types: Optional[Iterable[str]] = None,
    ):
        self.node_list: List[GraphNode] = [_as_node(n) for n in nodes]
        self.edges: List[GraphEdge] = [_as_edge(e) for e in edges]
        self.nodes: Dict[str, GraphNode] = {}
        for node in self.node_list:
            self.nodes.setdefault(node.id, node)
        self.output_types: Set[str] = set(
            output_types if output_types is not None else settings.OUTPUT_NODE_TYPES
        )

        self.adjacency: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
        self.inbound: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            if edge.source in self.nodes and edge.target in self.nodes:
                self.adjacency[edge.source].append(edge.target)
                self.inbound[edge.target].append(edge.source)

    def indegree(self) -> Dict[str, int]:
        """Fresh indegree counter per node (parallel edges count separately)."""
        return {node_id: len(sources) for node_id, sources in self.inbound.items()}

    def roots(self) -> List[str]:
        """Nodes with no inbound edges, in declaration order."""
        return [node_id for node_id, sources in self.inbound.items() if not sources]

    def sinks(self) -> List[str]:
        """Nodes with no outgoing edges or tagged with an output type, in declaration order."""
        return [
            node_id for node_id, node in self.nodes.items()
            if not self.adjacency[node_id] or node.type in self.output_types
        ]

    def topological_order(self) -> List[str]:
        """
        Kahn's algorithm over the graph.

        Raises:
            GraphValidationError: If the graph contains a cycle
        """
        indegree = self.indegree()
        queue = deque(self.roots())
        order: List[str] = []
        while queue:
            node_id = queue.popleft()
            order.append(node_id)
            for target in self.adjacency[node_id]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)
        if len(order) != len(self.nodes):
            stuck = [node_id for node_id in self.nodes if node_id not in set(order)]
            raise GraphValidationError([f"Graph contains a cycle through: {stuck}"])
        return order

    def has_cycle(self) -> bool:
        try:
            self.topological_order()
        except GraphValidationError:
            return True
        return False

    def depth(self) -> int:
        """Length of the longest root-to-sink path, counted in nodes."""
        levels: Dict[str, int] = {}
        for node_id in self.topological_order():
            sources = self.inbound[node_id]
            levels[node_id] = 1 + max((levels[s] for s in sources), default=0)
        return max(levels.values(), default=0)

    def validate(
        self,
        max_nodes: Optional[int] = None,
        max_depth: Optional[int] = None,
    ) -> ValidationResult:
        """
        Validate the graph structure.

        Returns:
            ValidationResult with blocking errors and advisory warnings
        """
        max_nodes = max_nodes if max_nodes is not None else settings.MAX_NODES
        max_depth = max_depth if max_depth is not None else settings.MAX_DEPTH
        result = ValidationResult()

        if not self.node_list:
            result.errors.append("Workflow must contain at least one node")
            return result

        seen: Set[str] = set()
        for node in self.node_list:
            if node.id in seen:
                result.errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        for edge in self.edges:
            if edge.source not in self.nodes:
                result.errors.append(f"Edge source '{edge.source}' is not a valid node")
            if edge.target not in self.nodes:
                result.errors.append(f"Edge target '{edge.target}' is not a valid node")

        if len(self.nodes) > max_nodes:
            result.errors.append(
                f"Workflow contains {len(self.nodes)} nodes, which exceeds "
                f"the maximum of {max_nodes}"
            )

        for node in self.node_list:
            result.errors.extend(_check_engine_config(node))

        if self.has_cycle():
            result.errors.append(
                "Workflow contains a circular dependency. Please remove the circular connection."
            )
        else:
            depth = self.depth()
            if depth > max_depth:
                result.warnings.append(
                    f"Workflow has a depth of {depth} levels (recommended maximum {max_depth})"
                )

        if len(self.nodes) > 1:
            connected = {e.source for e in self.edges} | {e.target for e in self.edges}
            disconnected = [node_id for node_id in self.nodes if node_id not in connected]
            if disconnected:
                result.warnings.append(f"Disconnected nodes: {disconnected}")

        return result

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the graph to a dictionary."""
        return {
            "nodes": [node.to_dict() for node in self.node_list],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        lines = ["graph TD"]

        for node_id, node in self.nodes.items():
            label = node.label.replace('"', "'")
            if node.type in self.output_types:
                lines.append(f'    {node_id}[/"{label}"/]')
            else:
                lines.append(f'    {node_id}["{label}"]')

        for edge in self.edges:
            if edge.source_handle or edge.target_handle:
                port = f"{edge.source_handle or ''}:{edge.target_handle or ''}"
                lines.append(f"    {edge.source} -->|{port}| {edge.target}")
            else:
                lines.append(f"    {edge.source} --> {edge.target}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"FlowGraph(nodes={list(self.nodes.keys())}, edges={len(self.edges)})"


def _as_node(value: Any) -> GraphNode:
    if isinstance(value, GraphNode):
        return value
    return GraphNode.model_validate(value)


def _as_edge(value: Any) -> GraphEdge:
    if isinstance(value, GraphEdge):
        return value
    return GraphEdge.model_validate(value)


def _check_engine_config(node: GraphNode) -> List[str]:
    """Check the config keys the engine itself reads."""
    errors = []
    retries = node.config.get("retries")
    if retries is not None and (
        isinstance(retries, bool) or not isinstance(retries, int) or retries < 0
    ):
        errors.append(f"Node '{node.id}': retries must be a non-negative integer")
    timeout = node.config.get("timeout")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0
    ):
        errors.append(f"Node '{node.id}': timeout must be a non-negative number of milliseconds")
    policy = node.failure_policy
    if policy is not None and policy not in {p.value for p in FailurePolicy}:
        errors.append(
            f"Node '{node.id}': unknown failurePolicy '{policy}' "
            f"(expected one of {[p.value for p in FailurePolicy]})"
        )
    return errors
