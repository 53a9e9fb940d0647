"""
Node Definition for the execution core.

A node is one typed unit of work in a graph. The engine reads only two
config keys generically (timeout and retries); everything else in the
config blob belongs to the node's handler.
"""

from typing import Any, Callable, Dict, Optional
from pydantic import BaseModel, Field, model_validator
import asyncio
import functools
import inspect


class GraphNode(BaseModel):
    """
    A node in the workflow graph.

    Attributes:
        id: Unique identifier for the node
        type: Type tag used to resolve the handler
        config: Handler-specific configuration (opaque to the engine)
        title: Optional human-readable label
    """

    id: str = Field(..., min_length=1, description="Unique node id")
    type: str = Field(..., description="Node type tag used for handler lookup")
    config: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None

    class Config:
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def _lift_canvas_data(cls, values: Any) -> Any:
        """Accept the editor's {id, data: {specId, config, title}} shape."""
        if isinstance(values, dict) and "data" in values and "type" not in values:
            data = values.get("data") or {}
            values = {
                "id": values.get("id"),
                "type": data.get("specId", ""),
                "config": data.get("config") or {},
                "title": data.get("title"),
            }
        return values

    @property
    def timeout_ms(self) -> float:
        """Per-node timeout in milliseconds (0 = none)."""
        value = self.config.get("timeout") or 0
        return float(value)

    @property
    def timeout_seconds(self) -> Optional[float]:
        """Timeout for asyncio.wait_for, or None when unbounded."""
        return self.timeout_ms / 1000 if self.timeout_ms > 0 else None

    @property
    def retries(self) -> int:
        """Number of extra attempts after the first failure."""
        value = self.config.get("retries") or 0
        return int(value)

    @property
    def failure_policy(self) -> Optional[str]:
        """Per-node failure policy override, if configured."""
        return self.config.get("failurePolicy", self.config.get("failure_policy"))

    @property
    def fallback_value(self) -> Any:
        return self.config.get("fallbackValue", self.config.get("fallback_value"))

    @property
    def label(self) -> str:
        return self.title or self.type or self.id

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the node to a dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "config": dict(self.config),
            "title": self.title,
        }


def is_async_handler(handler: Callable) -> bool:
    """Check if the handler is an async function (or an async __call__)."""
    if inspect.iscoroutinefunction(handler):
        return True
    call = getattr(handler, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


async def call_handler(handler: Callable, node: GraphNode, ctx: Any) -> Any:
    """
    Invoke a handler and await its result uniformly.

    Async handlers are awaited directly. Sync handlers run in the default
    executor so they do not block the event loop; if a sync handler hands
    back an awaitable, that is awaited too.
    """
    if is_async_handler(handler):
        return await handler(node, ctx)

    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, functools.partial(handler, node, ctx))
    if inspect.isawaitable(result):
        result = await result
    return result
