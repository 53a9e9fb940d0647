"""
Handler Registry for the execution core.

The registry maps a node-type tag to the handler that does that node's work.
A handler is called as handler(node, ctx), may be sync or async, must write
its output through ctx.set_output() and must raise on failure.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from dataclasses import dataclass
import logging


logger = logging.getLogger(__name__)

NodeHandler = Callable[[Any, Any], Union[Any, Awaitable[Any]]]


@dataclass
class RegisteredHandler:
    """
    A registered node handler.

    Attributes:
        node_type: Type tag the handler serves
        func: The callable handler
        description: Human-readable description
    """
    node_type: str
    func: NodeHandler
    description: str = ""

    def __call__(self, node, ctx) -> Any:
        return self.func(node, ctx)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize handler metadata."""
        return {
            "node_type": self.node_type,
            "description": self.description,
            "handler": getattr(self.func, "__name__", str(self.func)),
        }


class HandlerRegistry:
    """
    Registry of node handlers keyed by node type.

    Usage:
        registry = HandlerRegistry()

        @registry.register("uppercase")
        def uppercase(node, ctx):
            values = ctx.get_inbound_values()
            ctx.set_output(str(values[0]).upper())

        handler = registry.get("uppercase")
    """

    def __init__(self):
        self._handlers: Dict[str, RegisteredHandler] = {}

    def register(self, node_type: Optional[str] = None, description: str = "") -> Callable:
        """
        Decorator to register a function as the handler for a node type.

        Args:
            node_type: Type tag (defaults to function name)
            description: Description (defaults to docstring)

        Returns:
            Decorator function
        """
        def decorator(func: NodeHandler) -> NodeHandler:
            # Returned unwrapped so async handlers stay detectable as coroutines
            self.add(func, node_type, description)
            return func

        return decorator

    def add(self, func: NodeHandler, node_type: Optional[str] = None, description: str = "") -> None:
        """Directly add a handler (non-decorator version)."""
        if not callable(func):
            raise ValueError(f"Handler for node type '{node_type}' must be callable")
        tag = node_type or func.__name__
        self._handlers[tag] = RegisteredHandler(
            node_type=tag,
            func=func,
            description=(description or func.__doc__ or "").strip(),
        )
        logger.debug(f"Registered handler: {tag}")

    def get(self, node_type: str) -> Optional[RegisteredHandler]:
        """Get the handler for a node type."""
        return self._handlers.get(node_type)

    def resolve(self, node_type: str) -> NodeHandler:
        """
        Handler for a node type, or the pass-through when none is registered.
        """
        registered = self.get(node_type)
        if registered is not None:
            return registered.func
        from nodeflow.nodes.builtin import passthrough
        return passthrough

    def remove(self, node_type: str) -> bool:
        """Remove a handler from the registry."""
        if node_type in self._handlers:
            del self._handlers[node_type]
            return True
        return False

    def list_handlers(self) -> List[Dict[str, Any]]:
        """List all registered handlers with their metadata."""
        return [handler.to_dict() for handler in self._handlers.values()]

    def has(self, node_type: str) -> bool:
        return node_type in self._handlers

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self):
        return iter(self._handlers.values())


# Global handler registry instance
handler_registry = HandlerRegistry()


def register_handler(node_type: Optional[str] = None, description: str = "") -> Callable:
    """
    Convenience decorator to register a handler in the global registry.

    Usage:
        @register_handler("shout", description="Upper-cases its input")
        async def shout(node, ctx):
            ctx.set_output(str(ctx.get_inbound_values()[0]).upper())
    """
    return handler_registry.register(node_type, description)


def get_handler(node_type: str) -> Optional[RegisteredHandler]:
    """Get a handler from the global registry."""
    return handler_registry.get(node_type)
