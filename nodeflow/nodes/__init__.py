"""
Nodes package - Handler registry and the built-in pass-through handler.
"""

from nodeflow.nodes.registry import (
    HandlerRegistry,
    handler_registry,
    register_handler,
    get_handler,
)
from nodeflow.nodes.builtin import passthrough

__all__ = [
    "HandlerRegistry",
    "handler_registry",
    "register_handler",
    "get_handler",
    "passthrough",
]
