"""
Built-in reference handler.

Concrete business handlers live outside the execution core. The only one
shipped here is the pass-through used for node types with no registered
handler.
"""

from typing import Any

from nodeflow.nodes.registry import register_handler


@register_handler(
    "passthrough",
    description="Forward the inbound value (or list of inbound values) unchanged",
)
def passthrough(node, ctx) -> Any:
    """
    Copy inbound values to the output.

    A single inbound value is forwarded as-is, several are forwarded as a
    list in edge order, and a node with no inbound edges outputs None.
    Missing upstream values arrive as None and are forwarded like any other.
    """
    inbound = ctx.get_inbound_values()
    value = inbound[0] if len(inbound) == 1 else (inbound or None)
    ctx.set_output(value)
    return value
