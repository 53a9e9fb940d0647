"""
Handlers API Routes.

Endpoints for listing the registered node handlers.
"""

from fastapi import APIRouter, HTTPException
import logging

from nodeflow.api.schemas import (
    ErrorResponse,
    HandlerInfo,
    HandlerListResponse,
)
from nodeflow.nodes.registry import handler_registry


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/handlers", tags=["Handlers"])


@router.get(
    "/",
    response_model=HandlerListResponse,
)
async def list_handlers() -> HandlerListResponse:
    """
    List all registered node handlers.

    Node types without a handler fall back to the pass-through handler.
    """
    handler_infos = [HandlerInfo(**h) for h in handler_registry.list_handlers()]
    return HandlerListResponse(handlers=handler_infos, total=len(handler_infos))


@router.get(
    "/{node_type}",
    response_model=HandlerInfo,
    responses={404: {"model": ErrorResponse}},
)
async def get_handler_info(node_type: str) -> HandlerInfo:
    """Get information about the handler of a specific node type."""
    registered = handler_registry.get(node_type)
    if not registered:
        raise HTTPException(
            status_code=404,
            detail=f"No handler registered for node type '{node_type}'"
        )
    return HandlerInfo(**registered.to_dict())
