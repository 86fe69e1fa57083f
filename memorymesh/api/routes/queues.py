"""
Admin queue dashboard routes.
"""

from fastapi import APIRouter, HTTPException, status

from memorymesh.api.auth import CurrentClient
from memorymesh.api.dependencies import Dashboard
from memorymesh.config import get_settings
from memorymesh.errors import UnknownQueue
from memorymesh.types.api import ErrorResponse, QueueListResponse
from memorymesh.types.job import QueueStats

router = APIRouter(prefix=get_settings().admin_base_path, tags=["Admin"])


@router.get(
    "",
    response_model=QueueListResponse,
    summary="List queues",
    description="Counts per state for every queue.",
)
async def list_queues(current_client: CurrentClient, dashboard: Dashboard) -> QueueListResponse:
    """List every queue with its counts. Broker problems appear per queue."""
    return QueueListResponse(
        queues=await dashboard.overview(),
        degraded=dashboard.degraded,
    )


@router.get(
    "/{name}",
    response_model=QueueStats,
    summary="Get queue",
    description="Counts per state for one queue.",
    responses={404: {"model": ErrorResponse, "description": "Unknown queue"}},
)
async def get_queue(name: str, current_client: CurrentClient, dashboard: Dashboard) -> QueueStats:
    """
    Get counts for one queue.

    Raises:
        HTTPException: If the queue does not exist.
    """
    try:
        return await dashboard.queue(name)
    except UnknownQueue as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
