"""
Job submission routes.
"""

import logging

from fastapi import APIRouter, status

from memorymesh.api.auth import CurrentClient
from memorymesh.api.dependencies import Dispatcher
from memorymesh.constants import API_V1_PREFIX
from memorymesh.types.api import ErrorResponse, SubmitJobRequest, SubmitJobResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=SubmitJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a job",
    description="Submit a job to a named queue for background processing.",
    responses={
        400: {"model": ErrorResponse, "description": "Unknown queue, invalid job type or payload"},
        503: {"model": ErrorResponse, "description": "Queue unavailable"},
    },
)
async def submit_job(
    request: SubmitJobRequest,
    current_client: CurrentClient,
    dispatcher: Dispatcher,
) -> SubmitJobResponse:
    """
    Submit a job.

    Dispatch errors map to 400 and broker unavailability in production to
    503 through the application's exception handlers. Outside production a
    missing broker yields a 202 with ``noop`` set.
    """
    handle = await dispatcher.submit(
        request.queue,
        request.job_type,
        request.payload,
        request.options,
    )

    logger.debug(
        "Job submitted via API",
        extra={"client_id": current_client.client_id, "job_id": handle.id},
    )
    return SubmitJobResponse.from_handle(handle)
