"""
Agent Routes - Endpoints agents call while working a request.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.api.dependencies import http_error_for, require_api_key
from fulfillment.api.routes import to_request_response
from fulfillment.db.session import get_write_db
from fulfillment.exceptions import FulfillmentError
from fulfillment.models.api import (
    CompleteWorkRequest,
    FailWorkRequest,
    ServiceRequestResponse,
    StartWorkRequest,
)
from fulfillment.services.requests import RequestService

router = APIRouter(prefix="/v1/agent", dependencies=[Depends(require_api_key)])


@router.post("/requests/{request_id}/start", response_model=ServiceRequestResponse)
async def start_work(
    request_id: UUID,
    request: StartWorkRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ServiceRequestResponse:
    """Agent picks up an assigned request (assigned -> in_progress)."""
    service = RequestService(db)
    try:
        data = await service.mark_in_progress(request_id, request.agent_id)
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc
    return to_request_response(data)


@router.post("/requests/{request_id}/complete", response_model=ServiceRequestResponse)
async def complete_work(
    request_id: UUID,
    request: CompleteWorkRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ServiceRequestResponse:
    """
    Agent delivers the result.

    Repeating the call on a completed request returns it unchanged.
    """
    service = RequestService(db)
    try:
        data = await service.complete(request_id, request.result, agent_id=request.agent_id)
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc
    return to_request_response(data)


@router.post("/requests/{request_id}/fail", response_model=ServiceRequestResponse)
async def fail_work(
    request_id: UUID,
    request: FailWorkRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ServiceRequestResponse:
    """
    Agent reports a failure.

    Retryable failures go back to the queue while retries remain; otherwise
    the request fails and the fee is refunded.
    """
    service = RequestService(db)
    try:
        data = await service.fail(
            request_id,
            request.reason,
            retryable=request.retryable,
            agent_id=request.agent_id,
        )
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc
    return to_request_response(data)
