"""
API Routes - Customer-facing endpoints for service requests and wallets.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.api.dependencies import get_dispatcher, http_error_for, require_api_key
from fulfillment.config import settings
from fulfillment.db.session import get_read_db, get_write_db
from fulfillment.exceptions import FulfillmentError
from fulfillment.models.api import (
    ActivityItem,
    HealthResponse,
    RequestHistoryResponse,
    RequestStatus,
    ServiceRequestResponse,
    SubmitServiceRequest,
    WalletResponse,
)
from fulfillment.models.domain import ServiceRequestData
from fulfillment.services.dispatcher import Dispatcher
from fulfillment.services.ledger import LedgerService
from fulfillment.services.requests import RequestService

router = APIRouter()


def to_request_response(data: ServiceRequestData) -> ServiceRequestResponse:
    """Convert a request snapshot to its API response."""
    return ServiceRequestResponse(
        request_id=data.request_id,
        user_id=data.user_id,
        category=data.category,
        service_code=data.service_code,
        payload=data.payload,
        fee_minor=data.fee_minor,
        paid=data.paid,
        status=data.status,
        assigned_agent_id=data.assigned_agent_id,
        allocated_inventory_id=data.allocated_inventory_id,
        result=data.result,
        failure_reason=data.failure_reason,
        retry_count=data.retry_count,
        max_retries=data.max_retries,
        requires_intervention=data.requires_intervention,
        created_at=data.created_at.isoformat(),
        assigned_at=data.assigned_at.isoformat() if data.assigned_at else None,
        completed_at=data.completed_at.isoformat() if data.completed_at else None,
    )


@router.post(
    "/v1/requests",
    response_model=ServiceRequestResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def submit_request(
    request: SubmitServiceRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_write_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> ServiceRequestResponse:
    """
    Submit and pay for a service request.

    The fee comes from configured pricing and is debited immediately. When
    on-submit dispatch is enabled the request is handed to the dispatcher
    after the response is sent; otherwise the next sweep picks it up.
    """
    service = RequestService(db)

    try:
        data = await service.submit(
            user_id=request.user_id,
            category=request.category,
            payload=request.payload,
            request_id=request.request_id,
            max_retries=request.max_retries,
        )
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc

    if settings.dispatch_on_submit and data.status is RequestStatus.PAID:
        background_tasks.add_task(dispatcher.dispatch_request, data.request_id)

    return to_request_response(data)


@router.get(
    "/v1/requests/{request_id}",
    response_model=ServiceRequestResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> ServiceRequestResponse:
    """Get a single service request."""
    service = RequestService(db)
    try:
        return to_request_response(await service.get_request(request_id))
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc


@router.get(
    "/v1/requests/{request_id}/history",
    response_model=RequestHistoryResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_request_history(
    request_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> RequestHistoryResponse:
    """Get the audit trail of a service request."""
    service = RequestService(db)
    try:
        activity = await service.history(request_id)
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc

    return RequestHistoryResponse(
        request_id=request_id,
        activity=[
            ActivityItem(
                activity_id=item.activity_id,
                actor_type=item.actor_type,
                actor_id=item.actor_id,
                previous_status=item.previous_status,
                new_status=item.new_status,
                note=item.note,
                created_at=item.created_at.isoformat(),
            )
            for item in activity
        ],
    )


@router.post(
    "/v1/requests/{request_id}/cancel",
    response_model=ServiceRequestResponse,
    dependencies=[Depends(require_api_key)],
)
async def cancel_request(
    request_id: UUID,
    user_id: str | None = None,
    db: AsyncSession = Depends(get_write_db),
) -> ServiceRequestResponse:
    """
    Cancel a request that has not been assigned yet.

    Returns 409 when the dispatcher already moved it on.
    """
    service = RequestService(db)
    try:
        return to_request_response(await service.cancel(request_id, user_id=user_id))
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc


@router.get(
    "/v1/wallets/{user_id}",
    response_model=WalletResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_wallet(
    user_id: str,
    db: AsyncSession = Depends(get_read_db),
) -> WalletResponse:
    """Get a user's wallet balance."""
    wallet = await LedgerService(db).get_balance(user_id)
    return WalletResponse(
        user_id=wallet.user_id,
        balance_minor=wallet.balance_minor,
        currency=wallet.currency,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
