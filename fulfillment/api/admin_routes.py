"""
Admin Routes - Operator endpoints for agents, inventory, pricing and wallets.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fulfillment.api.dependencies import get_dispatcher, http_error_for, require_api_key
from fulfillment.api.routes import to_request_response
from fulfillment.db.session import get_read_db, get_write_db
from fulfillment.exceptions import FulfillmentError
from fulfillment.models.api import (
    AgentResponse,
    AgentStatsResponse,
    BulkAddCodesRequest,
    BulkAddCodesResponse,
    DepositRequest,
    LedgerEntryResponse,
    PricingResponse,
    RegisterAgentRequest,
    RequestListResponse,
    RequestStatus,
    ServiceCategory,
    ServiceRequestResponse,
    SetPricingRequest,
    StockSummaryResponse,
    SweepResponse,
    UpdateAgentRequest,
)
from fulfillment.models.domain import AgentData, CodeEntry, LedgerEntryData, PriceData
from fulfillment.services.agent_pool import AgentPoolService
from fulfillment.services.dispatcher import Dispatcher
from fulfillment.services.inventory import InventoryService
from fulfillment.services.ledger import LedgerService
from fulfillment.services.pricing import PricingService
from fulfillment.services.requests import RequestService

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_api_key)])


def _agent_response(agent: AgentData) -> AgentResponse:
    return AgentResponse(
        agent_id=agent.agent_id,
        display_name=agent.display_name,
        categories=list(agent.categories),
        is_available=agent.is_available,
        max_active_requests=agent.max_active_requests,
        current_active_requests=agent.current_active_requests,
        total_completed=agent.total_completed,
        total_processed_minor=agent.total_processed_minor,
        last_assigned_at=agent.last_assigned_at.isoformat() if agent.last_assigned_at else None,
    )


def _entry_response(entry: LedgerEntryData) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        entry_id=entry.entry_id,
        user_id=entry.user_id,
        amount_minor=entry.amount_minor,
        direction=entry.direction,
        idempotency_key=entry.idempotency_key,
        balance_after=entry.balance_after,
        request_id=entry.request_id,
        description=entry.description,
        created_at=entry.created_at.isoformat(),
    )


def _pricing_response(price: PriceData) -> PricingResponse:
    return PricingResponse(
        service_code=price.service_code,
        price_minor=price.price_minor,
        display_name=price.display_name,
        is_active=price.is_active,
    )


# ============================================================================
# Requests
# ============================================================================


@router.get("/requests", response_model=RequestListResponse)
async def list_requests(
    category: ServiceCategory | None = Query(None, description="Filter by category"),
    status_filter: RequestStatus | None = Query(None, alias="status"),
    user_id: str | None = Query(None, description="Filter by owning user"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
) -> RequestListResponse:
    """List service requests, oldest first."""
    service = RequestService(db)
    requests, total = await service.list_requests(
        category=category,
        status=status_filter,
        user_id=user_id,
        limit=limit,
        offset=offset,
    )
    return RequestListResponse(
        requests=[to_request_response(r) for r in requests],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/requests/{request_id}/retry-refund", response_model=ServiceRequestResponse)
async def retry_refund(
    request_id: UUID,
    db: AsyncSession = Depends(get_write_db),
) -> ServiceRequestResponse:
    """Re-drive the refund of a failed request flagged for intervention."""
    service = RequestService(db)
    try:
        data = await service.retry_refund(request_id)
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc
    return to_request_response(data)


# ============================================================================
# Agents
# ============================================================================


@router.post("/agents", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def register_agent(
    request: RegisterAgentRequest,
    db: AsyncSession = Depends(get_write_db),
) -> AgentResponse:
    """Register an agent for one or more agent-serviced categories."""
    agent = await AgentPoolService(db).register_agent(
        display_name=request.display_name,
        categories=request.categories,
        max_active_requests=request.max_active_requests,
        is_available=request.is_available,
    )
    return _agent_response(agent)


@router.patch("/agents/{agent_id}", response_model=AgentResponse)
async def update_agent(
    agent_id: UUID,
    request: UpdateAgentRequest,
    db: AsyncSession = Depends(get_write_db),
) -> AgentResponse:
    """
    Change an agent's capacity, categories or availability.

    Making an agent unavailable only stops new assignments; requests it
    already holds stay with it.
    """
    service = AgentPoolService(db)
    try:
        agent = await service.get_agent(agent_id)
        if request.max_active_requests is not None:
            agent = await service.set_capacity(agent_id, request.max_active_requests)
        if request.categories is not None:
            agent = await service.set_categories(agent_id, request.categories)
        if request.is_available is not None:
            agent = await service.set_availability(agent_id, request.is_available)
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc
    return _agent_response(agent)


@router.get("/agents/{agent_id}/stats", response_model=AgentStatsResponse)
async def get_agent_stats(
    agent_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> AgentStatsResponse:
    """Agent counters plus the active load re-derived from live requests."""
    try:
        stats = await AgentPoolService(db).agent_stats(agent_id)
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc

    agent = stats.agent
    return AgentStatsResponse(
        agent_id=agent.agent_id,
        display_name=agent.display_name,
        categories=list(agent.categories),
        is_available=agent.is_available,
        max_active_requests=agent.max_active_requests,
        current_active_requests=agent.current_active_requests,
        derived_active_requests=stats.derived_active_requests,
        total_completed=agent.total_completed,
        total_processed_minor=agent.total_processed_minor,
        last_assigned_at=agent.last_assigned_at.isoformat() if agent.last_assigned_at else None,
    )


# ============================================================================
# Inventory
# ============================================================================


@router.post(
    "/inventory/{category}/codes",
    response_model=BulkAddCodesResponse,
    status_code=status.HTTP_201_CREATED,
)
async def bulk_add_codes(
    category: str,
    request: BulkAddCodesRequest,
    db: AsyncSession = Depends(get_write_db),
) -> BulkAddCodesResponse:
    """
    Import PIN codes into a pool.

    Duplicate codes are reported back; the rest of the batch is still added.
    """
    entries = [CodeEntry(code=c.code, serial=c.serial) for c in request.codes]
    try:
        result = await InventoryService(db).bulk_add(category, entries)
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc

    return BulkAddCodesResponse(
        category=result.category,
        added=result.added,
        duplicates=list(result.duplicates),
        errors=list(result.errors),
    )


@router.get("/inventory/{category}/stock", response_model=StockSummaryResponse)
async def get_stock(
    category: str,
    db: AsyncSession = Depends(get_read_db),
) -> StockSummaryResponse:
    """Count a pool's codes per status."""
    try:
        summary = await InventoryService(db).stock_summary(category)
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc

    return StockSummaryResponse(
        category=summary.category,
        unused=summary.unused,
        reserved=summary.reserved,
        used=summary.used,
    )


# ============================================================================
# Pricing
# ============================================================================


@router.get("/pricing", response_model=list[PricingResponse])
async def list_pricing(db: AsyncSession = Depends(get_read_db)) -> list[PricingResponse]:
    """Configured prices merged over the built-in defaults."""
    prices = await PricingService(db).list_pricing()
    return [_pricing_response(p) for p in prices]


@router.put("/pricing/{service_code}", response_model=PricingResponse)
async def set_pricing(
    service_code: str,
    request: SetPricingRequest,
    db: AsyncSession = Depends(get_write_db),
) -> PricingResponse:
    """Create or replace the price of a service code."""
    try:
        price = await PricingService(db).set_pricing(
            service_code,
            request.price_minor,
            display_name=request.display_name,
            is_active=request.is_active,
        )
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc
    return _pricing_response(price)


# ============================================================================
# Wallets
# ============================================================================


@router.post(
    "/wallets/{user_id}/deposits",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def deposit(
    user_id: str,
    request: DepositRequest,
    db: AsyncSession = Depends(get_write_db),
) -> LedgerEntryResponse:
    """
    Fund a wallet.

    Replaying the same reference returns the original entry without crediting
    again.
    """
    try:
        entry = await LedgerService(db).deposit(
            user_id,
            request.amount_minor,
            request.reference,
            description=request.description,
        )
    except FulfillmentError as exc:
        raise http_error_for(exc) from exc
    return _entry_response(entry)


@router.get("/wallets/{user_id}/entries", response_model=list[LedgerEntryResponse])
async def list_wallet_entries(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
) -> list[LedgerEntryResponse]:
    """A user's wallet mutations, newest first."""
    entries = await LedgerService(db).list_entries(user_id, limit=limit, offset=offset)
    return [_entry_response(e) for e in entries]


# ============================================================================
# Dispatcher
# ============================================================================


@router.post("/dispatch/sweep", response_model=SweepResponse)
async def trigger_sweep(dispatcher: Dispatcher = Depends(get_dispatcher)) -> SweepResponse:
    """Run one dispatcher sweep now instead of waiting for the loop."""
    report = await dispatcher.sweep()
    logger.info("dispatch_sweep_triggered", examined=report.examined)
    return SweepResponse(
        examined=report.examined,
        assigned=report.assigned,
        allocated=report.allocated,
        completed=report.completed,
        pending=report.pending,
        stale=report.stale,
        errors=report.errors,
    )
