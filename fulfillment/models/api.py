"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed. The only free-form
mappings are the category payload and the fulfillment result, which are
validated separately per category.
"""

from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ServiceCategory(str, Enum):
    """Fixed set of request categories sharing one lifecycle."""

    IDENTITY = "identity"
    BVN = "bvn"
    EDUCATION = "education"
    CAC = "cac"
    AIRTIME_TO_CASH = "airtime-to-cash"
    PIN_ORDER = "pin-order"

    @property
    def is_inventory(self) -> bool:
        """Inventory categories are fulfilled from the PIN pool, never by agents."""
        return self is ServiceCategory.PIN_ORDER

    @property
    def is_agent_serviced(self) -> bool:
        return not self.is_inventory


class RequestStatus(str, Enum):
    """Service request lifecycle status."""

    CREATED = "created"
    PAID = "paid"
    QUEUED = "queued"
    ASSIGNED = "assigned"
    ALLOCATED = "allocated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class InventoryStatus(str, Enum):
    """Consumable code status - moves forward only."""

    UNUSED = "unused"
    RESERVED = "reserved"
    USED = "used"


class LedgerDirection(str, Enum):
    """Wallet mutation direction, part of the idempotency key."""

    PAY = "pay"
    REFUND = "refund"
    DEPOSIT = "deposit"
    ADJUSTMENT = "adjustment"


class ActorType(str, Enum):
    """Who caused a request transition."""

    USER = "user"
    AGENT = "agent"
    DISPATCHER = "dispatcher"
    SYSTEM = "system"
    ADMIN = "admin"


# ============================================================================
# Request Models
# ============================================================================


class SubmitServiceRequest(BaseModel):
    """POST /v1/requests request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    category: ServiceCategory
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: UUID | None = Field(
        None, description="Caller-supplied id; resubmitting the same id is a no-op"
    )
    max_retries: int | None = Field(None, ge=0, le=20)


class StartWorkRequest(BaseModel):
    """POST /v1/agent/requests/{id}/start request body."""

    agent_id: UUID


class CompleteWorkRequest(BaseModel):
    """POST /v1/agent/requests/{id}/complete request body."""

    agent_id: UUID | None = None
    result: dict[str, Any] = Field(default_factory=dict)


class FailWorkRequest(BaseModel):
    """POST /v1/agent/requests/{id}/fail request body."""

    agent_id: UUID | None = None
    reason: str = Field(..., min_length=1, max_length=2000)
    retryable: bool = False


class ServiceRequestResponse(BaseModel):
    """Single service request."""

    request_id: UUID
    user_id: str
    category: ServiceCategory
    service_code: str
    payload: dict[str, Any]
    fee_minor: int
    paid: bool
    status: RequestStatus
    assigned_agent_id: UUID | None = None
    allocated_inventory_id: UUID | None = None
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    retry_count: int
    max_retries: int
    requires_intervention: bool = False
    created_at: str  # ISO 8601 timestamp
    assigned_at: str | None = None
    completed_at: str | None = None


class RequestListResponse(BaseModel):
    """GET /v1/admin/requests response."""

    requests: list[ServiceRequestResponse]
    total: int
    limit: int
    offset: int


class ActivityItem(BaseModel):
    """Single audit trail row."""

    activity_id: UUID
    actor_type: ActorType
    actor_id: str | None = None
    previous_status: RequestStatus | None = None
    new_status: RequestStatus
    note: str | None = None
    created_at: str


class RequestHistoryResponse(BaseModel):
    """GET /v1/requests/{id}/history response."""

    request_id: UUID
    activity: list[ActivityItem]


# ============================================================================
# Agent Models
# ============================================================================


def _agent_categories(v: list[ServiceCategory]) -> list[ServiceCategory]:
    """Agents only serve agent-serviced categories."""
    inventory = [c.value for c in v if c.is_inventory]
    if inventory:
        raise ValueError(f"Categories fulfilled from inventory cannot have agents: {inventory}")
    return list(dict.fromkeys(v))


class RegisterAgentRequest(BaseModel):
    """POST /v1/admin/agents request body."""

    display_name: str = Field(..., min_length=1, max_length=255)
    categories: list[ServiceCategory] = Field(..., min_length=1)
    max_active_requests: int = Field(20, ge=1, le=1000)
    is_available: bool = True

    @field_validator("categories")
    @classmethod
    def validate_agent_categories(cls, v: list[ServiceCategory]) -> list[ServiceCategory]:
        return _agent_categories(v)


class UpdateAgentRequest(BaseModel):
    """PATCH /v1/admin/agents/{id} request body."""

    is_available: bool | None = None
    max_active_requests: int | None = Field(None, ge=1, le=1000)
    categories: list[ServiceCategory] | None = Field(None, min_length=1)

    @field_validator("categories")
    @classmethod
    def validate_agent_categories(
        cls, v: list[ServiceCategory] | None
    ) -> list[ServiceCategory] | None:
        return _agent_categories(v) if v is not None else None


class AgentResponse(BaseModel):
    """Single agent."""

    agent_id: UUID
    display_name: str
    categories: list[ServiceCategory]
    is_available: bool
    max_active_requests: int
    current_active_requests: int
    total_completed: int
    total_processed_minor: int
    last_assigned_at: str | None = None


class AgentStatsResponse(BaseModel):
    """GET /v1/admin/agents/{id}/stats response."""

    agent_id: UUID
    display_name: str
    categories: list[ServiceCategory]
    is_available: bool
    max_active_requests: int
    current_active_requests: int
    derived_active_requests: int
    total_completed: int
    total_processed_minor: int
    last_assigned_at: str | None = None


# ============================================================================
# Inventory Models
# ============================================================================


class InventoryCodeInput(BaseModel):
    """Single code in a bulk upload."""

    code: str = Field(..., max_length=100)
    serial: str | None = Field(None, max_length=100)


class BulkAddCodesRequest(BaseModel):
    """POST /v1/admin/inventory/{category}/codes request body."""

    codes: list[InventoryCodeInput] = Field(..., min_length=1, max_length=10000)


class BulkAddCodesResponse(BaseModel):
    """Bulk upload outcome - duplicates are reported, not fatal."""

    category: str
    added: int
    duplicates: list[str]
    errors: list[str]


class StockSummaryResponse(BaseModel):
    """GET /v1/admin/inventory/{category}/stock response."""

    category: str
    unused: int
    reserved: int
    used: int


# ============================================================================
# Pricing Models
# ============================================================================


class SetPricingRequest(BaseModel):
    """PUT /v1/admin/pricing/{service_code} request body."""

    price_minor: int = Field(..., ge=0)
    display_name: str | None = Field(None, max_length=255)
    is_active: bool = True


class PricingResponse(BaseModel):
    """Service price."""

    service_code: str
    price_minor: int
    display_name: str | None = None
    is_active: bool


# ============================================================================
# Wallet Models
# ============================================================================


class DepositRequest(BaseModel):
    """POST /v1/admin/wallets/{user_id}/deposits request body."""

    amount_minor: int = Field(..., gt=0)
    reference: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=500)


class LedgerEntryResponse(BaseModel):
    """Single wallet mutation."""

    entry_id: UUID
    user_id: str
    amount_minor: int
    direction: LedgerDirection
    idempotency_key: str
    balance_after: int
    request_id: UUID | None = None
    description: str | None = None
    created_at: str


class WalletResponse(BaseModel):
    """GET /v1/wallets/{user_id} response."""

    user_id: str
    balance_minor: int
    currency: str


# ============================================================================
# Dispatcher / Health Models
# ============================================================================


class SweepResponse(BaseModel):
    """POST /v1/admin/dispatch/sweep response."""

    examined: int
    assigned: int
    allocated: int
    completed: int
    pending: int
    stale: int
    errors: int


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
