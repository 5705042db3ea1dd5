"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Category payloads and fulfillment results are the only opaque mappings.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from fulfillment.models.api import (
    ActorType,
    InventoryStatus,
    LedgerDirection,
    RequestStatus,
    ServiceCategory,
)


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable wallet mutation after persistence."""

    entry_id: UUID
    user_id: str
    amount_minor: int
    direction: LedgerDirection
    idempotency_key: str
    balance_after: int
    request_id: UUID | None
    description: str | None
    created_at: datetime


@dataclass(frozen=True)
class WalletData:
    """Immutable wallet balance snapshot."""

    user_id: str
    balance_minor: int
    currency: str

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.balance_minor < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class ServiceRequestData:
    """Immutable service request snapshot."""

    request_id: UUID
    user_id: str
    category: ServiceCategory
    service_code: str
    payload: dict[str, Any]
    fee_minor: int
    paid: bool
    status: RequestStatus
    assigned_agent_id: UUID | None
    allocated_inventory_id: UUID | None
    result: dict[str, Any] | None
    failure_reason: str | None
    retry_count: int
    max_retries: int
    requires_intervention: bool
    created_at: datetime
    assigned_at: datetime | None
    completed_at: datetime | None

    def __post_init__(self) -> None:
        """Agent and inventory assignment are mutually exclusive."""
        if self.assigned_agent_id is not None and self.allocated_inventory_id is not None:
            raise ValueError(f"Request {self.request_id} holds both an agent and a code")


@dataclass(frozen=True)
class ActivityData:
    """Immutable audit trail row."""

    activity_id: UUID
    request_id: UUID
    actor_type: ActorType
    actor_id: str | None
    previous_status: RequestStatus | None
    new_status: RequestStatus
    note: str | None
    created_at: datetime


@dataclass(frozen=True)
class AgentData:
    """Immutable agent snapshot."""

    agent_id: UUID
    display_name: str
    categories: tuple[ServiceCategory, ...]
    is_available: bool
    max_active_requests: int
    current_active_requests: int
    total_completed: int
    total_processed_minor: int
    last_assigned_at: datetime | None


@dataclass(frozen=True)
class AgentStats:
    """Agent snapshot plus the load re-derived from live requests."""

    agent: AgentData
    derived_active_requests: int

    @property
    def is_consistent(self) -> bool:
        return self.agent.current_active_requests == self.derived_active_requests


@dataclass(frozen=True)
class InventoryCodeData:
    """Immutable inventory code snapshot."""

    code_id: UUID
    category: str
    code_value: str
    serial: str | None
    status: InventoryStatus
    reserved_for: UUID | None
    used_at: datetime | None


@dataclass(frozen=True)
class CodeEntry:
    """Code value offered to the inventory pool."""

    code: str
    serial: str | None = None


@dataclass(frozen=True)
class BulkAddResult:
    """Outcome of a bulk import - duplicates never fail the batch."""

    category: str
    added: int
    duplicates: tuple[str, ...] = field(default_factory=tuple)
    errors: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class StockSummary:
    """Code counts per status for one pool."""

    category: str
    unused: int
    reserved: int
    used: int


@dataclass(frozen=True)
class PriceData:
    """Resolved price for a service code."""

    service_code: str
    price_minor: int
    display_name: str | None
    is_active: bool
