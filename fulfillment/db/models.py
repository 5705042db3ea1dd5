"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations. Category payloads
and fulfillment results are the only JSON columns.

Column types are dialect-portable (Uuid, JSON) so the same metadata runs on
PostgreSQL in production and SQLite in integration tests.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fulfillment.models.api import InventoryStatus, RequestStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _in_clause(column: str, values: list[str]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


REQUEST_STATUS_VALUES = [s.value for s in RequestStatus]
INVENTORY_STATUS_VALUES = [s.value for s in InventoryStatus]


class Wallet(Base):
    """
    ORM model for wallets table.

    One balance per user. Mutated only through the ledger.
    """

    __tablename__ = "wallets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    balance_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("balance_minor >= 0", name="ck_wallet_balance_non_negative"),)


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only. The sum of a user's entries equals their wallet balance.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    request_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor != 0", name="ck_ledger_amount_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        Index("idx_ledger_entries_user_created", "user_id", "created_at"),
        Index("idx_ledger_entries_request_id", "request_id"),
    )


class Agent(Base):
    """
    ORM model for agents table.

    current_active_requests is a cached projection of the agent's live
    assignments, changed only by the atomic select/release pair.
    """

    __tablename__ = "agents"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_active_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    current_active_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_processed_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_assigned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("current_active_requests >= 0", name="ck_agent_load_non_negative"),
        CheckConstraint("max_active_requests > 0", name="ck_agent_capacity_positive"),
        CheckConstraint("total_completed >= 0", name="ck_agent_completed_non_negative"),
        Index("idx_agents_available_load", "is_available", "current_active_requests"),
    )


class AgentCategory(Base):
    """ORM model for agent_categories association table."""

    __tablename__ = "agent_categories"

    agent_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="CASCADE"), primary_key=True
    )
    category: Mapped[str] = mapped_column(String(30), primary_key=True)

    __table_args__ = (Index("idx_agent_categories_category", "category"),)


class InventoryCode(Base):
    """
    ORM model for inventory_codes table.

    Status only moves forward: unused -> reserved -> used.
    """

    __tablename__ = "inventory_codes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    code_value: Mapped[str] = mapped_column(String(100), nullable=False)
    serial: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InventoryStatus.UNUSED.value
    )
    reserved_for: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("category", "code_value", name="uq_inventory_category_code"),
        CheckConstraint(
            _in_clause("status", INVENTORY_STATUS_VALUES), name="ck_inventory_status"
        ),
        CheckConstraint(
            "status = 'unused' OR reserved_for IS NOT NULL",
            name="ck_inventory_reservation_owner",
        ),
        Index("idx_inventory_codes_category_status", "category", "status"),
        Index("idx_inventory_codes_reserved_for", "reserved_for"),
    )


class ServiceRequest(Base):
    """
    ORM model for service_requests table.

    Never deleted. Status changes only through guarded UPDATE statements.
    """

    __tablename__ = "service_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    service_code: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    fee_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RequestStatus.CREATED.value
    )

    assigned_agent_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="RESTRICT"), nullable=True
    )
    allocated_inventory_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("inventory_codes.id", ondelete="RESTRICT"), nullable=True
    )

    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    requires_intervention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("fee_minor >= 0", name="ck_request_fee_non_negative"),
        CheckConstraint("retry_count >= 0", name="ck_request_retry_non_negative"),
        CheckConstraint("retry_count <= max_retries", name="ck_request_retry_bounded"),
        CheckConstraint(
            "assigned_agent_id IS NULL OR allocated_inventory_id IS NULL",
            name="ck_request_single_fulfiller",
        ),
        CheckConstraint(
            "paid OR status IN ('created', 'cancelled')", name="ck_request_paid_before_progress"
        ),
        CheckConstraint(_in_clause("status", REQUEST_STATUS_VALUES), name="ck_request_status"),
        Index("idx_service_requests_status_created", "status", "created_at"),
        Index("idx_service_requests_category_status", "category", "status"),
        Index("idx_service_requests_user_id", "user_id"),
        Index("idx_service_requests_agent_status", "assigned_agent_id", "status"),
    )


class RequestActivity(Base):
    """
    ORM model for request_activity table.

    Append-only audit trail, one row per status transition.
    """

    __tablename__ = "request_activity"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False
    )
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_request_activity_request_created", "request_id", "created_at"),)


class ServicePricing(Base):
    """ORM model for service_pricing table."""

    __tablename__ = "service_pricing"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    service_code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("price_minor >= 0", name="ck_pricing_non_negative"),)
