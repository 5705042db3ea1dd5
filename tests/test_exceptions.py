"""
Tests for exception classes.

Covers the typed attributes and messages of every engine error.
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from fulfillment.exceptions import (
    AgentMismatchError,
    AgentNotFoundError,
    CapacityBelowLoadError,
    DataIntegrityError,
    DuplicateCodeError,
    DuplicateOperationError,
    FulfillmentError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidPayloadError,
    InvalidTransitionError,
    NoAgentAvailableError,
    NoStockAvailableError,
    NotReservedByCallerError,
    PricingNotConfiguredError,
    RefundFailedError,
    RequestNotFoundError,
    StaleStateError,
    UnknownInventoryPoolError,
    WriteVerificationError,
)
from fulfillment.models.api import LedgerDirection
from fulfillment.models.domain import LedgerEntryData


class TestFulfillmentError:
    """Tests for base FulfillmentError."""

    def test_is_exception(self):
        """FulfillmentError is a subclass of Exception."""
        assert issubclass(FulfillmentError, Exception)

    @pytest.mark.parametrize(
        "error",
        [
            InvalidPayloadError("bvn", ["bvn: invalid"]),
            InsufficientFundsError(balance=0, required=1),
            NoAgentAvailableError("bvn"),
            NoStockAvailableError("waec"),
            RefundFailedError(uuid4(), "ledger down"),
            PricingNotConfiguredError("mystery"),
            UnknownInventoryPoolError("jamb"),
        ],
    )
    def test_all_errors_share_base(self, error: FulfillmentError):
        """Every engine error can be caught as FulfillmentError."""
        assert isinstance(error, FulfillmentError)


class TestInvalidPayloadError:
    """Tests for InvalidPayloadError."""

    def test_attributes(self):
        exc = InvalidPayloadError("education", ["exam_year: required", "registration_number: required"])
        assert exc.category == "education"
        assert len(exc.errors) == 2

    def test_message_joins_errors(self):
        exc = InvalidPayloadError("bvn", ["bvn: bad", "phone: bad"])
        assert "Invalid bvn payload" in str(exc)
        assert "bvn: bad; phone: bad" in str(exc)


class TestInsufficientFundsError:
    """Tests for InsufficientFundsError."""

    def test_attributes(self):
        """Exception has balance and required attributes."""
        exc = InsufficientFundsError(balance=50, required=200)
        assert exc.balance == 50
        assert exc.required == 200

    def test_message_format(self):
        exc = InsufficientFundsError(balance=50, required=200)
        assert "Balance: 50" in str(exc)
        assert "Required: 200" in str(exc)


class TestDuplicateOperationError:
    """Tests for DuplicateOperationError."""

    def test_carries_prior_entry(self):
        """The original ledger entry travels with the error."""
        prior = LedgerEntryData(
            entry_id=uuid4(),
            user_id="user-1",
            amount_minor=-200,
            direction=LedgerDirection.PAY,
            idempotency_key="pay:abc",
            balance_after=800,
            request_id=uuid4(),
            description=None,
            created_at=datetime.now(UTC),
        )
        exc = DuplicateOperationError(prior)
        assert exc.prior is prior
        assert "pay:abc" in str(exc)


class TestStaleStateError:
    """Tests for StaleStateError and InvalidTransitionError."""

    def test_attributes(self):
        request_id = uuid4()
        exc = StaleStateError(request_id, expected="queued", actual="assigned")
        assert exc.request_id == request_id
        assert exc.expected == "queued"
        assert exc.actual == "assigned"
        assert "expected queued, found assigned" in str(exc)

    def test_invalid_transition_is_stale_state(self):
        """Callers handling StaleStateError also catch impossible transitions."""
        exc = InvalidTransitionError(uuid4(), current="completed", target="cancelled")
        assert isinstance(exc, StaleStateError)
        assert exc.current == "completed"
        assert exc.target == "cancelled"
        assert exc.actual == "completed"


class TestResourceErrors:
    """Tests for not-found and ownership errors."""

    def test_request_not_found(self):
        request_id = uuid4()
        exc = RequestNotFoundError(request_id)
        assert exc.request_id == request_id
        assert str(request_id) in str(exc)

    def test_agent_not_found(self):
        agent_id = uuid4()
        exc = AgentNotFoundError(agent_id)
        assert exc.agent_id == agent_id

    def test_agent_mismatch(self):
        request_id, agent_id = uuid4(), uuid4()
        exc = AgentMismatchError(request_id, agent_id)
        assert exc.request_id == request_id
        assert exc.agent_id == agent_id

    def test_not_reserved_by_caller(self):
        code_id, request_id = uuid4(), uuid4()
        exc = NotReservedByCallerError(code_id, request_id)
        assert exc.code_id == code_id
        assert exc.request_id == request_id
        assert "not reserved" in str(exc)

    def test_idempotency_conflict(self):
        existing_id = uuid4()
        exc = IdempotencyConflictError(existing_id)
        assert exc.existing_id == existing_id


class TestOperationalErrors:
    """Tests for inventory, agent and integrity errors."""

    def test_duplicate_code_does_not_leak_code_value(self):
        """PIN values are secrets and stay out of the message."""
        exc = DuplicateCodeError("waec", "1234-5678")
        assert exc.code_value == "1234-5678"
        assert "1234-5678" not in str(exc)

    def test_capacity_below_load(self):
        agent_id = uuid4()
        exc = CapacityBelowLoadError(agent_id, current=5, capacity=3)
        assert exc.current == 5
        assert exc.capacity == 3

    def test_refund_failed(self):
        request_id = uuid4()
        exc = RefundFailedError(request_id, "wallet missing")
        assert exc.reason == "wallet missing"
        assert "Refund failed" in str(exc)

    def test_write_verification(self):
        exc = WriteVerificationError("entry missing")
        assert exc.message == "entry missing"
        assert "Write verification failed" in str(exc)

    def test_data_integrity(self):
        exc = DataIntegrityError("load underflow")
        assert exc.message == "load underflow"
