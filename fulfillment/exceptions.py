"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID

from fulfillment.models.domain import LedgerEntryData


class FulfillmentError(Exception):
    """Base exception for all fulfillment engine errors."""

    pass


class InvalidPayloadError(FulfillmentError):
    """Raised when a request payload fails its category validation."""

    def __init__(self, category: str, errors: list[str]) -> None:
        self.category = category
        self.errors = errors
        super().__init__(f"Invalid {category} payload: {'; '.join(errors)}")


class InsufficientFundsError(FulfillmentError):
    """Raised when a debit would drive a wallet balance negative."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient funds. Balance: {balance}, Required: {required}")


class DuplicateOperationError(FulfillmentError):
    """Raised when an idempotency key was already applied - carries the prior result."""

    def __init__(self, prior: LedgerEntryData) -> None:
        self.prior = prior
        super().__init__(f"Duplicate operation: {prior.idempotency_key} already applied")


class StaleStateError(FulfillmentError):
    """Raised when a transition's expected status no longer matches."""

    def __init__(self, request_id: UUID, expected: str, actual: str | None) -> None:
        self.request_id = request_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale state for request {request_id}: expected {expected}, found {actual}"
        )


class InvalidTransitionError(StaleStateError):
    """Raised when the lifecycle never allows the requested transition."""

    def __init__(self, request_id: UUID, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(request_id, expected=f"a status that can move to {target}", actual=current)


class NoAgentAvailableError(FulfillmentError):
    """Raised when no available agent has spare capacity for a category."""

    def __init__(self, category: str) -> None:
        self.category = category
        super().__init__(f"No agent available for {category}")


class NoStockAvailableError(FulfillmentError):
    """Raised when an inventory pool has no unused codes."""

    def __init__(self, category: str) -> None:
        self.category = category
        super().__init__(f"No stock available for {category}")


class NotReservedByCallerError(FulfillmentError):
    """Raised when finalizing a code that is not reserved for the caller's request."""

    def __init__(self, code_id: UUID, request_id: UUID) -> None:
        self.code_id = code_id
        self.request_id = request_id
        super().__init__(f"Inventory code {code_id} is not reserved for request {request_id}")


class RefundFailedError(FulfillmentError):
    """Raised when an automatic refund cannot be applied - needs manual intervention."""

    def __init__(self, request_id: UUID, reason: str) -> None:
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Refund failed for request {request_id}: {reason}")


class RequestNotFoundError(FulfillmentError):
    """Raised when a service request doesn't exist."""

    def __init__(self, request_id: UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Service request not found: {request_id}")


class AgentNotFoundError(FulfillmentError):
    """Raised when an agent doesn't exist."""

    def __init__(self, agent_id: UUID) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class AgentMismatchError(FulfillmentError):
    """Raised when an agent acts on a request assigned to someone else."""

    def __init__(self, request_id: UUID, agent_id: UUID) -> None:
        self.request_id = request_id
        self.agent_id = agent_id
        super().__init__(f"Request {request_id} is not assigned to agent {agent_id}")


class IdempotencyConflictError(FulfillmentError):
    """Raised when a caller-supplied request id is reused by a different user."""

    def __init__(self, existing_id: UUID) -> None:
        self.existing_id = existing_id
        super().__init__(f"Idempotency conflict: existing ID {existing_id}")


class PricingNotConfiguredError(FulfillmentError):
    """Raised when no price exists for a service code."""

    def __init__(self, service_code: str) -> None:
        self.service_code = service_code
        super().__init__(f"No active price for service {service_code}")


class WriteVerificationError(FulfillmentError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(FulfillmentError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class DuplicateCodeError(FulfillmentError):
    """Raised when a single inventory code already exists in its pool."""

    def __init__(self, category: str, code_value: str) -> None:
        self.category = category
        self.code_value = code_value
        super().__init__(f"Code already exists in {category} pool")


class UnknownInventoryPoolError(FulfillmentError):
    """Raised when an inventory operation names a pool that doesn't exist."""

    def __init__(self, category: str) -> None:
        self.category = category
        super().__init__(f"Unknown inventory pool: {category}")


class CapacityBelowLoadError(FulfillmentError):
    """Raised when an available agent's capacity would drop below its current load."""

    def __init__(self, agent_id: UUID, current: int, capacity: int) -> None:
        self.agent_id = agent_id
        self.current = current
        self.capacity = capacity
        super().__init__(
            f"Agent {agent_id} has {current} active requests, cannot cap at {capacity}"
        )
