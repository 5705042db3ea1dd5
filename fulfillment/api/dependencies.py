"""
FastAPI Dependencies - API key check, dispatcher access and error mapping.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Header, HTTPException, status
from structlog import get_logger

from fulfillment.config import settings
from fulfillment.db.session import get_write_session_factory
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
from fulfillment.services.dispatcher import Dispatcher

logger = get_logger(__name__)


async def require_api_key(
    x_api_key: str | None = Header(None, description="Shared service API key"),
) -> None:
    """
    FastAPI dependency checking X-API-Key against the configured key.

    No key configured means the check is disabled.

    Raises:
        HTTPException 401 if the header is missing or wrong
    """
    if settings.api_key is None:
        return

    if x_api_key is None or not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning("api_key_rejected", provided=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


def get_dispatcher() -> Dispatcher:
    """FastAPI dependency for a dispatcher bound to the primary database."""
    return Dispatcher(get_write_session_factory())


def http_error_for(exc: FulfillmentError) -> HTTPException:
    """Translate an engine error into the HTTP error returned to callers."""
    if isinstance(exc, InvalidPayloadError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    if isinstance(exc, InsufficientFundsError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient funds. Balance: {exc.balance}, Required: {exc.required}",
        )

    if isinstance(exc, (RequestNotFoundError, AgentNotFoundError, UnknownInventoryPoolError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    if isinstance(exc, AgentMismatchError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    if isinstance(exc, IdempotencyConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Request ID already used",
            headers={"X-Existing-Request-ID": str(exc.existing_id)},
        )

    if isinstance(exc, StaleStateError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Request is {exc.actual}, expected {exc.expected}",
        )

    if isinstance(
        exc,
        (
            DuplicateCodeError,
            DuplicateOperationError,
            CapacityBelowLoadError,
            NotReservedByCallerError,
        ),
    ):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    if isinstance(exc, PricingNotConfiguredError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    if isinstance(exc, (NoAgentAvailableError, NoStockAvailableError)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    if isinstance(exc, RefundFailedError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Refund failed; request flagged for manual intervention",
        )

    if isinstance(exc, (WriteVerificationError, DataIntegrityError)):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        )

    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
