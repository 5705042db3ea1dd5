"""
Request Service - The service-request state machine.

NO DICTIONARIES - All operations use strongly typed domain models.

Every status change goes through _transition(), a single
UPDATE ... WHERE id = :id AND status = :expected RETURNING statement. When the
guard misses, the caller gets StaleStateError instead of a silent overwrite.
Each transition appends one request_activity row.

Unit-of-work methods (submit, mark_in_progress, complete, fail, cancel,
retry_refund) commit. Dispatcher hooks (mark_queued, mark_assigned,
mark_allocated) flush only; the dispatcher owns that transaction.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fulfillment.config import settings
from fulfillment.db.models import RequestActivity, ServiceRequest
from fulfillment.exceptions import (
    AgentMismatchError,
    DataIntegrityError,
    DuplicateOperationError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidPayloadError,
    InvalidTransitionError,
    RefundFailedError,
    RequestNotFoundError,
    StaleStateError,
    WriteVerificationError,
)
from fulfillment.models.api import ActorType, LedgerDirection, RequestStatus, ServiceCategory
from fulfillment.models.domain import ActivityData, ServiceRequestData
from fulfillment.models.lifecycle import (
    AGENT_ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    COMPLETABLE_STATUSES,
    FAILABLE_STATUSES,
    can_transition,
)
from fulfillment.models.payloads import validate_payload
from fulfillment.observability.metrics import metrics
from fulfillment.services.agent_pool import AgentPoolService
from fulfillment.services.inventory import InventoryService
from fulfillment.services.ledger import LedgerService, pay_key, refund_key
from fulfillment.services.pricing import PricingService

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class RequestService:
    """
    Service-request lifecycle.

    created -> paid -> queued -> assigned | allocated -> in_progress
            -> completed | failed -> refunded, with cancelled reachable
    from created, paid and queued.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize request service and its collaborators on one session."""
        self.session = session
        self.ledger = LedgerService(session)
        self.inventory = InventoryService(session)
        self.agents = AgentPoolService(session)
        self.pricing = PricingService(session)

    # ========================================================================
    # Intake
    # ========================================================================

    async def submit(
        self,
        user_id: str,
        category: ServiceCategory,
        payload: dict[str, Any],
        fee_minor: int | None = None,
        request_id: UUID | None = None,
        max_retries: int | None = None,
    ) -> ServiceRequestData:
        """
        Validate, price and pay for a new request.

        The fee is debited with key "pay:{request_id}" in the same transaction
        that creates the request and moves it to paid. Resubmitting a known
        request_id for the same user returns the stored request.

        Raises:
            InvalidPayloadError: payload fails its category schema
            InsufficientFundsError: wallet balance is below the fee
            IdempotencyConflictError: request_id belongs to another user
            PricingNotConfiguredError: no fee given and no price configured
        """
        try:
            validated = validate_payload(category, payload)
        except InvalidPayloadError:
            metrics.record_submission(category.value, "invalid_payload")
            raise

        if request_id is not None:
            existing = await self._find_for_user(request_id, user_id)
            if existing is not None:
                logger.info("request_resubmitted", request_id=str(request_id), user_id=user_id)
                metrics.record_submission(category.value, "replayed")
                return self._request_to_domain(existing)

        if fee_minor is None:
            fee_minor = (await self.pricing.get_price(validated.service_code, category)).price_minor
        if fee_minor < 0:
            raise ValueError(f"Fee cannot be negative: {fee_minor}")

        new_id = request_id or uuid4()
        request = ServiceRequest(
            id=new_id,
            user_id=user_id,
            category=category.value,
            service_code=validated.service_code,
            payload=validated.model_dump(mode="json", exclude_none=True),
            fee_minor=fee_minor,
            paid=False,
            status=RequestStatus.CREATED.value,
            max_retries=settings.default_max_retries if max_retries is None else max_retries,
            processed_amount_minor=validated.processed_amount_minor(fee_minor),
        )
        self.session.add(request)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            return await self._resolve_replay(new_id, user_id, category)

        self._record_activity(
            new_id, None, RequestStatus.CREATED, ActorType.USER, user_id, "submitted"
        )

        if fee_minor > 0:
            try:
                await self.ledger.apply(
                    user_id,
                    -fee_minor,
                    pay_key(new_id),
                    LedgerDirection.PAY,
                    request_id=new_id,
                    description=validated.service_code,
                )
            except InsufficientFundsError:
                await self.session.rollback()
                metrics.record_submission(category.value, "insufficient_funds")
                raise
            except DuplicateOperationError:
                await self.session.rollback()
                return await self._resolve_replay(new_id, user_id, category)

        await self._transition(
            new_id,
            RequestStatus.CREATED,
            RequestStatus.PAID,
            ActorType.USER,
            user_id,
            note=f"fee {fee_minor}",
            values={"paid": True},
        )
        await self.session.commit()

        metrics.record_submission(category.value, "accepted")
        logger.info(
            "request_submitted",
            request_id=str(new_id),
            user_id=user_id,
            category=category.value,
            service_code=validated.service_code,
            fee_minor=fee_minor,
        )
        return await self.get_request(new_id)

    # ========================================================================
    # Dispatcher hooks (flush only)
    # ========================================================================

    async def mark_queued(self, request_id: UUID) -> ServiceRequestData:
        """paid -> queued."""
        request = await self._transition(
            request_id, RequestStatus.PAID, RequestStatus.QUEUED, ActorType.DISPATCHER
        )
        return self._request_to_domain(request)

    async def mark_assigned(self, request_id: UUID, agent_id: UUID) -> ServiceRequestData:
        """
        queued -> assigned, recording the agent.

        Raises:
            StaleStateError: request is no longer queued
            DataIntegrityError: request belongs to an inventory category
        """
        request = await self._require(request_id)
        if ServiceCategory(request.category).is_inventory:
            raise DataIntegrityError(
                f"Request {request_id} is fulfilled from inventory, cannot assign an agent"
            )

        request = await self._transition(
            request_id,
            RequestStatus.QUEUED,
            RequestStatus.ASSIGNED,
            ActorType.DISPATCHER,
            note=f"agent {agent_id}",
            values={
                "assigned_agent_id": agent_id,
                "allocated_inventory_id": None,
                "assigned_at": _utc_now(),
            },
        )
        logger.info("request_assigned", request_id=str(request_id), agent_id=str(agent_id))
        return self._request_to_domain(request)

    async def mark_allocated(self, request_id: UUID, code_id: UUID) -> ServiceRequestData:
        """
        queued -> allocated, recording the reserved code.

        Raises:
            StaleStateError: request is no longer queued
            DataIntegrityError: request belongs to an agent-serviced category
        """
        request = await self._require(request_id)
        if not ServiceCategory(request.category).is_inventory:
            raise DataIntegrityError(
                f"Request {request_id} is agent-serviced, cannot allocate inventory"
            )

        request = await self._transition(
            request_id,
            RequestStatus.QUEUED,
            RequestStatus.ALLOCATED,
            ActorType.DISPATCHER,
            note=f"code {code_id}",
            values={
                "allocated_inventory_id": code_id,
                "assigned_agent_id": None,
                "assigned_at": _utc_now(),
            },
        )
        logger.info("request_allocated", request_id=str(request_id), code_id=str(code_id))
        return self._request_to_domain(request)

    # ========================================================================
    # Fulfiller actions
    # ========================================================================

    async def mark_in_progress(self, request_id: UUID, agent_id: UUID) -> ServiceRequestData:
        """
        assigned -> in_progress by the assigned agent.

        Raises:
            AgentMismatchError: request is assigned to a different agent
            StaleStateError: request is no longer assigned
        """
        request = await self._require(request_id)
        if request.assigned_agent_id != agent_id:
            raise AgentMismatchError(request_id, agent_id)

        try:
            request = await self._transition(
                request_id,
                RequestStatus.ASSIGNED,
                RequestStatus.IN_PROGRESS,
                ActorType.AGENT,
                str(agent_id),
                guards=(ServiceRequest.assigned_agent_id == agent_id,),
            )
        except StaleStateError:
            await self.session.rollback()
            raise

        await self.session.commit()
        logger.info("request_started", request_id=str(request_id), agent_id=str(agent_id))
        return self._request_to_domain(request)

    async def complete(
        self,
        request_id: UUID,
        result: dict[str, Any],
        agent_id: UUID | None = None,
        actor_type: ActorType = ActorType.AGENT,
    ) -> ServiceRequestData:
        """
        Finish a request with its result.

        Releases the agent slot (crediting completion totals) or marks the
        allocated code used. Completing an already completed request is a
        no-op.

        Raises:
            InvalidTransitionError: request is not assigned, allocated or in progress
            AgentMismatchError: request is assigned to a different agent
            NotReservedByCallerError: allocated code is not reserved for this request
        """
        request = await self._require(request_id)
        current = RequestStatus(request.status)

        if current is RequestStatus.COMPLETED:
            logger.info("request_already_completed", request_id=str(request_id))
            return self._request_to_domain(request)
        if current not in COMPLETABLE_STATUSES:
            raise InvalidTransitionError(request_id, current.value, RequestStatus.COMPLETED.value)
        if agent_id is not None and request.assigned_agent_id != agent_id:
            raise AgentMismatchError(request_id, agent_id)

        assigned_agent_id = request.assigned_agent_id
        code_id = request.allocated_inventory_id
        processed_amount_minor = request.processed_amount_minor

        try:
            request = await self._transition(
                request_id,
                current,
                RequestStatus.COMPLETED,
                actor_type,
                str(agent_id) if agent_id else None,
                values={"result": result, "completed_at": _utc_now()},
            )
            if assigned_agent_id is not None:
                await self.agents.release(
                    assigned_agent_id,
                    completed=True,
                    processed_amount_minor=processed_amount_minor,
                )
            elif code_id is not None:
                await self.inventory.finalize(code_id, request_id)
        except Exception:
            await self.session.rollback()
            raise

        await self.session.commit()
        logger.info(
            "request_completed",
            request_id=str(request_id),
            agent_id=str(assigned_agent_id) if assigned_agent_id else None,
            code_id=str(code_id) if code_id else None,
        )
        return await self.get_request(request_id)

    async def fail(
        self,
        request_id: UUID,
        reason: str,
        retryable: bool = False,
        agent_id: UUID | None = None,
        actor_type: ActorType = ActorType.AGENT,
    ) -> ServiceRequestData:
        """
        Record a fulfillment failure.

        Retryable failures with retries left go back to queued (the agent slot
        is released, a reserved code is kept for the next dispatch). Anything
        else becomes failed and is refunded in a follow-up transaction.

        Raises:
            InvalidTransitionError: request already completed or cancelled
            AgentMismatchError: request is assigned to a different agent
            RefundFailedError: refund could not be applied; request flagged
        """
        request = await self._require(request_id)
        current = RequestStatus(request.status)

        if current is RequestStatus.REFUNDED:
            logger.info("request_already_refunded", request_id=str(request_id))
            return self._request_to_domain(request)
        if current is RequestStatus.FAILED:
            return await self._refund(request_id, actor_type)
        if current not in FAILABLE_STATUSES:
            raise InvalidTransitionError(request_id, current.value, RequestStatus.FAILED.value)
        if agent_id is not None and request.assigned_agent_id != agent_id:
            raise AgentMismatchError(request_id, agent_id)

        actor_id = str(agent_id) if agent_id else None
        held_agent_id = request.assigned_agent_id if current in AGENT_ACTIVE_STATUSES else None

        if retryable and request.retry_count < request.max_retries:
            values: dict[str, Any] = {
                "retry_count": ServiceRequest.retry_count + 1,
                "failure_reason": reason,
                "assigned_agent_id": None,
                "assigned_at": None,
            }
            try:
                await self._transition(
                    request_id,
                    current,
                    RequestStatus.QUEUED,
                    actor_type,
                    actor_id,
                    note=f"retry: {reason}",
                    values=values,
                    guards=(ServiceRequest.retry_count < ServiceRequest.max_retries,),
                )
                if held_agent_id is not None:
                    await self.agents.release(held_agent_id, completed=False)
            except Exception:
                await self.session.rollback()
                raise

            await self.session.commit()
            requeued = await self.get_request(request_id)
            logger.info(
                "request_requeued",
                request_id=str(request_id),
                retry_count=requeued.retry_count,
                max_retries=requeued.max_retries,
                reason=reason,
            )
            return requeued

        try:
            await self._transition(
                request_id,
                current,
                RequestStatus.FAILED,
                actor_type,
                actor_id,
                note=reason,
                values={"failure_reason": reason},
            )
            if held_agent_id is not None:
                await self.agents.release(held_agent_id, completed=False)
        except Exception:
            await self.session.rollback()
            raise

        await self.session.commit()
        logger.info(
            "request_failed",
            request_id=str(request_id),
            reason=reason,
            retryable=retryable,
            retry_count=request.retry_count,
        )
        if request.allocated_inventory_id is not None:
            logger.warning(
                "inventory_code_stranded",
                request_id=str(request_id),
                code_id=str(request.allocated_inventory_id),
            )

        return await self._refund(request_id, actor_type)

    async def cancel(
        self,
        request_id: UUID,
        user_id: str | None = None,
        actor_type: ActorType = ActorType.USER,
    ) -> ServiceRequestData:
        """
        Cancel a request that has not reached a fulfiller, refunding its fee.

        Cancelling an already cancelled request is a no-op.

        Raises:
            RequestNotFoundError: no such request (or owned by another user)
            StaleStateError: request moved past queued (the dispatcher won)
        """
        request = await self._require(request_id)
        if user_id is not None and request.user_id != user_id:
            raise RequestNotFoundError(request_id)

        current = RequestStatus(request.status)
        if current is RequestStatus.CANCELLED:
            return self._request_to_domain(request)
        if current not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(request_id, current.value, RequestStatus.CANCELLED.value)

        try:
            await self._transition(
                request_id,
                current,
                RequestStatus.CANCELLED,
                actor_type,
                user_id,
                note="cancelled",
            )
            if request.paid and request.fee_minor > 0:
                await self._apply_refund(request, current)
        except Exception:
            await self.session.rollback()
            raise

        await self.session.commit()
        logger.info("request_cancelled", request_id=str(request_id), previous_status=current.value)
        if request.allocated_inventory_id is not None:
            logger.warning(
                "inventory_code_stranded",
                request_id=str(request_id),
                code_id=str(request.allocated_inventory_id),
            )
        return await self.get_request(request_id)

    async def retry_refund(self, request_id: UUID) -> ServiceRequestData:
        """
        Manually re-drive the refund of a failed request.

        Raises:
            InvalidTransitionError: request is not failed
            RefundFailedError: refund still cannot be applied
        """
        request = await self._require(request_id)
        current = RequestStatus(request.status)
        if current is RequestStatus.REFUNDED:
            return self._request_to_domain(request)
        if current is not RequestStatus.FAILED:
            raise InvalidTransitionError(request_id, current.value, RequestStatus.REFUNDED.value)

        logger.info("refund_retry_started", request_id=str(request_id))
        return await self._refund(request_id, ActorType.ADMIN)

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_request(self, request_id: UUID) -> ServiceRequestData:
        """
        Raises:
            RequestNotFoundError: no such request
        """
        return self._request_to_domain(await self._require(request_id))

    async def list_requests(
        self,
        category: ServiceCategory | None = None,
        status: RequestStatus | None = None,
        user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ServiceRequestData], int]:
        """List requests by category/status/user, oldest first, with total count."""
        conditions: list[ColumnElement[bool]] = []
        if category is not None:
            conditions.append(ServiceRequest.category == category.value)
        if status is not None:
            conditions.append(ServiceRequest.status == status.value)
        if user_id is not None:
            conditions.append(ServiceRequest.user_id == user_id)

        count_stmt = select(func.count()).select_from(ServiceRequest).where(*conditions)
        total = int((await self.session.execute(count_stmt)).scalar_one())

        stmt = (
            select(ServiceRequest)
            .where(*conditions)
            .order_by(ServiceRequest.created_at)
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [self._request_to_domain(r) for r in result.scalars().all()], total

    async def list_by_status(
        self, category: ServiceCategory, status: RequestStatus
    ) -> list[ServiceRequestData]:
        requests, _ = await self.list_requests(category=category, status=status, limit=1000)
        return requests

    async def history(self, request_id: UUID) -> list[ActivityData]:
        """
        Audit trail of every transition, oldest first.

        Raises:
            RequestNotFoundError: no such request
        """
        await self._require(request_id)
        stmt = (
            select(RequestActivity)
            .where(RequestActivity.request_id == request_id)
            .order_by(RequestActivity.created_at)
        )
        result = await self.session.execute(stmt)
        return [self._activity_to_domain(a) for a in result.scalars().all()]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _transition(
        self,
        request_id: UUID,
        expected: RequestStatus,
        target: RequestStatus,
        actor_type: ActorType,
        actor_id: str | None = None,
        note: str | None = None,
        values: dict[str, Any] | None = None,
        guards: tuple[ColumnElement[bool], ...] = (),
    ) -> ServiceRequest:
        """
        Move a request from expected to target in one guarded UPDATE.

        Raises:
            InvalidTransitionError: the lifecycle never allows expected -> target
            RequestNotFoundError: no such request
            StaleStateError: the request is no longer in the expected status
        """
        if not can_transition(expected, target):
            raise InvalidTransitionError(request_id, expected.value, target.value)

        stmt = (
            update(ServiceRequest)
            .where(
                ServiceRequest.id == request_id,
                ServiceRequest.status == expected.value,
                *guards,
            )
            .values(status=target.value, **(values or {}))
            .returning(ServiceRequest.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        if result.scalar_one_or_none() is None:
            current = await self.session.get(ServiceRequest, request_id, populate_existing=True)
            if current is None:
                raise RequestNotFoundError(request_id)
            logger.info(
                "transition_stale",
                request_id=str(request_id),
                expected=expected.value,
                actual=current.status,
                target=target.value,
            )
            raise StaleStateError(request_id, expected.value, current.status)

        self._record_activity(request_id, expected, target, actor_type, actor_id, note)
        await self.session.flush()
        metrics.record_transition(expected.value, target.value)

        request = await self.session.get(ServiceRequest, request_id, populate_existing=True)
        if request is None:
            raise WriteVerificationError(f"Request {request_id} not found after update")
        return request

    async def _refund(self, request_id: UUID, actor_type: ActorType) -> ServiceRequestData:
        """
        Refund a failed request and move it to refunded, in its own transaction.

        A refund error flags the request for manual intervention and halts
        automatic processing of it.
        """
        request = await self._require(request_id)
        # A rollback expires the instance; read what the error path needs first
        user_id = request.user_id
        fee_minor = request.fee_minor
        try:
            if request.paid and fee_minor > 0:
                await self._apply_refund(request, RequestStatus.FAILED)
        except StaleStateError:
            # Another caller committed the refund entry; only the transition remains.
            logger.info("refund_applied_concurrently", request_id=str(request_id))
        except Exception as e:
            await self.session.rollback()
            await self._flag_for_intervention(request_id)
            metrics.record_error(type(e).__name__, "refund")
            logger.error(
                "refund_failed",
                request_id=str(request_id),
                user_id=user_id,
                fee_minor=fee_minor,
                error=str(e),
            )
            raise RefundFailedError(request_id, str(e)) from e

        try:
            refunded = await self._transition(
                request_id,
                RequestStatus.FAILED,
                RequestStatus.REFUNDED,
                actor_type,
                note="refund applied" if fee_minor > 0 else "nothing to refund",
                values={"requires_intervention": False},
            )
        except StaleStateError:
            await self.session.rollback()
            latest = await self._require(request_id)
            if latest.status == RequestStatus.REFUNDED.value:
                return self._request_to_domain(latest)
            raise

        await self.session.commit()
        logger.info("request_refunded", request_id=str(request_id), fee_minor=fee_minor)
        return self._request_to_domain(refunded)

    async def _apply_refund(self, request: ServiceRequest, from_status: RequestStatus) -> None:
        """
        Credit the fee back with key "refund:{request_id}". Flushes only.

        An existing refund entry means the credit already happened.
        """
        request_id = request.id
        key = refund_key(request_id)
        if await self.ledger.find_entry(key) is not None:
            logger.info("refund_already_applied", request_id=str(request_id))
            return

        try:
            await self.ledger.apply(
                request.user_id,
                request.fee_minor,
                key,
                LedgerDirection.REFUND,
                request_id=request_id,
                description=f"refund {request.service_code}",
            )
        except DuplicateOperationError:
            # A concurrent refund won; the ledger rolled this transaction back.
            raise StaleStateError(request_id, from_status.value, "refunded concurrently")

    async def _flag_for_intervention(self, request_id: UUID) -> None:
        stmt = (
            update(ServiceRequest)
            .where(ServiceRequest.id == request_id)
            .values(requires_intervention=True)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
        await self.session.commit()

    async def _resolve_replay(
        self, request_id: UUID, user_id: str, category: ServiceCategory
    ) -> ServiceRequestData:
        """A concurrent submit with the same id won; hand back its request."""
        existing = await self._find_for_user(request_id, user_id)
        if existing is None:
            raise WriteVerificationError(f"Request {request_id} conflicted but cannot be found")
        metrics.record_submission(category.value, "replayed")
        logger.info("request_submit_raced", request_id=str(request_id), user_id=user_id)
        return self._request_to_domain(existing)

    async def _find_for_user(self, request_id: UUID, user_id: str) -> ServiceRequest | None:
        """
        Raises:
            IdempotencyConflictError: request_id exists for another user
        """
        existing = await self.session.get(ServiceRequest, request_id, populate_existing=True)
        if existing is None:
            return None
        if existing.user_id != user_id:
            raise IdempotencyConflictError(request_id)
        return existing

    async def _require(self, request_id: UUID) -> ServiceRequest:
        request = await self.session.get(ServiceRequest, request_id, populate_existing=True)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    def _record_activity(
        self,
        request_id: UUID,
        previous: RequestStatus | None,
        new: RequestStatus,
        actor_type: ActorType,
        actor_id: str | None,
        note: str | None,
    ) -> None:
        self.session.add(
            RequestActivity(
                request_id=request_id,
                actor_type=actor_type.value,
                actor_id=actor_id,
                previous_status=previous.value if previous else None,
                new_status=new.value,
                note=note,
            )
        )

    def _request_to_domain(self, request: ServiceRequest) -> ServiceRequestData:
        """Convert ORM request to domain model."""
        return ServiceRequestData(
            request_id=request.id,
            user_id=request.user_id,
            category=ServiceCategory(request.category),
            service_code=request.service_code,
            payload=dict(request.payload),
            fee_minor=request.fee_minor,
            paid=request.paid,
            status=RequestStatus(request.status),
            assigned_agent_id=request.assigned_agent_id,
            allocated_inventory_id=request.allocated_inventory_id,
            result=dict(request.result) if request.result is not None else None,
            failure_reason=request.failure_reason,
            retry_count=request.retry_count,
            max_retries=request.max_retries,
            requires_intervention=request.requires_intervention,
            created_at=request.created_at,
            assigned_at=request.assigned_at,
            completed_at=request.completed_at,
        )

    def _activity_to_domain(self, activity: RequestActivity) -> ActivityData:
        return ActivityData(
            activity_id=activity.id,
            request_id=activity.request_id,
            actor_type=ActorType(activity.actor_type),
            actor_id=activity.actor_id,
            previous_status=(
                RequestStatus(activity.previous_status) if activity.previous_status else None
            ),
            new_status=RequestStatus(activity.new_status),
            note=activity.note,
            created_at=activity.created_at,
        )
