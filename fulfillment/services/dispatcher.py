"""
Dispatcher - The control loop that moves paid and queued requests forward.

Each sweep examines a bounded batch of requests, oldest first. Every request is
handled in its own session so a lost race on one request never disturbs the
rest of the batch. Requests are partitioned by category (and inventory pool):
once a partition reports no agent or no stock, the remaining requests in it
are only queued, not claimed, until the next sweep.

The dispatcher is the only writer of assignment fields.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from fulfillment.config import settings
from fulfillment.db.models import ServiceRequest
from fulfillment.exceptions import (
    DataIntegrityError,
    FulfillmentError,
    NoAgentAvailableError,
    NoStockAvailableError,
    StaleStateError,
)
from fulfillment.models.api import ActorType, RequestStatus, ServiceCategory
from fulfillment.models.domain import ServiceRequestData
from fulfillment.models.payloads import load_payload
from fulfillment.observability.logging import log_context
from fulfillment.observability.metrics import metrics
from fulfillment.observability.tracing import trace_operation
from fulfillment.services.requests import RequestService

logger = get_logger(__name__)


class DispatchOutcome(str, Enum):
    """What happened to one request during dispatch."""

    ASSIGNED = "assigned"
    ALLOCATED = "allocated"
    COMPLETED = "completed"
    PENDING = "pending"
    STALE = "stale"
    ERROR = "error"


@dataclass
class SweepReport:
    """Counters for one sweep."""

    examined: int = 0
    assigned: int = 0
    allocated: int = 0
    completed: int = 0
    pending: int = 0
    stale: int = 0
    errors: int = 0

    def record(self, outcome: DispatchOutcome) -> None:
        if outcome is DispatchOutcome.ASSIGNED:
            self.assigned += 1
        elif outcome is DispatchOutcome.ALLOCATED:
            self.allocated += 1
        elif outcome is DispatchOutcome.COMPLETED:
            # Instant PIN delivery: allocated and completed in one pass
            self.allocated += 1
            self.completed += 1
        elif outcome is DispatchOutcome.PENDING:
            self.pending += 1
        elif outcome is DispatchOutcome.STALE:
            self.stale += 1
        else:
            self.errors += 1


@dataclass(frozen=True)
class DispatchCandidate:
    """A request picked up by a sweep and the partition it competes in."""

    request_id: UUID
    category: ServiceCategory
    status: RequestStatus
    partition: str


class Dispatcher:
    """Matches ready requests to agents or inventory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.dispatch_batch_size
        self.interval_seconds = interval_seconds or settings.dispatch_interval_seconds

    async def sweep(self) -> SweepReport:
        """Run one bounded pass over dispatchable requests."""
        report = SweepReport()
        started = time.perf_counter()

        with trace_operation("dispatch_sweep", batch_size=self.batch_size) as span:
            candidates = await self._candidates()
            exhausted: set[str] = set()

            for candidate in candidates:
                report.examined += 1
                with log_context(
                    request_id=str(candidate.request_id), partition=candidate.partition
                ):
                    outcome = await self.dispatch_request(
                        candidate.request_id,
                        claim=candidate.partition not in exhausted,
                    )
                if outcome is DispatchOutcome.PENDING:
                    exhausted.add(candidate.partition)
                report.record(outcome)

            span.set_attribute("examined", report.examined)
            span.set_attribute("assigned", report.assigned)
            span.set_attribute("allocated", report.allocated)
            span.set_attribute("pending", report.pending)

        duration = time.perf_counter() - started
        metrics.dispatch_sweep_duration_seconds.observe(duration)
        if report.examined:
            logger.info(
                "dispatch_sweep_completed",
                examined=report.examined,
                assigned=report.assigned,
                allocated=report.allocated,
                completed=report.completed,
                pending=report.pending,
                stale=report.stale,
                errors=report.errors,
                exhausted_partitions=sorted(exhausted),
                duration_seconds=round(duration, 4),
            )
        return report

    async def dispatch_request(self, request_id: UUID, claim: bool = True) -> DispatchOutcome:
        """
        Move one request as far forward as possible.

        paid -> queued is committed on its own so it sticks when no resource
        is free. With claim=False the request is only queued.
        """
        async with self.session_factory() as session:
            service = RequestService(session)
            category: str | None = None
            try:
                request = await service.get_request(request_id)
                category = request.category.value

                if request.status is RequestStatus.ALLOCATED:
                    return await self._deliver(service, request)

                if request.status is RequestStatus.PAID:
                    request = await service.mark_queued(request_id)
                    await session.commit()
                elif request.status is not RequestStatus.QUEUED:
                    return self._outcome(category, DispatchOutcome.STALE)

                if not claim:
                    return self._outcome(category, DispatchOutcome.PENDING)

                if request.category.is_inventory:
                    return await self._allocate(service, request)
                return await self._assign(service, request)

            except StaleStateError as e:
                await session.rollback()
                logger.info(
                    "dispatch_stale",
                    request_id=str(request_id),
                    expected=e.expected,
                    actual=e.actual,
                )
                return self._outcome(category, DispatchOutcome.STALE)
            except (NoAgentAvailableError, NoStockAvailableError):
                await session.rollback()
                return self._outcome(category, DispatchOutcome.PENDING)
            except (FulfillmentError, SQLAlchemyError) as e:
                await session.rollback()
                metrics.record_error(type(e).__name__, "dispatch")
                logger.error("dispatch_failed", request_id=str(request_id), error=str(e))
                return self._outcome(category, DispatchOutcome.ERROR)

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Sweep every interval until stop is set."""
        logger.info("dispatcher_started", interval_seconds=self.interval_seconds)
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception as e:
                metrics.record_error(type(e).__name__, "dispatch_sweep")
                logger.exception("dispatch_sweep_error", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue
        logger.info("dispatcher_stopped")

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _assign(
        self, service: RequestService, request: ServiceRequestData
    ) -> DispatchOutcome:
        # A stale transition rolls back the slot claimed here
        agent = await service.agents.select_agent(request.category)
        await service.mark_assigned(request.request_id, agent.agent_id)
        await service.session.commit()
        return self._outcome(request.category.value, DispatchOutcome.ASSIGNED)

    async def _allocate(
        self, service: RequestService, request: ServiceRequestData
    ) -> DispatchOutcome:
        pool = self._pool(request)
        code = await service.inventory.claim(pool, request.request_id)
        await service.mark_allocated(request.request_id, code.code_id)
        await service.session.commit()
        self._outcome(request.category.value, DispatchOutcome.ALLOCATED)

        allocated = await service.get_request(request.request_id)
        return await self._deliver(service, allocated)

    async def _deliver(
        self, service: RequestService, request: ServiceRequestData
    ) -> DispatchOutcome:
        """Complete an allocated PIN order with the reserved code."""
        if request.allocated_inventory_id is None:
            raise DataIntegrityError(f"Request {request.request_id} has no allocated code")

        code = await service.inventory.get_code(request.allocated_inventory_id)
        if code is None:
            raise DataIntegrityError(f"Request {request.request_id} has no allocated code")

        await service.complete(
            request.request_id,
            {"pin": code.code_value, "serial": code.serial},
            actor_type=ActorType.DISPATCHER,
        )
        logger.info(
            "pin_delivered",
            request_id=str(request.request_id),
            code_id=str(code.code_id),
            pool=code.category,
        )
        return self._outcome(request.category.value, DispatchOutcome.COMPLETED)

    async def _candidates(self) -> list[DispatchCandidate]:
        stmt = (
            select(
                ServiceRequest.id,
                ServiceRequest.category,
                ServiceRequest.status,
                ServiceRequest.payload,
            )
            .where(
                or_(
                    ServiceRequest.status.in_(
                        [RequestStatus.PAID.value, RequestStatus.QUEUED.value]
                    ),
                    and_(
                        ServiceRequest.status == RequestStatus.ALLOCATED.value,
                        ServiceRequest.category == ServiceCategory.PIN_ORDER.value,
                    ),
                )
            )
            .order_by(ServiceRequest.created_at)
            .limit(self.batch_size)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        candidates = []
        for request_id, category_value, status_value, payload in rows:
            category = ServiceCategory(category_value)
            partition = category.value
            if category.is_inventory:
                pool = load_payload(category, payload).inventory_pool
                partition = f"{category.value}:{pool}"
            candidates.append(
                DispatchCandidate(
                    request_id=request_id,
                    category=category,
                    status=RequestStatus(status_value),
                    partition=partition,
                )
            )
        return candidates

    def _pool(self, request: ServiceRequestData) -> str:
        pool = load_payload(request.category, request.payload).inventory_pool
        if pool is None:
            raise DataIntegrityError(f"Request {request.request_id} names no inventory pool")
        return pool

    def _outcome(self, category: str | None, outcome: DispatchOutcome) -> DispatchOutcome:
        metrics.record_dispatch(category or "unknown", outcome.value)
        return outcome
