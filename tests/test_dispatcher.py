"""
Tests for the Dispatcher control loop.
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.exceptions import NoAgentAvailableError
from fulfillment.models.api import RequestStatus, ServiceCategory
from fulfillment.services.agent_pool import AgentPoolService
from fulfillment.services.dispatcher import Dispatcher, DispatchOutcome, SweepReport
from fulfillment.services.requests import RequestService

SessionFactory = async_sessionmaker[AsyncSession]

BVN_PAYLOAD: dict[str, Any] = {"bvn": "12345678901"}


async def submit_bvn(session_factory: SessionFactory, user_id: str = "user-1"):
    async with session_factory() as s:
        return await RequestService(s).submit(user_id, ServiceCategory.BVN, BVN_PAYLOAD, fee_minor=100)


async def submit_pin(session_factory: SessionFactory, exam_type: str, user_id: str = "user-1"):
    async with session_factory() as s:
        return await RequestService(s).submit(
            user_id, ServiceCategory.PIN_ORDER, {"exam_type": exam_type}, fee_minor=100
        )


async def status_of(session_factory: SessionFactory, request_id) -> RequestStatus:
    async with session_factory() as s:
        return (await RequestService(s).get_request(request_id)).status


class TestSweepReport:
    """Tests for outcome counting."""

    @pytest.mark.parametrize(
        "outcome,field",
        [
            (DispatchOutcome.ASSIGNED, "assigned"),
            (DispatchOutcome.ALLOCATED, "allocated"),
            (DispatchOutcome.PENDING, "pending"),
            (DispatchOutcome.STALE, "stale"),
            (DispatchOutcome.ERROR, "errors"),
        ],
    )
    def test_record_single_counter(self, outcome, field):
        report = SweepReport()
        report.record(outcome)
        assert getattr(report, field) == 1

    def test_instant_delivery_counts_allocated_and_completed(self):
        report = SweepReport()
        report.record(DispatchOutcome.COMPLETED)
        assert report.allocated == 1
        assert report.completed == 1


class TestSweep:
    """Sweep-level behaviour against file-backed SQLite."""

    async def test_empty_sweep(self, session_factory):
        report = await Dispatcher(session_factory).sweep()
        assert report == SweepReport()

    async def test_capacity_limits_assignments(self, session_factory, fund, add_agent):
        await fund("user-1", 1000)
        await add_agent([ServiceCategory.BVN], max_active_requests=1)
        first = await submit_bvn(session_factory)
        second = await submit_bvn(session_factory)

        report = await Dispatcher(session_factory).sweep()

        assert report.examined == 2
        assert report.assigned == 1
        assert report.pending == 1
        assert await status_of(session_factory, first.request_id) is RequestStatus.ASSIGNED
        assert await status_of(session_factory, second.request_id) is RequestStatus.QUEUED

    async def test_exhausted_partition_stops_claiming(self, session_factory, fund):
        """After one miss the rest of the partition is only queued."""
        await fund("user-1", 1000)
        requests = [await submit_bvn(session_factory) for _ in range(3)]

        select_agent = AsyncMock(side_effect=NoAgentAvailableError("bvn"))
        with patch.object(AgentPoolService, "select_agent", select_agent):
            report = await Dispatcher(session_factory).sweep()

        assert select_agent.await_count == 1
        assert report.pending == 3
        for request in requests:
            assert await status_of(session_factory, request.request_id) is RequestStatus.QUEUED

    async def test_partitions_are_independent(self, session_factory, fund, stock):
        """An empty partition never blocks the others."""
        await fund("user-1", 1000)
        bvn = await submit_bvn(session_factory)
        neco = await submit_pin(session_factory, "neco")
        waec = await submit_pin(session_factory, "waec")
        await stock("waec", "W-1")

        report = await Dispatcher(session_factory).sweep()

        assert report.pending == 2
        assert report.completed == 1
        assert await status_of(session_factory, bvn.request_id) is RequestStatus.QUEUED
        assert await status_of(session_factory, neco.request_id) is RequestStatus.QUEUED
        assert await status_of(session_factory, waec.request_id) is RequestStatus.COMPLETED

    async def test_database_error_does_not_stop_batch(self, session_factory, fund, add_agent):
        """A driver error on one request is reported and the sweep moves on."""
        await fund("user-1", 1000)
        await add_agent([ServiceCategory.BVN], max_active_requests=2)
        first = await submit_bvn(session_factory)
        second = await submit_bvn(session_factory)

        real_select_agent = AgentPoolService.select_agent
        calls = 0

        async def flaky_select_agent(self, category):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OperationalError("UPDATE agents", {}, Exception("disk I/O error"))
            return await real_select_agent(self, category)

        with patch.object(AgentPoolService, "select_agent", flaky_select_agent):
            report = await Dispatcher(session_factory).sweep()

        assert report.examined == 2
        assert report.errors == 1
        assert report.assigned == 1
        statuses = {
            await status_of(session_factory, first.request_id),
            await status_of(session_factory, second.request_id),
        }
        assert statuses == {RequestStatus.QUEUED, RequestStatus.ASSIGNED}

    async def test_batch_size_bounds_sweep(self, session_factory, fund):
        await fund("user-1", 1000)
        for _ in range(3):
            await submit_bvn(session_factory)

        report = await Dispatcher(session_factory, batch_size=2).sweep()

        assert report.examined == 2

    async def test_one_code_per_order(self, session_factory, fund, stock):
        await fund("user-1", 1000)
        orders = [await submit_pin(session_factory, "waec") for _ in range(3)]
        await stock("waec", "W-1", "W-2")

        report = await Dispatcher(session_factory).sweep()

        assert report.completed == 2
        assert report.pending == 1
        pins = set()
        async with session_factory() as s:
            service = RequestService(s)
            for order in orders:
                request = await service.get_request(order.request_id)
                if request.result:
                    pins.add(request.result["pin"])
        assert pins == {"W-1", "W-2"}


class TestDispatchRequest:
    """Tests for single-request dispatch."""

    async def test_cancelled_request_is_stale(self, session_factory, fund):
        await fund("user-1", 1000)
        request = await submit_bvn(session_factory)
        async with session_factory() as s:
            await RequestService(s).cancel(request.request_id)

        outcome = await Dispatcher(session_factory).dispatch_request(request.request_id)

        assert outcome is DispatchOutcome.STALE

    async def test_unknown_request_is_error(self, session_factory):
        outcome = await Dispatcher(session_factory).dispatch_request(uuid4())
        assert outcome is DispatchOutcome.ERROR

    async def test_without_claim_only_queues(self, session_factory, fund, add_agent):
        await fund("user-1", 1000)
        await add_agent([ServiceCategory.BVN])
        request = await submit_bvn(session_factory)

        outcome = await Dispatcher(session_factory).dispatch_request(request.request_id, claim=False)

        assert outcome is DispatchOutcome.PENDING
        assert await status_of(session_factory, request.request_id) is RequestStatus.QUEUED


class TestRunForever:
    """Tests for the background loop."""

    async def test_stops_when_event_set(self, session_factory):
        dispatcher = Dispatcher(session_factory, interval_seconds=0.01)
        stop = asyncio.Event()
        calls = 0

        async def fake_sweep() -> SweepReport:
            nonlocal calls
            calls += 1
            if calls == 3:
                stop.set()
            return SweepReport()

        with patch.object(dispatcher, "sweep", fake_sweep):
            await asyncio.wait_for(dispatcher.run_forever(stop), timeout=5)

        assert calls == 3

    async def test_sweep_error_does_not_kill_loop(self, session_factory):
        dispatcher = Dispatcher(session_factory, interval_seconds=0.01)
        stop = asyncio.Event()

        def fail_then_stop() -> SweepReport:
            if sweep.call_count == 1:
                raise RuntimeError("database unavailable")
            stop.set()
            return SweepReport()

        sweep = AsyncMock(side_effect=fail_then_stop)
        with patch.object(dispatcher, "sweep", sweep):
            await asyncio.wait_for(dispatcher.run_forever(stop), timeout=5)

        assert sweep.await_count == 2
