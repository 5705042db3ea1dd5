"""
Tests for InventoryService.

Runs against in-memory SQLite.
"""

from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.exceptions import (
    DuplicateCodeError,
    NoStockAvailableError,
    NotReservedByCallerError,
    UnknownInventoryPoolError,
)
from fulfillment.models.api import InventoryStatus
from fulfillment.models.domain import CodeEntry
from fulfillment.services.inventory import InventoryService


def entries(*codes: str) -> list[CodeEntry]:
    return [CodeEntry(code=c, serial=f"SN-{c}") for c in codes]


class TestBulkAdd:
    """Tests for bulk code import."""

    async def test_adds_all_new_codes(self, session: AsyncSession):
        result = await InventoryService(session).bulk_add("waec", entries("A1", "A2", "A3"))
        assert result.added == 3
        assert result.duplicates == ()
        assert result.errors == ()

    async def test_duplicates_reported_not_fatal(self, session: AsyncSession):
        """A partial import still succeeds for the non-duplicate codes."""
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1", "A2"))

        result = await inventory.bulk_add("waec", entries("A2", "A3", "A3", "A4"))

        assert result.added == 2
        assert set(result.duplicates) == {"A2", "A3"}
        summary = await inventory.stock_summary("waec")
        assert summary.unused == 4

    async def test_same_code_allowed_in_other_pool(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1"))
        result = await inventory.bulk_add("neco", entries("A1"))
        assert result.added == 1

    async def test_blank_codes_reported_as_errors(self, session: AsyncSession):
        result = await InventoryService(session).bulk_add(
            "neco", [CodeEntry(code="  "), CodeEntry(code=" B1 ")]
        )
        assert result.added == 1
        assert len(result.errors) == 1
        assert "Entry 0" in result.errors[0]

    async def test_unknown_pool_rejected(self, session: AsyncSession):
        with pytest.raises(UnknownInventoryPoolError):
            await InventoryService(session).bulk_add("jamb", entries("A1"))

    async def test_add_code_duplicate_raises(self, session: AsyncSession):
        inventory = InventoryService(session)
        code = await inventory.add_code("nabteb", "Z9", serial="S-1")
        assert code.status is InventoryStatus.UNUSED

        with pytest.raises(DuplicateCodeError):
            await inventory.add_code("nabteb", "Z9")


class TestClaim:
    """Tests for at-most-once reservation."""

    async def test_claim_reserves_for_request(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1"))
        request_id = uuid4()

        code = await inventory.claim("waec", request_id)

        assert code.status is InventoryStatus.RESERVED
        assert code.reserved_for == request_id
        assert code.code_value == "A1"

    async def test_two_requests_get_distinct_codes(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1", "A2"))

        first = await inventory.claim("waec", uuid4())
        second = await inventory.claim("waec", uuid4())

        assert first.code_id != second.code_id

    async def test_reclaim_returns_existing_reservation(self, session: AsyncSession):
        """A requeued order never consumes a second code."""
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1", "A2"))
        request_id = uuid4()

        first = await inventory.claim("waec", request_id)
        again = await inventory.claim("waec", request_id)

        assert again.code_id == first.code_id
        assert (await inventory.stock_summary("waec")).reserved == 1

    async def test_empty_pool_raises(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1"))
        await inventory.claim("waec", uuid4())

        with pytest.raises(NoStockAvailableError) as exc_info:
            await inventory.claim("waec", uuid4())
        assert exc_info.value.category == "waec"

    async def test_claim_only_draws_from_named_pool(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("neco", entries("N1"))
        with pytest.raises(NoStockAvailableError):
            await inventory.claim("waec", uuid4())


class TestFinalize:
    """Tests for reserved -> used."""

    async def test_finalize_marks_used(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1"))
        request_id = uuid4()
        code = await inventory.claim("waec", request_id)

        used = await inventory.finalize(code.code_id, request_id)

        assert used.status is InventoryStatus.USED
        assert used.used_at is not None
        assert await inventory.reserved_for(request_id) is None

    async def test_finalize_twice_is_noop(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1"))
        request_id = uuid4()
        code = await inventory.claim("waec", request_id)

        await inventory.finalize(code.code_id, request_id)
        again = await inventory.finalize(code.code_id, request_id)
        assert again.status is InventoryStatus.USED

    async def test_finalize_by_other_request_rejected(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1"))
        code = await inventory.claim("waec", uuid4())

        with pytest.raises(NotReservedByCallerError):
            await inventory.finalize(code.code_id, uuid4())

    async def test_finalize_unreserved_code_rejected(self, session: AsyncSession):
        inventory = InventoryService(session)
        code = await inventory.add_code("waec", "A1")

        with pytest.raises(NotReservedByCallerError):
            await inventory.finalize(code.code_id, uuid4())

    async def test_used_code_never_reclaimed(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("waec", entries("A1"))
        request_id = uuid4()
        code = await inventory.claim("waec", request_id)
        await inventory.finalize(code.code_id, request_id)

        with pytest.raises(NoStockAvailableError):
            await inventory.claim("waec", uuid4())


class TestStockSummary:
    """Tests for per-status counts."""

    async def test_counts_each_status(self, session: AsyncSession):
        inventory = InventoryService(session)
        await inventory.bulk_add("nbais", entries("B1", "B2", "B3"))
        request_id = uuid4()
        code = await inventory.claim("nbais", request_id)
        await inventory.claim("nbais", uuid4())
        await inventory.finalize(code.code_id, request_id)

        summary = await inventory.stock_summary("nbais")
        assert (summary.unused, summary.reserved, summary.used) == (1, 1, 1)

    async def test_empty_pool_is_all_zero(self, session: AsyncSession):
        summary = await InventoryService(session).stock_summary("neco")
        assert (summary.unused, summary.reserved, summary.used) == (0, 0, 0)
