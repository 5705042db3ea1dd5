"""
Inventory Pool Service - At-most-once allocation of consumable PIN codes.

Codes move forward only: unused -> reserved -> used. A claim is a single
conditional UPDATE, so two concurrent callers can never reserve the same code.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fulfillment.config import settings
from fulfillment.db.models import InventoryCode
from fulfillment.exceptions import (
    DuplicateCodeError,
    NoStockAvailableError,
    NotReservedByCallerError,
    UnknownInventoryPoolError,
    WriteVerificationError,
)
from fulfillment.models.api import InventoryStatus
from fulfillment.models.domain import BulkAddResult, CodeEntry, InventoryCodeData, StockSummary
from fulfillment.models.payloads import INVENTORY_POOLS
from fulfillment.observability.metrics import metrics

logger = get_logger(__name__)

# Existing-code lookups are chunked to keep IN lists bounded
LOOKUP_CHUNK_SIZE = 500


def _utc_now() -> datetime:
    return datetime.now(UTC)


class InventoryService:
    """Service for the PIN inventory pools."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def claim(self, category: str, request_id: UUID) -> InventoryCodeData:
        """
        Reserve one unused code for a request.

        A request that already holds a reservation gets the same code back, so
        a requeued order never consumes a second code. Flushes only.

        Raises:
            NoStockAvailableError: pool has no unused codes
        """
        existing = await self.reserved_for(request_id)
        if existing is not None:
            return existing

        for attempt in range(settings.dispatch_claim_attempts):
            candidate = (
                select(InventoryCode.id)
                .where(
                    InventoryCode.category == category,
                    InventoryCode.status == InventoryStatus.UNUSED.value,
                )
                .order_by(InventoryCode.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
                .scalar_subquery()
            )
            stmt = (
                update(InventoryCode)
                .where(
                    InventoryCode.id == candidate,
                    InventoryCode.status == InventoryStatus.UNUSED.value,
                )
                .values(
                    status=InventoryStatus.RESERVED.value,
                    reserved_for=request_id,
                    reserved_at=_utc_now(),
                )
                .returning(InventoryCode.id)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            code_id = result.scalar_one_or_none()

            if code_id is not None:
                code = await self._reload(code_id)
                metrics.record_inventory_claim(category, "reserved")
                logger.info(
                    "inventory_code_reserved",
                    category=category,
                    code_id=str(code_id),
                    request_id=str(request_id),
                    attempt=attempt + 1,
                )
                return self._code_to_domain(code)

            if await self._count(category, InventoryStatus.UNUSED) == 0:
                break

        metrics.record_inventory_claim(category, "exhausted")
        logger.info("inventory_exhausted", category=category, request_id=str(request_id))
        raise NoStockAvailableError(category)

    async def finalize(self, code_id: UUID, request_id: UUID) -> InventoryCodeData:
        """
        Mark a reserved code as used by the request that holds it.

        Finalizing a code this request already used returns it unchanged.

        Raises:
            NotReservedByCallerError: code is not reserved for request_id
        """
        stmt = (
            update(InventoryCode)
            .where(
                InventoryCode.id == code_id,
                InventoryCode.status == InventoryStatus.RESERVED.value,
                InventoryCode.reserved_for == request_id,
            )
            .values(status=InventoryStatus.USED.value, used_at=_utc_now())
            .returning(InventoryCode.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is not None:
            code = await self._reload(code_id)
            logger.info("inventory_code_used", code_id=str(code_id), request_id=str(request_id))
            return self._code_to_domain(code)

        current = await self.session.get(InventoryCode, code_id, populate_existing=True)
        if (
            current is not None
            and current.status == InventoryStatus.USED.value
            and current.reserved_for == request_id
        ):
            return self._code_to_domain(current)

        logger.error(
            "inventory_finalize_rejected",
            code_id=str(code_id),
            request_id=str(request_id),
            status=current.status if current else None,
            reserved_for=str(current.reserved_for) if current and current.reserved_for else None,
        )
        raise NotReservedByCallerError(code_id, request_id)

    async def reserved_for(self, request_id: UUID) -> InventoryCodeData | None:
        """Code currently reserved for a request, if any."""
        stmt = select(InventoryCode).where(
            InventoryCode.reserved_for == request_id,
            InventoryCode.status == InventoryStatus.RESERVED.value,
        )
        result = await self.session.execute(stmt)
        code = result.scalar_one_or_none()
        return self._code_to_domain(code) if code is not None else None

    async def get_code(self, code_id: UUID) -> InventoryCodeData | None:
        code = await self.session.get(InventoryCode, code_id)
        return self._code_to_domain(code) if code is not None else None

    async def bulk_add(self, category: str, entries: list[CodeEntry]) -> BulkAddResult:
        """
        Import codes into a pool.

        Duplicates (within the batch or already stored) and blank values are
        reported individually; every other code is added. Commits.

        Raises:
            UnknownInventoryPoolError: category is not an inventory pool
        """
        self._check_pool(category)

        errors: list[str] = []
        duplicates: list[str] = []
        candidates: dict[str, CodeEntry] = {}

        for index, entry in enumerate(entries):
            value = entry.code.strip()
            if not value:
                errors.append(f"Entry {index}: code is empty")
                continue
            if value in candidates:
                duplicates.append(value)
                continue
            serial = entry.serial.strip() if entry.serial else None
            candidates[value] = CodeEntry(code=value, serial=serial or None)

        # One retry covers a concurrent import inserting the same values
        for attempt in range(2):
            existing = await self._existing_values(category, list(candidates))
            to_insert = [e for value, e in candidates.items() if value not in existing]
            self.session.add_all(
                InventoryCode(category=category, code_value=e.code, serial=e.serial)
                for e in to_insert
            )
            try:
                await self.session.flush()
            except IntegrityError:
                await self.session.rollback()
                if attempt == 1:
                    raise WriteVerificationError(
                        f"Bulk import into {category} kept conflicting with concurrent writers"
                    )
                logger.warning("inventory_bulk_add_conflict", category=category)
                continue

            await self.session.commit()
            duplicates.extend(value for value in candidates if value in existing)
            break

        metrics.inventory_codes_added_total.labels(category=category).inc(len(to_insert))
        logger.info(
            "inventory_codes_added",
            category=category,
            added=len(to_insert),
            duplicates=len(duplicates),
            errors=len(errors),
        )
        return BulkAddResult(
            category=category,
            added=len(to_insert),
            duplicates=tuple(duplicates),
            errors=tuple(errors),
        )

    async def add_code(
        self, category: str, code_value: str, serial: str | None = None
    ) -> InventoryCodeData:
        """
        Add one code to a pool. Commits.

        Raises:
            UnknownInventoryPoolError: category is not an inventory pool
            DuplicateCodeError: code already exists in the pool
        """
        self._check_pool(category)
        value = code_value.strip()
        if not value:
            raise ValueError("Inventory code cannot be empty")

        code = InventoryCode(category=category, code_value=value, serial=serial)
        self.session.add(code)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            raise DuplicateCodeError(category, value)

        await self.session.commit()
        metrics.inventory_codes_added_total.labels(category=category).inc()
        return self._code_to_domain(code)

    async def stock_summary(self, category: str) -> StockSummary:
        """Count a pool's codes per status."""
        self._check_pool(category)
        stmt = (
            select(InventoryCode.status, func.count())
            .where(InventoryCode.category == category)
            .group_by(InventoryCode.status)
        )
        result = await self.session.execute(stmt)
        counts = {status: count for status, count in result.all()}
        return StockSummary(
            category=category,
            unused=counts.get(InventoryStatus.UNUSED.value, 0),
            reserved=counts.get(InventoryStatus.RESERVED.value, 0),
            used=counts.get(InventoryStatus.USED.value, 0),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _check_pool(self, category: str) -> None:
        if category not in INVENTORY_POOLS:
            raise UnknownInventoryPoolError(category)

    async def _existing_values(self, category: str, values: list[str]) -> set[str]:
        found: set[str] = set()
        for start in range(0, len(values), LOOKUP_CHUNK_SIZE):
            chunk = values[start : start + LOOKUP_CHUNK_SIZE]
            stmt = select(InventoryCode.code_value).where(
                InventoryCode.category == category,
                InventoryCode.code_value.in_(chunk),
            )
            result = await self.session.execute(stmt)
            found.update(result.scalars().all())
        return found

    async def _count(self, category: str, status: InventoryStatus) -> int:
        stmt = select(func.count()).where(
            InventoryCode.category == category,
            InventoryCode.status == status.value,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def _reload(self, code_id: UUID) -> InventoryCode:
        code = await self.session.get(InventoryCode, code_id, populate_existing=True)
        if code is None:
            raise WriteVerificationError(f"Inventory code {code_id} not found after update")
        return code

    def _code_to_domain(self, code: InventoryCode) -> InventoryCodeData:
        """Convert ORM code to domain model."""
        return InventoryCodeData(
            code_id=code.id,
            category=code.category,
            code_value=code.code_value,
            serial=code.serial,
            status=InventoryStatus(code.status),
            reserved_for=code.reserved_for,
            used_at=code.used_at,
        )
