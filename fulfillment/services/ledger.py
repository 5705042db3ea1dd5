"""
Ledger Service - Append-only, replay-safe wallet mutations.

NO DICTIONARIES - All operations use strongly typed domain models.

Every mutation is keyed by a unique idempotency key ("pay:{request_id}",
"refund:{request_id}", "deposit:{reference}"). The balance guard lives in the
UPDATE statement itself, so concurrent debits can never drive a wallet
negative.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fulfillment.config import settings
from fulfillment.db.models import LedgerEntry, Wallet
from fulfillment.exceptions import (
    DuplicateOperationError,
    InsufficientFundsError,
    WriteVerificationError,
)
from fulfillment.models.api import LedgerDirection
from fulfillment.models.domain import LedgerEntryData, WalletData
from fulfillment.observability.metrics import metrics

logger = get_logger(__name__)


def pay_key(request_id: UUID) -> str:
    return f"{LedgerDirection.PAY.value}:{request_id}"


def refund_key(request_id: UUID) -> str:
    return f"{LedgerDirection.REFUND.value}:{request_id}"


def deposit_key(reference: str) -> str:
    return f"{LedgerDirection.DEPOSIT.value}:{reference}"


class LedgerService:
    """
    Wallet ledger.

    apply() is a primitive: it flushes but never commits, so the caller's
    transaction decides whether the mutation sticks. deposit() is a complete
    unit of work and commits.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger service with database session."""
        self.session = session

    async def apply(
        self,
        user_id: str,
        amount_minor: int,
        idempotency_key: str,
        direction: LedgerDirection,
        request_id: UUID | None = None,
        description: str | None = None,
    ) -> LedgerEntryData:
        """
        Apply a signed amount to a user's wallet exactly once.

        Negative amounts are debits, positive amounts are credits.

        Raises:
            DuplicateOperationError: key already applied (carries the prior entry)
            InsufficientFundsError: debit would drive the balance negative
            WriteVerificationError: entry could not be read back after insert
        """
        if amount_minor == 0:
            raise ValueError("Ledger amount cannot be zero")

        existing = await self._find_entry_by_key(idempotency_key)
        if existing is not None:
            metrics.record_ledger_mutation(direction.value, "duplicate", amount_minor)
            raise DuplicateOperationError(self._entry_to_domain(existing))

        balance_after = await self._adjust_balance(user_id, amount_minor)
        if balance_after is None:
            balance = await self._current_balance(user_id)
            metrics.record_ledger_mutation(direction.value, "insufficient", amount_minor)
            logger.info(
                "ledger_insufficient_funds",
                user_id=user_id,
                balance_minor=balance,
                required_minor=-amount_minor,
                idempotency_key=idempotency_key,
            )
            raise InsufficientFundsError(balance, -amount_minor)

        entry = LedgerEntry(
            user_id=user_id,
            amount_minor=amount_minor,
            direction=direction.value,
            idempotency_key=idempotency_key,
            balance_after=balance_after,
            request_id=request_id,
            description=description,
        )
        self.session.add(entry)

        try:
            await self.session.flush()
        except IntegrityError:
            # A concurrent writer inserted the same key first. The rollback
            # discards this transaction, including the balance change above.
            await self.session.rollback()
            prior = await self._find_entry_by_key(idempotency_key)
            if prior is None:
                raise WriteVerificationError(
                    f"Ledger entry {idempotency_key} conflicted but cannot be found"
                )
            metrics.record_ledger_mutation(direction.value, "duplicate", amount_minor)
            raise DuplicateOperationError(self._entry_to_domain(prior))

        verified = await self.session.get(LedgerEntry, entry.id)
        if verified is None:
            raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")

        metrics.record_ledger_mutation(direction.value, "applied", amount_minor)
        logger.info(
            "ledger_entry_applied",
            user_id=user_id,
            amount_minor=amount_minor,
            direction=direction.value,
            idempotency_key=idempotency_key,
            balance_after=balance_after,
        )
        return self._entry_to_domain(verified)

    async def deposit(
        self, user_id: str, amount_minor: int, reference: str, description: str | None = None
    ) -> LedgerEntryData:
        """
        Fund a wallet. Replaying the same reference returns the original entry.
        """
        if amount_minor <= 0:
            raise ValueError(f"Deposit amount must be positive: {amount_minor}")

        try:
            entry = await self.apply(
                user_id,
                amount_minor,
                deposit_key(reference),
                LedgerDirection.DEPOSIT,
                description=description,
            )
        except DuplicateOperationError as e:
            await self.session.rollback()
            return e.prior

        await self.session.commit()
        return entry

    async def get_balance(self, user_id: str) -> WalletData:
        """Get a wallet snapshot. Users without a wallet have a zero balance."""
        wallet = await self._find_wallet(user_id)
        if wallet is None:
            return WalletData(user_id=user_id, balance_minor=0, currency=settings.currency)
        return WalletData(
            user_id=wallet.user_id,
            balance_minor=wallet.balance_minor,
            currency=wallet.currency,
        )

    async def find_entry(self, idempotency_key: str) -> LedgerEntryData | None:
        entry = await self._find_entry_by_key(idempotency_key)
        return self._entry_to_domain(entry) if entry is not None else None

    async def list_entries(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[LedgerEntryData]:
        """List a user's wallet mutations, newest first."""
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [self._entry_to_domain(e) for e in result.scalars().all()]

    async def entries_for_request(self, request_id: UUID) -> list[LedgerEntryData]:
        """All wallet mutations tied to one service request, oldest first."""
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.request_id == request_id)
            .order_by(LedgerEntry.created_at)
        )
        result = await self.session.execute(stmt)
        return [self._entry_to_domain(e) for e in result.scalars().all()]

    async def net_for_request(self, request_id: UUID) -> int:
        """Signed sum of all mutations tied to a request."""
        stmt = select(func.coalesce(func.sum(LedgerEntry.amount_minor), 0)).where(
            LedgerEntry.request_id == request_id
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _adjust_balance(self, user_id: str, amount_minor: int) -> int | None:
        """
        Conditionally add amount_minor to the balance.

        Returns the new balance, or None when the guard rejected the change.
        Credits create the wallet on first use.
        """
        stmt = (
            update(Wallet)
            .where(
                Wallet.user_id == user_id,
                Wallet.balance_minor + amount_minor >= 0,
            )
            .values(balance_minor=Wallet.balance_minor + amount_minor)
            .returning(Wallet.balance_minor)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is not None or amount_minor < 0:
            return new_balance

        if await self._find_wallet(user_id) is not None:
            return None

        wallet = Wallet(user_id=user_id, balance_minor=amount_minor, currency=settings.currency)
        self.session.add(wallet)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            logger.error("wallet_creation_race", user_id=user_id, error=str(e))
            raise WriteVerificationError(f"Wallet creation for {user_id} failed due to race")
        return wallet.balance_minor

    async def _current_balance(self, user_id: str) -> int:
        wallet = await self._find_wallet(user_id)
        return wallet.balance_minor if wallet is not None else 0

    async def _find_wallet(self, user_id: str) -> Wallet | None:
        stmt = select(Wallet).where(Wallet.user_id == user_id).execution_options(
            populate_existing=True
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_entry_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        """Find entry by idempotency key."""
        stmt = select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _entry_to_domain(self, entry: LedgerEntry) -> LedgerEntryData:
        """Convert ORM entry to domain model."""
        return LedgerEntryData(
            entry_id=entry.id,
            user_id=entry.user_id,
            amount_minor=entry.amount_minor,
            direction=LedgerDirection(entry.direction),
            idempotency_key=entry.idempotency_key,
            balance_after=entry.balance_after,
            request_id=entry.request_id,
            description=entry.description,
            created_at=entry.created_at,
        )
