"""
Ledger Service - Sole writer of account balances.

All balance mutations follow the pattern:
1. Check idempotency key (replay returns the prior transaction)
2. Lock balance row and validate status / availability
3. Compare-and-set the balance on its version, insert the transaction
4. Read back and verify the arithmetic
5. Commit
"""

import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from billing_engine.config import settings
from billing_engine.db.models import AccountBalance, AccountTransaction, utc_now
from billing_engine.exceptions import (
    BalanceNotActiveError,
    ConcurrencyError,
    ConsistencyViolationError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidTransitionError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from billing_engine.models.domain import BalanceData, TransactionData
from billing_engine.models.enums import (
    CREDIT_TYPES,
    DEBIT_TYPES,
    BalanceStatus,
    TransactionStatus,
    TransactionType,
    signed_amount,
)
from billing_engine.observability.metrics import metrics

logger = get_logger(__name__)


def balance_data(balance: AccountBalance) -> BalanceData:
    return BalanceData(
        balance_id=balance.id,
        owner_ref=balance.owner_ref,
        currency=balance.currency,
        reference_code=balance.reference_code,
        balance_type=balance.balance_type,
        current_balance_cents=balance.current_balance_cents,
        credit_limit_cents=balance.credit_limit_cents,
        minimum_balance_cents=balance.minimum_balance_cents,
        held_cents=balance.held_cents,
        status=balance.status,
        version=balance.version,
        expires_at=balance.expires_at,
        created_at=balance.created_at,
        updated_at=balance.updated_at,
    )


def transaction_data(txn: AccountTransaction) -> TransactionData:
    return TransactionData(
        transaction_id=txn.id,
        balance_id=txn.balance_id,
        transaction_type=txn.transaction_type,
        amount_cents=txn.amount_cents,
        currency=txn.currency,
        balance_before_cents=txn.balance_before_cents,
        balance_after_cents=txn.balance_after_cents,
        status=txn.status,
        sequence=txn.sequence,
        description=txn.description,
        idempotency_key=txn.idempotency_key,
        payment_id=txn.payment_id,
        created_at=txn.created_at,
        completed_at=txn.completed_at,
        is_hold=txn.is_hold,
    )


class _LostRace(Exception):
    """Internal signal: the version compare-and-set or a unique insert lost a race."""


class LedgerService:
    """
    Append-only money ledger with write verification.

    Each public mutation runs in its own short transaction obtained from the
    session factory. Callers never pass a session in.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.ledger_cas_max_attempts
        self._clock = clock

    # ========================================================================
    # Balances
    # ========================================================================

    async def open_balance(
        self,
        owner_ref: str,
        currency: str,
        reference_code: str = "main_wallet",
        balance_type: str = "general",
        credit_limit_cents: int = 0,
        minimum_balance_cents: int = 0,
        expires_at: datetime | None = None,
    ) -> BalanceData:
        """Get or create the balance for (owner_ref, currency, reference_code)."""
        if not owner_ref:
            raise ValueError("owner_ref cannot be empty")
        if len(currency) != 3:
            raise ValueError(f"Invalid currency code: {currency}")
        if credit_limit_cents < 0:
            raise ValueError(f"Credit limit cannot be negative: {credit_limit_cents}")

        async with self.session_factory() as session:
            existing = await self._find_balance(session, owner_ref, currency, reference_code)
            if existing is not None:
                return balance_data(existing)

            balance = AccountBalance(
                owner_ref=owner_ref,
                currency=currency,
                reference_code=reference_code,
                balance_type=balance_type,
                current_balance_cents=0,
                credit_limit_cents=credit_limit_cents,
                minimum_balance_cents=minimum_balance_cents,
                held_cents=0,
                expires_at=expires_at,
                status=BalanceStatus.ACTIVE,
                version=0,
            )
            session.add(balance)
            try:
                await session.commit()
            except IntegrityError:
                # Race condition - opened by another request
                await session.rollback()
                existing = await self._find_balance(session, owner_ref, currency, reference_code)
                if existing is None:
                    raise WriteVerificationError(
                        f"Balance creation failed for {owner_ref}/{currency}/{reference_code}"
                    )
                return balance_data(existing)

            logger.info(
                "balance_opened",
                balance_id=str(balance.id),
                owner_ref=owner_ref,
                currency=currency,
                reference_code=reference_code,
            )
            return balance_data(balance)

    async def get_balance(self, balance_id: UUID) -> BalanceData:
        async with self.session_factory() as session:
            balance = await session.get(AccountBalance, balance_id)
            if balance is None:
                raise ResourceNotFoundError("AccountBalance", balance_id)
            return balance_data(balance)

    async def get_available(self, balance_id: UUID) -> int:
        """current + credit_limit - minimum - held, or 0 once expired."""
        balance = await self.get_balance(balance_id)
        return balance.available_cents(self._clock())

    async def set_status(self, balance_id: UUID, status: BalanceStatus) -> BalanceData:
        """Freeze, suspend or reactivate a balance."""
        async with self.session_factory() as session:
            balance = await self._lock_balance(session, balance_id)
            previous = balance.status
            balance.status = status
            await session.commit()

            logger.info(
                "balance_status_changed",
                balance_id=str(balance_id),
                from_status=previous.value,
                to_status=status.value,
            )
            return balance_data(balance)

    # ========================================================================
    # Postings
    # ========================================================================

    async def credit(
        self,
        balance_id: UUID,
        amount_cents: int,
        description: str,
        idempotency_key: str,
        transaction_type: TransactionType = TransactionType.CREDIT,
        payment_id: UUID | None = None,
    ) -> TransactionData:
        """Add money to a balance (credit, refund or adjustment)."""
        if transaction_type not in CREDIT_TYPES:
            raise ValueError(f"{transaction_type.value} is not a credit type")
        return await self._post(
            balance_id, transaction_type, amount_cents, description, idempotency_key, payment_id
        )

    async def debit(
        self,
        balance_id: UUID,
        amount_cents: int,
        description: str,
        idempotency_key: str,
        transaction_type: TransactionType = TransactionType.DEBIT,
        payment_id: UUID | None = None,
    ) -> TransactionData:
        """
        Take exactly amount_cents from a balance.

        Raises:
            InsufficientBalanceError: available < amount_cents
            BalanceNotActiveError: Balance frozen, suspended or expired
        """
        if transaction_type not in DEBIT_TYPES:
            raise ValueError(f"{transaction_type.value} is not a debit type")
        return await self._post(
            balance_id, transaction_type, amount_cents, description, idempotency_key, payment_id
        )

    async def _post(
        self,
        balance_id: UUID,
        transaction_type: TransactionType,
        amount_cents: int,
        description: str,
        idempotency_key: str,
        payment_id: UUID | None,
    ) -> TransactionData:
        _validate_posting(amount_cents, description, idempotency_key)
        spending = transaction_type in DEBIT_TYPES

        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                replay = await self._replay(
                    session, balance_id, idempotency_key, transaction_type, amount_cents, False
                )
                if replay is not None:
                    return replay

                balance = await self._lock_balance(session, balance_id)
                now = self._clock()
                self._ensure_mutable(balance, spending, now)
                if spending:
                    self._ensure_available(balance, amount_cents, now)

                old_version = balance.version
                before = balance.current_balance_cents
                after = before + signed_amount(transaction_type, amount_cents)
                new_version = old_version + 1

                txn = AccountTransaction(
                    id=uuid.uuid4(),
                    balance_id=balance_id,
                    transaction_type=transaction_type,
                    amount_cents=amount_cents,
                    currency=balance.currency,
                    balance_before_cents=before,
                    balance_after_cents=after,
                    status=TransactionStatus.COMPLETED,
                    sequence=new_version,
                    description=description,
                    idempotency_key=idempotency_key,
                    payment_id=payment_id,
                    created_at=now,
                    completed_at=now,
                )
                try:
                    await self._compare_and_set(
                        session,
                        balance_id,
                        old_version,
                        current_balance_cents=after,
                        version=new_version,
                        last_transaction_at=now,
                        updated_at=now,
                    )
                    session.add(txn)
                    await self._flush(session)
                except _LostRace:
                    await session.rollback()
                    self._log_lost_race(balance_id, attempt, idempotency_key)
                    continue

                await self._verify_write(
                    session,
                    balance_id,
                    txn.id,
                    expected_balance=after,
                    expected_held=balance.held_cents,
                    expected_version=new_version,
                )
                await session.commit()

            metrics.record_posting(
                transaction_type.value, TransactionStatus.COMPLETED.value, amount_cents
            )
            logger.info(
                "ledger_posted",
                balance_id=str(balance_id),
                transaction_id=str(txn.id),
                transaction_type=transaction_type.value,
                amount_cents=amount_cents,
                balance_before=before,
                balance_after=after,
                sequence=new_version,
            )
            return transaction_data(txn)

        raise ConcurrencyError(f"AccountBalance {balance_id}")

    # ========================================================================
    # Holds
    # ========================================================================

    async def hold(
        self,
        balance_id: UUID,
        amount_cents: int,
        description: str,
        idempotency_key: str,
        payment_id: UUID | None = None,
    ) -> TransactionData:
        """
        Reserve funds as a pending debit.

        The hold reduces availability immediately but does not move
        current_balance_cents until captured.
        """
        _validate_posting(amount_cents, description, idempotency_key)

        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                replay = await self._replay(
                    session, balance_id, idempotency_key, TransactionType.DEBIT, amount_cents, True
                )
                if replay is not None:
                    return replay

                balance = await self._lock_balance(session, balance_id)
                now = self._clock()
                self._ensure_mutable(balance, True, now)
                self._ensure_available(balance, amount_cents, now)

                old_version = balance.version
                before = balance.current_balance_cents
                held = balance.held_cents + amount_cents
                txn = AccountTransaction(
                    id=uuid.uuid4(),
                    balance_id=balance_id,
                    transaction_type=TransactionType.DEBIT,
                    amount_cents=amount_cents,
                    currency=balance.currency,
                    balance_before_cents=before,
                    balance_after_cents=before - amount_cents,
                    status=TransactionStatus.PENDING,
                    sequence=None,
                    is_hold=True,
                    description=description,
                    idempotency_key=idempotency_key,
                    payment_id=payment_id,
                    created_at=now,
                )
                try:
                    await self._compare_and_set(
                        session,
                        balance_id,
                        old_version,
                        held_cents=held,
                        version=old_version + 1,
                        updated_at=now,
                    )
                    session.add(txn)
                    await self._flush(session)
                except _LostRace:
                    await session.rollback()
                    self._log_lost_race(balance_id, attempt, idempotency_key)
                    continue

                await self._verify_write(
                    session,
                    balance_id,
                    txn.id,
                    expected_balance=before,
                    expected_held=held,
                    expected_version=old_version + 1,
                )
                await session.commit()

            metrics.record_posting("hold", TransactionStatus.PENDING.value, amount_cents)
            logger.info(
                "ledger_hold_placed",
                balance_id=str(balance_id),
                transaction_id=str(txn.id),
                amount_cents=amount_cents,
                held_cents=held,
            )
            return transaction_data(txn)

        raise ConcurrencyError(f"AccountBalance {balance_id}")

    async def capture_hold(self, transaction_id: UUID) -> TransactionData:
        """Post a pending hold. Capturing an already captured hold is a no-op."""
        return await self._settle_hold(transaction_id, TransactionStatus.COMPLETED)

    async def release_hold(self, transaction_id: UUID) -> TransactionData:
        """Cancel a pending hold and free its funds. Releasing twice is a no-op."""
        return await self._settle_hold(transaction_id, TransactionStatus.REVERSED)

    async def _settle_hold(
        self, transaction_id: UUID, target: TransactionStatus
    ) -> TransactionData:
        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                stmt = (
                    select(AccountTransaction)
                    .where(AccountTransaction.id == transaction_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                txn = (await session.execute(stmt)).scalar_one_or_none()
                if txn is None:
                    raise ResourceNotFoundError("AccountTransaction", transaction_id)
                if txn.status == target:
                    return transaction_data(txn)
                if txn.status != TransactionStatus.PENDING:
                    raise InvalidTransitionError(transaction_id, txn.status.value, target.value)

                balance = await self._lock_balance(session, txn.balance_id)
                now = self._clock()
                self._ensure_mutable(balance, False, now)

                old_version = balance.version
                new_version = old_version + 1
                held = balance.held_cents - txn.amount_cents
                expected_balance = balance.current_balance_cents
                values: dict[str, Any] = {
                    "held_cents": held,
                    "version": new_version,
                    "updated_at": now,
                }

                before = balance.current_balance_cents
                if target == TransactionStatus.COMPLETED:
                    expected_balance = before - txn.amount_cents
                    values["current_balance_cents"] = expected_balance
                    values["last_transaction_at"] = now

                try:
                    await self._compare_and_set(session, balance.id, old_version, **values)
                    if target == TransactionStatus.COMPLETED:
                        # Posted at capture time: snapshot and sequence reflect the capture
                        txn.balance_before_cents = before
                        txn.balance_after_cents = expected_balance
                        txn.sequence = new_version
                        txn.completed_at = now
                    txn.status = target
                    await self._flush(session)
                except _LostRace:
                    await session.rollback()
                    self._log_lost_race(balance.id, attempt, txn.idempotency_key)
                    continue

                await self._verify_write(
                    session,
                    balance.id,
                    txn.id,
                    expected_balance=expected_balance,
                    expected_held=held,
                    expected_version=new_version,
                )
                await session.commit()

            metrics.record_posting("hold", target.value, txn.amount_cents)
            logger.info(
                "ledger_hold_settled",
                balance_id=str(txn.balance_id),
                transaction_id=str(transaction_id),
                status=target.value,
                amount_cents=txn.amount_cents,
            )
            return transaction_data(txn)

        raise ConcurrencyError(f"AccountTransaction {transaction_id}")

    # ========================================================================
    # Queries & Audit
    # ========================================================================

    async def list_transactions(
        self, balance_id: UUID, status: TransactionStatus | None = None
    ) -> list[TransactionData]:
        """Transactions in posting order; unposted (pending/reversed) entries last."""
        async with self.session_factory() as session:
            stmt = select(AccountTransaction).where(AccountTransaction.balance_id == balance_id)
            if status is not None:
                stmt = stmt.where(AccountTransaction.status == status)
            stmt = stmt.order_by(
                AccountTransaction.sequence.is_(None),
                AccountTransaction.sequence,
                AccountTransaction.created_at,
            )
            result = await session.execute(stmt)
            return [transaction_data(txn) for txn in result.scalars().all()]

    async def verify_balance(self, balance_id: UUID) -> BalanceData:
        """
        Audit a balance by replaying its completed transactions.

        Every completed entry must start where the previous one ended, the
        chain must end at current_balance_cents, and pending holds must add
        up to held_cents. Any break freezes the balance.

        Raises:
            ConsistencyViolationError: The ledger does not add up
        """
        async with self.session_factory() as session:
            balance = await session.get(AccountBalance, balance_id)
            if balance is None:
                raise ResourceNotFoundError("AccountBalance", balance_id)

            stmt = (
                select(AccountTransaction)
                .where(
                    AccountTransaction.balance_id == balance_id,
                    AccountTransaction.status.in_(
                        [TransactionStatus.COMPLETED, TransactionStatus.PENDING]
                    ),
                )
                .order_by(AccountTransaction.sequence)
            )
            transactions = list((await session.execute(stmt)).scalars().all())

            running = 0
            held = 0
            problems: list[str] = []
            for txn in transactions:
                if txn.status == TransactionStatus.PENDING:
                    held += txn.amount_cents
                    continue
                expected_after = txn.balance_before_cents + signed_amount(
                    txn.transaction_type, txn.amount_cents
                )
                if txn.balance_before_cents != running or txn.balance_after_cents != expected_after:
                    problems.append(f"chain break at sequence {txn.sequence}")
                    break
                running = txn.balance_after_cents

            if not problems and running != balance.current_balance_cents:
                problems.append(
                    f"ledger sums to {running}, balance is {balance.current_balance_cents}"
                )
            if held != balance.held_cents:
                problems.append(f"pending holds sum to {held}, held is {balance.held_cents}")

            if problems:
                incident_ref = await self._freeze_for_violation(
                    session, balance_id, "; ".join(problems)
                )
                raise ConsistencyViolationError(balance_id, incident_ref)

            logger.info(
                "balance_verified",
                balance_id=str(balance_id),
                transactions=len(transactions),
                balance=running,
            )
            return balance_data(balance)

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _find_balance(
        self, session: AsyncSession, owner_ref: str, currency: str, reference_code: str
    ) -> AccountBalance | None:
        stmt = select(AccountBalance).where(
            AccountBalance.owner_ref == owner_ref,
            AccountBalance.currency == currency,
            AccountBalance.reference_code == reference_code,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _lock_balance(self, session: AsyncSession, balance_id: UUID) -> AccountBalance:
        """
        Lock balance row for update (SELECT ... FOR UPDATE).

        Prevents concurrent postings against the same balance.
        """
        stmt = (
            select(AccountBalance)
            .where(AccountBalance.id == balance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        balance = (await session.execute(stmt)).scalar_one_or_none()
        if balance is None:
            raise ResourceNotFoundError("AccountBalance", balance_id)
        return balance

    async def _replay(
        self,
        session: AsyncSession,
        balance_id: UUID,
        idempotency_key: str,
        transaction_type: TransactionType,
        amount_cents: int,
        is_hold: bool,
    ) -> TransactionData | None:
        """Return the entry already posted under this key, if it matches the call."""
        stmt = select(AccountTransaction).where(
            AccountTransaction.balance_id == balance_id,
            AccountTransaction.idempotency_key == idempotency_key,
        )
        existing = (await session.execute(stmt)).scalar_one_or_none()
        if existing is None:
            return None
        if (
            existing.amount_cents != amount_cents
            or existing.transaction_type != transaction_type
            or existing.is_hold != is_hold
        ):
            raise IdempotencyConflictError(existing.id)

        logger.info(
            "ledger_posting_replayed",
            balance_id=str(balance_id),
            transaction_id=str(existing.id),
            idempotency_key=idempotency_key,
        )
        return transaction_data(existing)

    def _ensure_mutable(self, balance: AccountBalance, spending: bool, now: datetime) -> None:
        if balance.status != BalanceStatus.ACTIVE:
            raise BalanceNotActiveError(balance.id, balance.status.value)
        if spending and balance.expires_at is not None and balance.expires_at <= now:
            raise BalanceNotActiveError(balance.id, "expired")

    def _ensure_available(self, balance: AccountBalance, amount_cents: int, now: datetime) -> None:
        available = balance_data(balance).available_cents(now)
        if available < amount_cents:
            raise InsufficientBalanceError(balance.id, available, amount_cents)

    async def _compare_and_set(
        self, session: AsyncSession, balance_id: UUID, old_version: int, **values: Any
    ) -> None:
        stmt = (
            update(AccountBalance)
            .where(AccountBalance.id == balance_id, AccountBalance.version == old_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            metrics.ledger_cas_conflicts_total.inc()
            raise _LostRace()

    async def _flush(self, session: AsyncSession) -> None:
        try:
            await session.flush()
        except IntegrityError as e:
            # Same idempotency key or sequence inserted concurrently
            raise _LostRace() from e

    def _log_lost_race(self, balance_id: UUID, attempt: int, idempotency_key: str) -> None:
        logger.warning(
            "ledger_cas_conflict",
            balance_id=str(balance_id),
            attempt=attempt,
            max_attempts=self.max_attempts,
            idempotency_key=idempotency_key,
        )

    async def _verify_write(
        self,
        session: AsyncSession,
        balance_id: UUID,
        transaction_id: UUID,
        expected_balance: int,
        expected_held: int,
        expected_version: int,
    ) -> None:
        """Read back the balance and transaction and check the arithmetic."""
        stmt = (
            select(AccountBalance)
            .where(AccountBalance.id == balance_id)
            .execution_options(populate_existing=True)
        )
        stored = (await session.execute(stmt)).scalar_one()
        txn_stmt = (
            select(AccountTransaction)
            .where(AccountTransaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        txn = (await session.execute(txn_stmt)).scalar_one()

        problems: list[str] = []
        if stored.current_balance_cents != expected_balance:
            problems.append(
                f"balance {stored.current_balance_cents} != expected {expected_balance}"
            )
        if stored.held_cents != expected_held:
            problems.append(f"held {stored.held_cents} != expected {expected_held}")
        if stored.version != expected_version:
            problems.append(f"version {stored.version} != expected {expected_version}")
        if txn.balance_after_cents != txn.balance_before_cents + signed_amount(
            txn.transaction_type, txn.amount_cents
        ):
            problems.append(f"transaction {txn.id} before/after do not match its amount")

        if problems:
            incident_ref = await self._freeze_for_violation(
                session, balance_id, "; ".join(problems)
            )
            raise ConsistencyViolationError(balance_id, incident_ref)

    async def _freeze_for_violation(
        self, session: AsyncSession, balance_id: UUID, detail: str
    ) -> str:
        """Roll back, freeze the balance and return an opaque incident reference."""
        incident_ref = uuid.uuid4().hex[:12]
        await session.rollback()
        await session.execute(
            update(AccountBalance)
            .where(AccountBalance.id == balance_id)
            .values(status=BalanceStatus.FROZEN, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        metrics.consistency_violations_total.inc()
        metrics.record_error("consistency_violation", "ledger")
        logger.error(
            "ledger_consistency_violation",
            balance_id=str(balance_id),
            incident_ref=incident_ref,
            detail=detail,
        )
        return incident_ref


def _validate_posting(amount_cents: int, description: str, idempotency_key: str) -> None:
    if amount_cents <= 0:
        raise ValueError(f"Amount must be positive: {amount_cents}")
    if not description:
        raise ValueError("Description cannot be empty")
    if not idempotency_key:
        raise ValueError("idempotency_key cannot be empty")
