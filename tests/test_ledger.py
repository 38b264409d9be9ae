"""
Tests for LedgerService.

Runs against a real (SQLite) database so the compare-and-set and
read-back verification paths execute for real.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from billing_engine.db.models import AccountBalance
from billing_engine.exceptions import (
    BalanceNotActiveError,
    BillingError,
    ConsistencyViolationError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidTransitionError,
    ResourceNotFoundError,
)
from billing_engine.models.enums import BalanceStatus, TransactionStatus, TransactionType
from billing_engine.services.ledger import LedgerService


class TestOpenBalance:
    """Tests for opening balances."""

    async def test_open_balance_starts_empty(self, ledger: LedgerService) -> None:
        """A new balance is active with zero balance and version."""
        balance = await ledger.open_balance("user-1", "USD")

        assert balance.current_balance_cents == 0
        assert balance.held_cents == 0
        assert balance.version == 0
        assert balance.status == BalanceStatus.ACTIVE
        assert balance.reference_code == "main_wallet"

    async def test_open_balance_is_get_or_create(self, ledger: LedgerService) -> None:
        """Opening the same (owner, currency, reference) twice returns one balance."""
        first = await ledger.open_balance("user-1", "USD")
        second = await ledger.open_balance("user-1", "USD")
        other = await ledger.open_balance("user-1", "USD", reference_code="promo")

        assert first.balance_id == second.balance_id
        assert other.balance_id != first.balance_id

    async def test_open_balance_rejects_bad_currency(self, ledger: LedgerService) -> None:
        """Currency must be a 3-letter code."""
        with pytest.raises(ValueError, match="currency"):
            await ledger.open_balance("user-1", "DOLLARS")

    async def test_get_balance_not_found(self, ledger: LedgerService) -> None:
        """Unknown balance IDs raise ResourceNotFoundError."""
        from uuid import uuid4

        with pytest.raises(ResourceNotFoundError):
            await ledger.get_balance(uuid4())


class TestPostings:
    """Tests for credits and debits."""

    async def test_credit_records_snapshot_and_sequence(self, ledger: LedgerService) -> None:
        """Credits add to the balance and record before/after snapshots."""
        balance = await ledger.open_balance("user-1", "USD")

        txn = await ledger.credit(balance.balance_id, 1500, "Top up", "topup-1")

        assert txn.transaction_type == TransactionType.CREDIT
        assert txn.balance_before_cents == 0
        assert txn.balance_after_cents == 1500
        assert txn.sequence == 1
        assert txn.status == TransactionStatus.COMPLETED
        updated = await ledger.get_balance(balance.balance_id)
        assert updated.current_balance_cents == 1500
        assert updated.version == 1

    async def test_debit_reduces_balance(self, make_balance, ledger: LedgerService) -> None:
        """Debits take exactly the requested amount."""
        balance = await make_balance(1000)

        txn = await ledger.debit(balance.balance_id, 400, "Usage", "usage-1")

        assert txn.balance_before_cents == 1000
        assert txn.balance_after_cents == 600
        assert (await ledger.get_available(balance.balance_id)) == 600

    async def test_debit_insufficient_balance_leaves_no_trace(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """An overdraft raises and writes nothing."""
        balance = await make_balance(300)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger.debit(balance.balance_id, 500, "Usage", "usage-1")

        assert exc_info.value.available == 300
        assert exc_info.value.required == 500
        after = await ledger.get_balance(balance.balance_id)
        assert after.current_balance_cents == 300
        assert len(await ledger.list_transactions(balance.balance_id)) == 1

    async def test_replay_returns_original_transaction(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """Same key and amount returns the first transaction without re-applying it."""
        balance = await make_balance(1000)

        first = await ledger.debit(balance.balance_id, 250, "Usage", "usage-1")
        second = await ledger.debit(balance.balance_id, 250, "Usage", "usage-1")

        assert first.transaction_id == second.transaction_id
        after = await ledger.get_balance(balance.balance_id)
        assert after.current_balance_cents == 750

    async def test_key_reuse_with_different_amount_conflicts(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """Reusing a key with a different amount raises IdempotencyConflictError."""
        balance = await make_balance(1000)
        first = await ledger.debit(balance.balance_id, 250, "Usage", "usage-1")

        with pytest.raises(IdempotencyConflictError) as exc_info:
            await ledger.debit(balance.balance_id, 300, "Usage", "usage-1")

        assert exc_info.value.existing_id == first.transaction_id

    async def test_credit_limit_allows_negative_balance(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """available = current + credit_limit - minimum - held."""
        balance = await make_balance(0, credit_limit_cents=500)

        txn = await ledger.debit(balance.balance_id, 300, "Usage", "usage-1")

        assert txn.balance_after_cents == -300
        assert (await ledger.get_available(balance.balance_id)) == 200

    async def test_minimum_balance_is_not_spendable(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """Funds below minimum_balance_cents cannot be debited."""
        balance = await make_balance(1000, minimum_balance_cents=200)

        assert (await ledger.get_available(balance.balance_id)) == 800
        with pytest.raises(InsufficientBalanceError):
            await ledger.debit(balance.balance_id, 900, "Usage", "usage-1")

    async def test_posting_type_must_match_direction(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """credit() only accepts credit types and debit() only debit types."""
        balance = await make_balance(1000)

        with pytest.raises(ValueError):
            await ledger.credit(
                balance.balance_id, 100, "Fee", "k1", transaction_type=TransactionType.FEE
            )
        with pytest.raises(ValueError):
            await ledger.debit(
                balance.balance_id, 100, "Refund", "k2", transaction_type=TransactionType.REFUND
            )

    async def test_fee_debits_and_adjustment_credits(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """Fees reduce the balance, adjustments increase it."""
        balance = await make_balance(1000)

        await ledger.debit(balance.balance_id, 50, "Fee", "fee-1", TransactionType.FEE)
        await ledger.credit(
            balance.balance_id, 20, "Goodwill", "adj-1", TransactionType.ADJUSTMENT
        )

        after = await ledger.get_balance(balance.balance_id)
        assert after.current_balance_cents == 970

    @pytest.mark.parametrize("amount", [0, -100])
    async def test_non_positive_amount_rejected(
        self, make_balance, ledger: LedgerService, amount: int
    ) -> None:
        """Amounts are positive magnitudes."""
        balance = await make_balance(1000)
        with pytest.raises(ValueError, match="positive"):
            await ledger.debit(balance.balance_id, amount, "Usage", "usage-1")


class TestBalanceStatus:
    """Tests for frozen, suspended and expired balances."""

    @pytest.mark.parametrize("status", [BalanceStatus.FROZEN, BalanceStatus.SUSPENDED])
    async def test_inactive_balance_rejects_all_postings(
        self, make_balance, ledger: LedgerService, status: BalanceStatus
    ) -> None:
        """Frozen and suspended balances reject credits and debits."""
        balance = await make_balance(1000)
        await ledger.set_status(balance.balance_id, status)

        with pytest.raises(BalanceNotActiveError):
            await ledger.debit(balance.balance_id, 100, "Usage", "usage-1")
        with pytest.raises(BalanceNotActiveError):
            await ledger.credit(balance.balance_id, 100, "Top up", "topup-1")

    async def test_reactivated_balance_accepts_postings(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """set_status back to active re-enables postings."""
        balance = await make_balance(1000)
        await ledger.set_status(balance.balance_id, BalanceStatus.FROZEN)
        await ledger.set_status(balance.balance_id, BalanceStatus.ACTIVE)

        txn = await ledger.debit(balance.balance_id, 100, "Usage", "usage-1")
        assert txn.balance_after_cents == 900

    async def test_expired_balance_rejects_debits_but_accepts_credits(
        self, session_factory
    ) -> None:
        """Past expires_at nothing is available, but money can still come in."""
        now = datetime(2024, 6, 1, tzinfo=UTC)
        ledger = LedgerService(session_factory, clock=lambda: now)
        balance = await ledger.open_balance(
            "user-1", "USD", reference_code="promo", expires_at=now + timedelta(days=1)
        )
        await ledger.credit(balance.balance_id, 1000, "Promo", "promo-1")

        expired = LedgerService(session_factory, clock=lambda: now + timedelta(days=2))
        assert (await expired.get_available(balance.balance_id)) == 0
        with pytest.raises(BalanceNotActiveError) as exc_info:
            await expired.debit(balance.balance_id, 100, "Usage", "usage-1")
        assert exc_info.value.status == "expired"

        txn = await expired.credit(balance.balance_id, 100, "Refund", "refund-1")
        assert txn.balance_after_cents == 1100


class TestHolds:
    """Tests for hold / capture / release."""

    async def test_hold_reduces_available_not_current(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """A hold is a pending debit: held goes up, current stays."""
        balance = await make_balance(1000)

        hold = await ledger.hold(balance.balance_id, 300, "Reservation", "hold-1")

        assert hold.status == TransactionStatus.PENDING
        assert hold.sequence is None
        after = await ledger.get_balance(balance.balance_id)
        assert after.current_balance_cents == 1000
        assert after.held_cents == 300
        assert (await ledger.get_available(balance.balance_id)) == 700

    async def test_capture_posts_the_hold(self, make_balance, ledger: LedgerService) -> None:
        """Capture moves the held amount out of the balance."""
        balance = await make_balance(1000)
        hold = await ledger.hold(balance.balance_id, 300, "Reservation", "hold-1")
        await ledger.debit(balance.balance_id, 100, "Usage", "usage-1")

        captured = await ledger.capture_hold(hold.transaction_id)

        assert captured.status == TransactionStatus.COMPLETED
        assert captured.balance_before_cents == 900
        assert captured.balance_after_cents == 600
        assert captured.sequence is not None
        after = await ledger.get_balance(balance.balance_id)
        assert after.current_balance_cents == 600
        assert after.held_cents == 0

    async def test_hold_key_cannot_be_replayed_as_debit(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """A debit reusing a hold's key conflicts instead of returning the hold."""
        balance = await make_balance(1000)
        hold = await ledger.hold(balance.balance_id, 300, "Reservation", "shared-key")

        with pytest.raises(IdempotencyConflictError):
            await ledger.debit(balance.balance_id, 300, "Usage", "shared-key")

        await ledger.capture_hold(hold.transaction_id)
        with pytest.raises(IdempotencyConflictError):
            await ledger.debit(balance.balance_id, 300, "Usage", "shared-key")

        after = await ledger.get_balance(balance.balance_id)
        assert after.current_balance_cents == 700
        assert len(await ledger.list_transactions(balance.balance_id)) == 2

    async def test_debit_key_cannot_be_replayed_as_hold(
        self, make_balance, ledger: LedgerService
    ) -> None:
        balance = await make_balance(1000)
        await ledger.debit(balance.balance_id, 300, "Usage", "shared-key")

        with pytest.raises(IdempotencyConflictError):
            await ledger.hold(balance.balance_id, 300, "Reservation", "shared-key")

        after = await ledger.get_balance(balance.balance_id)
        assert after.held_cents == 0
        assert after.current_balance_cents == 700

    async def test_hold_replay_returns_the_hold(self, make_balance, ledger: LedgerService) -> None:
        balance = await make_balance(1000)

        first = await ledger.hold(balance.balance_id, 300, "Reservation", "hold-1")
        second = await ledger.hold(balance.balance_id, 300, "Reservation", "hold-1")

        assert second.transaction_id == first.transaction_id
        assert second.is_hold is True
        assert (await ledger.get_balance(balance.balance_id)).held_cents == 300

    async def test_capture_twice_is_noop(self, make_balance, ledger: LedgerService) -> None:
        """Capturing an already captured hold returns it unchanged."""
        balance = await make_balance(1000)
        hold = await ledger.hold(balance.balance_id, 300, "Reservation", "hold-1")

        first = await ledger.capture_hold(hold.transaction_id)
        second = await ledger.capture_hold(hold.transaction_id)

        assert first.sequence == second.sequence
        after = await ledger.get_balance(balance.balance_id)
        assert after.current_balance_cents == 700

    async def test_release_frees_funds(self, make_balance, ledger: LedgerService) -> None:
        """Releasing a hold restores availability without touching current."""
        balance = await make_balance(1000)
        hold = await ledger.hold(balance.balance_id, 300, "Reservation", "hold-1")

        released = await ledger.release_hold(hold.transaction_id)

        assert released.status == TransactionStatus.REVERSED
        after = await ledger.get_balance(balance.balance_id)
        assert after.current_balance_cents == 1000
        assert after.held_cents == 0

    async def test_release_after_capture_is_invalid(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """A captured hold cannot be released."""
        balance = await make_balance(1000)
        hold = await ledger.hold(balance.balance_id, 300, "Reservation", "hold-1")
        await ledger.capture_hold(hold.transaction_id)

        with pytest.raises(InvalidTransitionError):
            await ledger.release_hold(hold.transaction_id)

    async def test_hold_beyond_available_rejected(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """Holds respect availability, including earlier holds."""
        balance = await make_balance(1000)
        await ledger.hold(balance.balance_id, 800, "Reservation", "hold-1")

        with pytest.raises(InsufficientBalanceError):
            await ledger.hold(balance.balance_id, 300, "Reservation", "hold-2")


class TestAudit:
    """Tests for transaction listing and balance verification."""

    async def test_list_transactions_in_posting_order(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """Posted entries come in sequence order, pending holds last."""
        balance = await make_balance(1000)
        await ledger.hold(balance.balance_id, 100, "Reservation", "hold-1")
        await ledger.debit(balance.balance_id, 200, "Usage", "usage-1")

        transactions = await ledger.list_transactions(balance.balance_id)

        assert [t.status for t in transactions] == [
            TransactionStatus.COMPLETED,
            TransactionStatus.COMPLETED,
            TransactionStatus.PENDING,
        ]
        sequences = [t.sequence for t in transactions[:2]]
        assert sequences == sorted(sequences)

        pending = await ledger.list_transactions(
            balance.balance_id, status=TransactionStatus.PENDING
        )
        assert len(pending) == 1

    async def test_verify_balance_passes_for_consistent_ledger(
        self, make_balance, ledger: LedgerService
    ) -> None:
        """Replaying the ledger reproduces current and held amounts."""
        balance = await make_balance(1000)
        await ledger.debit(balance.balance_id, 250, "Usage", "usage-1")
        await ledger.hold(balance.balance_id, 100, "Reservation", "hold-1")

        verified = await ledger.verify_balance(balance.balance_id)

        assert verified.current_balance_cents == 750
        assert verified.status == BalanceStatus.ACTIVE

    async def test_verify_balance_freezes_on_tampering(
        self, make_balance, ledger: LedgerService, session_factory
    ) -> None:
        """A balance that no longer matches its ledger is frozen."""
        balance = await make_balance(1000)
        async with session_factory() as session:
            await session.execute(
                update(AccountBalance)
                .where(AccountBalance.id == balance.balance_id)
                .values(current_balance_cents=5000)
            )
            await session.commit()

        with pytest.raises(ConsistencyViolationError) as exc_info:
            await ledger.verify_balance(balance.balance_id)

        assert len(exc_info.value.incident_ref) == 12
        assert "5000" not in str(exc_info.value)
        frozen = await ledger.get_balance(balance.balance_id)
        assert frozen.status == BalanceStatus.FROZEN


class TestConcurrency:
    """Tests for concurrent postings on one balance."""

    async def test_concurrent_debits_never_overdraw(
        self, make_balance, session_factory
    ) -> None:
        """Ten racing debits of 100 against 500: exactly five succeed."""
        balance = await make_balance(500)
        ledger = LedgerService(session_factory, max_attempts=20)

        results = await asyncio.gather(
            *[
                ledger.debit(balance.balance_id, 100, "Usage", f"usage-{i}")
                for i in range(10)
            ],
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, BaseException)]
        failed = [r for r in results if isinstance(r, BaseException)]
        assert len(succeeded) == 5
        assert all(isinstance(e, InsufficientBalanceError) for e in failed)
        assert all(isinstance(e, BillingError) for e in failed)

        after = await ledger.verify_balance(balance.balance_id)
        assert after.current_balance_cents == 0
        assert sorted(t.sequence for t in succeeded) == list(range(2, 7))
