"""
Payment Router - Splits a charge between an account balance and a payment method.

Routing is a two-step saga:
1. The Payment row and its planned breakdown are persisted before money moves
2. The leading source is charged, then the fallback source
3. If the second step fails the first is compensated synchronously

A retried call with the same idempotency key resumes the persisted plan, and
both the ledger and the provider receive the same key, so no step runs twice.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from billing_engine.db.models import Payment, utc_now
from billing_engine.exceptions import (
    BillingError,
    CompensationError,
    CurrencyMismatchError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    PaymentFailedError,
    PaymentProviderError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from billing_engine.models.domain import PaymentData, PaymentRequest, SourceBreakdown
from billing_engine.models.enums import (
    TERMINAL_PAYMENT_STATUSES,
    PaymentPriority,
    PaymentStatus,
    TransactionType,
)
from billing_engine.observability.logging import log_context
from billing_engine.observability.metrics import metrics
from billing_engine.observability.tracing import trace_operation
from billing_engine.services import events
from billing_engine.services.customers import CustomerService
from billing_engine.services.ledger import LedgerService
from billing_engine.services.payment_provider import ChargeResult, ProviderRegistry

logger = get_logger(__name__)

REVERSAL_SUFFIX = ":reversal"
REFUND_SUFFIX = ":refund"


def payment_data(payment: Payment) -> PaymentData:
    return PaymentData(
        payment_id=payment.id,
        idempotency_key=payment.idempotency_key,
        amount_cents=payment.amount_cents,
        currency=payment.currency,
        status=payment.status,
        payment_priority=payment.payment_priority,
        source_breakdown=SourceBreakdown(
            balance_portion_cents=payment.balance_portion_cents,
            provider_portion_cents=payment.provider_portion_cents,
        ),
        shortfall_cents=payment.shortfall_cents,
        account_balance_id=payment.account_balance_id,
        payment_method_id=payment.payment_method_id,
        provider_id=payment.provider_id,
        provider_ref=payment.provider_ref,
        balance_transaction_id=payment.balance_transaction_id,
        failure_code=payment.failure_code,
        created_at=payment.created_at,
        completed_at=payment.completed_at,
    )


class PaymentRouter:
    """Routes payments across balance and payment method with saga compensation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerService,
        registry: ProviderRegistry,
        customers: CustomerService,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.registry = registry
        self.customers = customers

    async def route(self, request: PaymentRequest) -> PaymentData:
        """
        Collect request.amount_cents according to request.payment_priority.

        Returns the PaymentData (identical on replay of a completed payment).

        Raises:
            InsufficientBalanceError: Balance cannot cover its share
            PaymentProviderError: Provider leg failed (balance leg compensated)
            CompensationError: Undoing the first leg failed (payment requires_action)
            PaymentFailedError: Replay of a payment that already failed
            IdempotencyConflictError: Key reused with a different request
        """
        with trace_operation(
            "payment_route",
            payment_priority=request.payment_priority.value,
            amount_cents=request.amount_cents,
        ) as span:
            payment = await self._get_or_create(request)
            span.set_attribute("payment_id", str(payment.id))

            with log_context(payment_id=str(payment.id)):
                if payment.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
                    logger.info("payment_replayed", status=payment.status.value)
                    return payment_data(payment)
                if payment.status == PaymentStatus.FAILED:
                    raise PaymentFailedError(
                        payment.id,
                        payment.failure_code or "unknown",
                        payment.error_message or "payment failed",
                    )
                if payment.status == PaymentStatus.REQUIRES_ACTION:
                    # Waiting on an operator
                    return payment_data(payment)

                if not payment.planned:
                    payment = await self._plan(payment, request)

                # Both legs are idempotent on the payment key, so resuming re-runs them
                return await self._execute(payment, request)

    async def find_payment(self, idempotency_key: str) -> PaymentData | None:
        async with self.session_factory() as session:
            payment = await self._find(session, idempotency_key)
            return payment_data(payment) if payment else None

    async def get_payment(self, payment_id: UUID) -> PaymentData:
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
            if payment is None:
                raise ResourceNotFoundError("Payment", payment_id)
            return payment_data(payment)

    # ========================================================================
    # Planning
    # ========================================================================

    async def _get_or_create(self, request: PaymentRequest) -> Payment:
        async with self.session_factory() as session:
            existing = await self._find(session, request.idempotency_key)
            if existing is not None:
                _ensure_same_request(existing, request)
                return existing

            payment = Payment(
                idempotency_key=request.idempotency_key,
                owner_ref=request.owner_ref,
                amount_cents=request.amount_cents,
                currency=request.currency,
                description=request.description,
                status=PaymentStatus.PENDING,
                payment_priority=request.payment_priority,
                account_balance_id=request.account_balance_id,
                payment_method_id=request.payment_method_id,
                schedule_id=request.schedule_id,
                billing_period=request.billing_period,
            )
            session.add(payment)
            try:
                await session.commit()
            except IntegrityError:
                # Race condition - same key routed concurrently
                await session.rollback()
                existing = await self._find(session, request.idempotency_key)
                if existing is None:
                    raise WriteVerificationError(
                        f"Payment creation failed for key {request.idempotency_key}"
                    )
                _ensure_same_request(existing, request)
                return existing

            logger.info(
                "payment_created",
                payment_id=str(payment.id),
                amount_cents=request.amount_cents,
                payment_priority=request.payment_priority.value,
            )
            return payment

    async def _plan(self, payment: Payment, request: PaymentRequest) -> Payment:
        """Decide the breakdown and persist it before any money moves."""
        amount = request.amount_cents
        priority = request.payment_priority
        shortfall = 0
        provider_id: str | None = None

        try:
            available = 0
            if request.account_balance_id is not None and priority.uses_balance:
                balance = await self.ledger.get_balance(request.account_balance_id)
                if balance.currency != request.currency:
                    raise CurrencyMismatchError(
                        balance.balance_id, balance.currency, request.currency
                    )
                available = max(balance.available_cents(utc_now()), 0)

            if request.payment_method_id is not None:
                method = await self.customers.get_payment_method(request.payment_method_id)
                provider_id = method.provider_id

            if priority == PaymentPriority.BALANCE_ONLY:
                if request.allow_partial:
                    balance_portion = min(available, amount)
                    if balance_portion == 0:
                        raise InsufficientBalanceError(
                            request.account_balance_id, available, amount  # type: ignore[arg-type]
                        )
                    shortfall = amount - balance_portion
                else:
                    balance_portion = amount
                provider_portion = 0

            elif priority == PaymentPriority.PAYMENT_METHOD_ONLY:
                balance_portion, provider_portion = 0, amount

            elif priority == PaymentPriority.BALANCE_FIRST:
                balance_portion = min(available, amount)
                provider_portion = amount - balance_portion
                if provider_portion > 0 and request.payment_method_id is None:
                    raise InsufficientBalanceError(
                        request.account_balance_id, available, amount  # type: ignore[arg-type]
                    )

            else:
                cap = request.provider_cap_cents or amount
                provider_portion = min(cap, amount)
                balance_portion = amount - provider_portion

        except BillingError as exc:
            await self._mark_failed(payment.id, exc)
            raise

        payment = await self._update(
            payment.id,
            status=PaymentStatus.PROCESSING,
            planned=True,
            balance_portion_cents=balance_portion,
            provider_portion_cents=provider_portion,
            shortfall_cents=shortfall,
            provider_id=provider_id if provider_portion > 0 else None,
        )
        logger.info(
            "payment_planned",
            balance_portion_cents=balance_portion,
            provider_portion_cents=provider_portion,
            shortfall_cents=shortfall,
        )
        return payment

    # ========================================================================
    # Execution
    # ========================================================================

    async def _execute(self, payment: Payment, request: PaymentRequest) -> PaymentData:
        balance_portion = payment.balance_portion_cents
        provider_portion = payment.provider_portion_cents
        charge: ChargeResult | None = None
        balance_txn_id: UUID | None = payment.balance_transaction_id

        if payment.payment_priority == PaymentPriority.PAYMENT_METHOD_FIRST:
            if provider_portion > 0:
                charge = await self._charge_or_fail(payment, request, provider_portion)
            if balance_portion > 0:
                try:
                    balance_txn_id = await self._debit(payment, request, balance_portion)
                except BillingError as exc:
                    if charge is not None:
                        await self._refund_provider(payment, charge, exc)
                    await self._mark_failed(payment.id, exc)
                    raise
        else:
            if balance_portion > 0:
                try:
                    if payment.payment_priority == PaymentPriority.BALANCE_FIRST:
                        payment, balance_txn_id = await self._debit_or_shrink(payment, request)
                        balance_portion = payment.balance_portion_cents
                        provider_portion = payment.provider_portion_cents
                    else:
                        balance_txn_id = await self._debit(payment, request, balance_portion)
                except BillingError as exc:
                    await self._mark_failed(payment.id, exc)
                    raise
            if provider_portion > 0:
                try:
                    charge = await self._charge(payment, request, provider_portion)
                except BillingError as exc:
                    if balance_portion > 0:
                        await self._reverse_balance(payment, request, balance_portion, exc)
                    await self._mark_failed(payment.id, exc)
                    raise

        status = PaymentStatus.SUCCEEDED
        if charge is not None and charge.status != PaymentStatus.SUCCEEDED:
            status = charge.status

        return await self._finalize(payment.id, status, balance_txn_id)

    async def _debit(self, payment: Payment, request: PaymentRequest, amount: int) -> UUID:
        txn = await self.ledger.debit(
            request.account_balance_id,  # type: ignore[arg-type]
            amount,
            request.description,
            payment.idempotency_key,
            payment_id=payment.id,
        )
        await self._update(payment.id, balance_transaction_id=txn.transaction_id)
        return txn.transaction_id

    async def _debit_or_shrink(
        self, payment: Payment, request: PaymentRequest
    ) -> tuple[Payment, UUID | None]:
        """
        Debit the planned balance share for balance_first.

        If the balance was drawn down after planning, the share shrinks to what
        is still available and the payment method covers the rest. The new
        breakdown is persisted before the next debit attempt.
        """
        while payment.balance_portion_cents > 0:
            try:
                txn_id = await self._debit(payment, request, payment.balance_portion_cents)
            except InsufficientBalanceError as exc:
                if request.payment_method_id is None:
                    raise
                payment = await self._replan_balance_share(payment, request, exc.available)
                continue
            return payment, txn_id
        return payment, None

    async def _replan_balance_share(
        self, payment: Payment, request: PaymentRequest, available: int
    ) -> Payment:
        balance_portion = min(max(available, 0), payment.balance_portion_cents - 1)
        provider_portion = payment.amount_cents - balance_portion
        method = await self.customers.get_payment_method(
            request.payment_method_id  # type: ignore[arg-type]
        )
        payment = await self._update(
            payment.id,
            balance_portion_cents=balance_portion,
            provider_portion_cents=provider_portion,
            provider_id=method.provider_id,
            event=(
                events.PAYMENT_REPLANNED,
                {
                    "balance_portion_cents": balance_portion,
                    "provider_portion_cents": provider_portion,
                },
            ),
        )
        logger.info(
            "payment_replanned",
            available_cents=available,
            balance_portion_cents=balance_portion,
            provider_portion_cents=provider_portion,
        )
        return payment

    async def _charge(
        self, payment: Payment, request: PaymentRequest, amount: int
    ) -> ChargeResult:
        method = await self.customers.get_payment_method(
            request.payment_method_id  # type: ignore[arg-type]
        )
        provider = self.registry.get(method.provider_id)
        customer_ref = await self.customers.ensure_provider_customer(method.customer_id, provider)

        try:
            result = await provider.charge(
                customer_ref,
                method.provider_method_ref,
                amount,
                request.currency,
                payment.idempotency_key,
            )
        except PaymentProviderError as exc:
            exc.provider_id = exc.provider_id or provider.provider_id
            metrics.record_provider_call(provider.provider_id, "charge", False)
            logger.warning(
                "provider_charge_failed",
                provider_id=provider.provider_id,
                code=exc.code,
                error=exc.message,
            )
            raise

        metrics.record_provider_call(provider.provider_id, "charge", True)
        await self._update(
            payment.id, provider_id=provider.provider_id, provider_ref=result.provider_ref
        )
        logger.info(
            "provider_charge_created",
            provider_id=provider.provider_id,
            provider_ref=result.provider_ref,
            amount_cents=amount,
            status=result.status.value,
        )
        return result

    async def _charge_or_fail(
        self, payment: Payment, request: PaymentRequest, amount: int
    ) -> ChargeResult:
        try:
            return await self._charge(payment, request, amount)
        except BillingError as exc:
            await self._mark_failed(payment.id, exc)
            raise

    # ========================================================================
    # Compensation
    # ========================================================================

    async def _reverse_balance(
        self, payment: Payment, request: PaymentRequest, amount: int, cause: BillingError
    ) -> None:
        """Credit back the balance portion after the provider leg failed."""
        try:
            await self.ledger.credit(
                request.account_balance_id,  # type: ignore[arg-type]
                amount,
                f"Reversal: {request.description}",
                payment.idempotency_key + REVERSAL_SUFFIX,
                transaction_type=TransactionType.REFUND,
                payment_id=payment.id,
            )
        except BillingError as comp_exc:
            await self._mark_requires_action(payment.id, cause, comp_exc)
            metrics.record_compensation("balance_reversal", False)
            raise CompensationError(payment.id, str(comp_exc)) from comp_exc

        metrics.record_compensation("balance_reversal", True)
        await self._update(
            payment.id,
            compensated=True,
            event=(
                events.PAYMENT_COMPENSATED,
                {"kind": "balance_reversal", "amount_cents": amount},
            ),
        )
        logger.info("payment_balance_reversed", amount_cents=amount, cause=cause.code)

    async def _refund_provider(
        self, payment: Payment, charge: ChargeResult, cause: BillingError
    ) -> None:
        """Refund the provider charge after the balance leg failed."""
        provider = self.registry.get(payment.provider_id or "")
        try:
            await provider.refund(
                charge.provider_ref,
                charge.amount_cents,
                payment.idempotency_key + REFUND_SUFFIX,
            )
        except PaymentProviderError as comp_exc:
            metrics.record_provider_call(provider.provider_id, "refund", False)
            await self._mark_requires_action(payment.id, cause, comp_exc)
            metrics.record_compensation("provider_refund", False)
            raise CompensationError(payment.id, str(comp_exc)) from comp_exc

        metrics.record_provider_call(provider.provider_id, "refund", True)
        metrics.record_compensation("provider_refund", True)
        await self._update(
            payment.id,
            compensated=True,
            event=(
                events.PAYMENT_COMPENSATED,
                {"kind": "provider_refund", "amount_cents": charge.amount_cents},
            ),
        )
        logger.info(
            "payment_provider_refunded", amount_cents=charge.amount_cents, cause=cause.code
        )

    # ========================================================================
    # State transitions
    # ========================================================================

    async def _finalize(
        self, payment_id: UUID, status: PaymentStatus, balance_txn_id: UUID | None
    ) -> PaymentData:
        succeeded = status == PaymentStatus.SUCCEEDED
        async with self.session_factory() as session:
            stmt = (
                select(Payment)
                .where(Payment.id == payment_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            payment = (await session.execute(stmt)).scalar_one()
            if payment.status in TERMINAL_PAYMENT_STATUSES:
                # A webhook settled it while the provider call was in flight
                return payment_data(payment)

            payment.status = status
            payment.balance_transaction_id = balance_txn_id
            if succeeded:
                payment.completed_at = utc_now()
                events.record_payment_event(
                    session,
                    "payment",
                    payment_id,
                    events.PAYMENT_SUCCEEDED,
                    amount_cents=payment.amount_cents,
                    balance_portion_cents=payment.balance_portion_cents,
                    provider_portion_cents=payment.provider_portion_cents,
                )
            await session.commit()

        metrics.record_payment(payment.payment_priority.value, status.value, payment.amount_cents)
        logger.info(
            "payment_routed",
            status=status.value,
            balance_portion_cents=payment.balance_portion_cents,
            provider_portion_cents=payment.provider_portion_cents,
        )
        return payment_data(payment)

    async def _mark_failed(self, payment_id: UUID, exc: BillingError) -> None:
        payment = await self._update(
            payment_id,
            status=PaymentStatus.FAILED,
            failure_code=exc.code,
            error_message=str(exc),
            completed_at=utc_now(),
            event=(events.PAYMENT_FAILED, {"code": exc.code}),
        )
        metrics.record_payment(
            payment.payment_priority.value, PaymentStatus.FAILED.value, payment.amount_cents
        )
        logger.warning("payment_failed", code=exc.code, error=str(exc))

    async def _mark_requires_action(
        self, payment_id: UUID, cause: BillingError, comp_exc: BillingError
    ) -> None:
        await self._update(
            payment_id,
            status=PaymentStatus.REQUIRES_ACTION,
            failure_code=cause.code,
            error_message=f"{cause}; compensation failed: {comp_exc}",
        )
        metrics.record_error("compensation_failed", "payment_route")
        logger.error(
            "payment_compensation_failed",
            cause=cause.code,
            compensation_error=str(comp_exc),
        )

    async def _update(
        self,
        payment_id: UUID,
        event: tuple[str, dict[str, object]] | None = None,
        **values: object,
    ) -> Payment:
        """Apply column updates (and optionally an audit event) in one commit."""
        async with self.session_factory() as session:
            stmt = (
                select(Payment)
                .where(Payment.id == payment_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            payment = (await session.execute(stmt)).scalar_one()
            for key, value in values.items():
                setattr(payment, key, value)
            if event is not None:
                event_type, data = event
                events.record_payment_event(
                    session, "payment", payment_id, event_type, **data
                )
            await session.commit()
            return payment

    async def _find(self, session: AsyncSession, idempotency_key: str) -> Payment | None:
        stmt = select(Payment).where(Payment.idempotency_key == idempotency_key)
        return (await session.execute(stmt)).scalar_one_or_none()


def _ensure_same_request(payment: Payment, request: PaymentRequest) -> None:
    if (
        payment.amount_cents != request.amount_cents
        or payment.currency != request.currency
        or payment.payment_priority != request.payment_priority
    ):
        raise IdempotencyConflictError(payment.id)
