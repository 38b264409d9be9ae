"""
Webhook Reconciler - Applies asynchronous provider notifications idempotently.

Each delivery is:
1. Verified by the provider adapter (signature + timestamp)
2. Deduplicated on (provider_id, provider_event_id)
3. Dispatched to a handler whose effects commit together with processed=True

A failing handler leaves the event unprocessed with last_error set so the
provider's redelivery (or replay()) can apply it later.
"""

from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from billing_engine.db.models import BillingSchedule, Payment, WebhookEvent, utc_now
from billing_engine.exceptions import (
    InvalidSignatureError,
    InvalidTransitionError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from billing_engine.models.domain import WebhookOutcome
from billing_engine.models.enums import (
    TERMINAL_PAYMENT_STATUSES,
    PaymentStatus,
    ScheduleStatus,
    TransactionType,
    WebhookEventType,
)
from billing_engine.observability.metrics import metrics
from billing_engine.observability.tracing import trace_operation
from billing_engine.services import events
from billing_engine.services.ledger import LedgerService
from billing_engine.services.notifications import LoggingNotifier, Notifier, notify_safely
from billing_engine.services.payment_provider import ProviderRegistry, ProviderWebhookEvent
from billing_engine.services.payment_router import REVERSAL_SUFFIX
from billing_engine.services.scheduler import (
    advance_billing_date,
    apply_failed_attempt,
    schedule_data,
    transition_schedule,
)

logger = get_logger(__name__)

ASYNC_FAILURE_CODE = "provider_payment_failed"

SUBSCRIPTION_TARGETS: dict[str, ScheduleStatus] = {
    WebhookEventType.SUBSCRIPTION_CANCELLED.value: ScheduleStatus.CANCELLED,
    WebhookEventType.SUBSCRIPTION_PAUSED.value: ScheduleStatus.PAUSED,
    WebhookEventType.SUBSCRIPTION_RESUMED.value: ScheduleStatus.ACTIVE,
}


def _event_payload(event: ProviderWebhookEvent) -> dict[str, Any]:
    return {
        "raw_type": event.raw_type,
        "provider_ref": event.provider_ref,
        "subscription_ref": event.subscription_ref,
        "amount_cents": event.amount_cents,
        "currency": event.currency,
        "failure_message": event.failure_message,
    }


def _event_from_row(row: WebhookEvent) -> ProviderWebhookEvent:
    payload = row.payload or {}
    return ProviderWebhookEvent(
        provider_event_id=row.provider_event_id,
        event_type=row.event_type,
        provider_ref=payload.get("provider_ref"),
        subscription_ref=payload.get("subscription_ref"),
        amount_cents=payload.get("amount_cents"),
        currency=payload.get("currency"),
        failure_message=payload.get("failure_message"),
        raw_type=payload.get("raw_type", row.event_type),
    )


AfterCommit = list[Callable[[], Awaitable[None]]]
Handler = Callable[
    [AsyncSession, WebhookEvent, ProviderWebhookEvent, AfterCommit], Awaitable[bool]
]


class WebhookReconciler:
    """Verifies, deduplicates and applies provider webhooks."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        ledger: LedgerService,
        notifier: Notifier | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.ledger = ledger
        self.notifier: Notifier = notifier or LoggingNotifier()
        self._handlers: dict[str, Handler] = {
            WebhookEventType.PAYMENT_SUCCEEDED.value: self._on_payment_succeeded,
            WebhookEventType.PAYMENT_FAILED.value: self._on_payment_failed,
            WebhookEventType.PAYMENT_REFUNDED.value: self._on_payment_refunded,
            WebhookEventType.SUBSCRIPTION_CANCELLED.value: self._on_subscription_changed,
            WebhookEventType.SUBSCRIPTION_PAUSED.value: self._on_subscription_changed,
            WebhookEventType.SUBSCRIPTION_RESUMED.value: self._on_subscription_changed,
        }

    async def receive(
        self, raw_body: bytes, signature_header: str, provider_id: str
    ) -> WebhookOutcome:
        """
        Verify, store and apply one webhook delivery.

        Raises:
            UnknownProviderError: No adapter for provider_id
            InvalidSignatureError: Verification failed (nothing stored)
            BillingError: Handler failed; the event stays unprocessed
        """
        with trace_operation("webhook_receive", provider_id=provider_id) as span:
            provider = self.registry.get(provider_id)
            try:
                event = provider.verify_and_parse_webhook(raw_body, signature_header)
            except InvalidSignatureError as exc:
                metrics.record_webhook(provider_id, "invalid_signature")
                logger.warning("webhook_rejected", provider_id=provider_id, error=exc.message)
                raise

            span.set_attribute("provider_event_id", event.provider_event_id)
            span.set_attribute("event_type", event.event_type)

            row = await self._store(provider_id, event)
            if row.processed:
                metrics.record_webhook(provider_id, "duplicate")
                logger.info(
                    "webhook_duplicate",
                    provider_id=provider_id,
                    provider_event_id=event.provider_event_id,
                )
                return WebhookOutcome(
                    webhook_event_id=row.id,
                    provider_event_id=row.provider_event_id,
                    event_type=row.event_type,
                    duplicate=True,
                    handled=False,
                )

            return await self._dispatch(row.id)

    async def replay(self, webhook_event_id: UUID) -> WebhookOutcome:
        """Re-dispatch a stored event that has not been processed yet."""
        return await self._dispatch(webhook_event_id)

    async def list_unprocessed(self, limit: int = 100) -> list[UUID]:
        async with self.session_factory() as session:
            stmt = (
                select(WebhookEvent.id)
                .where(WebhookEvent.processed == False)  # noqa: E712
                .order_by(WebhookEvent.received_at)
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    # ========================================================================
    # Storage & dispatch
    # ========================================================================

    async def _store(self, provider_id: str, event: ProviderWebhookEvent) -> WebhookEvent:
        async with self.session_factory() as session:
            existing = await self._find_event(session, provider_id, event.provider_event_id)
            if existing is not None:
                return existing

            row = WebhookEvent(
                provider_id=provider_id,
                provider_event_id=event.provider_event_id,
                event_type=event.event_type,
                payload=_event_payload(event),
                processed=False,
                attempts=0,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Race condition - same delivery received concurrently
                await session.rollback()
                existing = await self._find_event(session, provider_id, event.provider_event_id)
                if existing is None:
                    raise WriteVerificationError(
                        f"Webhook storage failed for {provider_id}/{event.provider_event_id}"
                    )
                return existing
            return row

    async def _dispatch(self, webhook_event_id: UUID) -> WebhookOutcome:
        async with self.session_factory() as session:
            row = await session.get(WebhookEvent, webhook_event_id)
            if row is None:
                raise ResourceNotFoundError("WebhookEvent", webhook_event_id)
            provider_id = row.provider_id
            outcome = WebhookOutcome(
                webhook_event_id=row.id,
                provider_event_id=row.provider_event_id,
                event_type=row.event_type,
                duplicate=row.processed,
                handled=False,
            )
            if row.processed:
                return outcome
            event = _event_from_row(row)

        handler = self._handlers.get(event.event_type)
        after_commit: AfterCommit = []
        try:
            if handler is not None:
                await self._prepare(event, provider_id)
            async with self.session_factory() as session:
                row = await self._lock_event(session, webhook_event_id)
                if row.processed:
                    # Another worker applied it in the meantime
                    return WebhookOutcome(
                        webhook_event_id=row.id,
                        provider_event_id=row.provider_event_id,
                        event_type=row.event_type,
                        duplicate=True,
                        handled=False,
                    )
                handled = False
                if handler is not None:
                    handled = await handler(session, row, event, after_commit)
                row.processed = True
                row.processed_at = utc_now()
                row.attempts += 1
                row.last_error = None
                await session.commit()
        except Exception as exc:
            await self._record_failure(webhook_event_id, exc)
            metrics.record_webhook(provider_id, "error")
            logger.error(
                "webhook_handler_failed",
                provider_id=provider_id,
                provider_event_id=event.provider_event_id,
                event_type=event.event_type,
                error=str(exc),
            )
            raise

        for callback in after_commit:
            await callback()

        metrics.record_webhook(provider_id, "processed" if handled else "ignored")
        logger.info(
            "webhook_processed",
            provider_id=provider_id,
            provider_event_id=event.provider_event_id,
            event_type=event.event_type,
            handled=handled,
        )
        return WebhookOutcome(
            webhook_event_id=outcome.webhook_event_id,
            provider_event_id=outcome.provider_event_id,
            event_type=outcome.event_type,
            duplicate=False,
            handled=handled,
        )

    async def _record_failure(self, webhook_event_id: UUID, exc: Exception) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == webhook_event_id)
                .values(attempts=WebhookEvent.attempts + 1, last_error=str(exc))
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _prepare(self, event: ProviderWebhookEvent, provider_id: str) -> None:
        """
        Ledger side effects that must land before the handler transaction.

        The ledger commits on its own; its idempotency key makes a redelivery
        after a later handler failure a no-op.
        """
        if event.event_type != WebhookEventType.PAYMENT_FAILED.value:
            return

        async with self.session_factory() as session:
            payment = await self._find_payment(session, provider_id, event.provider_ref)
            if payment is None:
                raise ResourceNotFoundError("Payment", event.provider_ref)
            if (
                payment.status in TERMINAL_PAYMENT_STATUSES
                or payment.compensated
                or payment.balance_transaction_id is None
                or payment.balance_portion_cents <= 0
                or payment.account_balance_id is None
            ):
                return
            balance_id = payment.account_balance_id
            amount = payment.balance_portion_cents
            key = payment.idempotency_key + REVERSAL_SUFFIX
            description = f"Reversal: {payment.description}"
            payment_id = payment.id

        await self.ledger.credit(
            balance_id,
            amount,
            description,
            key,
            transaction_type=TransactionType.REFUND,
            payment_id=payment_id,
        )
        metrics.record_compensation("balance_reversal", True)

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _on_payment_succeeded(
        self,
        session: AsyncSession,
        row: WebhookEvent,
        event: ProviderWebhookEvent,
        after_commit: AfterCommit,
    ) -> bool:
        payment = await self._require_payment(session, row.provider_id, event.provider_ref)
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            return False

        payment.status = PaymentStatus.SUCCEEDED
        payment.completed_at = utc_now()
        events.record_payment_event(
            session,
            "payment",
            payment.id,
            events.PAYMENT_SUCCEEDED,
            amount_cents=payment.amount_cents,
            source="webhook",
        )
        return True

    async def _on_payment_failed(
        self,
        session: AsyncSession,
        row: WebhookEvent,
        event: ProviderWebhookEvent,
        after_commit: AfterCommit,
    ) -> bool:
        payment = await self._require_payment(session, row.provider_id, event.provider_ref)
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            return False

        reason = event.failure_message or "payment failed at provider"
        if payment.balance_transaction_id is not None and payment.balance_portion_cents > 0:
            payment.compensated = True
        payment.status = PaymentStatus.FAILED
        payment.failure_code = ASYNC_FAILURE_CODE
        payment.error_message = reason
        payment.completed_at = utc_now()
        events.record_payment_event(
            session,
            "payment",
            payment.id,
            events.PAYMENT_FAILED,
            code=ASYNC_FAILURE_CODE,
            reason=reason,
            source="webhook",
        )

        if payment.schedule_id is not None:
            await self._fail_schedule_period(session, payment, reason, after_commit)
        return True

    async def _on_payment_refunded(
        self,
        session: AsyncSession,
        row: WebhookEvent,
        event: ProviderWebhookEvent,
        after_commit: AfterCommit,
    ) -> bool:
        payment = await self._require_payment(session, row.provider_id, event.provider_ref)
        if payment.status != PaymentStatus.SUCCEEDED:
            return False

        payment.status = PaymentStatus.REFUNDED
        events.record_payment_event(
            session,
            "payment",
            payment.id,
            events.PAYMENT_REFUNDED,
            amount_cents=event.amount_cents,
        )
        return True

    async def _on_subscription_changed(
        self,
        session: AsyncSession,
        row: WebhookEvent,
        event: ProviderWebhookEvent,
        after_commit: AfterCommit,
    ) -> bool:
        external_ref = event.subscription_ref or event.provider_ref
        schedule = None
        if external_ref:
            stmt = (
                select(BillingSchedule)
                .where(BillingSchedule.external_ref == external_ref)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            schedule = (await session.execute(stmt)).scalars().first()
        if schedule is None:
            logger.warning("webhook_schedule_unknown", external_ref=external_ref)
            return False

        try:
            return transition_schedule(schedule, SUBSCRIPTION_TARGETS[event.event_type])
        except InvalidTransitionError as exc:
            logger.warning(
                "webhook_transition_ignored",
                schedule_id=str(schedule.id),
                current=exc.current,
                target=exc.target,
            )
            return False

    async def _fail_schedule_period(
        self,
        session: AsyncSession,
        payment: Payment,
        reason: str,
        after_commit: AfterCommit,
    ) -> None:
        """Count the failure against the schedule and reopen the billed period."""
        stmt = (
            select(BillingSchedule)
            .where(BillingSchedule.id == payment.schedule_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        schedule = (await session.execute(stmt)).scalar_one_or_none()
        if schedule is None:
            return

        previous_status = schedule.status
        # The tick already moved the schedule on when the charge came back processing
        if schedule.status == ScheduleStatus.COMPLETED:
            schedule.status = ScheduleStatus.ACTIVE
        apply_failed_attempt(schedule, ASYNC_FAILURE_CODE, reason)

        period = payment.billing_period
        if period is not None:
            advanced = advance_billing_date(
                period,
                schedule.interval_unit,
                schedule.interval_multiplier,
                anchor_day=schedule.start_date.day,
            )
            if schedule.next_billing_date == advanced:
                schedule.next_billing_date = period

        if schedule.status == ScheduleStatus.SUSPENDED and previous_status != schedule.status:
            events.record_payment_event(
                session,
                "schedule",
                schedule.id,
                events.SCHEDULE_SUSPENDED,
                retry_count=schedule.retry_count,
                reason=reason,
            )
            snapshot = schedule_data(schedule)
            after_commit.append(
                lambda: notify_safely("schedule_suspended", self.notifier, snapshot, reason)
            )

        logger.info(
            "schedule_period_reopened",
            schedule_id=str(schedule.id),
            next_billing_date=schedule.next_billing_date.isoformat(),
            retry_count=schedule.retry_count,
            status=schedule.status.value,
        )

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _find_event(
        self, session: AsyncSession, provider_id: str, provider_event_id: str
    ) -> WebhookEvent | None:
        stmt = select(WebhookEvent).where(
            WebhookEvent.provider_id == provider_id,
            WebhookEvent.provider_event_id == provider_event_id,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _lock_event(self, session: AsyncSession, webhook_event_id: UUID) -> WebhookEvent:
        stmt = (
            select(WebhookEvent)
            .where(WebhookEvent.id == webhook_event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalar_one()

    async def _find_payment(
        self, session: AsyncSession, provider_id: str, provider_ref: str | None
    ) -> Payment | None:
        if not provider_ref:
            return None
        stmt = (
            select(Payment)
            .where(Payment.provider_id == provider_id, Payment.provider_ref == provider_ref)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _require_payment(
        self, session: AsyncSession, provider_id: str, provider_ref: str | None
    ) -> Payment:
        """
        Payment for a provider charge reference.

        Missing means the webhook outran the router recording the charge;
        raising leaves the event unprocessed for redelivery.
        """
        payment = await self._find_payment(session, provider_id, provider_ref)
        if payment is None:
            raise ResourceNotFoundError("Payment", provider_ref)
        return payment
