"""
Tests for WebhookReconciler.

Deliveries are built and signed by the sandbox provider exactly as the
provider would send them.
"""

import time
from datetime import UTC, datetime

import pytest

from billing_engine.db.models import WebhookEvent
from billing_engine.exceptions import (
    BalanceNotActiveError,
    InvalidSignatureError,
    ResourceNotFoundError,
    UnknownProviderError,
)
from billing_engine.models.domain import PaymentRequest
from billing_engine.models.enums import (
    BalanceStatus,
    IntervalUnit,
    PaymentPriority,
    PaymentStatus,
    ScheduleStatus,
)
from billing_engine.services.ledger import LedgerService
from billing_engine.services.payment_router import PaymentRouter
from billing_engine.services.sandbox_provider import SandboxProvider
from billing_engine.services.scheduler import BillingScheduler
from billing_engine.services.webhooks import ASYNC_FAILURE_CODE, WebhookReconciler

START = datetime(2024, 1, 31, 9, 0, tzinfo=UTC)


async def processing_payment(
    router: PaymentRouter,
    sandbox: SandboxProvider,
    make_payment_method,
    balance_id=None,
    amount_cents: int = 2000,
):
    """Route a payment whose card charge settles asynchronously."""
    sandbox.set_async("pm_bank")
    method_id = await make_payment_method(method_ref="pm_bank")
    priority = (
        PaymentPriority.BALANCE_FIRST if balance_id else PaymentPriority.PAYMENT_METHOD_ONLY
    )
    payment = await router.route(
        PaymentRequest(
            amount_cents=amount_cents,
            currency="USD",
            payment_priority=priority,
            idempotency_key="order-1",
            description="Order",
            account_balance_id=balance_id,
            payment_method_id=method_id,
        )
    )
    assert payment.status == PaymentStatus.PROCESSING
    return payment


async def load_event(session_factory, webhook_event_id) -> WebhookEvent:
    async with session_factory() as session:
        return await session.get(WebhookEvent, webhook_event_id)


class TestVerification:
    """Tests for signature checks and deduplication."""

    async def test_tampered_body_rejected(
        self, webhooks: WebhookReconciler, sandbox: SandboxProvider
    ) -> None:
        """A body that does not match its signature is not stored."""
        body, header = sandbox.build_webhook("evt_1", "charge.succeeded", object_id="ch_1")

        with pytest.raises(InvalidSignatureError):
            await webhooks.receive(body.replace(b"ch_1", b"ch_2"), header, "sandbox")

        assert await webhooks.list_unprocessed() == []

    async def test_stale_timestamp_rejected(
        self, webhooks: WebhookReconciler, sandbox: SandboxProvider
    ) -> None:
        body, header = sandbox.build_webhook(
            "evt_1", "charge.succeeded", object_id="ch_1", timestamp=int(time.time()) - 3600
        )

        with pytest.raises(InvalidSignatureError, match="tolerance"):
            await webhooks.receive(body, header, "sandbox")

    async def test_malformed_header_rejected(
        self, webhooks: WebhookReconciler, sandbox: SandboxProvider
    ) -> None:
        body, _ = sandbox.build_webhook("evt_1", "charge.succeeded", object_id="ch_1")

        with pytest.raises(InvalidSignatureError):
            await webhooks.receive(body, "v1=deadbeef", "sandbox")

    async def test_unknown_provider(
        self, webhooks: WebhookReconciler, sandbox: SandboxProvider
    ) -> None:
        body, header = sandbox.build_webhook("evt_1", "charge.succeeded", object_id="ch_1")

        with pytest.raises(UnknownProviderError):
            await webhooks.receive(body, header, "acme")

    async def test_unhandled_event_type_is_processed(
        self, webhooks: WebhookReconciler, sandbox: SandboxProvider
    ) -> None:
        """Events nobody handles are acknowledged, not left for redelivery."""
        body, header = sandbox.build_webhook("evt_1", "customer.updated")

        outcome = await webhooks.receive(body, header, "sandbox")

        assert outcome.handled is False
        assert outcome.duplicate is False
        assert outcome.event_type == "customer.updated"
        assert await webhooks.list_unprocessed() == []


class TestPaymentEvents:
    """Tests for payment.succeeded / failed / refunded."""

    async def test_succeeded_settles_processing_payment(
        self,
        webhooks: WebhookReconciler,
        router: PaymentRouter,
        sandbox: SandboxProvider,
        make_payment_method,
    ) -> None:
        payment = await processing_payment(router, sandbox, make_payment_method)
        body, header = sandbox.build_webhook(
            "evt_1", "charge.succeeded", object_id=payment.provider_ref
        )

        outcome = await webhooks.receive(body, header, "sandbox")

        assert outcome.handled is True
        assert outcome.event_type == "payment.succeeded"
        settled = await router.get_payment(payment.payment_id)
        assert settled.status == PaymentStatus.SUCCEEDED
        assert settled.completed_at is not None

    async def test_redelivery_is_duplicate(
        self,
        webhooks: WebhookReconciler,
        router: PaymentRouter,
        sandbox: SandboxProvider,
        make_payment_method,
    ) -> None:
        """The same provider event id is applied once."""
        payment = await processing_payment(router, sandbox, make_payment_method)
        body, header = sandbox.build_webhook(
            "evt_1", "charge.succeeded", object_id=payment.provider_ref
        )

        first = await webhooks.receive(body, header, "sandbox")
        second = await webhooks.receive(body, header, "sandbox")

        assert second.duplicate is True
        assert second.handled is False
        assert second.webhook_event_id == first.webhook_event_id

    async def test_failed_reverses_balance_leg(
        self,
        webhooks: WebhookReconciler,
        router: PaymentRouter,
        ledger: LedgerService,
        sandbox: SandboxProvider,
        make_balance,
        make_payment_method,
    ) -> None:
        """An async card failure credits back what the balance paid."""
        balance = await make_balance(1200)
        payment = await processing_payment(
            router, sandbox, make_payment_method, balance_id=balance.balance_id
        )
        assert (await ledger.get_balance(balance.balance_id)).current_balance_cents == 0
        body, header = sandbox.build_webhook(
            "evt_1",
            "charge.failed",
            object_id=payment.provider_ref,
            failure_message="bank account closed",
        )

        outcome = await webhooks.receive(body, header, "sandbox")
        await webhooks.receive(body, header, "sandbox")

        assert outcome.handled is True
        assert (await ledger.get_balance(balance.balance_id)).current_balance_cents == 1200
        failed = await router.get_payment(payment.payment_id)
        assert failed.status == PaymentStatus.FAILED
        assert failed.failure_code == ASYNC_FAILURE_CODE

    async def test_failed_after_success_is_ignored(
        self,
        webhooks: WebhookReconciler,
        router: PaymentRouter,
        sandbox: SandboxProvider,
        make_payment_method,
    ) -> None:
        """Terminal payments are not moved by later events."""
        payment = await processing_payment(router, sandbox, make_payment_method)
        body, header = sandbox.build_webhook(
            "evt_1", "charge.succeeded", object_id=payment.provider_ref
        )
        await webhooks.receive(body, header, "sandbox")

        body, header = sandbox.build_webhook(
            "evt_2", "charge.failed", object_id=payment.provider_ref
        )
        outcome = await webhooks.receive(body, header, "sandbox")

        assert outcome.handled is False
        assert (await router.get_payment(payment.payment_id)).status == PaymentStatus.SUCCEEDED

    async def test_refunded_only_from_succeeded(
        self,
        webhooks: WebhookReconciler,
        router: PaymentRouter,
        sandbox: SandboxProvider,
        make_payment_method,
    ) -> None:
        payment = await processing_payment(router, sandbox, make_payment_method)

        body, header = sandbox.build_webhook(
            "evt_1", "charge.refunded", object_id=payment.provider_ref, amount=2000
        )
        early = await webhooks.receive(body, header, "sandbox")
        assert early.handled is False

        body, header = sandbox.build_webhook(
            "evt_2", "charge.succeeded", object_id=payment.provider_ref
        )
        await webhooks.receive(body, header, "sandbox")
        body, header = sandbox.build_webhook(
            "evt_3", "charge.refunded", object_id=payment.provider_ref, amount=2000
        )
        refunded = await webhooks.receive(body, header, "sandbox")

        assert refunded.handled is True
        assert (await router.get_payment(payment.payment_id)).status == PaymentStatus.REFUNDED


class TestFailureAndReplay:
    """Tests for handler failures staying replayable."""

    async def test_unknown_payment_stays_unprocessed(
        self, webhooks: WebhookReconciler, sandbox: SandboxProvider, session_factory
    ) -> None:
        body, header = sandbox.build_webhook("evt_1", "charge.succeeded", object_id="ch_missing")

        with pytest.raises(ResourceNotFoundError):
            await webhooks.receive(body, header, "sandbox")

        unprocessed = await webhooks.list_unprocessed()
        assert len(unprocessed) == 1
        row = await load_event(session_factory, unprocessed[0])
        assert row.processed is False
        assert row.attempts == 1
        assert "ch_missing" in row.last_error

    async def test_replay_applies_after_fix(
        self,
        webhooks: WebhookReconciler,
        router: PaymentRouter,
        ledger: LedgerService,
        sandbox: SandboxProvider,
        make_balance,
        make_payment_method,
        session_factory,
    ) -> None:
        """A failure caused by a frozen balance is applied once the balance is active."""
        balance = await make_balance(1200)
        payment = await processing_payment(
            router, sandbox, make_payment_method, balance_id=balance.balance_id
        )
        await ledger.set_status(balance.balance_id, BalanceStatus.FROZEN)
        body, header = sandbox.build_webhook(
            "evt_1", "charge.failed", object_id=payment.provider_ref
        )

        with pytest.raises(BalanceNotActiveError):
            await webhooks.receive(body, header, "sandbox")
        assert (await router.get_payment(payment.payment_id)).status == (
            PaymentStatus.PROCESSING
        )

        await ledger.set_status(balance.balance_id, BalanceStatus.ACTIVE)
        [event_id] = await webhooks.list_unprocessed()
        outcome = await webhooks.replay(event_id)

        assert outcome.handled is True
        row = await load_event(session_factory, event_id)
        assert row.processed is True
        assert row.attempts == 2
        assert row.last_error is None
        assert (await ledger.get_balance(balance.balance_id)).current_balance_cents == 1200
        assert (await router.get_payment(payment.payment_id)).status == PaymentStatus.FAILED


class TestScheduleEffects:
    """Tests for webhooks that change billing schedules."""

    async def _scheduled_processing_payment(
        self,
        scheduler: BillingScheduler,
        router: PaymentRouter,
        sandbox: SandboxProvider,
        make_payment_method,
        max_retries: int = 3,
    ):
        sandbox.set_async("pm_bank")
        method_id = await make_payment_method(method_ref="pm_bank")
        schedule = await scheduler.create_schedule(
            owner_ref="user-1",
            description="Pro plan",
            amount_cents=1000,
            currency="USD",
            interval_unit=IntervalUnit.MONTHLY,
            start_date=START,
            payment_method_id=method_id,
            payment_priority=PaymentPriority.PAYMENT_METHOD_ONLY,
            max_retries=max_retries,
        )
        result = await scheduler.tick(START)
        assert result.succeeded == 1
        [execution] = await scheduler.list_executions(schedule.schedule_id)
        payment = await router.get_payment(execution.payment_id)
        return schedule, payment

    async def test_async_failure_reopens_period(
        self,
        webhooks: WebhookReconciler,
        scheduler: BillingScheduler,
        router: PaymentRouter,
        sandbox: SandboxProvider,
        make_payment_method,
    ) -> None:
        """The billed period is charged again on the next tick with a new key."""
        schedule, payment = await self._scheduled_processing_payment(
            scheduler, router, sandbox, make_payment_method
        )
        assert (await scheduler.get_schedule(schedule.schedule_id)).next_billing_date == (
            datetime(2024, 2, 29, 9, 0, tzinfo=UTC)
        )

        body, header = sandbox.build_webhook(
            "evt_1", "charge.failed", object_id=payment.provider_ref
        )
        await webhooks.receive(body, header, "sandbox")

        reopened = await scheduler.get_schedule(schedule.schedule_id)
        assert reopened.next_billing_date == START
        assert reopened.status == ScheduleStatus.PAST_DUE
        assert reopened.retry_count == 1

        result = await scheduler.tick(START)
        assert result.succeeded == 1
        executions = await scheduler.list_executions(schedule.schedule_id)
        assert [e.attempt for e in executions] == [0, 1]
        assert executions[0].payment_id != executions[1].payment_id
        assert len(sandbox.charges) == 2

    async def test_async_failure_can_suspend(
        self,
        webhooks: WebhookReconciler,
        scheduler: BillingScheduler,
        router: PaymentRouter,
        sandbox: SandboxProvider,
        make_payment_method,
        notifier,
    ) -> None:
        schedule, payment = await self._scheduled_processing_payment(
            scheduler, router, sandbox, make_payment_method, max_retries=1
        )
        body, header = sandbox.build_webhook(
            "evt_1", "charge.failed", object_id=payment.provider_ref, failure_message="closed"
        )

        await webhooks.receive(body, header, "sandbox")

        suspended = await scheduler.get_schedule(schedule.schedule_id)
        assert suspended.status == ScheduleStatus.SUSPENDED
        assert notifier.names() == ["schedule_suspended"]
        snapshot, reason = notifier.calls[0][1]
        assert snapshot.schedule_id == schedule.schedule_id
        assert reason == "closed"

    async def test_subscription_events_drive_schedule(
        self,
        webhooks: WebhookReconciler,
        scheduler: BillingScheduler,
        sandbox: SandboxProvider,
        make_balance,
    ) -> None:
        balance = await make_balance(5000)
        schedule = await scheduler.create_schedule(
            owner_ref="user-1",
            description="Pro plan",
            amount_cents=1000,
            currency="USD",
            interval_unit=IntervalUnit.MONTHLY,
            start_date=START,
            account_balance_id=balance.balance_id,
            payment_priority=PaymentPriority.BALANCE_ONLY,
            external_ref="sub_123",
        )

        steps = [
            ("subscription.paused", ScheduleStatus.PAUSED, True),
            ("subscription.paused", ScheduleStatus.PAUSED, False),
            ("subscription.resumed", ScheduleStatus.ACTIVE, True),
            ("subscription.canceled", ScheduleStatus.CANCELLED, True),
            ("subscription.resumed", ScheduleStatus.CANCELLED, False),
        ]
        for index, (event_type, expected, handled) in enumerate(steps):
            body, header = sandbox.build_webhook(
                f"evt_{index}", event_type, subscription_id="sub_123"
            )
            outcome = await webhooks.receive(body, header, "sandbox")
            assert outcome.handled is handled, event_type
            current = await scheduler.get_schedule(schedule.schedule_id)
            assert current.status == expected, event_type

        assert await webhooks.list_unprocessed() == []

    async def test_unknown_subscription_is_acknowledged(
        self, webhooks: WebhookReconciler, sandbox: SandboxProvider
    ) -> None:
        body, header = sandbox.build_webhook(
            "evt_1", "subscription.canceled", subscription_id="sub_missing"
        )

        outcome = await webhooks.receive(body, header, "sandbox")

        assert outcome.handled is False
        assert await webhooks.list_unprocessed() == []
