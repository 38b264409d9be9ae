"""
Tests for engine assembly and notification delivery.
"""

from datetime import UTC, datetime

from billing_engine.main import build_engine
from billing_engine.models.domain import PaymentRequest
from billing_engine.models.enums import IntervalUnit, PaymentPriority, PaymentStatus
from billing_engine.services.notifications import LoggingNotifier, notify_safely


class TestBuildEngine:
    """Tests for wiring the service graph."""

    def test_services_share_dependencies(self, session_factory, registry, notifier):
        engine = build_engine(session_factory, registry, notifier=notifier, worker_id="w-1")

        assert engine.router.ledger is engine.ledger
        assert engine.router.customers is engine.customers
        assert engine.scheduler.router is engine.router
        assert engine.webhooks.ledger is engine.ledger
        assert engine.webhooks.registry is registry
        assert engine.scheduler.worker_id == "w-1"
        assert engine.scheduler.notifier is notifier

    def test_default_notifier_logs(self, session_factory, registry):
        engine = build_engine(session_factory, registry)

        assert isinstance(engine.scheduler.notifier, LoggingNotifier)
        assert isinstance(engine.webhooks.notifier, LoggingNotifier)

    async def test_end_to_end_payment(self, session_factory, registry):
        """A wired engine can fund a balance and route a payment from it."""
        engine = build_engine(session_factory, registry)
        balance = await engine.ledger.open_balance("user-1", "USD")
        await engine.ledger.credit(balance.balance_id, 1000, "Top up", "topup-1")

        payment = await engine.router.route(
            PaymentRequest(
                amount_cents=250,
                currency="USD",
                payment_priority=PaymentPriority.BALANCE_ONLY,
                idempotency_key="order-1",
                description="Order",
                account_balance_id=balance.balance_id,
            )
        )

        assert payment.status == PaymentStatus.SUCCEEDED
        assert (await engine.ledger.get_available(balance.balance_id)) == 750


class TestNotifySafely:
    """Tests for fire-and-forget notification delivery."""

    async def test_failures_do_not_propagate(self, session_factory, registry, make_balance):
        class BrokenNotifier:
            async def upcoming_charge(self, schedule, days_before):
                raise RuntimeError("smtp down")

        engine = build_engine(session_factory, registry)
        balance = await make_balance(0)
        schedule = await engine.scheduler.create_schedule(
            owner_ref="user-1",
            description="Pro plan",
            amount_cents=1000,
            currency="USD",
            interval_unit=IntervalUnit.MONTHLY,
            start_date=datetime(2024, 1, 1, tzinfo=UTC),
            account_balance_id=balance.balance_id,
            payment_priority=PaymentPriority.BALANCE_ONLY,
        )

        await notify_safely("upcoming_charge", BrokenNotifier(), schedule, 3)

    async def test_logging_notifier_accepts_all_notifications(
        self, session_factory, registry, make_balance
    ):
        engine = build_engine(session_factory, registry)
        balance = await make_balance(0)
        schedule = await engine.scheduler.create_schedule(
            owner_ref="user-1",
            description="Pro plan",
            amount_cents=1000,
            currency="USD",
            interval_unit=IntervalUnit.MONTHLY,
            start_date=datetime(2024, 1, 1, tzinfo=UTC),
            account_balance_id=balance.balance_id,
            payment_priority=PaymentPriority.BALANCE_ONLY,
        )
        notifier = LoggingNotifier()

        await notifier.upcoming_charge(schedule, 3)
        await notifier.schedule_suspended(schedule, "declined")
        await notifier.partial_charge(schedule, 300, 700)
