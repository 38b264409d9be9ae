"""
Main Application - Billing engine assembly and lifecycle.

Worker processes (scheduler ticks, webhook receivers) build one BillingEngine
at startup and share it; every service holds the same session factory and
provider registry.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import settings
from billing_engine.db.migration_runner import run_migrations
from billing_engine.db.session import close_engine, get_engine, get_session_factory
from billing_engine.observability import get_logger, setup_logging, setup_tracing
from billing_engine.observability.metrics import start_metrics_server
from billing_engine.observability.tracing import instrument_sqlalchemy
from billing_engine.services.customers import CustomerService
from billing_engine.services.ledger import LedgerService
from billing_engine.services.notifications import Notifier
from billing_engine.services.payment_provider import ProviderRegistry
from billing_engine.services.payment_router import PaymentRouter
from billing_engine.services.provider_config import ProviderConfigService
from billing_engine.services.scheduler import BillingScheduler
from billing_engine.services.webhooks import WebhookReconciler

logger = get_logger(__name__)


@dataclass
class BillingEngine:
    """Wired service graph."""

    session_factory: async_sessionmaker[AsyncSession]
    registry: ProviderRegistry
    ledger: LedgerService
    customers: CustomerService
    router: PaymentRouter
    scheduler: BillingScheduler
    webhooks: WebhookReconciler


def build_engine(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
    notifier: Notifier | None = None,
    worker_id: str | None = None,
) -> BillingEngine:
    """Wire the services around one session factory and provider registry."""
    ledger = LedgerService(session_factory)
    customers = CustomerService(session_factory)
    router = PaymentRouter(session_factory, ledger, registry, customers)
    scheduler = BillingScheduler(session_factory, router, notifier=notifier, worker_id=worker_id)
    webhooks = WebhookReconciler(session_factory, registry, ledger, notifier=notifier)
    return BillingEngine(
        session_factory=session_factory,
        registry=registry,
        ledger=ledger,
        customers=customers,
        router=router,
        scheduler=scheduler,
        webhooks=webhooks,
    )


async def start_engine(
    notifier: Notifier | None = None, migrate: bool = True, serve_metrics: bool = True
) -> BillingEngine:
    """
    Process startup: logging, tracing, migrations, provider registry.

    Providers come from the payment_providers table.
    """
    setup_logging()
    setup_tracing()

    logger.info(
        "engine_starting",
        service=settings.service_name,
        version=settings.service_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if migrate:
        # Alembic's command API is synchronous
        await asyncio.to_thread(run_migrations)

    instrument_sqlalchemy(get_engine())
    if serve_metrics:
        start_metrics_server()

    session_factory = get_session_factory()
    registry = await ProviderConfigService(session_factory).build_registry()
    engine = build_engine(session_factory, registry, notifier=notifier)
    logger.info("engine_started", providers=sorted(p.provider_id for p in registry))
    return engine


@asynccontextmanager
async def engine_lifespan(
    notifier: Notifier | None = None, migrate: bool = True, serve_metrics: bool = True
) -> AsyncIterator[BillingEngine]:
    """
    Engine lifespan manager.

    Usage:
        async with engine_lifespan() as engine:
            await engine.scheduler.tick()
    """
    engine = await start_engine(notifier=notifier, migrate=migrate, serve_metrics=serve_metrics)
    try:
        yield engine
    finally:
        logger.info("engine_shutting_down")
        await close_engine()
        logger.info("database_engine_closed")
