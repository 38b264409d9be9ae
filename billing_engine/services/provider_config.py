"""
Provider Configuration Service - Load payment provider configs from database.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from billing_engine.config import settings
from billing_engine.db.models import PaymentProvider as PaymentProviderRow
from billing_engine.services.payment_provider import PaymentProvider, ProviderRegistry
from billing_engine.services.sandbox_provider import SandboxProvider

logger = get_logger(__name__)


def _build_sandbox(row: PaymentProviderRow) -> PaymentProvider:
    config = row.config or {}
    return SandboxProvider(
        provider_id=row.id,
        webhook_secret=config.get("webhook_secret") or settings.sandbox_webhook_secret,
        tolerance_seconds=int(
            config.get("tolerance_seconds", settings.webhook_tolerance_seconds)
        ),
    )


# adapter_kind -> adapter factory
ADAPTER_FACTORIES = {
    "sandbox": _build_sandbox,
}


class ProviderConfigService:
    """Service for loading provider configurations from database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def list_active(self) -> list[PaymentProviderRow]:
        """Active provider rows ordered by id."""
        async with self.session_factory() as session:
            stmt = (
                select(PaymentProviderRow)
                .where(PaymentProviderRow.is_active == True)  # noqa: E712
                .order_by(PaymentProviderRow.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def build_registry(self) -> ProviderRegistry:
        """
        Instantiate an adapter for every active provider row.

        Rows with an adapter_kind this build does not know are skipped.
        """
        registry = ProviderRegistry()
        for row in await self.list_active():
            factory = ADAPTER_FACTORIES.get(row.adapter_kind)
            if factory is None:
                logger.warning(
                    "provider_adapter_unknown",
                    provider_id=row.id,
                    adapter_kind=row.adapter_kind,
                )
                continue
            registry.register(factory(row))

        logger.info("provider_registry_built", providers=len(registry))
        return registry
