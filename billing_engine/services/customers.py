"""
Customer Service - Customer identity, guest conversion and provider references.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from billing_engine.db.models import Customer, PaymentMethod, ProviderCustomer, utc_now
from billing_engine.exceptions import (
    CustomerConversionError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from billing_engine.models.domain import CustomerData, PaymentMethodData
from billing_engine.models.enums import OwnerKind
from billing_engine.services.payment_provider import PaymentProvider

logger = get_logger(__name__)


def _customer_data(customer: Customer) -> CustomerData:
    return CustomerData(
        customer_id=customer.id,
        owner_kind=customer.owner_kind,
        owner_ref=customer.owner_ref,
        default_currency=customer.default_currency,
        email=customer.email,
        converted_at=customer.converted_at,
        created_at=customer.created_at,
    )


def _payment_method_data(method: PaymentMethod) -> PaymentMethodData:
    return PaymentMethodData(
        payment_method_id=method.id,
        customer_id=method.customer_id,
        provider_id=method.provider_id,
        provider_method_ref=method.provider_method_ref,
        payment_type=method.payment_type,
        last_four=method.last_four,
        is_default=method.is_default,
    )


class CustomerService:
    """Customers (users, organizations, guests) and their provider-side identities."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def create_customer(
        self,
        owner_kind: OwnerKind,
        owner_ref: str,
        default_currency: str = "USD",
        email: str | None = None,
    ) -> CustomerData:
        """Get or create the customer for (owner_kind, owner_ref)."""
        if not owner_ref:
            raise ValueError("owner_ref cannot be empty")
        if len(default_currency) != 3:
            raise ValueError(f"Invalid currency code: {default_currency}")

        async with self.session_factory() as session:
            existing = await self._find(session, owner_kind, owner_ref)
            if existing is not None:
                return _customer_data(existing)

            customer = Customer(
                owner_kind=owner_kind,
                owner_ref=owner_ref,
                default_currency=default_currency,
                email=email,
            )
            session.add(customer)
            try:
                await session.commit()
            except IntegrityError:
                # Race condition - created by another request
                await session.rollback()
                existing = await self._find(session, owner_kind, owner_ref)
                if existing is None:
                    raise WriteVerificationError(
                        f"Customer creation failed for {owner_kind.value}:{owner_ref}"
                    )
                return _customer_data(existing)

            logger.info(
                "customer_created",
                customer_id=str(customer.id),
                owner_kind=owner_kind.value,
            )
            return _customer_data(customer)

    async def get_customer(self, customer_id: UUID) -> CustomerData:
        async with self.session_factory() as session:
            customer = await session.get(Customer, customer_id)
            if customer is None:
                raise ResourceNotFoundError("Customer", customer_id)
            return _customer_data(customer)

    async def convert_guest(self, customer_id: UUID, user_ref: str) -> CustomerData:
        """
        Turn a guest customer into a registered user in place.

        The customer id is preserved so balances, schedules and payment
        methods that reference it are unaffected.
        """
        if not user_ref:
            raise ValueError("user_ref cannot be empty")

        async with self.session_factory() as session:
            stmt = select(Customer).where(Customer.id == customer_id).with_for_update()
            customer = (await session.execute(stmt)).scalar_one_or_none()
            if customer is None:
                raise ResourceNotFoundError("Customer", customer_id)
            if customer.owner_kind != OwnerKind.GUEST:
                raise CustomerConversionError(customer_id, customer.owner_kind.value)

            guest_ref = customer.owner_ref
            customer.owner_kind = OwnerKind.USER
            customer.owner_ref = user_ref
            customer.converted_at = utc_now()
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise WriteVerificationError(
                    f"User {user_ref} already has a customer record"
                ) from e

            logger.info(
                "guest_customer_converted",
                customer_id=str(customer_id),
                guest_ref=guest_ref,
                user_ref=user_ref,
            )
            return _customer_data(customer)

    async def ensure_provider_customer(
        self, customer_id: UUID, provider: PaymentProvider
    ) -> str:
        """
        Get or create the customer's reference at provider.

        The provider call happens outside any open transaction.
        """
        async with self.session_factory() as session:
            customer = await session.get(Customer, customer_id)
            if customer is None:
                raise ResourceNotFoundError("Customer", customer_id)
            existing = await self._find_provider_ref(session, customer_id, provider.provider_id)
            if existing is not None:
                return existing
            email = customer.email

        customer_ref = await provider.create_customer(str(customer_id), email)

        async with self.session_factory() as session:
            session.add(
                ProviderCustomer(
                    customer_id=customer_id,
                    provider_id=provider.provider_id,
                    provider_customer_ref=customer_ref,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_provider_ref(
                    session, customer_id, provider.provider_id
                )
                if existing is None:
                    raise WriteVerificationError(
                        f"Provider customer creation failed for {customer_id}"
                    )
                return existing

        logger.info(
            "provider_customer_created",
            customer_id=str(customer_id),
            provider_id=provider.provider_id,
        )
        return customer_ref

    async def get_payment_method(self, payment_method_id: UUID) -> PaymentMethodData:
        async with self.session_factory() as session:
            method = await session.get(PaymentMethod, payment_method_id)
            if method is None:
                raise ResourceNotFoundError("PaymentMethod", payment_method_id)
            return _payment_method_data(method)

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _find(
        self, session: AsyncSession, owner_kind: OwnerKind, owner_ref: str
    ) -> Customer | None:
        stmt = select(Customer).where(
            Customer.owner_kind == owner_kind,
            Customer.owner_ref == owner_ref,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _find_provider_ref(
        self, session: AsyncSession, customer_id: UUID, provider_id: str
    ) -> str | None:
        stmt = select(ProviderCustomer.provider_customer_ref).where(
            ProviderCustomer.customer_id == customer_id,
            ProviderCustomer.provider_id == provider_id,
        )
        return (await session.execute(stmt)).scalar_one_or_none()
