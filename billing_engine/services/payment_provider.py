"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

from structlog import get_logger

from billing_engine.exceptions import UnknownProviderError
from billing_engine.models.enums import PaymentStatus, ProviderCapability

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    """
    Provider-agnostic charge result.

    status is succeeded, processing or requires_action. The latter two are
    completed later by a webhook.
    """

    provider_ref: str  # Provider-specific charge ID
    status: PaymentStatus
    amount_cents: int
    currency: str


@dataclass(frozen=True)
class RefundResult:
    """Provider-agnostic refund result."""

    refund_ref: str
    status: str
    amount_cents: int


@dataclass(frozen=True)
class ProviderWebhookEvent:
    """
    Provider-agnostic webhook event.

    event_type is normalized to a WebhookEventType value when the adapter
    recognizes it and passed through verbatim otherwise.
    """

    provider_event_id: str
    event_type: str
    provider_ref: str | None
    subscription_ref: str | None
    amount_cents: int | None
    currency: str | None
    failure_message: str | None
    raw_type: str


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment provider (card processor, wallet, bank rail) must implement
    this interface. Every mutating call forwards the caller's idempotency
    key and the provider guarantees at most one effect per key.
    """

    provider_id: str
    capabilities: frozenset[ProviderCapability]

    async def create_customer(self, customer_id: str, email: str | None) -> str:
        """
        Create a customer record at the provider.

        Returns:
            Provider customer reference
        """
        ...

    async def charge(
        self,
        customer_ref: str | None,
        method_ref: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        """
        Charge a stored payment method.

        Raises:
            ProviderUnavailableError: Provider unreachable or timed out
            CardDeclinedError: Method declined
            InsufficientFundsError: Method lacks funds
            InvalidRequestError: Request rejected as malformed
        """
        ...

    async def refund(
        self, provider_ref: str, amount_cents: int, idempotency_key: str
    ) -> RefundResult:
        """
        Refund (part of) a previous charge.

        Raises:
            PaymentProviderError: If refund fails
        """
        ...

    def verify_and_parse_webhook(
        self, raw_body: bytes, signature_header: str
    ) -> ProviderWebhookEvent:
        """
        Verify and parse webhook event from provider.

        Raises:
            InvalidSignatureError: If signature verification fails
        """
        ...


class ProviderRegistry:
    """Explicit registry of provider adapters keyed by provider_id."""

    def __init__(self, providers: list[PaymentProvider] | None = None) -> None:
        self._providers: dict[str, PaymentProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: PaymentProvider) -> None:
        """Register (or replace) the adapter for its provider_id."""
        if provider.provider_id in self._providers:
            logger.warning("provider_replaced", provider_id=provider.provider_id)
        self._providers[provider.provider_id] = provider
        logger.info(
            "provider_registered",
            provider_id=provider.provider_id,
            capabilities=sorted(c.value for c in provider.capabilities),
        )

    def get(self, provider_id: str) -> PaymentProvider:
        """
        Look up an adapter.

        Raises:
            UnknownProviderError: No adapter registered for provider_id
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProviderError(provider_id)
        return provider

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __iter__(self) -> Iterator[PaymentProvider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)
