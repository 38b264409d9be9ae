"""
Sandbox Provider - In-memory implementation of the payment provider protocol.

Used for local development, staging smoke runs and tests. Behaves like a real
processor where it matters to the engine: one effect per idempotency key,
refund bookkeeping, declines, asynchronous outcomes and signed webhooks.
"""

import hashlib
import hmac
import itertools
import json
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel, Field, ValidationError
from structlog import get_logger

from billing_engine.exceptions import (
    InvalidRequestError,
    InvalidSignatureError,
    PaymentProviderError,
    ProviderUnavailableError,
)
from billing_engine.models.enums import PaymentStatus, ProviderCapability, WebhookEventType
from billing_engine.services.payment_provider import (
    ChargeResult,
    ProviderWebhookEvent,
    RefundResult,
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "Sandbox-Signature"

# Sandbox event names -> canonical event types
EVENT_TYPE_MAP: dict[str, WebhookEventType] = {
    "charge.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "charge.failed": WebhookEventType.PAYMENT_FAILED,
    "charge.refunded": WebhookEventType.PAYMENT_REFUNDED,
    "subscription.canceled": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "subscription.paused": WebhookEventType.SUBSCRIPTION_PAUSED,
    "subscription.resumed": WebhookEventType.SUBSCRIPTION_RESUMED,
}


# ============================================================================
# Webhook Payload Models
# ============================================================================


class SandboxWebhookData(BaseModel):
    """Object the sandbox event refers to."""

    object_id: str | None = Field(None, max_length=255)
    subscription_id: str | None = Field(None, max_length=255)
    amount: int | None = Field(None, ge=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    failure_message: str | None = None


class SandboxWebhookPayload(BaseModel):
    """Sandbox webhook body."""

    id: str = Field(..., min_length=1, max_length=255)
    type: str = Field(..., min_length=1, max_length=100)
    data: SandboxWebhookData = Field(default_factory=SandboxWebhookData)


# ============================================================================
# In-memory bookkeeping
# ============================================================================


@dataclass
class SandboxCharge:
    """A charge recorded by the sandbox."""

    provider_ref: str
    customer_ref: str | None
    method_ref: str
    amount_cents: int
    currency: str
    idempotency_key: str
    status: PaymentStatus
    refunded_cents: int = 0


class SandboxProvider:
    """
    In-memory payment provider.

    Failure injection:
        provider.decline("pm_card", CardDeclinedError("card declined"))
        provider.fail_next(ProviderUnavailableError("timeout"))
        provider.fail_next(ProviderUnavailableError("down"), operation="refund")
        provider.set_async("pm_bank")  # charges come back "processing"
    """

    capabilities = frozenset(ProviderCapability)

    def __init__(
        self,
        provider_id: str = "sandbox",
        webhook_secret: str = "",
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider_id = provider_id
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

        self._ids = itertools.count(1)
        self.customers: dict[str, str] = {}
        self.charges: dict[str, SandboxCharge] = {}
        self.refunds: dict[str, RefundResult] = {}

        # Idempotency: key -> stored outcome
        self._charge_outcomes: dict[str, ChargeResult | PaymentProviderError] = {}
        self._refund_outcomes: dict[str, RefundResult | PaymentProviderError] = {}

        self._declines: dict[str, PaymentProviderError] = {}
        self._pending_failures: dict[str, list[PaymentProviderError]] = {}
        self._async_methods: dict[str, PaymentStatus] = {}

    # ========================================================================
    # Failure injection
    # ========================================================================

    def decline(self, method_ref: str, error: PaymentProviderError) -> None:
        """Fail every charge against method_ref with error."""
        self._declines[method_ref] = error

    def clear_decline(self, method_ref: str) -> None:
        self._declines.pop(method_ref, None)

    def fail_next(self, error: PaymentProviderError, operation: str = "charge") -> None:
        """Fail the next call of operation (charge, refund, create_customer)."""
        self._pending_failures.setdefault(operation, []).append(error)

    def set_async(
        self, method_ref: str, status: PaymentStatus = PaymentStatus.PROCESSING
    ) -> None:
        """Charges against method_ref complete later (processing or requires_action)."""
        self._async_methods[method_ref] = status

    def _take_failure(self, operation: str) -> PaymentProviderError | None:
        queue = self._pending_failures.get(operation)
        if queue:
            return queue.pop(0)
        return None

    def _next_ref(self, prefix: str) -> str:
        return f"{prefix}_{self.provider_id}_{next(self._ids)}"

    # ========================================================================
    # Provider contract
    # ========================================================================

    async def create_customer(self, customer_id: str, email: str | None) -> str:
        """Create (or return) the sandbox customer for customer_id."""
        failure = self._take_failure("create_customer")
        if failure is not None:
            raise failure

        existing = self.customers.get(customer_id)
        if existing is not None:
            return existing

        customer_ref = self._next_ref("cus")
        self.customers[customer_id] = customer_ref
        logger.info("sandbox_customer_created", customer_id=customer_id, customer_ref=customer_ref)
        return customer_ref

    async def charge(
        self,
        customer_ref: str | None,
        method_ref: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        """Charge a method; replays return the stored outcome for the key."""
        stored = self._charge_outcomes.get(idempotency_key)
        if isinstance(stored, PaymentProviderError):
            raise stored
        if stored is not None:
            logger.info("sandbox_charge_replayed", idempotency_key=idempotency_key)
            return stored

        failure = self._take_failure("charge")
        if failure is None:
            failure = self._declines.get(method_ref)
        if failure is None and amount_cents <= 0:
            failure = InvalidRequestError(
                f"amount must be positive: {amount_cents}", provider_id=self.provider_id
            )
        if failure is not None:
            # No effect happened; only deterministic rejections are remembered
            if not isinstance(failure, ProviderUnavailableError):
                self._charge_outcomes[idempotency_key] = failure
            logger.info(
                "sandbox_charge_failed",
                idempotency_key=idempotency_key,
                method_ref=method_ref,
                code=failure.code,
            )
            raise failure

        status = self._async_methods.get(method_ref, PaymentStatus.SUCCEEDED)
        provider_ref = self._next_ref("ch")
        self.charges[provider_ref] = SandboxCharge(
            provider_ref=provider_ref,
            customer_ref=customer_ref,
            method_ref=method_ref,
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
            status=status,
        )
        result = ChargeResult(
            provider_ref=provider_ref,
            status=status,
            amount_cents=amount_cents,
            currency=currency,
        )
        self._charge_outcomes[idempotency_key] = result

        logger.info(
            "sandbox_charge_created",
            provider_ref=provider_ref,
            amount_cents=amount_cents,
            status=status.value,
        )
        return result

    async def refund(
        self, provider_ref: str, amount_cents: int, idempotency_key: str
    ) -> RefundResult:
        """Refund part or all of a charge; replays return the stored outcome."""
        stored = self._refund_outcomes.get(idempotency_key)
        if isinstance(stored, PaymentProviderError):
            raise stored
        if stored is not None:
            return stored

        failure = self._take_failure("refund")
        if failure is not None:
            raise failure

        charge = self.charges.get(provider_ref)
        if charge is None:
            error: PaymentProviderError = InvalidRequestError(
                f"unknown charge {provider_ref}", provider_id=self.provider_id
            )
            self._refund_outcomes[idempotency_key] = error
            raise error

        remaining = charge.amount_cents - charge.refunded_cents
        if amount_cents <= 0 or amount_cents > remaining:
            error = InvalidRequestError(
                f"refund of {amount_cents} exceeds refundable {remaining}",
                provider_id=self.provider_id,
            )
            self._refund_outcomes[idempotency_key] = error
            raise error

        charge.refunded_cents += amount_cents
        if charge.refunded_cents == charge.amount_cents:
            charge.status = PaymentStatus.REFUNDED

        result = RefundResult(
            refund_ref=self._next_ref("re"),
            status="succeeded",
            amount_cents=amount_cents,
        )
        self.refunds[result.refund_ref] = result
        self._refund_outcomes[idempotency_key] = result

        logger.info(
            "sandbox_refund_created",
            provider_ref=provider_ref,
            refund_ref=result.refund_ref,
            amount_cents=amount_cents,
        )
        return result

    # ========================================================================
    # Webhooks
    # ========================================================================

    def sign(self, raw_body: bytes, timestamp: int | None = None) -> str:
        """Signature header value: t=<unix>,v1=<hex hmac-sha256 of "t.body">."""
        ts = int(self._clock()) if timestamp is None else timestamp
        digest = hmac.new(
            self.webhook_secret.encode(),
            f"{ts}.".encode() + raw_body,
            hashlib.sha256,
        ).hexdigest()
        return f"t={ts},v1={digest}"

    def build_webhook(
        self,
        event_id: str,
        event_type: str,
        object_id: str | None = None,
        subscription_id: str | None = None,
        amount: int | None = None,
        currency: str | None = None,
        failure_message: str | None = None,
        timestamp: int | None = None,
    ) -> tuple[bytes, str]:
        """Build a signed webhook delivery (body, signature header)."""
        payload = SandboxWebhookPayload(
            id=event_id,
            type=event_type,
            data=SandboxWebhookData(
                object_id=object_id,
                subscription_id=subscription_id,
                amount=amount,
                currency=currency,
                failure_message=failure_message,
            ),
        )
        raw_body = json.dumps(payload.model_dump(), separators=(",", ":")).encode()
        return raw_body, self.sign(raw_body, timestamp)

    def verify_and_parse_webhook(
        self, raw_body: bytes, signature_header: str
    ) -> ProviderWebhookEvent:
        """
        Verify the HMAC signature and timestamp, then parse the payload.

        Raises:
            InvalidSignatureError: Missing secret, malformed header, stale
                timestamp, bad signature or unparseable payload
        """
        if not self.webhook_secret:
            raise InvalidSignatureError("webhook secret not configured")

        timestamp: int | None = None
        signatures: list[str] = []
        for part in (signature_header or "").split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError as exc:
                    raise InvalidSignatureError("malformed timestamp") from exc
            elif key == "v1" and value:
                signatures.append(value)

        if timestamp is None or not signatures:
            raise InvalidSignatureError("malformed signature header")

        if abs(self._clock() - timestamp) > self.tolerance_seconds:
            raise InvalidSignatureError("timestamp outside tolerance")

        expected = self.sign(raw_body, timestamp).split("v1=", 1)[1]
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            logger.warning("sandbox_webhook_signature_mismatch", provider_id=self.provider_id)
            raise InvalidSignatureError("signature mismatch")

        try:
            payload = SandboxWebhookPayload.model_validate_json(raw_body)
        except ValidationError as exc:
            raise InvalidSignatureError(f"Failed to parse webhook: {exc}") from exc

        canonical = EVENT_TYPE_MAP.get(payload.type)
        return ProviderWebhookEvent(
            provider_event_id=payload.id,
            event_type=canonical.value if canonical else payload.type,
            provider_ref=payload.data.object_id,
            subscription_ref=payload.data.subscription_id,
            amount_cents=payload.data.amount,
            currency=payload.data.currency,
            failure_message=payload.data.failure_message,
            raw_type=payload.type,
        )
