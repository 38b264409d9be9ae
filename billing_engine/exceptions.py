"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
Every exception carries a stable ``code`` so callers can branch on the
failure kind without parsing messages.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    code = "billing_error"


# ============================================================================
# Payment Provider Errors
# ============================================================================


class PaymentProviderError(BillingError):
    """Raised when a payment provider operation fails."""

    code = "provider_error"
    retryable = False

    def __init__(self, message: str, provider_id: str | None = None) -> None:
        self.message = message
        self.provider_id = provider_id
        super().__init__(f"Payment provider error: {message}")


class ProviderUnavailableError(PaymentProviderError):
    """Raised when a provider cannot be reached or timed out."""

    code = "provider_unavailable"
    retryable = True


class CardDeclinedError(PaymentProviderError):
    """Raised when the provider declines the payment method."""

    code = "card_declined"
    retryable = True


class InsufficientFundsError(PaymentProviderError):
    """Raised when the payment method has insufficient funds."""

    code = "insufficient_funds"
    retryable = True


class InvalidRequestError(PaymentProviderError):
    """Raised when the provider rejects the request as malformed."""

    code = "invalid_request"


class UnknownProviderError(BillingError):
    """Raised when no adapter is registered for a provider."""

    code = "unknown_provider"

    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"No payment provider registered for '{provider_id}'")


class InvalidSignatureError(BillingError):
    """Raised when webhook signature verification fails."""

    code = "invalid_signature"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


# ============================================================================
# Ledger Errors
# ============================================================================


class InsufficientBalanceError(BillingError):
    """Raised when a balance cannot cover a debit."""

    code = "insufficient_balance"

    def __init__(self, balance_id: UUID, available: int, required: int) -> None:
        self.balance_id = balance_id
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient balance on {balance_id}. Available: {available}, Required: {required}"
        )


class BalanceNotActiveError(BillingError):
    """Raised when a frozen, suspended or expired balance is mutated."""

    code = "balance_not_active"

    def __init__(self, balance_id: UUID, status: str) -> None:
        self.balance_id = balance_id
        self.status = status
        super().__init__(f"Balance {balance_id} is not active: {status}")


class ConsistencyViolationError(BillingError):
    """
    Raised when ledger read-back breaks the balance arithmetic.

    The message carries only an opaque incident reference.
    """

    code = "consistency_violation"

    def __init__(self, balance_id: UUID, incident_ref: str) -> None:
        self.balance_id = balance_id
        self.incident_ref = incident_ref
        super().__init__(f"Ledger consistency violation, incident {incident_ref}")


class IdempotencyConflictError(BillingError):
    """Raised when idempotency key reused with different data."""

    code = "idempotency_conflict"

    def __init__(self, existing_id: UUID) -> None:
        self.existing_id = existing_id
        super().__init__(f"Idempotency conflict: existing ID {existing_id}")


class ConcurrencyError(BillingError):
    """Raised when concurrent modification detected."""

    code = "concurrency_conflict"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class CurrencyMismatchError(BillingError):
    """Raised when a payment currency differs from the balance currency."""

    code = "invalid_request"

    def __init__(self, balance_id: UUID, balance_currency: str, currency: str) -> None:
        self.balance_id = balance_id
        self.balance_currency = balance_currency
        self.currency = currency
        super().__init__(
            f"Currency mismatch on {balance_id}: balance={balance_currency}, payment={currency}"
        )


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    code = "write_verification_failed"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


# ============================================================================
# Payment Routing Errors
# ============================================================================


class CompensationError(BillingError):
    """Raised when undoing one half of a partial payment failed."""

    code = "compensation_failed"

    def __init__(self, payment_id: UUID, message: str) -> None:
        self.payment_id = payment_id
        self.message = message
        super().__init__(f"Compensation failed for payment {payment_id}: {message}")


class PaymentFailedError(BillingError):
    """Raised when a payment replayed by idempotency key had already failed."""

    def __init__(self, payment_id: UUID, failure_code: str, message: str) -> None:
        self.payment_id = payment_id
        self.code = failure_code
        self.message = message
        super().__init__(f"Payment {payment_id} failed ({failure_code}): {message}")


# ============================================================================
# Scheduling Errors
# ============================================================================


class DoubleClaimError(BillingError):
    """Raised when a schedule is already claimed by another worker."""

    code = "double_claim"

    def __init__(self, schedule_id: UUID) -> None:
        self.schedule_id = schedule_id
        super().__init__(f"Billing schedule {schedule_id} is claimed by another worker")


class InvalidTransitionError(BillingError):
    """Raised when a schedule or hold status change is not allowed."""

    code = "invalid_transition"

    def __init__(self, resource_id: UUID, current: str, target: str) -> None:
        self.resource_id = resource_id
        self.current = current
        self.target = target
        super().__init__(f"{resource_id} cannot move from {current} to {target}")


# ============================================================================
# Lookup Errors
# ============================================================================


class ResourceNotFoundError(BillingError):
    """Raised when a referenced row does not exist."""

    code = "not_found"

    def __init__(self, resource: str, resource_id: object) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class CustomerConversionError(BillingError):
    """Raised when a non-guest customer is converted."""

    code = "invalid_conversion"

    def __init__(self, customer_id: UUID, owner_kind: str) -> None:
        self.customer_id = customer_id
        self.owner_kind = owner_kind
        super().__init__(f"Customer {customer_id} is a {owner_kind}, only guests can be converted")


FATAL_ERROR_CODES = frozenset(
    {
        InvalidRequestError.code,
        BalanceNotActiveError.code,
        ConsistencyViolationError.code,
        UnknownProviderError.code,
        ResourceNotFoundError.code,
    }
)
