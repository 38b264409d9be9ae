"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from billing_engine.models.enums import (
    BalanceStatus,
    ExecutionStatus,
    IntervalUnit,
    OwnerKind,
    PaymentPriority,
    PaymentSource,
    PaymentStatus,
    ScheduleStatus,
    ScheduleType,
    TransactionStatus,
    TransactionType,
)


# ============================================================================
# Payment Routing
# ============================================================================


@dataclass(frozen=True)
class SourceBreakdown:
    """How a payment amount was split between balance and payment method."""

    balance_portion_cents: int
    provider_portion_cents: int

    def __post_init__(self) -> None:
        """Validate portions."""
        if self.balance_portion_cents < 0 or self.provider_portion_cents < 0:
            raise ValueError(
                f"Portions cannot be negative: balance={self.balance_portion_cents}, "
                f"provider={self.provider_portion_cents}"
            )

    @property
    def total_cents(self) -> int:
        return self.balance_portion_cents + self.provider_portion_cents


@dataclass(frozen=True)
class PaymentRequest:
    """Domain model for a charge before routing - immutable intent."""

    amount_cents: int
    currency: str
    payment_priority: PaymentPriority
    idempotency_key: str
    description: str
    account_balance_id: UUID | None = None
    payment_method_id: UUID | None = None
    owner_ref: str | None = None
    provider_cap_cents: int | None = None
    allow_partial: bool = False
    schedule_id: UUID | None = None
    billing_period: datetime | None = None

    def __post_init__(self) -> None:
        """Validate request constraints."""
        if self.amount_cents <= 0:
            raise ValueError(f"Payment amount must be positive: {self.amount_cents}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")
        if not self.idempotency_key:
            raise ValueError("idempotency_key cannot be empty")
        if not self.description:
            raise ValueError("Description cannot be empty")
        # The leading source is mandatory, the fallback source is optional
        balance_led = self.payment_priority in (
            PaymentPriority.BALANCE_ONLY,
            PaymentPriority.BALANCE_FIRST,
        )
        if balance_led and self.account_balance_id is None:
            raise ValueError(f"{self.payment_priority.value} requires account_balance_id")
        if not balance_led and self.payment_method_id is None:
            raise ValueError(f"{self.payment_priority.value} requires payment_method_id")
        if self.provider_cap_cents is not None and self.provider_cap_cents <= 0:
            raise ValueError(f"Provider cap must be positive: {self.provider_cap_cents}")
        if (
            self.payment_priority is PaymentPriority.PAYMENT_METHOD_FIRST
            and self.provider_cap_cents is not None
            and self.provider_cap_cents < self.amount_cents
            and self.account_balance_id is None
        ):
            raise ValueError("provider cap below amount requires account_balance_id")


@dataclass(frozen=True)
class PaymentData:
    """Domain model for a routed payment."""

    payment_id: UUID
    idempotency_key: str
    amount_cents: int
    currency: str
    status: PaymentStatus
    payment_priority: PaymentPriority
    source_breakdown: SourceBreakdown
    shortfall_cents: int
    account_balance_id: UUID | None
    payment_method_id: UUID | None
    provider_id: str | None
    provider_ref: str | None
    balance_transaction_id: UUID | None
    failure_code: str | None
    created_at: datetime
    completed_at: datetime | None

    @property
    def charged_cents(self) -> int:
        return self.source_breakdown.total_cents

    @property
    def payment_source(self) -> PaymentSource | None:
        """Which source(s) actually carried money."""
        balance = self.source_breakdown.balance_portion_cents > 0
        provider = self.source_breakdown.provider_portion_cents > 0
        if balance and provider:
            return PaymentSource.MIXED
        if balance:
            return PaymentSource.ACCOUNT_BALANCE
        if provider:
            return PaymentSource.PAYMENT_METHOD
        return None


# ============================================================================
# Ledger
# ============================================================================


@dataclass(frozen=True)
class BalanceData:
    """Domain model for an account balance."""

    balance_id: UUID
    owner_ref: str
    currency: str
    reference_code: str
    balance_type: str
    current_balance_cents: int
    credit_limit_cents: int
    minimum_balance_cents: int
    held_cents: int
    status: BalanceStatus
    version: int
    expires_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def available_cents(self, now: datetime) -> int:
        """Spendable amount: current + credit limit - minimum - held."""
        if self.is_expired(now):
            return 0
        return (
            self.current_balance_cents
            + self.credit_limit_cents
            - self.minimum_balance_cents
            - self.held_cents
        )


@dataclass(frozen=True)
class TransactionData:
    """Domain model for a ledger transaction."""

    transaction_id: UUID
    balance_id: UUID
    transaction_type: TransactionType
    amount_cents: int
    currency: str
    balance_before_cents: int
    balance_after_cents: int
    status: TransactionStatus
    sequence: int | None
    description: str
    idempotency_key: str
    payment_id: UUID | None
    created_at: datetime
    completed_at: datetime | None
    is_hold: bool = False


# ============================================================================
# Customers
# ============================================================================


@dataclass(frozen=True)
class CustomerData:
    """Domain model for a customer."""

    customer_id: UUID
    owner_kind: OwnerKind
    owner_ref: str
    default_currency: str
    email: str | None
    converted_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class PaymentMethodData:
    """Domain model for a stored payment method (read-only)."""

    payment_method_id: UUID
    customer_id: UUID
    provider_id: str
    provider_method_ref: str
    payment_type: str
    last_four: str | None
    is_default: bool


# ============================================================================
# Scheduling
# ============================================================================


@dataclass(frozen=True)
class ScheduleData:
    """Domain model for a billing schedule."""

    schedule_id: UUID
    owner_ref: str
    description: str
    schedule_type: ScheduleType
    amount_cents: int
    currency: str
    interval_unit: IntervalUnit
    interval_multiplier: int
    start_date: datetime
    end_date: datetime | None
    next_billing_date: datetime
    last_billed_at: datetime | None
    payment_method_id: UUID | None
    account_balance_id: UUID | None
    payment_priority: PaymentPriority
    provider_cap_cents: int | None
    allow_partial: bool
    status: ScheduleStatus
    retry_count: int
    max_retries: int
    last_failure_reason: str | None
    notify_before_days: int | None
    external_ref: str | None
    category: str | None
    reference_code: str | None


@dataclass(frozen=True)
class ExecutionData:
    """Domain model for one recorded billing attempt."""

    execution_id: UUID
    schedule_id: UUID
    billing_period: datetime
    attempt: int
    execution_status: ExecutionStatus
    attempted_amount_cents: int
    charged_amount_cents: int
    payment_source: PaymentSource | None
    payment_id: UUID | None
    error_code: str | None
    error_message: str | None
    executed_at: datetime


@dataclass
class TickResult:
    """Counters for one scheduler tick."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    partial: int = 0
    suspended: int = 0
    completed: int = 0
    skipped: int = 0
    schedule_ids: list[UUID] = field(default_factory=list)


# ============================================================================
# Webhooks
# ============================================================================


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of receiving one webhook delivery."""

    webhook_event_id: UUID
    provider_event_id: str
    event_type: str
    duplicate: bool
    handled: bool
