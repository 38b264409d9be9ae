"""
Enumerations - Closed value sets shared by ORM rows and domain models.

NO MAGIC STRINGS - Every status, type and policy is a str Enum.
"""

from enum import Enum


class OwnerKind(str, Enum):
    """Kind of entity a customer represents."""

    USER = "user"
    ORGANIZATION = "organization"
    GUEST = "guest"


class BalanceStatus(str, Enum):
    """Account balance status enumeration."""

    ACTIVE = "active"
    FROZEN = "frozen"
    SUSPENDED = "suspended"


class TransactionType(str, Enum):
    """Ledger transaction type enumeration."""

    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    FEE = "fee"

    @property
    def sign(self) -> int:
        """Direction this type moves a balance: +1 or -1."""
        if self in (TransactionType.DEBIT, TransactionType.FEE):
            return -1
        return 1


CREDIT_TYPES = frozenset(
    {TransactionType.CREDIT, TransactionType.REFUND, TransactionType.ADJUSTMENT}
)
DEBIT_TYPES = frozenset({TransactionType.DEBIT, TransactionType.FEE})


def signed_amount(transaction_type: TransactionType, amount_cents: int) -> int:
    """Signed balance delta of a transaction (amounts are stored as magnitudes)."""
    return transaction_type.sign * amount_cents


class TransactionStatus(str, Enum):
    """Ledger transaction status enumeration."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class IntervalUnit(str, Enum):
    """Billing interval unit."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentPriority(str, Enum):
    """Draw order between an account balance and a payment method."""

    BALANCE_FIRST = "balance_first"
    PAYMENT_METHOD_FIRST = "payment_method_first"
    BALANCE_ONLY = "balance_only"
    PAYMENT_METHOD_ONLY = "payment_method_only"

    @property
    def uses_balance(self) -> bool:
        return self is not PaymentPriority.PAYMENT_METHOD_ONLY

    @property
    def uses_payment_method(self) -> bool:
        return self is not PaymentPriority.BALANCE_ONLY


class ScheduleType(str, Enum):
    """Billing schedule type."""

    RECURRING = "recurring"
    ONE_TIME = "one_time"
    INSTALLMENT = "installment"


class ScheduleStatus(str, Enum):
    """Billing schedule status enumeration."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


CLAIMABLE_SCHEDULE_STATUSES = frozenset({ScheduleStatus.ACTIVE, ScheduleStatus.PAST_DUE})


class ExecutionStatus(str, Enum):
    """Outcome of one billing attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class PaymentSource(str, Enum):
    """Where the money for a billing attempt came from."""

    ACCOUNT_BALANCE = "account_balance"
    PAYMENT_METHOD = "payment_method"
    MIXED = "mixed"


class PaymentStatus(str, Enum):
    """Logical payment status enumeration."""

    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.REFUNDED}
)


class ProviderCapability(str, Enum):
    """Capabilities a payment provider adapter may support."""

    CUSTOMER = "customer"
    PAYMENT_METHOD = "payment_method"
    CHARGE = "charge"
    SUBSCRIPTION = "subscription"
    REFUND = "refund"
    WEBHOOK = "webhook"


class WebhookEventType(str, Enum):
    """Canonical webhook event types adapters normalize provider events to."""

    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
