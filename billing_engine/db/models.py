"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

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


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """
    Timezone-aware UTC timestamp.

    Values are normalized to UTC on the way in and always come back aware,
    including on backends that store naive timestamps.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    """String-backed enum column (no native DB enum types)."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=30,
        values_callable=lambda x: [e.value for e in x],
    )


# ============================================================================
# Customers & Payment Methods
# ============================================================================


class Customer(Base):
    """
    ORM model for customers table.

    Unifies registered users, organizations and guests.
    """

    __tablename__ = "customers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_kind: Mapped[OwnerKind] = mapped_column(_enum(OwnerKind, "owner_kind"), nullable=False)
    owner_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("owner_kind", "owner_ref", name="uq_customer_owner"),
        Index("idx_customers_owner_ref", "owner_ref"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Customer(id={self.id}, kind={self.owner_kind}, owner_ref={self.owner_ref})>"


class PaymentProvider(Base):
    """
    ORM model for payment_providers table.

    Configuration for payment provider adapters.
    """

    __tablename__ = "payment_providers"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    adapter_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    supports_subscriptions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    supports_saved_methods: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Configuration data (secrets are injected from the environment when absent)
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<PaymentProvider(id={self.id}, kind={self.adapter_kind}, active={self.is_active})>"


class ProviderCustomer(Base):
    """
    ORM model for provider_customers table.

    Maps a customer to its customer reference at one provider.
    """

    __tablename__ = "provider_customers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    customer_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_customer_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("customer_id", "provider_id", name="uq_provider_customer"),
        UniqueConstraint("provider_id", "provider_customer_ref", name="uq_provider_customer_ref"),
    )


class PaymentMethod(Base):
    """
    ORM model for payment_methods table.

    Tokenized instrument at one provider, owned by the merchant-facing flow.
    """

    __tablename__ = "payment_methods"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    customer_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_method_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(50), nullable=False, default="card")
    last_four: Mapped[str | None] = mapped_column(String(4), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("provider_id", "provider_method_ref", name="uq_payment_method_ref"),
    )


# ============================================================================
# Ledger
# ============================================================================


class AccountBalance(Base):
    """
    ORM model for account_balances table.

    A named ledger head. Only the Ledger service writes to it.
    """

    __tablename__ = "account_balances"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reference_code: Mapped[str] = mapped_column(String(100), nullable=False, default="main_wallet")
    balance_type: Mapped[str] = mapped_column(String(50), nullable=False, default="general")

    # Balance state
    current_balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credit_limit_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    minimum_balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    held_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[BalanceStatus] = mapped_column(
        _enum(BalanceStatus, "balance_status"), nullable=False, default=BalanceStatus.ACTIVE
    )

    # Posting counter - bumped by every mutation (compare-and-set guard)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )
    last_transaction_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("credit_limit_cents >= 0", name="ck_balance_credit_limit_non_negative"),
        CheckConstraint("held_cents >= 0", name="ck_balance_held_non_negative"),
        CheckConstraint("version >= 0", name="ck_balance_version_non_negative"),
        UniqueConstraint("owner_ref", "currency", "reference_code", name="uq_account_balance"),
        Index("idx_account_balances_owner", "owner_ref"),
        Index("idx_account_balances_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AccountBalance(id={self.id}, owner_ref={self.owner_ref}, "
            f"balance={self.current_balance_cents}, status={self.status})>"
        )


class AccountTransaction(Base):
    """
    ORM model for account_transactions table.

    Immutable ledger of all balance movements.
    """

    __tablename__ = "account_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    balance_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("account_balances.id", ondelete="RESTRICT"), nullable=False
    )

    transaction_type: Mapped[TransactionType] = mapped_column(
        _enum(TransactionType, "transaction_type"), nullable=False
    )

    # Amount (always a positive magnitude - sign implied by type)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Balance snapshots (denormalized for auditing)
    balance_before_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )

    # Posting order within the balance (null while pending)
    sequence: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # Reservation placed by hold(); stays true after capture or release
    is_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transaction_amount_positive"),
        UniqueConstraint("balance_id", "idempotency_key", name="uq_transaction_idempotency"),
        UniqueConstraint("balance_id", "sequence", name="uq_transaction_sequence"),
        Index("idx_account_transactions_balance", "balance_id"),
        Index("idx_account_transactions_status", "status"),
        Index("idx_account_transactions_payment", "payment_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AccountTransaction(id={self.id}, balance_id={self.balance_id}, "
            f"type={self.transaction_type}, amount={self.amount_cents}, status={self.status})>"
        )


# ============================================================================
# Payments
# ============================================================================


class Payment(Base):
    """
    ORM model for payments table.

    A logical charge, possibly composed of a balance debit and a provider charge.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    owner_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING
    )
    payment_priority: Mapped[PaymentPriority] = mapped_column(
        _enum(PaymentPriority, "payment_priority"), nullable=False
    )

    # Sources
    account_balance_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    payment_method_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    provider_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Planned breakdown (persisted before any money moves)
    planned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    balance_portion_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    provider_portion_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shortfall_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance_transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    compensated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    failure_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Originating schedule (if any)
    schedule_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    billing_period: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_amount_positive"),
        CheckConstraint("balance_portion_cents >= 0", name="ck_payment_balance_portion"),
        CheckConstraint("provider_portion_cents >= 0", name="ck_payment_provider_portion"),
        Index("idx_payments_provider_ref", "provider_id", "provider_ref"),
        Index("idx_payments_schedule", "schedule_id"),
        Index("idx_payments_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Payment(id={self.id}, amount={self.amount_cents}, status={self.status}, "
            f"balance={self.balance_portion_cents}, provider={self.provider_portion_cents})>"
        )


class PaymentEvent(Base):
    """
    ORM model for payment_events table.

    Append-only audit trail consumed by receipt/notification collaborators.
    """

    __tablename__ = "payment_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_payment_events_entity", "entity_type", "entity_id"),
        Index("idx_payment_events_type", "event_type"),
    )


# ============================================================================
# Billing Schedules
# ============================================================================


class BillingSchedule(Base):
    """
    ORM model for billing_schedules table.

    Recurring or installment charge configuration. Mutated by the scheduler only.
    """

    __tablename__ = "billing_schedules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    schedule_type: Mapped[ScheduleType] = mapped_column(
        _enum(ScheduleType, "schedule_type"), nullable=False, default=ScheduleType.RECURRING
    )
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Recurrence
    interval_unit: Mapped[IntervalUnit] = mapped_column(
        _enum(IntervalUnit, "interval_unit"), nullable=False
    )
    interval_multiplier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_billing_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_billed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Payment sources
    payment_method_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    account_balance_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    payment_priority: Mapped[PaymentPriority] = mapped_column(
        _enum(PaymentPriority, "payment_priority"),
        nullable=False,
        default=PaymentPriority.BALANCE_FIRST,
    )
    provider_cap_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    allow_partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Status & retry
    status: Mapped[ScheduleStatus] = mapped_column(
        _enum(ScheduleStatus, "schedule_status"), nullable=False, default=ScheduleStatus.ACTIVE
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Execution claim (lease)
    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Notifications
    notify_before_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_notification_sent: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Provider-side subscription reference (webhook correlation)
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_schedule_amount_positive"),
        CheckConstraint(
            "interval_multiplier BETWEEN 1 AND 12", name="ck_schedule_interval_multiplier"
        ),
        CheckConstraint("retry_count >= 0", name="ck_schedule_retry_count"),
        CheckConstraint("max_retries >= 1", name="ck_schedule_max_retries"),
        CheckConstraint(
            "notify_before_days IS NULL OR notify_before_days BETWEEN 0 AND 30",
            name="ck_schedule_notify_before_days",
        ),
        Index("idx_billing_schedules_due", "status", "next_billing_date"),
        Index("idx_billing_schedules_owner", "owner_ref"),
        Index("idx_billing_schedules_external_ref", "external_ref"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BillingSchedule(id={self.id}, status={self.status}, "
            f"next={self.next_billing_date}, retries={self.retry_count}/{self.max_retries})>"
        )


class BillingScheduleExecution(Base):
    """
    ORM model for billing_schedule_executions table.

    Immutable record of one billing attempt.
    """

    __tablename__ = "billing_schedule_executions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    schedule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("billing_schedules.id", ondelete="CASCADE"), nullable=False
    )
    billing_period: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)

    execution_status: Mapped[ExecutionStatus] = mapped_column(
        _enum(ExecutionStatus, "execution_status"), nullable=False
    )
    attempted_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    charged_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payment_source: Mapped[PaymentSource | None] = mapped_column(
        _enum(PaymentSource, "payment_source"), nullable=True
    )
    payment_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    executed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("schedule_id", "billing_period", "attempt", name="uq_execution_attempt"),
        Index("idx_billing_executions_schedule", "schedule_id"),
        Index("idx_billing_executions_status", "execution_status"),
    )


# ============================================================================
# Webhooks
# ============================================================================


class WebhookEvent(Base):
    """
    ORM model for webhook_events table.

    Inbound provider notifications, deduplicated on the provider's event ID.
    """

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    provider_id: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_id", "provider_event_id", name="uq_webhook_provider_event"),
        Index("idx_webhook_events_processed", "processed"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<WebhookEvent(id={self.id}, provider={self.provider_id}, "
            f"event={self.provider_event_id}, processed={self.processed})>"
        )
