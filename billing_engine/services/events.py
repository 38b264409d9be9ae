"""
Payment Events - Append-only audit trail for downstream consumers.

Receipt generation and notification delivery read these rows; the engine
never reads them back for its own decisions.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.db.models import PaymentEvent

# Event type names
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_COMPENSATED = "payment.compensated"
PAYMENT_REPLANNED = "payment.replanned"
PAYMENT_REFUNDED = "payment.refunded"
SCHEDULE_SUSPENDED = "schedule.suspended"
SCHEDULE_PARTIAL = "schedule.partial"


def record_payment_event(
    session: AsyncSession,
    entity_type: str,
    entity_id: UUID,
    event_type: str,
    **data: Any,
) -> PaymentEvent:
    """Stage an event in the caller's transaction (committed with it)."""
    event = PaymentEvent(
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        data={key: _jsonable(value) for key, value in data.items()},
    )
    session.add(event)
    return event


async def list_payment_events(
    session: AsyncSession, entity_id: UUID, event_type: str | None = None
) -> list[PaymentEvent]:
    stmt = select(PaymentEvent).where(PaymentEvent.entity_id == entity_id)
    if event_type is not None:
        stmt = stmt.where(PaymentEvent.event_type == event_type)
    result = await session.execute(stmt.order_by(PaymentEvent.created_at))
    return list(result.scalars().all())


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "value"):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
