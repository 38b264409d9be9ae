"""
Notifications - Outbound customer notifications (fire-and-forget).

The engine only decides when to notify; delivery (email, push, SMS) belongs
to the notification service that implements Notifier.
"""

from typing import Protocol

from structlog import get_logger

from billing_engine.models.domain import ScheduleData

logger = get_logger(__name__)


class Notifier(Protocol):
    """Notification sink used by the billing scheduler."""

    async def upcoming_charge(self, schedule: ScheduleData, days_before: int) -> None: ...

    async def schedule_suspended(self, schedule: ScheduleData, reason: str | None) -> None: ...

    async def partial_charge(
        self, schedule: ScheduleData, charged_cents: int, shortfall_cents: int
    ) -> None: ...


class LoggingNotifier:
    """Notifier that only writes structured log lines."""

    async def upcoming_charge(self, schedule: ScheduleData, days_before: int) -> None:
        logger.info(
            "notify_upcoming_charge",
            schedule_id=str(schedule.schedule_id),
            owner_ref=schedule.owner_ref,
            amount_cents=schedule.amount_cents,
            currency=schedule.currency,
            billing_date=schedule.next_billing_date.isoformat(),
            days_before=days_before,
        )

    async def schedule_suspended(self, schedule: ScheduleData, reason: str | None) -> None:
        logger.info(
            "notify_schedule_suspended",
            schedule_id=str(schedule.schedule_id),
            owner_ref=schedule.owner_ref,
            retry_count=schedule.retry_count,
            reason=reason,
        )

    async def partial_charge(
        self, schedule: ScheduleData, charged_cents: int, shortfall_cents: int
    ) -> None:
        logger.info(
            "notify_partial_charge",
            schedule_id=str(schedule.schedule_id),
            owner_ref=schedule.owner_ref,
            charged_cents=charged_cents,
            shortfall_cents=shortfall_cents,
        )


async def notify_safely(coro_name: str, notifier: Notifier, *args: object) -> None:
    """Call a notifier method; failures are logged and never propagate."""
    try:
        await getattr(notifier, coro_name)(*args)
    except Exception as e:
        logger.warning("notification_failed", notification=coro_name, error=str(e))
