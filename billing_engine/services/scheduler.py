"""
Billing Scheduler - Claims due billing schedules and charges them.

Each tick:
1. Finds schedules that are due and not leased by another worker
2. Claims each one with a compare-and-set lease (locked_until / locked_by)
3. Routes the charge through the payment router
4. Records the attempt, advances or retries the schedule, releases the lease

Schedules are only ever mutated through the functions in this module.
"""

import os
import socket
import time
import uuid
from calendar import monthrange
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from billing_engine.config import settings
from billing_engine.db.models import BillingSchedule, BillingScheduleExecution, utc_now
from billing_engine.exceptions import (
    FATAL_ERROR_CODES,
    BillingError,
    CompensationError,
    DoubleClaimError,
    InvalidTransitionError,
    ResourceNotFoundError,
)
from billing_engine.models.domain import (
    ExecutionData,
    PaymentData,
    PaymentRequest,
    ScheduleData,
    TickResult,
)
from billing_engine.models.enums import (
    CLAIMABLE_SCHEDULE_STATUSES,
    ExecutionStatus,
    IntervalUnit,
    PaymentPriority,
    PaymentStatus,
    ScheduleStatus,
    ScheduleType,
)
from billing_engine.observability.logging import log_context
from billing_engine.observability.metrics import metrics
from billing_engine.observability.tracing import trace_operation
from billing_engine.services import events
from billing_engine.services.notifications import LoggingNotifier, Notifier, notify_safely
from billing_engine.services.payment_router import PaymentRouter

logger = get_logger(__name__)

# Target status -> statuses it may be reached from (operator / provider driven)
EXTERNAL_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.PAUSED: frozenset({ScheduleStatus.ACTIVE, ScheduleStatus.PAST_DUE}),
    ScheduleStatus.ACTIVE: frozenset({ScheduleStatus.PAUSED, ScheduleStatus.SUSPENDED}),
    ScheduleStatus.CANCELLED: frozenset(
        {
            ScheduleStatus.ACTIVE,
            ScheduleStatus.PAST_DUE,
            ScheduleStatus.PAUSED,
            ScheduleStatus.SUSPENDED,
        }
    ),
}

MAX_NOTIFY_BEFORE_DAYS = 30


# ============================================================================
# Schedule arithmetic and transitions
# ============================================================================


def advance_billing_date(
    current: datetime,
    unit: IntervalUnit,
    multiplier: int = 1,
    anchor_day: int | None = None,
) -> datetime:
    """
    Next billing date after current.

    Monthly and yearly steps clamp to the last day of shorter months and
    return to anchor_day (normally the start date's day) once it fits again:
    Jan 31 -> Feb 29 -> Mar 31.
    """
    if multiplier < 1:
        raise ValueError(f"Interval multiplier must be positive: {multiplier}")

    if unit == IntervalUnit.DAILY:
        return current + timedelta(days=multiplier)
    if unit == IntervalUnit.WEEKLY:
        return current + timedelta(weeks=multiplier)

    months = multiplier if unit == IntervalUnit.MONTHLY else 12 * multiplier
    total = current.month - 1 + months
    year = current.year + total // 12
    month = total % 12 + 1
    day = min(anchor_day or current.day, monthrange(year, month)[1])
    return current.replace(year=year, month=month, day=day)


def apply_failed_attempt(schedule: BillingSchedule, code: str, reason: str) -> ScheduleStatus:
    """
    Count a failed billing attempt against a schedule.

    Fatal codes fail the schedule outright; otherwise it goes past_due until
    retry_count reaches max_retries and then suspended. A schedule that was
    paused or cancelled meanwhile keeps that status.
    """
    schedule.retry_count += 1
    schedule.last_failure_reason = reason

    if schedule.status not in CLAIMABLE_SCHEDULE_STATUSES:
        return schedule.status

    if code in FATAL_ERROR_CODES:
        schedule.status = ScheduleStatus.FAILED
    elif schedule.retry_count >= schedule.max_retries:
        schedule.status = ScheduleStatus.SUSPENDED
    else:
        schedule.status = ScheduleStatus.PAST_DUE
    return schedule.status


def transition_schedule(schedule: BillingSchedule, target: ScheduleStatus) -> bool:
    """
    Apply an operator or provider driven status change.

    Returns False when the schedule is already in target.

    Raises:
        InvalidTransitionError: target is not reachable from the current status
    """
    if schedule.status == target:
        return False
    if schedule.status not in EXTERNAL_TRANSITIONS.get(target, frozenset()):
        raise InvalidTransitionError(schedule.id, schedule.status.value, target.value)

    if schedule.status == ScheduleStatus.SUSPENDED and target == ScheduleStatus.ACTIVE:
        schedule.retry_count = 0
        schedule.last_failure_reason = None
    schedule.status = target
    return True


def _stuck_compensation(payment: PaymentData) -> BillingError | None:
    """
    A replayed payment parked for an operator counts as a failed attempt.

    requires_action without a failure code is a provider challenge (3DS)
    and, like processing, is settled later by webhook.
    """
    if payment.status == PaymentStatus.REQUIRES_ACTION and payment.failure_code:
        return CompensationError(
            payment.payment_id, f"awaiting operator action ({payment.failure_code})"
        )
    return None


def schedule_idempotency_key(schedule_id: UUID, period: datetime, attempt: int) -> str:
    """One key per (schedule, billing period, retry attempt)."""
    return f"schedule:{schedule_id}:{period.isoformat()}:{attempt}"


def schedule_data(schedule: BillingSchedule) -> ScheduleData:
    return ScheduleData(
        schedule_id=schedule.id,
        owner_ref=schedule.owner_ref,
        description=schedule.description,
        schedule_type=schedule.schedule_type,
        amount_cents=schedule.amount_cents,
        currency=schedule.currency,
        interval_unit=schedule.interval_unit,
        interval_multiplier=schedule.interval_multiplier,
        start_date=schedule.start_date,
        end_date=schedule.end_date,
        next_billing_date=schedule.next_billing_date,
        last_billed_at=schedule.last_billed_at,
        payment_method_id=schedule.payment_method_id,
        account_balance_id=schedule.account_balance_id,
        payment_priority=schedule.payment_priority,
        provider_cap_cents=schedule.provider_cap_cents,
        allow_partial=schedule.allow_partial,
        status=schedule.status,
        retry_count=schedule.retry_count,
        max_retries=schedule.max_retries,
        last_failure_reason=schedule.last_failure_reason,
        notify_before_days=schedule.notify_before_days,
        external_ref=schedule.external_ref,
        category=schedule.category,
        reference_code=schedule.reference_code,
    )


def execution_data(execution: BillingScheduleExecution) -> ExecutionData:
    return ExecutionData(
        execution_id=execution.id,
        schedule_id=execution.schedule_id,
        billing_period=execution.billing_period,
        attempt=execution.attempt,
        execution_status=execution.execution_status,
        attempted_amount_cents=execution.attempted_amount_cents,
        charged_amount_cents=execution.charged_amount_cents,
        payment_source=execution.payment_source,
        payment_id=execution.payment_id,
        error_code=execution.error_code,
        error_message=execution.error_message,
        executed_at=execution.executed_at,
    )


def default_worker_id() -> str:
    return settings.scheduler_worker_id or (
        f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
    )


# ============================================================================
# Scheduler
# ============================================================================


class BillingScheduler:
    """Time-driven billing of recurring, one-time and installment schedules."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: PaymentRouter,
        notifier: Notifier | None = None,
        worker_id: str | None = None,
        lease_seconds: int | None = None,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.router = router
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.worker_id = worker_id or default_worker_id()
        self.lease = timedelta(seconds=lease_seconds or settings.scheduler_lease_seconds)
        self.batch_size = batch_size or settings.scheduler_batch_size
        self._clock = clock

    # ========================================================================
    # Schedule management
    # ========================================================================

    async def create_schedule(
        self,
        owner_ref: str,
        description: str,
        amount_cents: int,
        currency: str,
        interval_unit: IntervalUnit,
        start_date: datetime,
        interval_multiplier: int = 1,
        end_date: datetime | None = None,
        payment_method_id: UUID | None = None,
        account_balance_id: UUID | None = None,
        payment_priority: PaymentPriority = PaymentPriority.BALANCE_FIRST,
        provider_cap_cents: int | None = None,
        allow_partial: bool = False,
        schedule_type: ScheduleType = ScheduleType.RECURRING,
        max_retries: int | None = None,
        notify_before_days: int | None = None,
        external_ref: str | None = None,
        category: str | None = None,
        reference_code: str | None = None,
    ) -> ScheduleData:
        """Create an active schedule whose first billing date is start_date."""
        if max_retries is None:
            max_retries = settings.default_max_retries
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1: {max_retries}")
        if not 1 <= interval_multiplier <= 12:
            raise ValueError(f"Interval multiplier must be 1-12: {interval_multiplier}")
        if end_date is not None and end_date <= start_date:
            raise ValueError("end_date must be after start_date")
        if notify_before_days is not None and not (
            0 <= notify_before_days <= MAX_NOTIFY_BEFORE_DAYS
        ):
            raise ValueError(f"notify_before_days must be 0-30: {notify_before_days}")
        if allow_partial and payment_priority != PaymentPriority.BALANCE_ONLY:
            raise ValueError("allow_partial only applies to balance_only schedules")

        # Same source rules as a single payment
        PaymentRequest(
            amount_cents=amount_cents,
            currency=currency,
            payment_priority=payment_priority,
            idempotency_key="validation",
            description=description,
            account_balance_id=account_balance_id,
            payment_method_id=payment_method_id,
            provider_cap_cents=provider_cap_cents,
        )

        schedule = BillingSchedule(
            owner_ref=owner_ref,
            description=description,
            schedule_type=schedule_type,
            category=category,
            reference_code=reference_code,
            amount_cents=amount_cents,
            currency=currency,
            interval_unit=interval_unit,
            interval_multiplier=interval_multiplier,
            start_date=start_date,
            end_date=end_date,
            next_billing_date=start_date,
            payment_method_id=payment_method_id,
            account_balance_id=account_balance_id,
            payment_priority=payment_priority,
            provider_cap_cents=provider_cap_cents,
            allow_partial=allow_partial,
            status=ScheduleStatus.ACTIVE,
            retry_count=0,
            max_retries=max_retries,
            notify_before_days=notify_before_days,
            external_ref=external_ref,
        )
        async with self.session_factory() as session:
            session.add(schedule)
            await session.commit()

        logger.info(
            "schedule_created",
            schedule_id=str(schedule.id),
            owner_ref=owner_ref,
            amount_cents=amount_cents,
            interval_unit=interval_unit.value,
            interval_multiplier=interval_multiplier,
        )
        return schedule_data(schedule)

    async def get_schedule(self, schedule_id: UUID) -> ScheduleData:
        async with self.session_factory() as session:
            schedule = await session.get(BillingSchedule, schedule_id)
            if schedule is None:
                raise ResourceNotFoundError("BillingSchedule", schedule_id)
            return schedule_data(schedule)

    async def list_executions(self, schedule_id: UUID) -> list[ExecutionData]:
        async with self.session_factory() as session:
            stmt = (
                select(BillingScheduleExecution)
                .where(BillingScheduleExecution.schedule_id == schedule_id)
                .order_by(
                    BillingScheduleExecution.billing_period,
                    BillingScheduleExecution.attempt,
                )
            )
            result = await session.execute(stmt)
            return [execution_data(row) for row in result.scalars().all()]

    async def pause(self, schedule_id: UUID) -> ScheduleData:
        return await self._transition(schedule_id, ScheduleStatus.PAUSED)

    async def resume(self, schedule_id: UUID) -> ScheduleData:
        """Resume a paused schedule, or reactivate a suspended one with a fresh retry count."""
        return await self._transition(schedule_id, ScheduleStatus.ACTIVE)

    async def cancel(self, schedule_id: UUID) -> ScheduleData:
        return await self._transition(schedule_id, ScheduleStatus.CANCELLED)

    async def _transition(self, schedule_id: UUID, target: ScheduleStatus) -> ScheduleData:
        async with self.session_factory() as session:
            schedule = await self._lock_schedule(session, schedule_id)
            previous = schedule.status
            if transition_schedule(schedule, target):
                await session.commit()
                logger.info(
                    "schedule_status_changed",
                    schedule_id=str(schedule_id),
                    from_status=previous.value,
                    to_status=target.value,
                )
            return schedule_data(schedule)

    # ========================================================================
    # Claiming & ticking
    # ========================================================================

    async def claim(self, schedule_id: UUID, now: datetime | None = None) -> None:
        """
        Lease a due schedule to this worker.

        Raises:
            DoubleClaimError: Not due, not claimable or leased by another worker
        """
        now = now or self._clock()
        async with self.session_factory() as session:
            stmt = (
                update(BillingSchedule)
                .where(
                    BillingSchedule.id == schedule_id,
                    BillingSchedule.status.in_(list(CLAIMABLE_SCHEDULE_STATUSES)),
                    BillingSchedule.next_billing_date <= now,
                    or_(
                        BillingSchedule.locked_until.is_(None),
                        BillingSchedule.locked_until < now,
                    ),
                )
                .values(locked_until=now + self.lease, locked_by=self.worker_id)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount != 1:
            metrics.record_claim(False)
            raise DoubleClaimError(schedule_id)

        metrics.record_claim(True)
        logger.info("schedule_claimed", schedule_id=str(schedule_id), worker=self.worker_id)

    async def tick(self, now: datetime | None = None) -> TickResult:
        """Claim and execute every due schedule (up to the batch size)."""
        now = now or self._clock()
        result = TickResult()
        started = time.monotonic()

        with trace_operation("scheduler_tick", worker=self.worker_id) as span:
            for schedule_id in await self._find_due(now):
                try:
                    await self.claim(schedule_id, now)
                except DoubleClaimError:
                    result.skipped += 1
                    continue

                result.claimed += 1
                result.schedule_ids.append(schedule_id)
                try:
                    execution_status, status = await self._execute(schedule_id, now)
                except Exception as e:
                    # Lease stays held and expires; the same key resumes the attempt
                    result.failed += 1
                    metrics.record_error(type(e).__name__, "scheduler_tick")
                    logger.exception("schedule_execution_crashed", schedule_id=str(schedule_id))
                    continue

                if execution_status == ExecutionStatus.SUCCESS:
                    result.succeeded += 1
                elif execution_status == ExecutionStatus.PARTIAL:
                    result.partial += 1
                elif execution_status == ExecutionStatus.FAILED:
                    result.failed += 1
                    if status == ScheduleStatus.SUSPENDED:
                        result.suspended += 1
                elif status != ScheduleStatus.COMPLETED:
                    result.skipped += 1

                if status == ScheduleStatus.COMPLETED:
                    result.completed += 1

            span.set_attribute("claimed", result.claimed)

        metrics.tick_duration_seconds.observe(time.monotonic() - started)
        logger.info(
            "scheduler_tick_completed",
            worker=self.worker_id,
            claimed=result.claimed,
            succeeded=result.succeeded,
            failed=result.failed,
            partial=result.partial,
            suspended=result.suspended,
            completed=result.completed,
            skipped=result.skipped,
        )
        return result

    async def send_reminders(self, now: datetime | None = None) -> int:
        """
        Notify owners of upcoming charges.

        At most one reminder per billing period: last_notification_sent is
        compare-and-set against the start of the reminder window.
        """
        now = now or self._clock()
        async with self.session_factory() as session:
            stmt = (
                select(BillingSchedule)
                .where(
                    BillingSchedule.status == ScheduleStatus.ACTIVE,
                    BillingSchedule.notify_before_days.is_not(None),
                    BillingSchedule.next_billing_date > now,
                    BillingSchedule.next_billing_date
                    <= now + timedelta(days=MAX_NOTIFY_BEFORE_DAYS),
                )
                .order_by(BillingSchedule.next_billing_date)
                .limit(self.batch_size)
            )
            candidates = list((await session.execute(stmt)).scalars().all())

        sent = 0
        for schedule in candidates:
            days = schedule.notify_before_days or 0
            window_start = schedule.next_billing_date - timedelta(days=days)
            if now < window_start:
                continue
            if schedule.last_notification_sent and schedule.last_notification_sent >= window_start:
                continue

            async with self.session_factory() as session:
                result = await session.execute(
                    update(BillingSchedule)
                    .where(
                        BillingSchedule.id == schedule.id,
                        or_(
                            BillingSchedule.last_notification_sent.is_(None),
                            BillingSchedule.last_notification_sent < window_start,
                        ),
                    )
                    .values(last_notification_sent=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            if result.rowcount != 1:
                continue

            await notify_safely("upcoming_charge", self.notifier, schedule_data(schedule), days)
            sent += 1

        logger.info("schedule_reminders_sent", count=sent)
        return sent

    # ========================================================================
    # Execution
    # ========================================================================

    async def _find_due(self, now: datetime) -> list[UUID]:
        async with self.session_factory() as session:
            stmt = (
                select(BillingSchedule.id)
                .where(
                    BillingSchedule.status.in_(list(CLAIMABLE_SCHEDULE_STATUSES)),
                    BillingSchedule.next_billing_date <= now,
                    or_(
                        BillingSchedule.locked_until.is_(None),
                        BillingSchedule.locked_until < now,
                    ),
                )
                .order_by(BillingSchedule.next_billing_date)
                .limit(self.batch_size)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def _execute(
        self, schedule_id: UUID, now: datetime
    ) -> tuple[ExecutionStatus | None, ScheduleStatus]:
        """Bill one claimed schedule. Returns (execution status, schedule status)."""
        with log_context(schedule_id=str(schedule_id), worker=self.worker_id):
            async with self.session_factory() as session:
                schedule = await session.get(BillingSchedule, schedule_id)
                if schedule is None:
                    raise ResourceNotFoundError("BillingSchedule", schedule_id)
                period = schedule.next_billing_date
                past_end = schedule.end_date is not None and period > schedule.end_date
                # Counted from recorded attempts, so a resume never reuses a failed key
                attempt = await session.scalar(
                    select(func.count())
                    .select_from(BillingScheduleExecution)
                    .where(
                        BillingScheduleExecution.schedule_id == schedule_id,
                        BillingScheduleExecution.billing_period == period,
                    )
                )

            if past_end:
                return None, await self._complete(schedule_id)

            request = PaymentRequest(
                amount_cents=schedule.amount_cents,
                currency=schedule.currency,
                payment_priority=schedule.payment_priority,
                idempotency_key=schedule_idempotency_key(schedule_id, period, attempt),
                description=schedule.description,
                account_balance_id=schedule.account_balance_id,
                payment_method_id=schedule.payment_method_id,
                owner_ref=schedule.owner_ref,
                provider_cap_cents=schedule.provider_cap_cents,
                allow_partial=schedule.allow_partial,
                schedule_id=schedule_id,
                billing_period=period,
            )

            payment: PaymentData | None = None
            error: BillingError | None = None
            try:
                payment = await self.router.route(request)
            except BillingError as exc:
                error = exc
                payment = await self.router.find_payment(request.idempotency_key)
            else:
                error = _stuck_compensation(payment)

            return await self._record(schedule_id, period, attempt, payment, error, now)

    async def _record(
        self,
        schedule_id: UUID,
        period: datetime,
        attempt: int,
        payment: PaymentData | None,
        error: BillingError | None,
        now: datetime,
    ) -> tuple[ExecutionStatus | None, ScheduleStatus]:
        async with self.session_factory() as session:
            schedule = await self._lock_schedule(session, schedule_id)
            previous_status = schedule.status

            if error is None and payment is not None:
                execution_status = ExecutionStatus.SUCCESS
                if payment.shortfall_cents > 0:
                    execution_status = ExecutionStatus.PARTIAL
                self._advance(schedule, period, now)
                charged = payment.charged_cents
            else:
                execution_status = ExecutionStatus.FAILED
                apply_failed_attempt(
                    schedule,
                    error.code if error else "unknown",
                    str(error) if error else "payment missing",
                )
                charged = 0

            session.add(
                BillingScheduleExecution(
                    schedule_id=schedule_id,
                    billing_period=period,
                    attempt=attempt,
                    execution_status=execution_status,
                    attempted_amount_cents=schedule.amount_cents,
                    charged_amount_cents=charged,
                    payment_source=payment.payment_source if payment and not error else None,
                    payment_id=payment.payment_id if payment else None,
                    error_code=error.code if error else None,
                    error_message=str(error) if error else None,
                    executed_at=now,
                )
            )

            newly_suspended = (
                schedule.status == ScheduleStatus.SUSPENDED
                and previous_status != ScheduleStatus.SUSPENDED
            )
            if newly_suspended:
                events.record_payment_event(
                    session,
                    "schedule",
                    schedule_id,
                    events.SCHEDULE_SUSPENDED,
                    retry_count=schedule.retry_count,
                    reason=schedule.last_failure_reason,
                )
            if execution_status == ExecutionStatus.PARTIAL and payment is not None:
                events.record_payment_event(
                    session,
                    "schedule",
                    schedule_id,
                    events.SCHEDULE_PARTIAL,
                    payment_id=payment.payment_id,
                    charged_cents=payment.charged_cents,
                    shortfall_cents=payment.shortfall_cents,
                )

            self._release(schedule)
            try:
                await session.commit()
            except IntegrityError:
                # This (period, attempt) was already recorded by another worker
                await session.rollback()
                logger.warning(
                    "schedule_execution_already_recorded",
                    billing_period=period.isoformat(),
                    attempt=attempt,
                )
                return None, previous_status

            snapshot = schedule_data(schedule)

        metrics.record_execution(execution_status.value)
        if error is None:
            logger.info(
                "schedule_execution_succeeded",
                execution_status=execution_status.value,
                billing_period=period.isoformat(),
                next_billing_date=snapshot.next_billing_date.isoformat(),
                status=snapshot.status.value,
            )
        else:
            logger.warning(
                "schedule_execution_failed",
                billing_period=period.isoformat(),
                code=error.code,
                retry_count=snapshot.retry_count,
                status=snapshot.status.value,
            )

        if newly_suspended:
            await notify_safely(
                "schedule_suspended", self.notifier, snapshot, snapshot.last_failure_reason
            )
        if execution_status == ExecutionStatus.PARTIAL and payment is not None:
            await notify_safely(
                "partial_charge",
                self.notifier,
                snapshot,
                payment.charged_cents,
                payment.shortfall_cents,
            )
        return execution_status, snapshot.status

    def _advance(self, schedule: BillingSchedule, period: datetime, now: datetime) -> None:
        """Move a successfully billed schedule to its next period."""
        next_date = advance_billing_date(
            period,
            schedule.interval_unit,
            schedule.interval_multiplier,
            anchor_day=schedule.start_date.day,
        )
        if schedule.next_billing_date == period:
            schedule.next_billing_date = next_date
        schedule.last_billed_at = now
        schedule.retry_count = 0
        schedule.last_failure_reason = None

        if schedule.status not in CLAIMABLE_SCHEDULE_STATUSES:
            return
        finished = schedule.schedule_type == ScheduleType.ONE_TIME or (
            schedule.end_date is not None and next_date > schedule.end_date
        )
        schedule.status = ScheduleStatus.COMPLETED if finished else ScheduleStatus.ACTIVE

    async def _complete(self, schedule_id: UUID) -> ScheduleStatus:
        async with self.session_factory() as session:
            schedule = await self._lock_schedule(session, schedule_id)
            if schedule.status in CLAIMABLE_SCHEDULE_STATUSES:
                schedule.status = ScheduleStatus.COMPLETED
            self._release(schedule)
            await session.commit()
            logger.info("schedule_completed", reason="end_date_reached")
            return schedule.status

    def _release(self, schedule: BillingSchedule) -> None:
        """Clear the lease, but only if this worker still owns it."""
        if schedule.locked_by == self.worker_id:
            schedule.locked_until = None
            schedule.locked_by = None

    async def _lock_schedule(self, session: AsyncSession, schedule_id: UUID) -> BillingSchedule:
        stmt = (
            select(BillingSchedule)
            .where(BillingSchedule.id == schedule_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        schedule = (await session.execute(stmt)).scalar_one_or_none()
        if schedule is None:
            raise ResourceNotFoundError("BillingSchedule", schedule_id)
        return schedule
