"""
DueScheduleService -- generation, state changes and queries of due schedules.

Contract:
    The only writer of due-schedule state outside the models themselves.
    The batch processor uses ``mark_completed`` and ``rollback_completed``;
    operators and the subscription lifecycle use the rest.

Invariants enforced:
    - Generated periods are contiguous; period n of a subscription starts
      ``n * cycle months`` after the subscription start, so month-end start
      dates do not drift.
    - No period starts after the subscription end date; the last period is
      clipped to it.
    - ``rollback_completed`` is idempotent: an ACTIVE schedule is left
      untouched.

Failure modes:
    - DueScheduleNotFoundError, SubscriptionNotFoundError on unknown ids.
    - DueScheduleStateError on transitions the model rejects.
"""

from __future__ import annotations

from datetime import date, timedelta
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.money import money
from billing_kernel.exceptions import DueScheduleNotFoundError, SubscriptionNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.due_schedule import DueSchedule, DueStatus
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.subscription import Subscription
from billing_kernel.services.numbering import DocumentNumberService

logger = get_logger("services.due_schedule")


class DueScheduleService:
    """Due-schedule operations on behalf of one actor."""

    def __init__(
        self,
        session: Session,
        actor_id: UUID,
        clock: Clock | None = None,
        numbering: DocumentNumberService | None = None,
    ):
        self._session = session
        self._actor_id = actor_id
        self._clock = clock or SystemClock()
        self._numbering = numbering or DocumentNumberService(session, self._clock)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, due_schedule_id: UUID) -> DueSchedule:
        schedule = self._session.get(DueSchedule, due_schedule_id)
        if schedule is None:
            raise DueScheduleNotFoundError(str(due_schedule_id))
        return schedule

    def find_by_batch(self, batch_id: str) -> list[DueSchedule]:
        return list(
            self._session.execute(
                select(DueSchedule)
                .where(DueSchedule.batch_id == batch_id)
                .order_by(DueSchedule.due_date, DueSchedule.due_number)
            ).scalars()
        )

    def find_by_status(self, status: DueStatus) -> list[DueSchedule]:
        return list(
            self._session.execute(
                select(DueSchedule)
                .where(DueSchedule.status == DueStatus(status).value)
                .where(DueSchedule.deleted.is_(False))
                .order_by(DueSchedule.due_date, DueSchedule.due_number)
            ).scalars()
        )

    def find_in_range(
        self,
        start: date,
        end: date,
        status: DueStatus | None = None,
    ) -> list[DueSchedule]:
        """Non-deleted schedules with ``start <= due_date <= end``."""
        query = (
            select(DueSchedule)
            .where(DueSchedule.due_date >= start)
            .where(DueSchedule.due_date <= end)
            .where(DueSchedule.deleted.is_(False))
        )
        if status is not None:
            query = query.where(DueSchedule.status == DueStatus(status).value)
        return list(
            self._session.execute(
                query.order_by(DueSchedule.due_date, DueSchedule.due_number)
            ).scalars()
        )

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate_for_subscription(
        self,
        subscription_id: UUID,
        periods: int,
    ) -> list[DueSchedule]:
        """
        Create up to ``periods`` ACTIVE schedules after the last existing one.

        Each schedule is due on its period start and charges the
        subscription's period amount.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist.
            ValueError: If ``periods`` is not positive.
        """
        if periods <= 0:
            raise ValueError("periods must be positive")

        subscription = self._session.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(str(subscription_id))

        last = self._session.execute(
            select(DueSchedule)
            .where(DueSchedule.subscription_id == subscription_id)
            .order_by(DueSchedule.period_end.desc())
            .limit(1)
        ).scalar_one_or_none()
        next_start = (
            last.period_end + timedelta(days=1) if last else subscription.start_date
        )

        step = subscription.cycle.months
        index = 0
        while subscription.start_date + relativedelta(months=step * index) < next_start:
            index += 1

        created: list[DueSchedule] = []
        for _ in range(periods):
            period_start = subscription.start_date + relativedelta(months=step * index)
            if subscription.end_date is not None and period_start > subscription.end_date:
                break
            period_end = (
                subscription.start_date
                + relativedelta(months=step * (index + 1))
                - timedelta(days=1)
            )
            if subscription.end_date is not None:
                period_end = min(period_end, subscription.end_date)

            schedule = DueSchedule(
                due_number=self._numbering.next_due_number(period_start),
                due_date=period_start,
                period_start=period_start,
                period_end=period_end,
                amount=money(subscription.period_amount),
                subscription=subscription,
                created_by_id=self._actor_id,
            )
            self._session.add(schedule)
            created.append(schedule)
            index += 1

        self._session.flush()
        logger.info(
            "due_schedules_generated",
            extra={
                "subscription_number": subscription.subscription_number,
                "requested": periods,
                "created_count": len(created),
                "due_numbers": [s.due_number for s in created],
            },
        )
        return created

    # -------------------------------------------------------------------------
    # Billing transitions
    # -------------------------------------------------------------------------

    def mark_completed(
        self,
        schedule: DueSchedule,
        invoice: Invoice,
        batch_id: str,
        invoiced_on: date,
    ) -> DueSchedule:
        schedule.mark_completed(invoice, batch_id, invoiced_on)
        schedule.updated_by_id = self._actor_id
        self._session.flush()
        logger.debug(
            "due_schedule_completed",
            extra={
                "due_number": schedule.due_number,
                "invoice_number": invoice.invoice_number,
                "batch_id": batch_id,
            },
        )
        return schedule

    def rollback_completed(self, due_schedule_id: UUID) -> bool:
        """
        Revert a COMPLETED schedule to ACTIVE.

        Returns:
            True if the schedule was reverted, False if it was not COMPLETED.
        """
        schedule = self.get(due_schedule_id)
        if not schedule.is_completed:
            logger.warning(
                "due_schedule_rollback_skipped",
                extra={
                    "due_number": schedule.due_number,
                    "status": schedule.current_status.value,
                },
            )
            return False
        schedule.revert_completion()
        schedule.updated_by_id = self._actor_id
        self._session.flush()
        logger.info(
            "due_schedule_rolled_back",
            extra={"due_number": schedule.due_number},
        )
        return True

    # -------------------------------------------------------------------------
    # Operator transitions
    # -------------------------------------------------------------------------

    def _apply(self, due_schedule_id: UUID, action: str) -> DueSchedule:
        schedule = self.get(due_schedule_id)
        previous = schedule.current_status
        getattr(schedule, action)()
        schedule.updated_by_id = self._actor_id
        self._session.flush()
        logger.info(
            "due_schedule_status_changed",
            extra={
                "due_number": schedule.due_number,
                "action": action,
                "from_status": previous.value,
                "to_status": schedule.current_status.value,
            },
        )
        return schedule

    def pause(self, due_schedule_id: UUID) -> DueSchedule:
        return self._apply(due_schedule_id, "pause")

    def suspend(self, due_schedule_id: UUID) -> DueSchedule:
        return self._apply(due_schedule_id, "suspend")

    def resume(self, due_schedule_id: UUID) -> DueSchedule:
        return self._apply(due_schedule_id, "resume")

    def soft_delete(self, due_schedule_id: UUID) -> DueSchedule:
        return self._apply(due_schedule_id, "soft_delete")
