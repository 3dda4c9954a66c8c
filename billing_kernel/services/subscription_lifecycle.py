"""
SubscriptionLifecycleService -- due-schedule effects of subscription events.

Subscription management calls these handlers synchronously, inside its own
transaction, when a subscription is provisioned, renewed, paused, resumed or
cancelled.  A failing handler fails the caller's transaction, so a
subscription change and its schedule changes commit together or not at all.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import SubscriptionNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.due_schedule import DueSchedule, DueStatus
from billing_kernel.models.subscription import Subscription, SubscriptionStatus
from billing_kernel.services.due_schedule_service import DueScheduleService

logger = get_logger("services.subscription_lifecycle")

DEFAULT_INITIAL_PERIODS = 12


class SubscriptionLifecycleService:
    def __init__(
        self,
        session: Session,
        actor_id: UUID,
        clock: Clock | None = None,
        due_schedules: DueScheduleService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._due_schedules = due_schedules or DueScheduleService(
            session, actor_id, self._clock
        )

    def _subscription(self, subscription_id: UUID) -> Subscription:
        subscription = self._session.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(str(subscription_id))
        return subscription

    def _schedules(
        self,
        subscription_id: UUID,
        statuses: tuple[DueStatus, ...],
        due_after: date | None = None,
    ) -> list[DueSchedule]:
        query = (
            select(DueSchedule)
            .where(DueSchedule.subscription_id == subscription_id)
            .where(DueSchedule.status.in_([s.value for s in statuses]))
            .where(DueSchedule.deleted.is_(False))
        )
        if due_after is not None:
            query = query.where(DueSchedule.due_date > due_after)
        return list(self._session.execute(query.order_by(DueSchedule.due_date)).scalars())

    def on_provisioned(
        self,
        subscription_id: UUID,
        periods: int = DEFAULT_INITIAL_PERIODS,
    ) -> list[DueSchedule]:
        """Generate the initial schedules of a new subscription."""
        created = self._due_schedules.generate_for_subscription(subscription_id, periods)
        logger.info(
            "subscription_provisioned",
            extra={"subscription_id": str(subscription_id), "schedules": len(created)},
        )
        return created

    def on_renewed(self, subscription_id: UUID, periods: int) -> list[DueSchedule]:
        """Extend the schedule after the subscription term was prolonged."""
        subscription = self._subscription(subscription_id)
        subscription.status = SubscriptionStatus.ACTIVE
        return self._due_schedules.generate_for_subscription(subscription_id, periods)

    def on_paused(self, subscription_id: UUID) -> list[DueSchedule]:
        subscription = self._subscription(subscription_id)
        subscription.status = SubscriptionStatus.PAUSED
        paused = [
            self._due_schedules.pause(s.id)
            for s in self._schedules(subscription_id, (DueStatus.ACTIVE,))
        ]
        return paused

    def on_resumed(self, subscription_id: UUID) -> list[DueSchedule]:
        subscription = self._subscription(subscription_id)
        subscription.status = SubscriptionStatus.ACTIVE
        return [
            self._due_schedules.resume(s.id)
            for s in self._schedules(subscription_id, (DueStatus.PAUSED,))
        ]

    def on_cancelled(self, subscription_id: UUID, effective: date) -> list[DueSchedule]:
        """Suspend every uninvoiced schedule due after ``effective``."""
        subscription = self._subscription(subscription_id)
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.end_date = effective
        suspended = [
            self._due_schedules.suspend(s.id)
            for s in self._schedules(
                subscription_id, (DueStatus.ACTIVE, DueStatus.PAUSED), due_after=effective
            )
        ]
        logger.info(
            "subscription_cancelled",
            extra={
                "subscription_number": subscription.subscription_number,
                "effective": effective.isoformat(),
                "schedules_suspended": len(suspended),
            },
        )
        return suspended
