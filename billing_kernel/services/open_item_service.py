"""
OpenItemService -- payments, dunning and status upkeep of receivables.

Contract:
    - Mutations go through the ``OpenItem`` model methods with ``as_of``
      taken from the service clock.
    - ``update_overdue_status`` re-derives the stored status of every open
      receivable, so an item nobody touched after its due date still reads
      OVERDUE.

Failure modes:
    - OpenItemNotFoundError on unknown ids.
    - Model-level state and amount errors propagate unchanged.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import OpenItemNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.open_item import OpenItem, OpenItemStatus

logger = get_logger("services.open_item")

_UNSETTLED_STATUSES = (
    OpenItemStatus.OPEN.value,
    OpenItemStatus.PARTIALLY_PAID.value,
    OpenItemStatus.OVERDUE.value,
)


class OpenItemService:
    """Open-item operations on behalf of one actor."""

    def __init__(
        self,
        session: Session,
        actor_id: UUID,
        clock: Clock | None = None,
    ):
        self._session = session
        self._actor_id = actor_id
        self._clock = clock or SystemClock()

    def get(self, open_item_id: UUID) -> OpenItem:
        open_item = self._session.get(OpenItem, open_item_id)
        if open_item is None:
            raise OpenItemNotFoundError(str(open_item_id))
        return open_item

    def _unsettled(self):
        return (
            select(OpenItem)
            .where(OpenItem.status.in_(_UNSETTLED_STATUSES))
            .where(OpenItem.deleted.is_(False))
        )

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def record_payment(
        self,
        open_item_id: UUID,
        amount: Decimal,
        method: str | None = None,
        reference: str | None = None,
    ) -> OpenItem:
        open_item = self.get(open_item_id)
        status = open_item.record_payment(amount, method, reference, self._clock.today())
        open_item.updated_by_id = self._actor_id
        self._session.flush()
        logger.info(
            "open_item_payment_recorded",
            extra={
                "open_item_id": str(open_item.id),
                "amount": str(amount),
                "paid_amount": str(open_item.paid_amount),
                "status": status.value,
            },
        )
        return open_item

    def reverse_payment(self, open_item_id: UUID, amount: Decimal) -> OpenItem:
        open_item = self.get(open_item_id)
        status = open_item.reverse_payment(amount, self._clock.today())
        open_item.updated_by_id = self._actor_id
        self._session.flush()
        logger.warning(
            "open_item_payment_reversed",
            extra={
                "open_item_id": str(open_item.id),
                "amount": str(amount),
                "paid_amount": str(open_item.paid_amount),
                "status": status.value,
            },
        )
        return open_item

    def cancel(self, open_item_id: UUID) -> OpenItem:
        open_item = self.get(open_item_id)
        open_item.cancel()
        open_item.updated_by_id = self._actor_id
        self._session.flush()
        logger.info("open_item_cancelled", extra={"open_item_id": str(open_item.id)})
        return open_item

    # -------------------------------------------------------------------------
    # Dunning
    # -------------------------------------------------------------------------

    def add_reminder(self, open_item_id: UUID) -> OpenItem:
        open_item = self.get(open_item_id)
        open_item.add_reminder(self._clock.today())
        open_item.updated_by_id = self._actor_id
        self._session.flush()
        logger.info(
            "open_item_reminder_added",
            extra={
                "open_item_id": str(open_item.id),
                "reminder_count": open_item.reminder_count,
            },
        )
        return open_item

    def find_needing_reminder(self, days_since_last_reminder: int) -> list[OpenItem]:
        """
        Unsettled items past their due date whose last reminder (if any) is
        at least ``days_since_last_reminder`` days old.
        """
        today = self._clock.today()
        threshold = today - timedelta(days=days_since_last_reminder)
        return list(
            self._session.execute(
                self._unsettled()
                .where(OpenItem.due_date < today)
                .where(
                    or_(
                        OpenItem.last_reminder_on.is_(None),
                        OpenItem.last_reminder_on <= threshold,
                    )
                )
                .order_by(OpenItem.due_date)
            ).scalars()
        )

    # -------------------------------------------------------------------------
    # Status upkeep
    # -------------------------------------------------------------------------

    def find_overdue(self, as_of: date | None = None) -> list[OpenItem]:
        as_of = as_of or self._clock.today()
        return list(
            self._session.execute(
                self._unsettled()
                .where(OpenItem.due_date < as_of)
                .order_by(OpenItem.due_date)
            ).scalars()
        )

    def update_overdue_status(self, as_of: date | None = None) -> int:
        """
        Re-derive the status of every unsettled item for ``as_of``.

        Returns:
            Number of items whose stored status changed.
        """
        as_of = as_of or self._clock.today()
        changed = 0
        for open_item in self._session.execute(self._unsettled()).scalars():
            previous = open_item.current_status
            if open_item.refresh_status(as_of) is not previous:
                open_item.updated_by_id = self._actor_id
                changed += 1
        self._session.flush()
        if changed:
            logger.info(
                "open_item_statuses_updated",
                extra={"as_of": as_of.isoformat(), "changed_count": changed},
            )
        return changed
