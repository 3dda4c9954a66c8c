"""
Module: billing_kernel.models.subscription
Responsibility: Minimal customer and subscription records the billing engine
    reads while building invoices (customer chain, product, price, cycle).
Architecture position: Kernel > Models.  Full CRUD for these entities lives
    outside the billing engine; only the columns billing needs are mapped.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from billing_kernel.models.due_schedule import DueSchedule


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingCycle(str, Enum):
    """Billing period length; value is the number of months per period."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    HALF_YEARLY = "half_yearly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return _CYCLE_MONTHS[self]


_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.HALF_YEARLY: 6,
    BillingCycle.YEARLY: 12,
}


class Customer(TrackedBase):
    """Invoice recipient."""

    __tablename__ = "customers"

    customer_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    billing_address: Mapped[str | None] = mapped_column(String(500), nullable=True)

    subscriptions: Mapped[list[Subscription]] = relationship(
        back_populates="customer",
    )

    def __repr__(self) -> str:
        return f"<Customer {self.customer_number}: {self.name}>"


class Subscription(TrackedBase):
    """
    A customer's recurring product subscription.

    Contract:
        ``monthly_price`` times ``billing_cycle.months`` is the amount of one
        due schedule.  ``end_date`` (inclusive) bounds schedule generation.
    """

    __tablename__ = "subscriptions"

    __table_args__ = (
        Index("idx_subscription_customer", "customer_id"),
        Index("idx_subscription_status", "status"),
    )

    subscription_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id"), nullable=False)
    product_code: Mapped[str] = mapped_column(String(50), nullable=False)
    product_name: Mapped[str] = mapped_column(String(200), nullable=False)
    monthly_price: Mapped[Decimal] = mapped_column(nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        String(20),
        default=BillingCycle.MONTHLY,
        nullable=False,
    )
    start_date: Mapped[date] = mapped_column(nullable=False)
    end_date: Mapped[date | None] = mapped_column(nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        String(20),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )

    customer: Mapped[Customer] = relationship(
        back_populates="subscriptions",
        lazy="joined",
    )
    due_schedules: Mapped[list[DueSchedule]] = relationship(
        back_populates="subscription",
        order_by="DueSchedule.period_start",
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("billing_cycle", BillingCycle.MONTHLY)
        kwargs.setdefault("status", SubscriptionStatus.ACTIVE)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<Subscription {self.subscription_number}: {self.product_name}>"

    @property
    def cycle(self) -> BillingCycle:
        return BillingCycle(self.billing_cycle)

    @property
    def period_amount(self) -> Decimal:
        """Charge for one billing period."""
        return self.monthly_price * self.cycle.months

    def is_billable_on(self, day: date) -> bool:
        """Whether ``day`` lies within the subscription term."""
        if day < self.start_date:
            return False
        return self.end_date is None or day <= self.end_date
