"""
Module: billing_kernel.models.open_item
Responsibility: Receivable tracking for one invoice and its payment state
    machine.
Architecture position: Kernel > Models.

Invariants enforced:
    - ``status`` always equals ``derive_open_item_status(paid_amount, amount,
      due_date, as_of)`` for the date of the last mutation, except after
      ``cancel()``, which is terminal.
    - ``outstanding_amount`` is computed, never stored.
    - One open item never covers more than one invoice.

Failure modes:
    - InvalidPaymentAmountError for non-positive payments, and for reversals
      larger than the paid-to-date amount.
    - OpenItemStateError for payments on PAID/CANCELLED items and any
      change to a CANCELLED item.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.money import ZERO, money
from billing_kernel.exceptions import InvalidPaymentAmountError, OpenItemStateError

if TYPE_CHECKING:
    from billing_kernel.models.invoice import Invoice
    from billing_kernel.models.process_record import ProcessRecord


class OpenItemStatus(str, Enum):
    """OPEN -> PARTIALLY_PAID -> PAID, OPEN -> OVERDUE, any -> CANCELLED."""

    OPEN = "open"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


def derive_open_item_status(
    paid_amount: Decimal,
    amount: Decimal,
    due_date: date,
    as_of: date,
) -> OpenItemStatus:
    """The status an uncancelled open item must have on ``as_of``."""
    if paid_amount >= amount:
        return OpenItemStatus.PAID
    if paid_amount > 0:
        return OpenItemStatus.PARTIALLY_PAID
    if due_date < as_of:
        return OpenItemStatus.OVERDUE
    return OpenItemStatus.OPEN


class OpenItem(TrackedBase):
    """
    Money owed against a single invoice.

    Contract:
        Every mutator takes ``as_of`` from the caller's clock; the model
        never reads the current date itself.
    """

    __tablename__ = "open_items"

    __table_args__ = (
        Index("idx_open_item_invoice", "invoice_id"),
        Index("idx_open_item_status_due", "status", "due_date"),
    )

    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    status: Mapped[OpenItemStatus] = mapped_column(String(20), nullable=False)
    due_date: Mapped[date] = mapped_column(nullable=False)

    payment_date: Mapped[date | None] = mapped_column(nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    reminder_count: Mapped[int] = mapped_column(default=0, nullable=False)
    last_reminder_on: Mapped[date | None] = mapped_column(nullable=True)

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id"),
        nullable=True,
    )
    customer_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("customers.id"),
        nullable=True,
    )
    process_record_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("process_records.id"),
        nullable=True,
    )
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    invoice: Mapped[Invoice] = relationship(back_populates="open_items")
    process_record: Mapped[ProcessRecord | None] = relationship()

    def __init__(self, **kwargs):
        kwargs.setdefault("status", OpenItemStatus.OPEN)
        kwargs.setdefault("paid_amount", ZERO)
        kwargs.setdefault("reminder_count", 0)
        kwargs.setdefault("deleted", False)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<OpenItem {self.description}: {self.outstanding_amount} {self.current_status.value}>"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def current_status(self) -> OpenItemStatus:
        return OpenItemStatus(self.status)

    @property
    def outstanding_amount(self) -> Decimal:
        return money(self.amount - self.paid_amount)

    @property
    def is_cancelled(self) -> bool:
        return self.current_status is OpenItemStatus.CANCELLED

    def is_overdue(self, as_of: date) -> bool:
        return (
            self.current_status not in (OpenItemStatus.PAID, OpenItemStatus.CANCELLED)
            and self.due_date < as_of
        )

    def expected_status(self, as_of: date) -> OpenItemStatus:
        """Derived status for ``as_of``; CANCELLED is sticky."""
        if self.is_cancelled:
            return OpenItemStatus.CANCELLED
        return derive_open_item_status(self.paid_amount, self.amount, self.due_date, as_of)

    def refresh_status(self, as_of: date) -> OpenItemStatus:
        self.status = self.expected_status(as_of)
        return self.current_status

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _reject(self, action: str) -> None:
        raise OpenItemStateError(str(self.id), self.current_status.value, action)

    def record_payment(
        self,
        amount: Decimal,
        method: str | None,
        reference: str | None,
        as_of: date,
    ) -> OpenItemStatus:
        """
        Accumulate a payment and re-derive the status.

        Raises:
            InvalidPaymentAmountError: If ``amount`` is not positive.
            OpenItemStateError: If the item is PAID or CANCELLED.
        """
        if amount <= 0:
            raise InvalidPaymentAmountError(amount, "payment amount must be positive")
        if self.current_status in (OpenItemStatus.PAID, OpenItemStatus.CANCELLED):
            self._reject("record payment on")

        self.paid_amount = money(self.paid_amount + amount)
        self.payment_date = as_of
        self.payment_method = method
        self.payment_reference = reference
        return self.refresh_status(as_of)

    def reverse_payment(self, amount: Decimal, as_of: date) -> OpenItemStatus:
        """
        Take back part or all of the paid-to-date amount.

        Payment date, method and reference are cleared once nothing is paid.

        Raises:
            InvalidPaymentAmountError: If ``amount`` is not positive or exceeds
                the paid amount.
            OpenItemStateError: If the item is CANCELLED.
        """
        if amount <= 0:
            raise InvalidPaymentAmountError(amount, "reversal amount must be positive")
        if amount > self.paid_amount:
            raise InvalidPaymentAmountError(
                amount, f"reversal exceeds paid amount {self.paid_amount}"
            )
        if self.is_cancelled:
            self._reject("reverse payment on")

        self.paid_amount = money(self.paid_amount - amount)
        if self.paid_amount == 0:
            self.payment_date = None
            self.payment_method = None
            self.payment_reference = None
        return self.refresh_status(as_of)

    def cancel(self) -> None:
        """Terminal; no further payments are accepted."""
        self.status = OpenItemStatus.CANCELLED

    def add_reminder(self, as_of: date) -> int:
        """
        Count a dunning reminder and escalate OPEN to OVERDUE once due.

        Returns:
            The new reminder count.
        """
        if self.current_status in (OpenItemStatus.PAID, OpenItemStatus.CANCELLED):
            self._reject("remind")
        self.reminder_count += 1
        self.last_reminder_on = as_of
        if self.current_status is OpenItemStatus.OPEN and self.due_date < as_of:
            self.status = OpenItemStatus.OVERDUE
        return self.reminder_count
