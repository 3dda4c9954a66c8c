"""
Module: billing_kernel.models.invoice
Responsibility: Invoice and invoice-line persistence together with the
    invoice's own arithmetic, payment, cancellation and credit-note rules.
Architecture position: Kernel > Models.

Invariants enforced:
    - line_total = quantity * unit_price - discount, clamped at zero unless
      the quantity is negative (credit-note line).
    - subtotal = sum(line totals) - discount, clamped at zero for ordinary
      invoices; tax = subtotal * (tax_rate / 100 at 4 places);
      total = subtotal + tax.  Every mutator that touches items or discount
      calls ``calculate_totals()`` before returning.
    - A CANCELLED invoice is terminal and holds no due-schedule links.

Failure modes:
    - InvoiceStateError on payment/cancel/credit note from a disallowed
      status.
    - InvalidPaymentAmountError on a non-positive payment.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.money import ZERO, money, percent_to_ratio, ratio
from billing_kernel.exceptions import InvalidPaymentAmountError, InvoiceStateError
from billing_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from billing_kernel.models.due_schedule import DueSchedule
    from billing_kernel.models.open_item import OpenItem
    from billing_kernel.models.process_record import ProcessRecord
    from billing_kernel.models.subscription import Customer

logger = get_logger("models.invoice")

CREDIT_NOTE_PREFIX = "Credit note: "


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    OPEN = "open"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    CREDIT_NOTE = "credit_note"


class InvoiceType(str, Enum):
    MANUAL = "manual"
    AUTO_GENERATED = "auto_generated"
    RECURRING = "recurring"
    CREDIT_NOTE = "credit_note"


class InvoiceItemType(str, Enum):
    SERVICE = "service"
    PRODUCT = "product"
    SUBSCRIPTION = "subscription"
    DISCOUNT = "discount"
    FEE = "fee"


_PAYABLE_STATUSES = frozenset({
    InvoiceStatus.DRAFT,
    InvoiceStatus.SENT,
    InvoiceStatus.OPEN,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.OVERDUE,
})


class InvoiceItem(TrackedBase):
    """One line of an invoice."""

    __tablename__ = "invoice_items"

    __table_args__ = (
        Index("idx_invoice_item_invoice", "invoice_id"),
        Index("idx_invoice_item_due_schedule", "due_schedule_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    position: Mapped[int] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    tax_rate: Mapped[Decimal | None] = mapped_column(nullable=True)
    tax_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    item_type: Mapped[InvoiceItemType] = mapped_column(
        String(20),
        default=InvoiceItemType.SERVICE,
        nullable=False,
    )
    due_schedule_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("due_schedules.id"),
        nullable=True,
    )
    period_start: Mapped[date | None] = mapped_column(nullable=True)
    period_end: Mapped[date | None] = mapped_column(nullable=True)
    product_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    product_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    invoice: Mapped[Invoice] = relationship(back_populates="items")

    def __init__(self, **kwargs):
        kwargs.setdefault("quantity", Decimal("1"))
        kwargs.setdefault("discount_amount", ZERO)
        kwargs.setdefault("item_type", InvoiceItemType.SERVICE)
        kwargs.setdefault("position", 0)
        super().__init__(**kwargs)
        self.calculate_line_total()

    def __repr__(self) -> str:
        return f"<InvoiceItem {self.position}: {self.description} {self.line_total}>"

    @property
    def is_credit_line(self) -> bool:
        return self.quantity < 0

    def calculate_line_total(self) -> Decimal:
        """quantity x unit_price - discount; negative only for credit lines."""
        gross = self.quantity * self.unit_price - (self.discount_amount or ZERO)
        if gross < 0 and not self.is_credit_line:
            gross = ZERO
        self.line_total = money(gross)
        return self.line_total


class Invoice(TrackedBase):
    """
    A billing document.

    Contract:
        Totals are never assigned directly by callers.  ``add_item``,
        ``remove_item`` and ``apply_discount`` keep them consistent.

    Guarantees:
        - ``mark_as_paid`` forwards a proportional share of each payment to
          every linked, still-invoiced due schedule.
        - ``cancel`` releases every linked due schedule for rebilling.
        - ``create_credit_note`` produces a negated mirror invoice linked
          back through ``original_invoice``.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        Index("idx_invoice_customer", "customer_id"),
        Index("idx_invoice_status", "status"),
        Index("idx_invoice_batch", "batch_id"),
    )

    invoice_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    invoice_date: Mapped[date] = mapped_column(nullable=False)
    due_date: Mapped[date] = mapped_column(nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(String(20), nullable=False)
    invoice_type: Mapped[InvoiceType] = mapped_column(String(20), nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)

    paid_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    payment_date: Mapped[date | None] = mapped_column(nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id"), nullable=False)
    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id"),
        nullable=True,
    )
    billing_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    payment_terms: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch_id: Mapped[str | None] = mapped_column(String(60), nullable=True)
    process_record_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("process_records.id"),
        nullable=True,
    )
    original_invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoices.id"),
        nullable=True,
    )

    items: Mapped[list[InvoiceItem]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.position",
        lazy="selectin",
    )
    due_schedules: Mapped[list[DueSchedule]] = relationship(
        back_populates="invoice",
    )
    open_items: Mapped[list[OpenItem]] = relationship(
        back_populates="invoice",
    )
    customer: Mapped[Customer] = relationship()
    process_record: Mapped[ProcessRecord | None] = relationship()
    original_invoice: Mapped[Invoice | None] = relationship(
        remote_side="Invoice.id",
        back_populates="credit_notes",
    )
    credit_notes: Mapped[list[Invoice]] = relationship(
        back_populates="original_invoice",
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", InvoiceStatus.DRAFT)
        kwargs.setdefault("invoice_type", InvoiceType.MANUAL)
        for name in ("subtotal", "tax_rate", "tax_amount", "discount_amount",
                     "total_amount", "paid_amount"):
            kwargs.setdefault(name, ZERO)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number}: {self.total_amount} {self.current_status.value}>"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def current_status(self) -> InvoiceStatus:
        return InvoiceStatus(self.status)

    @property
    def is_credit_note(self) -> bool:
        return InvoiceType(self.invoice_type) is InvoiceType.CREDIT_NOTE

    @property
    def outstanding_amount(self) -> Decimal:
        return money(self.total_amount - self.paid_amount)

    def is_overdue(self, as_of: date) -> bool:
        return (
            self.current_status in _PAYABLE_STATUSES
            and self.outstanding_amount > 0
            and self.due_date < as_of
        )

    # -------------------------------------------------------------------------
    # Items and totals
    # -------------------------------------------------------------------------

    def calculate_totals(self) -> None:
        """Recompute line totals, subtotal, tax and total from the items."""
        line_sum = ZERO
        invoice_ratio = percent_to_ratio(self.tax_rate or ZERO)
        for item in self.items:
            item.calculate_line_total()
            item_ratio = (
                percent_to_ratio(item.tax_rate) if item.tax_rate is not None else invoice_ratio
            )
            item.tax_amount = money(item.line_total * item_ratio)
            line_sum += item.line_total

        subtotal = line_sum - (self.discount_amount or ZERO)
        if subtotal < 0 and not self.is_credit_note:
            subtotal = ZERO
        self.subtotal = money(subtotal)
        self.tax_amount = money(self.subtotal * invoice_ratio)
        self.total_amount = money(self.subtotal + self.tax_amount)

    def add_item(self, item: InvoiceItem) -> InvoiceItem:
        """Append a line (positions are 1-based) and recompute totals."""
        item.position = len(self.items) + 1
        self.items.append(item)
        self.calculate_totals()
        return item

    def remove_item(self, item: InvoiceItem) -> None:
        self.items.remove(item)
        for position, remaining in enumerate(self.items, start=1):
            remaining.position = position
        self.calculate_totals()

    def apply_discount(self, discount: Decimal) -> None:
        """Set the invoice-level discount and recompute totals."""
        if discount < 0 and not self.is_credit_note:
            raise ValueError("discount cannot be negative")
        self.discount_amount = money(discount)
        self.calculate_totals()

    # -------------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------------

    def mark_as_paid(
        self,
        amount: Decimal,
        method: str | None,
        reference: str | None,
        paid_on: date,
    ) -> dict[str, Decimal]:
        """
        Record a payment against this invoice.

        Status becomes PAID once the paid amount reaches the total, otherwise
        PARTIALLY_PAID.  Each linked due schedule that is still COMPLETED
        receives ``amount x quantize(schedule.amount / total, 4 places)``.

        Returns:
            Mapping of due number to the share forwarded to it.

        Raises:
            InvalidPaymentAmountError: If ``amount`` is not positive.
            InvoiceStateError: If the invoice is paid, cancelled or a credit note.
        """
        if amount <= 0:
            raise InvalidPaymentAmountError(amount, "payment amount must be positive")
        if self.current_status not in _PAYABLE_STATUSES:
            raise InvoiceStateError(self.invoice_number, self.current_status.value, "pay")

        amount = money(amount)
        self.paid_amount = money(self.paid_amount + amount)
        self.payment_date = paid_on
        self.payment_method = method
        self.payment_reference = reference
        if self.paid_amount >= self.total_amount:
            self.status = InvoiceStatus.PAID
        else:
            self.status = InvoiceStatus.PARTIALLY_PAID

        allocations: dict[str, Decimal] = {}
        if self.total_amount > 0:
            for schedule in self.due_schedules:
                if not schedule.is_completed:
                    continue
                proportion = ratio(schedule.amount / self.total_amount)
                share = money(amount * proportion)
                if share > 0:
                    schedule.record_payment(share, paid_on)
                    allocations[schedule.due_number] = share

        logger.info(
            "invoice_payment_recorded",
            extra={
                "invoice_number": self.invoice_number,
                "amount": str(amount),
                "paid_amount": str(self.paid_amount),
                "status": self.current_status.value,
                "allocations": {k: str(v) for k, v in allocations.items()},
            },
        )
        return allocations

    # -------------------------------------------------------------------------
    # Cancellation and credit notes
    # -------------------------------------------------------------------------

    def cancel(self) -> list[DueSchedule]:
        """
        Cancel the invoice and release its due schedules for rebilling.

        Returns:
            The due schedules that were reverted to ACTIVE.

        Raises:
            InvoiceStateError: If the invoice is already cancelled.
        """
        if self.current_status is InvoiceStatus.CANCELLED:
            raise InvoiceStateError(self.invoice_number, self.current_status.value, "cancel")

        self.status = InvoiceStatus.CANCELLED
        reverted: list[DueSchedule] = []
        for schedule in list(self.due_schedules):
            if schedule.is_completed:
                schedule.revert_completion()
                reverted.append(schedule)
        self.due_schedules.clear()
        return reverted

    def create_credit_note(
        self,
        invoice_number: str,
        invoice_date: date,
        actor_id: UUID,
    ) -> Invoice:
        """
        Build a credit note that offsets this invoice.

        Every line is copied with a negated quantity (and negated discount)
        so the credit note's totals are the exact negation of this invoice's.

        Raises:
            InvoiceStateError: If this invoice is cancelled or itself a credit note.
        """
        if self.current_status is InvoiceStatus.CANCELLED or self.is_credit_note:
            raise InvoiceStateError(
                self.invoice_number, self.current_status.value, "credit"
            )

        credit_note = Invoice(
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            due_date=invoice_date,
            status=InvoiceStatus.CREDIT_NOTE,
            invoice_type=InvoiceType.CREDIT_NOTE,
            customer_id=self.customer_id,
            subscription_id=self.subscription_id,
            billing_address=self.billing_address,
            tax_rate=self.tax_rate,
            discount_amount=-(self.discount_amount or ZERO),
            notes=f"Credit note for invoice {self.invoice_number}",
            created_by_id=actor_id,
        )
        for item in self.items:
            credit_note.add_item(
                InvoiceItem(
                    description=f"{CREDIT_NOTE_PREFIX}{item.description}",
                    quantity=-item.quantity,
                    unit_price=item.unit_price,
                    discount_amount=-(item.discount_amount or ZERO),
                    tax_rate=item.tax_rate,
                    item_type=item.item_type,
                    due_schedule_id=item.due_schedule_id,
                    period_start=item.period_start,
                    period_end=item.period_end,
                    product_code=item.product_code,
                    product_name=item.product_name,
                    created_by_id=actor_id,
                )
            )
        credit_note.calculate_totals()
        self.credit_notes.append(credit_note)
        return credit_note
