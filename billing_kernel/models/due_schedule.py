"""
Module: billing_kernel.models.due_schedule
Responsibility: One recurring charge instance of a subscription and its
    status machine.
Architecture position: Kernel > Models.

Invariants enforced:
    - ACTIVE schedules carry no invoice link, batch id or invoiced date.
    - COMPLETED schedules always carry an invoice link and a batch id.
    - Status moves forward only; the single way back from COMPLETED is the
      explicit ``revert_completion()``.
    - Rows are never hard-deleted; ``soft_delete()`` sets the flag.

Failure modes:
    - DueScheduleStateError on any transition from a disallowed status,
      including a second ``mark_completed()`` (no double invoicing).
    - InvalidPaymentAmountError on a non-positive payment share.

Audit relevance:
    batch_id, invoiced_on and process_record_id tie every invoiced schedule
    to the billing run that invoiced it.
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
from billing_kernel.exceptions import DueScheduleStateError, InvalidPaymentAmountError

if TYPE_CHECKING:
    from billing_kernel.models.invoice import Invoice
    from billing_kernel.models.process_record import ProcessRecord
    from billing_kernel.models.subscription import Subscription


class DueStatus(str, Enum):
    """Canonical due-schedule status.

    ACTIVE -> COMPLETED on invoicing.  ACTIVE <-> PAUSED, and ACTIVE/PAUSED
    -> SUSPENDED -> ACTIVE via explicit operator actions.
    """

    ACTIVE = "active"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    COMPLETED = "completed"

    @classmethod
    def from_legacy(cls, legacy_status: str) -> DueStatus:
        """Map the older PENDING/INVOICED/PAID/CANCELLED vocabulary.

        PAID maps to COMPLETED (payment is tracked in ``paid_amount``);
        CANCELLED maps to SUSPENDED and the row should be soft-deleted.
        """
        try:
            return _LEGACY_STATUS_MAP[legacy_status.upper()]
        except KeyError:
            raise ValueError(f"Unknown legacy due status: {legacy_status!r}") from None


_LEGACY_STATUS_MAP = {
    "PENDING": DueStatus.ACTIVE,
    "INVOICED": DueStatus.COMPLETED,
    "PAID": DueStatus.COMPLETED,
    "CANCELLED": DueStatus.SUSPENDED,
}


class DueSchedule(TrackedBase):
    """
    A single scheduled charge for one subscription billing period.

    Contract:
        The batch processor is the only caller of ``mark_completed()``.
        Pause/suspend/resume are operator actions routed through
        DueScheduleService.

    Non-goals:
        - Does not create invoices; InvoiceFactory does.
    """

    __tablename__ = "due_schedules"

    __table_args__ = (
        Index("idx_due_schedule_status_date", "status", "due_date"),
        Index("idx_due_schedule_subscription", "subscription_id"),
        Index("idx_due_schedule_batch", "batch_id"),
    )

    due_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    due_date: Mapped[date] = mapped_column(nullable=False)
    period_start: Mapped[date] = mapped_column(nullable=False)
    period_end: Mapped[date] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    paid_on: Mapped[date | None] = mapped_column(nullable=True)

    status: Mapped[DueStatus] = mapped_column(
        String(20),
        default=DueStatus.ACTIVE,
        nullable=False,
    )

    # Nullable at the column level so a broken row can be represented;
    # the batch processor rejects it.
    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id"),
        nullable=True,
    )

    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoices.id"),
        nullable=True,
    )
    batch_id: Mapped[str | None] = mapped_column(String(60), nullable=True)
    invoiced_on: Mapped[date | None] = mapped_column(nullable=True)

    process_record_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("process_records.id"),
        nullable=True,
    )

    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    subscription: Mapped[Subscription | None] = relationship(
        back_populates="due_schedules",
    )
    invoice: Mapped[Invoice | None] = relationship(
        back_populates="due_schedules",
    )
    process_record: Mapped[ProcessRecord | None] = relationship()

    def __init__(self, **kwargs):
        # Column defaults only apply at INSERT; transitions need them earlier.
        kwargs.setdefault("status", DueStatus.ACTIVE)
        kwargs.setdefault("paid_amount", ZERO)
        kwargs.setdefault("deleted", False)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<DueSchedule {self.due_number}: {self.due_date} {self.current_status.value}>"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def current_status(self) -> DueStatus:
        return DueStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.current_status is DueStatus.ACTIVE and not self.deleted

    @property
    def is_completed(self) -> bool:
        return self.current_status is DueStatus.COMPLETED

    @property
    def outstanding_amount(self) -> Decimal:
        return money(self.amount - (self.paid_amount or ZERO))

    def is_overdue(self, as_of: date) -> bool:
        """Due before ``as_of`` and not yet invoiced."""
        return self.current_status is DueStatus.ACTIVE and self.due_date < as_of

    def period_label(self) -> str:
        return (
            f"{self.period_start.strftime('%d.%m.%Y')} to "
            f"{self.period_end.strftime('%d.%m.%Y')}"
        )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _require(self, allowed: tuple[DueStatus, ...], action: str) -> None:
        if self.current_status not in allowed or self.deleted:
            state = "deleted" if self.deleted else self.current_status.value
            raise DueScheduleStateError(self.due_number, state, action)

    def mark_completed(self, invoice: Invoice, batch_id: str, invoiced_on: date) -> None:
        """ACTIVE -> COMPLETED, linking the invoice that settles this charge.

        Raises:
            DueScheduleStateError: unless the schedule is ACTIVE.
        """
        self._require((DueStatus.ACTIVE,), "complete")
        if not batch_id:
            raise ValueError("batch_id is required to complete a due schedule")
        self.status = DueStatus.COMPLETED
        self.invoice = invoice
        self.batch_id = batch_id
        self.invoiced_on = invoiced_on

    def revert_completion(self) -> None:
        """COMPLETED -> ACTIVE; releases the invoice link for rebilling."""
        self._require((DueStatus.COMPLETED,), "revert")
        self.status = DueStatus.ACTIVE
        self.invoice = None
        self.invoice_id = None
        self.batch_id = None
        self.invoiced_on = None
        self.paid_amount = ZERO
        self.paid_on = None

    def pause(self) -> None:
        self._require((DueStatus.ACTIVE,), "pause")
        self.status = DueStatus.PAUSED

    def suspend(self) -> None:
        self._require((DueStatus.ACTIVE, DueStatus.PAUSED), "suspend")
        self.status = DueStatus.SUSPENDED

    def resume(self) -> None:
        self._require((DueStatus.PAUSED, DueStatus.SUSPENDED), "resume")
        self.status = DueStatus.ACTIVE

    def soft_delete(self) -> None:
        """Flag as deleted.  Invoiced schedules stay visible."""
        if self.current_status is DueStatus.COMPLETED:
            raise DueScheduleStateError(self.due_number, self.current_status.value, "delete")
        self.deleted = True

    def record_payment(self, amount: Decimal, paid_on: date) -> None:
        """Accumulate a payment share forwarded from the settling invoice."""
        self._require((DueStatus.COMPLETED,), "record payment on")
        if amount <= 0:
            raise InvalidPaymentAmountError(amount, "payment share must be positive")
        self.paid_amount = money((self.paid_amount or ZERO) + amount)
        self.paid_on = paid_on
