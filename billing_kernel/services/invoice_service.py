"""
InvoiceService -- invoice operations that span several entities.

Contract:
    - ``cancel_invoice`` cancels the invoice, cancels its unpaid open items
      and releases its due schedules for rebilling.
    - ``record_payment`` applies one payment to the invoice (with
      proportional due-schedule allocation) and to its open item.
    - ``create_credit_note`` numbers and persists a credit note.

Failure modes:
    - InvoiceNotFoundError on unknown ids.
    - Model-level state and amount errors propagate unchanged.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import InvoiceNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.open_item import OpenItemStatus
from billing_kernel.services.numbering import DocumentNumberService

logger = get_logger("services.invoice")

_CANCELLABLE_OPEN_ITEM_STATUSES = frozenset({
    OpenItemStatus.OPEN,
    OpenItemStatus.OVERDUE,
})


class InvoiceService:
    """Invoice-level operations on behalf of one actor."""

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

    def get(self, invoice_id: UUID) -> Invoice:
        invoice = self._session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def cancel_invoice(self, invoice_id: UUID) -> Invoice:
        """
        Cancel an invoice with its open items and due-schedule links.

        Open items that already received money are left alone and logged;
        they need a credit note or a payment reversal first.
        """
        invoice = self.get(invoice_id)
        reverted = invoice.cancel()
        invoice.updated_by_id = self._actor_id

        cancelled_items = 0
        for open_item in invoice.open_items:
            if open_item.current_status in _CANCELLABLE_OPEN_ITEM_STATUSES:
                open_item.cancel()
                open_item.updated_by_id = self._actor_id
                cancelled_items += 1
            elif not open_item.is_cancelled:
                logger.warning(
                    "open_item_not_cancelled",
                    extra={
                        "invoice_number": invoice.invoice_number,
                        "open_item_id": str(open_item.id),
                        "status": open_item.current_status.value,
                        "paid_amount": str(open_item.paid_amount),
                    },
                )

        self._session.flush()
        logger.info(
            "invoice_cancelled",
            extra={
                "invoice_number": invoice.invoice_number,
                "open_items_cancelled": cancelled_items,
                "due_schedules_released": [s.due_number for s in reverted],
            },
        )
        return invoice

    def record_payment(
        self,
        invoice_id: UUID,
        amount: Decimal,
        method: str | None = None,
        reference: str | None = None,
    ) -> dict[str, Decimal]:
        """
        Apply a payment to the invoice and to its open receivable.

        Returns:
            Due-schedule allocation as returned by ``Invoice.mark_as_paid``.
        """
        invoice = self.get(invoice_id)
        today = self._clock.today()
        allocations = invoice.mark_as_paid(amount, method, reference, today)
        invoice.updated_by_id = self._actor_id

        for open_item in invoice.open_items:
            if open_item.current_status in (OpenItemStatus.PAID, OpenItemStatus.CANCELLED):
                continue
            open_item.record_payment(amount, method, reference, today)
            open_item.updated_by_id = self._actor_id
            break

        self._session.flush()
        return allocations

    def create_credit_note(self, invoice_id: UUID) -> Invoice:
        invoice = self.get(invoice_id)
        today = self._clock.today()
        credit_note = invoice.create_credit_note(
            invoice_number=self._numbering.next_credit_note_number(today),
            invoice_date=today,
            actor_id=self._actor_id,
        )
        self._session.add(credit_note)
        self._session.flush()
        logger.info(
            "credit_note_created",
            extra={
                "invoice_number": invoice.invoice_number,
                "credit_note_number": credit_note.invoice_number,
                "total_amount": str(credit_note.total_amount),
            },
        )
        return credit_note
