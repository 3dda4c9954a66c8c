"""
Invoice and open-item factories used by the batch processor.

InvoiceFactory builds one AUTO_GENERATED invoice with a single SUBSCRIPTION
line per due schedule.  OpenItemFactory builds the matching receivable.
Neither factory adds anything to the session.
"""

from __future__ import annotations

from datetime import date, timedelta
from uuid import UUID

from billing_kernel.config import BillingConfig
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.models.due_schedule import DueSchedule
from billing_kernel.models.invoice import (
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    InvoiceType,
)
from billing_kernel.models.open_item import OpenItem, derive_open_item_status
from billing_kernel.models.process_record import ProcessRecord
from billing_kernel.models.subscription import Subscription
from billing_kernel.services.numbering import DocumentNumberService


def overdue_tag(due_date: date) -> str:
    return f"[OVERDUE since {due_date.strftime('%d.%m.%Y')}]"


class InvoiceFactory:
    def __init__(self, numbering: DocumentNumberService, config: BillingConfig):
        self._numbering = numbering
        self._config = config

    def create_from_due_schedule(
        self,
        schedule: DueSchedule,
        subscription: Subscription,
        billing_date: date,
        batch_id: str,
        process_record: ProcessRecord,
        actor_id: UUID,
    ) -> Invoice:
        """
        Build the invoice for one due schedule.

        Invoice date is the billing date; due date adds the configured
        payment terms.  Schedules due before the billing date get an
        overdue tag in the line description.
        """
        customer = subscription.customer
        description = f"{subscription.product_name} for period {schedule.period_label()}"
        if schedule.due_date < billing_date:
            description = f"{description} {overdue_tag(schedule.due_date)}"

        invoice = Invoice(
            invoice_number=self._numbering.next_invoice_number(billing_date),
            invoice_date=billing_date,
            due_date=billing_date + timedelta(days=self._config.payment_terms_days),
            status=InvoiceStatus.OPEN,
            invoice_type=InvoiceType.AUTO_GENERATED,
            customer_id=customer.id,
            subscription_id=subscription.id,
            billing_address=customer.billing_address,
            tax_rate=self._config.default_tax_rate,
            payment_terms=self._config.payment_terms_text,
            batch_id=batch_id,
            process_record_id=process_record.id,
            notes=(
                f"Generated by billing run {process_record.process_number} "
                f"from due schedule {schedule.due_number}"
            ),
            created_by_id=actor_id,
        )
        invoice.add_item(
            InvoiceItem(
                description=description,
                unit_price=schedule.amount,
                item_type=InvoiceItemType.SUBSCRIPTION,
                due_schedule_id=schedule.id,
                period_start=schedule.period_start,
                period_end=schedule.period_end,
                product_code=subscription.product_code,
                product_name=subscription.product_name,
                created_by_id=actor_id,
            )
        )
        return invoice


class OpenItemFactory:
    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()

    def create_from_invoice(
        self,
        invoice: Invoice,
        process_record: ProcessRecord,
        actor_id: UUID,
        from_overdue: bool = False,
    ) -> OpenItem:
        """Receivable for the full invoice total, due with the invoice."""
        description = f"Open item for invoice {invoice.invoice_number}"
        if from_overdue:
            description += " (from overdue due schedule)"
        return OpenItem(
            description=description,
            amount=invoice.total_amount,
            due_date=invoice.due_date,
            status=derive_open_item_status(
                invoice.paid_amount, invoice.total_amount, invoice.due_date, self._clock.today()
            ),
            invoice=invoice,
            subscription_id=invoice.subscription_id,
            customer_id=invoice.customer_id,
            process_record_id=process_record.id,
            created_by_id=actor_id,
        )
