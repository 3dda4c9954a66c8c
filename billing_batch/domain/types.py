"""
Billing-run value objects.

Contract:
    ``BatchAnalysis``, ``BatchPreview`` and ``BatchResult`` are frozen and
    hold tuples only.  ``BatchResultAccumulator`` is the single mutable
    builder; the processor fills it item by item and freezes it once with
    ``build()``, so no half-assembled result ever leaves the processor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from billing_kernel.domain.money import ZERO, money

if TYPE_CHECKING:
    from billing_kernel.models.due_schedule import DueSchedule
    from billing_kernel.models.invoice import Invoice
    from billing_kernel.models.open_item import OpenItem


# =============================================================================
# Analysis
# =============================================================================


@dataclass(frozen=True)
class MonthGroup:
    """Eligible schedules sharing one due month ("YYYY-MM")."""

    month: str
    due_schedules: tuple[DueSchedule, ...]

    @property
    def count(self) -> int:
        return len(self.due_schedules)

    @property
    def amount(self) -> Decimal:
        return money(sum((s.amount for s in self.due_schedules), ZERO))


@dataclass(frozen=True)
class BatchAnalysis:
    """
    Scoping report for one billing date.

    ``future_count`` is derived as total - overdue - current.  Neither
    selection rule admits a schedule due after the billing date, so it is
    zero for every analysis the analyzer produces.
    """

    billing_date: date
    include_overdue: bool
    due_schedules: tuple[DueSchedule, ...]
    overdue_count: int
    current_count: int
    month_groups: tuple[MonthGroup, ...] = ()

    @property
    def total_count(self) -> int:
        return len(self.due_schedules)

    @property
    def future_count(self) -> int:
        return self.total_count - self.overdue_count - self.current_count

    @property
    def month_count(self) -> int:
        return len(self.month_groups)

    @property
    def months(self) -> tuple[str, ...]:
        return tuple(group.month for group in self.month_groups)

    @property
    def total_amount(self) -> Decimal:
        return money(sum((s.amount for s in self.due_schedules), ZERO))

    def is_empty(self) -> bool:
        return self.total_count == 0

    def has_overdue_items(self) -> bool:
        return self.overdue_count > 0


@dataclass(frozen=True)
class BatchPreview:
    """Dry-run projection of an analysis."""

    analysis: BatchAnalysis
    estimated_amount: Decimal

    @classmethod
    def from_analysis(cls, analysis: BatchAnalysis) -> BatchPreview:
        return cls(analysis=analysis, estimated_amount=analysis.total_amount)

    @property
    def billing_date(self) -> date:
        return self.analysis.billing_date

    @property
    def total_count(self) -> int:
        return self.analysis.total_count

    def is_empty(self) -> bool:
        return self.analysis.is_empty()

    def summary(self) -> str:
        if self.is_empty():
            return f"Billing preview for {self.billing_date}: nothing to bill"
        return (
            f"Billing preview for {self.billing_date}: "
            f"{self.total_count} due schedule(s) "
            f"({self.analysis.overdue_count} overdue, "
            f"{self.analysis.current_count} current) "
            f"across {self.analysis.month_count} month(s), "
            f"estimated amount {self.estimated_amount}"
        )


# =============================================================================
# Result
# =============================================================================


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one billing run."""

    billing_date: date
    batch_id: str | None
    process_number: str | None
    processed_due_schedules: int = 0
    created_invoices: int = 0
    created_open_items: int = 0
    total_amount: Decimal = ZERO
    overdue_count: int = 0
    current_count: int = 0
    invoice_numbers: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    success_messages: tuple[str, ...] = ()
    message: str = ""

    @classmethod
    def empty(
        cls,
        billing_date: date,
        process_number: str | None,
        message: str,
    ) -> BatchResult:
        return cls(
            billing_date=billing_date,
            batch_id=None,
            process_number=process_number,
            message=message,
        )

    def has_errors(self) -> bool:
        return bool(self.errors)

    def is_successful(self) -> bool:
        """True when no item failed; an empty run is successful."""
        return not self.errors

    def summary(self) -> str:
        text = (
            f"Billing run {self.process_number or '-'} for {self.billing_date}: "
            f"{self.processed_due_schedules} due schedule(s) processed, "
            f"{self.created_invoices} invoice(s), "
            f"{self.created_open_items} open item(s), "
            f"total {self.total_amount}"
        )
        if self.errors:
            text += f", {len(self.errors)} error(s)"
        return text


@dataclass(frozen=True)
class HousekeepingResult:
    """Outcome of one housekeeping pass."""

    as_of: date
    stuck_processes_failed: tuple[str, ...] = ()
    processes_deleted: int = 0
    open_items_updated: int = 0

    def summary(self) -> str:
        return (
            f"Housekeeping for {self.as_of}: "
            f"{len(self.stuck_processes_failed)} stuck process(es) failed, "
            f"{self.processes_deleted} old process(es) deleted, "
            f"{self.open_items_updated} open item status(es) updated"
        )


@dataclass
class BatchResultAccumulator:
    """Mutable builder for ``BatchResult`` used during the processing loop."""

    billing_date: date
    batch_id: str
    process_number: str
    overdue_count: int = 0
    current_count: int = 0
    _processed: list[str] = field(default_factory=list)
    _invoices: list[Invoice] = field(default_factory=list)
    _open_items: list[OpenItem] = field(default_factory=list)
    _errors: list[str] = field(default_factory=list)
    _success_messages: list[str] = field(default_factory=list)

    def add_success(
        self,
        due_schedule: DueSchedule,
        invoice: Invoice,
        open_item: OpenItem,
    ) -> None:
        self._processed.append(due_schedule.due_number)
        self._invoices.append(invoice)
        self._open_items.append(open_item)
        self._success_messages.append(
            f"Invoice {invoice.invoice_number} created for due schedule "
            f"{due_schedule.due_number}"
        )

    def add_error(self, message: str) -> None:
        self._errors.append(message)

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    @property
    def invoice_count(self) -> int:
        return len(self._invoices)

    @property
    def open_item_count(self) -> int:
        return len(self._open_items)

    @property
    def error_count(self) -> int:
        return len(self._errors)

    @property
    def total_amount(self) -> Decimal:
        return money(sum((i.total_amount for i in self._invoices), ZERO))

    def build(self, message: str) -> BatchResult:
        return BatchResult(
            billing_date=self.billing_date,
            batch_id=self.batch_id,
            process_number=self.process_number,
            processed_due_schedules=self.processed_count,
            created_invoices=self.invoice_count,
            created_open_items=self.open_item_count,
            total_amount=self.total_amount,
            overdue_count=self.overdue_count,
            current_count=self.current_count,
            invoice_numbers=tuple(i.invoice_number for i in self._invoices),
            errors=tuple(self._errors),
            success_messages=tuple(self._success_messages),
            message=message,
        )
