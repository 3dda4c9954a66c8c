"""
Module: billing_kernel.models.process_record
Responsibility: Audit unit for one tracked system action (a billing run,
    a due-schedule generation, an invoice cancellation, ...).
Architecture position: Kernel > Models.

Invariants enforced:
    - ended_at is set exactly once, by the transition into a terminal status
      (SUCCEEDED, FAILED, ABORTED).
    - processed/success/error counts never decrease within a run.
    - A record in a terminal status rejects every further mutation.

Failure modes:
    - ProcessRecordClosedError on any mutation after a terminal status.
    - ProcessStatisticsError when a counter would decrease.

Audit relevance:
    The process number is attached to every log line of a billing run and to
    BillingRunError, so operators can move between logs and this table.
    Invoices, open items and due schedules point back here through their
    process_record_id.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.money import ZERO, money
from billing_kernel.exceptions import ProcessRecordClosedError, ProcessStatisticsError

if TYPE_CHECKING:
    from billing_kernel.models.due_schedule import DueSchedule
    from billing_kernel.models.invoice import Invoice
    from billing_kernel.models.open_item import OpenItem


class ProcessStatus(str, Enum):
    STARTED = "started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"
    PAUSED = "paused"
    WAITING = "waiting"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    ProcessStatus.SUCCEEDED,
    ProcessStatus.FAILED,
    ProcessStatus.ABORTED,
})


class ProcessType(str, Enum):
    BILLING_RUN = "billing_run"
    DUE_SCHEDULE_GENERATION = "due_schedule_generation"
    INVOICE_CANCELLATION = "invoice_cancellation"
    PAYMENT_RECEIPT = "payment_receipt"
    DUNNING = "dunning"
    DATA_IMPORT = "data_import"
    BULK_OPERATION = "bulk_operation"
    STATUS_CHANGE = "status_change"
    OTHER = "other"


class ProcessRecord(TrackedBase):
    """
    Process record ("Vorgang") wrapping one tracked operation.

    Contract:
        Created STARTED, moved to RUNNING by ``start()``, closed by exactly
        one of ``succeed()``, ``fail()`` or ``abort()``.
    """

    __tablename__ = "process_records"

    __table_args__ = (
        Index("idx_process_record_status", "status"),
        Index("idx_process_record_type_started", "process_type", "started_at"),
    )

    process_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    process_type: Mapped[ProcessType] = mapped_column(String(40), nullable=False)
    status: Mapped[ProcessStatus] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)

    triggered_by: Mapped[str] = mapped_column(String(100), nullable=False)
    automatic: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    processed_count: Mapped[int] = mapped_column(default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(default=0, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)

    result_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata_json",
        JSON,
        nullable=True,
    )

    invoices: Mapped[list[Invoice]] = relationship(viewonly=True)
    open_items: Mapped[list[OpenItem]] = relationship(viewonly=True)
    due_schedules: Mapped[list[DueSchedule]] = relationship(viewonly=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("status", ProcessStatus.STARTED)
        kwargs.setdefault("automatic", True)
        kwargs.setdefault("processed_count", 0)
        kwargs.setdefault("success_count", 0)
        kwargs.setdefault("error_count", 0)
        kwargs.setdefault("total_amount", ZERO)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<ProcessRecord {self.process_number}: {self.current_status.value}>"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def current_status(self) -> ProcessStatus:
        return ProcessStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.current_status.is_terminal

    @property
    def is_running(self) -> bool:
        return self.current_status is ProcessStatus.RUNNING

    @property
    def duration_ms(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    @property
    def success_rate(self) -> float:
        """Share of processed items that succeeded, in percent."""
        if not self.processed_count:
            return 0.0
        return round(self.success_count * 100.0 / self.processed_count, 2)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise ProcessRecordClosedError(self.process_number, self.current_status.value)

    def _close(self, status: ProcessStatus, ended_at: datetime) -> None:
        self._ensure_open()
        self.status = status
        self.ended_at = ended_at

    def start(self) -> None:
        self._ensure_open()
        self.status = ProcessStatus.RUNNING

    def pause(self) -> None:
        self._ensure_open()
        self.status = ProcessStatus.PAUSED

    def wait(self) -> None:
        self._ensure_open()
        self.status = ProcessStatus.WAITING

    def succeed(self, ended_at: datetime, message: str | None = None) -> None:
        self._close(ProcessStatus.SUCCEEDED, ended_at)
        self.result_message = message

    def fail(self, ended_at: datetime, details: str) -> None:
        self._close(ProcessStatus.FAILED, ended_at)
        self.error_log = details
        self.result_message = details

    def abort(self, ended_at: datetime, reason: str) -> None:
        self._close(ProcessStatus.ABORTED, ended_at)
        self.error_log = f"Aborted: {reason}"
        self.result_message = self.error_log

    def update_statistics(
        self,
        processed: int,
        success: int,
        errors: int,
        total_amount: Decimal | None = None,
    ) -> None:
        """Set run counters; none of them may go down."""
        self._ensure_open()
        for counter, current, requested in (
            ("processed_count", self.processed_count, processed),
            ("success_count", self.success_count, success),
            ("error_count", self.error_count, errors),
        ):
            if requested < current:
                raise ProcessStatisticsError(self.process_number, counter, current, requested)
        self.processed_count = processed
        self.success_count = success
        self.error_count = errors
        if total_amount is not None:
            self.total_amount = money(total_amount)

    def attach_metadata(self, **values: Any) -> None:
        """Merge JSON-safe values into ``run_metadata``."""
        self._ensure_open()
        merged = dict(self.run_metadata or {})
        merged.update(values)
        # Reassign so the JSON column is flagged dirty
        self.run_metadata = merged
