"""
BatchProcessor -- turns a scoping report into invoices and open items.

Contract:
    ``process()`` handles every due schedule of a ``BatchAnalysis`` in
    analyzer order and returns a frozen ``BatchResult``.  For each schedule
    that succeeds there is exactly one Invoice and one OpenItem, both linked
    to the schedule's subscription, the batch id and the process record.

Architecture:
    Runs inside the orchestrator's transaction.  Whole-run atomicity is that
    transaction; per-item fault isolation is a SAVEPOINT
    (``session.begin_nested()``) around each schedule.  A failing item rolls
    back only its own savepoint: its invoice, open item, number allocations
    and COMPLETED transition disappear, earlier items stay.

Invariants enforced:
    - Exactly-once: ``DueSchedule.mark_completed`` rejects anything but
      ACTIVE, so a schedule is never invoiced twice.
    - After the loop, processed schedules, invoices and open items are
      counted both in the accumulator and in the database for the batch id;
      any disagreement is an integrity failure handled by
      ``BillingConfig.integrity_policy``.

Failure modes:
    - Per-item exceptions are caught, recorded as
      "Error for due schedule <number>: <message>".  Schedules that were
      ACTIVE when the item started get a best-effort ``rollback_completed``;
      a failing rollback is logged only.
    - BatchIntegrityError escapes when the policy is "fail".
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing_kernel.config import BillingConfig
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import BatchIntegrityError, MissingSubscriptionError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.due_schedule import DueSchedule, DueStatus
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.open_item import OpenItem
from billing_kernel.models.process_record import ProcessRecord
from billing_kernel.services.due_schedule_service import DueScheduleService
from billing_kernel.services.numbering import DocumentNumberService

from billing_batch.domain.types import BatchAnalysis, BatchResult, BatchResultAccumulator
from billing_batch.services.factories import InvoiceFactory, OpenItemFactory

logger = get_logger("batch.processor")

BATCH_ID_PREFIX = "BATCH-"


def batch_id_for(process_number: str) -> str:
    return f"{BATCH_ID_PREFIX}{process_number}"


class BatchProcessor:
    """Creates Invoice + OpenItem per due schedule with savepoint isolation.

    Contract:
        - Never commits; the caller owns the transaction.
        - Item failures never escape ``process()``.

    Non-goals:
        - Does not open or close the process record (orchestrator does).
        - Does not retry failed items; the next run picks them up because
          they are still ACTIVE.
    """

    def __init__(
        self,
        session: Session,
        actor_id: UUID,
        clock: Clock | None = None,
        config: BillingConfig | None = None,
        numbering: DocumentNumberService | None = None,
        due_schedule_service: DueScheduleService | None = None,
        invoice_factory: InvoiceFactory | None = None,
        open_item_factory: OpenItemFactory | None = None,
    ):
        self._session = session
        self._actor_id = actor_id
        self._clock = clock or SystemClock()
        self._config = config or BillingConfig()
        self._numbering = numbering or DocumentNumberService(session, self._clock)
        self._due_schedules = due_schedule_service or DueScheduleService(
            session, actor_id, self._clock, self._numbering
        )
        self._invoice_factory = invoice_factory or InvoiceFactory(self._numbering, self._config)
        self._open_item_factory = open_item_factory or OpenItemFactory(self._clock)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def process(
        self,
        analysis: BatchAnalysis,
        process_record: ProcessRecord,
        billing_date: date,
    ) -> BatchResult:
        """Process every schedule of ``analysis``; see module docstring."""
        batch_id = batch_id_for(process_record.process_number)
        acc = BatchResultAccumulator(
            billing_date=billing_date,
            batch_id=batch_id,
            process_number=process_record.process_number,
            overdue_count=analysis.overdue_count,
            current_count=analysis.current_count,
        )

        with LogContext.bind(batch_id=batch_id):
            logger.info(
                "batch_processing_started",
                extra={"due_schedule_count": analysis.total_count},
            )

            for attempted, schedule in enumerate(analysis.due_schedules, start=1):
                schedule_id = schedule.id
                due_number = schedule.due_number
                was_active = schedule.is_active

                savepoint = self._session.begin_nested()
                try:
                    invoice, open_item = self._process_one(
                        schedule, process_record, billing_date, batch_id
                    )
                    savepoint.commit()
                    acc.add_success(schedule, invoice, open_item)
                    logger.debug(
                        "due_schedule_processed",
                        extra={
                            "due_number": due_number,
                            "invoice_number": invoice.invoice_number,
                            "amount": str(invoice.total_amount),
                        },
                    )
                except Exception as exc:
                    savepoint.rollback()
                    acc.add_error(f"Error for due schedule {due_number}: {exc}")
                    logger.warning(
                        "due_schedule_processing_failed",
                        extra={"due_number": due_number},
                        exc_info=True,
                    )
                    if was_active:
                        self._rollback_schedule(schedule_id, due_number)

                process_record.update_statistics(
                    processed=attempted,
                    success=acc.processed_count,
                    errors=acc.error_count,
                    total_amount=acc.total_amount,
                )

            self._verify_integrity(acc)

            result = acc.build(self._result_message(acc, analysis.total_count))
            logger.info(
                "batch_processing_completed",
                extra={
                    "processed": result.processed_due_schedules,
                    "invoices": result.created_invoices,
                    "open_items": result.created_open_items,
                    "errors": len(result.errors),
                    "total_amount": str(result.total_amount),
                },
            )
            return result

    # -------------------------------------------------------------------------
    # One item
    # -------------------------------------------------------------------------

    def _process_one(
        self,
        schedule: DueSchedule,
        process_record: ProcessRecord,
        billing_date: date,
        batch_id: str,
    ) -> tuple[Invoice, OpenItem]:
        subscription = schedule.subscription
        if subscription is None:
            raise MissingSubscriptionError(schedule.due_number)

        invoice = self._invoice_factory.create_from_due_schedule(
            schedule=schedule,
            subscription=subscription,
            billing_date=billing_date,
            batch_id=batch_id,
            process_record=process_record,
            actor_id=self._actor_id,
        )
        self._session.add(invoice)
        self._session.flush()

        self._due_schedules.mark_completed(
            schedule, invoice, batch_id, self._clock.today()
        )
        schedule.process_record_id = process_record.id

        open_item = self._open_item_factory.create_from_invoice(
            invoice,
            process_record,
            self._actor_id,
            from_overdue=schedule.due_date < billing_date,
        )
        self._session.add(open_item)
        self._session.flush()
        return invoice, open_item

    def _rollback_schedule(self, schedule_id: UUID, due_number: str) -> None:
        """Best effort: put the schedule back to its pre-run state."""
        try:
            self._due_schedules.rollback_completed(schedule_id)
        except Exception:
            logger.error(
                "due_schedule_rollback_failed",
                extra={"due_number": due_number},
                exc_info=True,
            )

    # -------------------------------------------------------------------------
    # Post-conditions
    # -------------------------------------------------------------------------

    def _persisted_counts(self, batch_id: str) -> tuple[int, int, int]:
        """(completed schedules, invoices, open items) stored for ``batch_id``."""
        schedules = self._session.execute(
            select(func.count())
            .select_from(DueSchedule)
            .where(DueSchedule.batch_id == batch_id)
            .where(DueSchedule.status == DueStatus.COMPLETED.value)
        ).scalar_one()
        invoices = self._session.execute(
            select(func.count()).select_from(Invoice).where(Invoice.batch_id == batch_id)
        ).scalar_one()
        open_items = self._session.execute(
            select(func.count())
            .select_from(OpenItem)
            .join(Invoice, OpenItem.invoice_id == Invoice.id)
            .where(Invoice.batch_id == batch_id)
        ).scalar_one()
        return schedules, invoices, open_items

    def _verify_integrity(self, acc: BatchResultAccumulator) -> None:
        schedules, invoices, open_items = self._persisted_counts(acc.batch_id)
        observed = {
            acc.processed_count,
            acc.invoice_count,
            acc.open_item_count,
            schedules,
            invoices,
            open_items,
        }
        if len(observed) == 1:
            return

        logger.error(
            "batch_integrity_mismatch",
            extra={
                "processed": acc.processed_count,
                "errors": acc.error_count,
                "invoices": acc.invoice_count,
                "open_items": acc.open_item_count,
                "persisted_due_schedules": schedules,
                "persisted_invoices": invoices,
                "persisted_open_items": open_items,
                "policy": self._config.integrity_policy,
            },
        )
        if self._config.integrity_policy == "fail":
            raise BatchIntegrityError(acc.batch_id, schedules, invoices, open_items)
        acc.add_error(
            f"Integrity check failed for {acc.batch_id}: "
            f"due schedules={schedules}, invoices={invoices}, open items={open_items}"
        )

    @staticmethod
    def _result_message(acc: BatchResultAccumulator, total: int) -> str:
        if acc.error_count:
            return (
                f"Billing run finished with {acc.error_count} error(s): "
                f"{acc.processed_count} of {total} due schedule(s) invoiced"
            )
        return f"Billing run finished: {acc.processed_count} due schedule(s) invoiced"
