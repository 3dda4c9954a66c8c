"""
BatchOrchestrator -- the single entry point of a billing run.

Contract:
    ``run_invoice_batch(billing_date, include_overdue=True)`` runs one
    billing cycle and returns a ``BatchResult``.  The process record it opens
    is always closed before the method returns or raises.
    ``run_housekeeping()`` applies the config-driven upkeep of process
    records and open items between runs.

Run state machine (process record):
    STARTED -> SUCCEEDED                           nothing eligible (empty result)
    STARTED -> RUNNING -> SUCCEEDED                all items invoiced
    STARTED -> RUNNING -> FAILED                   some items failed
    STARTED [-> RUNNING] -> FAILED + BillingRunError  unhandled exception

Architecture:
    Wires analyzer, processor, process-record service and run lock onto one
    session and one Clock.  Does NOT commit; ``run_in_new_transaction()``
    wraps a run in ``session_scope()`` for callers without a session.

Failure modes:
    - BillingRunInProgressError before anything is written when the billing
      date is locked by another run.
    - BillingRunError (chained, carrying the process number) for any
      exception escaping analysis or processing.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy.orm import Session

from billing_kernel.config import BillingConfig
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.money import ZERO
from billing_kernel.exceptions import BillingRunError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.process_record import ProcessRecord, ProcessType
from billing_kernel.services.numbering import DocumentNumberService
from billing_kernel.services.open_item_service import OpenItemService
from billing_kernel.services.process_record_service import ProcessRecordService
from billing_kernel.services.run_lock_service import BillingRunLockService

from billing_batch.domain.types import BatchPreview, BatchResult, HousekeepingResult
from billing_batch.services.analyzer import BatchAnalyzer
from billing_batch.services.processor import BatchProcessor

logger = get_logger("batch.orchestrator")

# Actor recorded on rows written by unattended runs
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")

NO_SCHEDULES_MESSAGE = "No open due schedules found"


class BatchOrchestrator:
    """Owns the audit boundary of a billing run.

    Non-goals:
        - Does NOT manage session lifecycle; the caller commits.
        - Does NOT schedule runs; a cron job or operator calls it.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: BillingConfig | None = None,
        actor_id: UUID | None = None,
        triggered_by: str | None = None,
        analyzer: BatchAnalyzer | None = None,
        processor: BatchProcessor | None = None,
        process_records: ProcessRecordService | None = None,
        run_lock: BillingRunLockService | None = None,
        open_items: OpenItemService | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or BillingConfig()
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._triggered_by = triggered_by or self._config.system_actor
        numbering = DocumentNumberService(session, self._clock)
        self._analyzer = analyzer or BatchAnalyzer(session)
        self._processor = processor or BatchProcessor(
            session,
            self._actor_id,
            clock=self._clock,
            config=self._config,
            numbering=numbering,
        )
        self._process_records = process_records or ProcessRecordService(
            session, self._actor_id, self._clock, numbering
        )
        self._run_lock = run_lock or BillingRunLockService(session, self._clock)
        self._open_items = open_items or OpenItemService(session, self._actor_id, self._clock)

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session(
        cls,
        session: Session,
        clock: Clock | None = None,
        config: BillingConfig | None = None,
        actor_id: UUID | None = None,
        triggered_by: str | None = None,
    ) -> BatchOrchestrator:
        """Create a fully wired orchestrator on ``session``."""
        orchestrator = cls(
            session=session,
            clock=clock,
            config=config,
            actor_id=actor_id,
            triggered_by=triggered_by,
        )
        logger.info(
            "billing_orchestrator_created",
            extra={
                "actor_id": str(orchestrator.actor_id),
                "triggered_by": orchestrator._triggered_by,
                "integrity_policy": orchestrator.config.integrity_policy,
            },
        )
        return orchestrator

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def config(self) -> BillingConfig:
        return self._config

    @property
    def actor_id(self) -> UUID:
        return self._actor_id

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def preview_invoice_batch(
        self,
        billing_date: date,
        include_overdue: bool = True,
    ) -> BatchPreview:
        """Dry run: what a billing run would pick up, without writing."""
        return self._analyzer.preview(billing_date, include_overdue)

    def run_invoice_batch(
        self,
        billing_date: date,
        include_overdue: bool = True,
    ) -> BatchResult:
        """
        Run one billing cycle for ``billing_date``.

        Raises:
            BillingRunInProgressError: If another run holds the billing date.
            BillingRunError: If analysis or processing raised; the process
                record is closed FAILED first.
        """
        mode = "including overdue" if include_overdue else "due date only"
        use_lock = self._config.use_run_lock
        if use_lock:
            self._run_lock.acquire(billing_date, self._triggered_by)

        try:
            record = self._process_records.start_automatic(
                ProcessType.BILLING_RUN,
                title=f"Billing run for {billing_date.strftime('%d.%m.%Y')} ({mode})",
                description=f"Recurring billing for due schedules up to {billing_date.isoformat()}",
                triggered_by=self._triggered_by,
            )
            with LogContext.bind(
                process_number=record.process_number,
                actor_id=str(self._actor_id),
            ):
                logger.info(
                    "billing_run_started",
                    extra={
                        "billing_date": billing_date.isoformat(),
                        "include_overdue": include_overdue,
                    },
                )
                try:
                    result = self._execute(record, billing_date, include_overdue)
                except Exception as exc:
                    self._close_failed(record, exc)
                    raise BillingRunError(record.process_number, str(exc)) from exc

                logger.info(
                    "billing_run_completed",
                    extra={
                        "billing_date": billing_date.isoformat(),
                        "batch_id": result.batch_id,
                        "processed": result.processed_due_schedules,
                        "errors": len(result.errors),
                        "total_amount": str(result.total_amount),
                        "status": record.current_status.value,
                    },
                )
                return result
        finally:
            if use_lock:
                self._run_lock.release(billing_date)

    def run_housekeeping(self) -> HousekeepingResult:
        """
        Periodic upkeep between billing runs.

        Fails process records stuck longer than ``stuck_process_hours``,
        deletes unreferenced terminal records older than
        ``process_retention_days`` and re-derives overdue open items.
        """
        stuck = self._process_records.fix_stuck_processes(self._config.stuck_process_hours)
        deleted = self._process_records.cleanup_old_processes(
            self._config.process_retention_days
        )
        updated = self._open_items.update_overdue_status()
        result = HousekeepingResult(
            as_of=self._clock.today(),
            stuck_processes_failed=tuple(r.process_number for r in stuck),
            processes_deleted=deleted,
            open_items_updated=updated,
        )
        logger.info(
            "housekeeping_completed",
            extra={
                "stuck_failed": len(result.stuck_processes_failed),
                "processes_deleted": deleted,
                "open_items_updated": updated,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _execute(
        self,
        record: ProcessRecord,
        billing_date: date,
        include_overdue: bool,
    ) -> BatchResult:
        analysis = self._analyzer.analyze(billing_date, include_overdue)

        if analysis.is_empty():
            self._process_records.close_successfully(
                record, processed=0, success=0, total_amount=ZERO,
                message=NO_SCHEDULES_MESSAGE,
            )
            return BatchResult.empty(billing_date, record.process_number, NO_SCHEDULES_MESSAGE)

        self._process_records.mark_running(record)
        result = self._processor.process(analysis, record, billing_date)

        record.attach_metadata(
            billing_date=billing_date.isoformat(),
            batch_id=result.batch_id,
            months_processed=list(analysis.months),
            include_overdue=include_overdue,
        )

        if result.has_errors():
            self._process_records.close_with_error(
                record,
                self._error_summary(result.errors),
                processed=analysis.total_count,
                success=result.processed_due_schedules,
                errors=len(result.errors),
                total_amount=result.total_amount,
            )
        else:
            self._process_records.close_successfully(
                record,
                processed=analysis.total_count,
                success=result.processed_due_schedules,
                total_amount=result.total_amount,
                message=result.summary(),
            )
        return result

    def _error_summary(self, errors: tuple[str, ...]) -> str:
        limit = self._config.max_errors_in_summary
        summary = "; ".join(errors[:limit])
        if len(errors) > limit:
            summary += f" (and {len(errors) - limit} more)"
        return summary

    def _close_failed(self, record: ProcessRecord, exc: Exception) -> None:
        logger.error(
            "billing_run_failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        try:
            self._process_records.close_with_error(record, f"{type(exc).__name__}: {exc}")
        except Exception:
            logger.error("process_record_close_failed", exc_info=True)


def run_in_new_transaction(
    billing_date: date,
    include_overdue: bool = True,
    clock: Clock | None = None,
    config: BillingConfig | None = None,
    actor_id: UUID | None = None,
) -> BatchResult:
    """Run a billing cycle in its own committed transaction.

    Requires ``billing_kernel.db.engine.init_engine_from_url()``.  Item
    failures commit together with the successful items; an unhandled
    exception rolls the whole run back.
    """
    with session_scope() as session:
        orchestrator = BatchOrchestrator.from_session(
            session, clock=clock, config=config, actor_id=actor_id,
        )
        return orchestrator.run_invoice_batch(billing_date, include_overdue)
