"""
ProcessRecordService -- lifecycle and housekeeping of process records.

Contract:
    Opens records (automatic or manual), closes them exactly once, and
    repairs records left STARTED or RUNNING by a crashed worker.

Invariants enforced:
    - Records are created STARTED; ``mark_running`` moves them to RUNNING
      once work begins.  ``close_*`` and ``abort`` are the only paths to
      a terminal status, and all timestamps come from the injected Clock.
    - ``cleanup_old_processes`` only deletes terminal records that nothing
      references any more.

Failure modes:
    - ProcessRecordNotFoundError from ``get_by_number``.
    - ProcessRecordClosedError when closing an already-closed record.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import ProcessRecordNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.due_schedule import DueSchedule
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.open_item import OpenItem
from billing_kernel.models.process_record import ProcessRecord, ProcessStatus, ProcessType
from billing_kernel.services.numbering import DocumentNumberService

logger = get_logger("services.process_record")

SYSTEM_TRIGGER = "SYSTEM"

_OPEN_STATUSES = (ProcessStatus.STARTED.value, ProcessStatus.RUNNING.value)


class ProcessRecordService:
    """Creates, closes and queries process records."""

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

    # -------------------------------------------------------------------------
    # Open
    # -------------------------------------------------------------------------

    def _open(
        self,
        process_type: ProcessType,
        title: str,
        description: str | None,
        triggered_by: str,
        automatic: bool,
    ) -> ProcessRecord:
        now = self._clock.now()
        record = ProcessRecord(
            process_number=self._numbering.next_process_number(now.date()),
            process_type=process_type,
            title=title,
            description=description,
            started_at=now,
            triggered_by=triggered_by,
            automatic=automatic,
            created_by_id=self._actor_id,
        )
        self._session.add(record)
        self._session.flush()
        logger.info(
            "process_record_started",
            extra={
                "process_number": record.process_number,
                "process_type": ProcessType(process_type).value,
                "title": title,
                "triggered_by": triggered_by,
                "automatic": automatic,
            },
        )
        return record

    def start_automatic(
        self,
        process_type: ProcessType,
        title: str,
        description: str | None = None,
        triggered_by: str = SYSTEM_TRIGGER,
    ) -> ProcessRecord:
        """Open a STARTED record for a scheduled/system action."""
        return self._open(process_type, title, description, triggered_by, True)

    def start_manual(
        self,
        process_type: ProcessType,
        title: str,
        triggered_by: str,
        description: str | None = None,
    ) -> ProcessRecord:
        """Open a STARTED record for an operator-initiated action."""
        return self._open(process_type, title, description, triggered_by, False)

    def mark_running(self, record: ProcessRecord) -> ProcessRecord:
        record.start()
        record.updated_by_id = self._actor_id
        self._session.flush()
        logger.debug("process_record_running", extra={"process_number": record.process_number})
        return record

    # -------------------------------------------------------------------------
    # Close
    # -------------------------------------------------------------------------

    def close_successfully(
        self,
        record: ProcessRecord,
        processed: int,
        success: int,
        total_amount: Decimal | None = None,
        message: str | None = None,
    ) -> ProcessRecord:
        record.update_statistics(processed, success, processed - success, total_amount)
        record.succeed(self._clock.now(), message)
        record.updated_by_id = self._actor_id
        self._session.flush()
        logger.info(
            "process_record_succeeded",
            extra={
                "process_number": record.process_number,
                "processed": processed,
                "success": success,
                "total_amount": str(record.total_amount),
                "duration_ms": record.duration_ms,
            },
        )
        return record

    def close_with_error(
        self,
        record: ProcessRecord,
        error_details: str,
        processed: int | None = None,
        success: int | None = None,
        errors: int | None = None,
        total_amount: Decimal | None = None,
    ) -> ProcessRecord:
        """Close as FAILED; counters are only updated when given."""
        if processed is not None:
            record.update_statistics(
                processed,
                success if success is not None else record.success_count,
                errors if errors is not None else record.error_count,
                total_amount,
            )
        record.fail(self._clock.now(), error_details)
        record.updated_by_id = self._actor_id
        self._session.flush()
        logger.warning(
            "process_record_failed",
            extra={
                "process_number": record.process_number,
                "error_details": error_details,
                "error_count": record.error_count,
            },
        )
        return record

    def abort(self, record: ProcessRecord, reason: str) -> ProcessRecord:
        record.abort(self._clock.now(), reason)
        record.updated_by_id = self._actor_id
        self._session.flush()
        logger.warning(
            "process_record_aborted",
            extra={"process_number": record.process_number, "reason": reason},
        )
        return record

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find_by_number(self, process_number: str) -> ProcessRecord | None:
        return self._session.execute(
            select(ProcessRecord).where(ProcessRecord.process_number == process_number)
        ).scalar_one_or_none()

    def get_by_number(self, process_number: str) -> ProcessRecord:
        record = self.find_by_number(process_number)
        if record is None:
            raise ProcessRecordNotFoundError(process_number)
        return record

    def find_by_status(self, status: ProcessStatus) -> list[ProcessRecord]:
        return list(
            self._session.execute(
                select(ProcessRecord)
                .where(ProcessRecord.status == ProcessStatus(status).value)
                .order_by(ProcessRecord.started_at)
            ).scalars()
        )

    def find_running(self) -> list[ProcessRecord]:
        return list(
            self._session.execute(
                select(ProcessRecord)
                .where(ProcessRecord.status.in_(_OPEN_STATUSES))
                .order_by(ProcessRecord.started_at)
            ).scalars()
        )

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def fix_stuck_processes(self, older_than_hours: int) -> list[ProcessRecord]:
        """Fail STARTED/RUNNING records that began more than N hours ago."""
        cutoff = self._clock.now() - timedelta(hours=older_than_hours)
        stuck = list(
            self._session.execute(
                select(ProcessRecord)
                .where(ProcessRecord.status.in_(_OPEN_STATUSES))
                .where(ProcessRecord.started_at < cutoff)
            ).scalars()
        )
        for record in stuck:
            self.close_with_error(
                record,
                f"Process did not finish within {older_than_hours} hours",
            )
        if stuck:
            logger.warning(
                "stuck_processes_fixed",
                extra={
                    "count": len(stuck),
                    "process_numbers": [r.process_number for r in stuck],
                },
            )
        return stuck

    def cleanup_old_processes(self, older_than_days: int) -> int:
        """Delete unreferenced terminal records that ended more than N days ago."""
        cutoff = self._clock.now() - timedelta(days=older_than_days)
        terminal = [s.value for s in ProcessStatus if s.is_terminal]
        candidates = self._session.execute(
            select(ProcessRecord)
            .where(ProcessRecord.status.in_(terminal))
            .where(ProcessRecord.ended_at < cutoff)
            .where(~exists().where(Invoice.process_record_id == ProcessRecord.id))
            .where(~exists().where(OpenItem.process_record_id == ProcessRecord.id))
            .where(~exists().where(DueSchedule.process_record_id == ProcessRecord.id))
        ).scalars().all()
        for record in candidates:
            self._session.delete(record)
        self._session.flush()
        logger.info(
            "old_processes_cleaned_up",
            extra={"deleted": len(candidates), "older_than_days": older_than_days},
        )
        return len(candidates)
