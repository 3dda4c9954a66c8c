"""
DocumentNumberService -- human-readable business numbers.

Formats:
    Invoice       RE-YYYY-NNNNNN     (sequence per year)
    Credit note   GS-YYYY-NNNNNN     (sequence per year)
    Due schedule  DUE-YYYY-NNNNNN    (sequence per year)
    Process       VG-YYYYMMDD-NNNNN  (sequence per day)
"""

from datetime import date

from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.services.sequence_service import SequenceService


class DocumentNumberService:
    """Formats sequence values into document numbers.

    Every ``next_*`` method takes an optional date; the clock's today is used
    when omitted.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        sequence_service: SequenceService | None = None,
    ):
        self._clock = clock or SystemClock()
        self._sequences = sequence_service or SequenceService(session)

    def _day(self, on: date | None) -> date:
        return on or self._clock.today()

    def next_invoice_number(self, on: date | None = None) -> str:
        year = self._day(on).year
        value = self._sequences.next_value(f"invoice:{year}")
        return f"RE-{year}-{value:06d}"

    def next_credit_note_number(self, on: date | None = None) -> str:
        year = self._day(on).year
        value = self._sequences.next_value(f"credit_note:{year}")
        return f"GS-{year}-{value:06d}"

    def next_due_number(self, on: date | None = None) -> str:
        year = self._day(on).year
        value = self._sequences.next_value(f"due_schedule:{year}")
        return f"DUE-{year}-{value:06d}"

    def next_process_number(self, on: date | None = None) -> str:
        stamp = self._day(on).strftime("%Y%m%d")
        value = self._sequences.next_value(f"process:{stamp}")
        return f"VG-{stamp}-{value:05d}"
