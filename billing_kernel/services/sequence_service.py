"""
SequenceService -- gap-free counters via locked rows.

Responsibility:
    Hands out strictly increasing integers per named sequence.  Invoice,
    due-schedule, credit-note and process numbers are all built on top of
    these counters by DocumentNumberService.

Invariants enforced:
    - The locked counter row is the only source of the next value; the
      max-plus-one query pattern is never used.
    - The increment is part of the caller's transaction: a rollback returns
      the value.

Failure modes:
    - IntegrityError on a concurrent first use of a sequence is absorbed by
      a savepoint rollback and a locked re-read.
"""

from sqlalchemy import String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """One row per named sequence."""

    __tablename__ = "sequence_counters"

    # e.g. "invoice:2025", "process:20250201"
    name: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(nullable=False, default=0)


class SequenceService:
    """
    Transactional sequence numbers.

    Guarantees:
        - ``SELECT ... FOR UPDATE`` serializes allocations for one sequence.
        - Values start at 1.

    Non-goals:
        - Does NOT commit; the caller owns the transaction.
    """

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Allocate the next value of ``sequence_name``.

        Returns:
            An integer > 0, greater than every value previously returned for
            this name in committed transactions.
        """
        if not sequence_name:
            raise ValueError("sequence_name is required")

        counter = self._locked_counter(sequence_name)

        if counter is None:
            # First use; another transaction may be creating the row too.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if never used."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
