"""
BillingRunLockService -- one billing run per billing date.

Contract:
    ``acquire`` inserts the lock row for a billing date inside a SAVEPOINT;
    ``release`` deletes it.  Both happen inside the caller's transaction.

Invariants enforced:
    - The unique constraint on billing_date admits one lock row per date.
      A concurrent transaction inserting the same date blocks on the index
      until the holder commits (the row is gone by then, and the schedules
      it billed are no longer ACTIVE).  A lock row that is already visible
      fails fast with BillingRunInProgressError.

Failure modes:
    - BillingRunInProgressError when the date is already claimed.
"""

from datetime import date

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import BillingRunInProgressError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.run_lock import BillingRunLock

logger = get_logger("services.run_lock")


class BillingRunLockService:
    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def holder_of(self, billing_date: date) -> str | None:
        return self._session.execute(
            select(BillingRunLock.holder).where(BillingRunLock.billing_date == billing_date)
        ).scalar_one_or_none()

    def acquire(self, billing_date: date, holder: str) -> None:
        """
        Claim ``billing_date`` for ``holder``.

        Raises:
            BillingRunInProgressError: If the date is already claimed.
        """
        current = self.holder_of(billing_date)
        if current is not None:
            raise BillingRunInProgressError(billing_date.isoformat(), current)

        savepoint = self._session.begin_nested()
        try:
            self._session.add(
                BillingRunLock(
                    billing_date=billing_date,
                    holder=holder,
                    acquired_at=self._clock.now(),
                )
            )
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            raise BillingRunInProgressError(
                billing_date.isoformat(), self.holder_of(billing_date)
            ) from None

        logger.info(
            "billing_run_lock_acquired",
            extra={"billing_date": billing_date.isoformat(), "holder": holder},
        )

    def release(self, billing_date: date) -> None:
        self._session.execute(
            delete(BillingRunLock).where(BillingRunLock.billing_date == billing_date)
        )
        self._session.flush()
        logger.info(
            "billing_run_lock_released",
            extra={"billing_date": billing_date.isoformat()},
        )
