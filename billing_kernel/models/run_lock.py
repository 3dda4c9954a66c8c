"""
Module: billing_kernel.models.run_lock
Responsibility: One row per billing date while a billing run for that date
    is executing.  The unique constraint on billing_date is the lock.
Architecture position: Kernel > Models.
"""

from datetime import date, datetime

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base


class BillingRunLock(Base):
    """Exclusive claim on a billing date."""

    __tablename__ = "billing_run_locks"

    __table_args__ = (
        UniqueConstraint("billing_date", name="uq_billing_run_lock_date"),
    )

    billing_date: Mapped[date] = mapped_column(nullable=False)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<BillingRunLock {self.billing_date} held by {self.holder}>"
