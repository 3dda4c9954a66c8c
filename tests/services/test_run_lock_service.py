"""Tests for the per-billing-date run lock."""

from datetime import date

import pytest

from billing_kernel.exceptions import BillingRunInProgressError
from billing_kernel.services.run_lock_service import BillingRunLockService

BILLING_DATE = date(2025, 2, 1)


@pytest.fixture
def locks(db_session, clock):
    return BillingRunLockService(db_session, clock)


class TestRunLock:
    def test_acquire_and_release(self, locks):
        assert locks.holder_of(BILLING_DATE) is None

        locks.acquire(BILLING_DATE, "SYSTEM")
        assert locks.holder_of(BILLING_DATE) == "SYSTEM"

        locks.release(BILLING_DATE)
        assert locks.holder_of(BILLING_DATE) is None

    def test_second_acquire_rejected(self, locks):
        locks.acquire(BILLING_DATE, "SYSTEM")

        with pytest.raises(BillingRunInProgressError) as exc_info:
            locks.acquire(BILLING_DATE, "jdoe")

        assert exc_info.value.holder == "SYSTEM"
        assert locks.holder_of(BILLING_DATE) == "SYSTEM"

    def test_dates_are_independent(self, locks):
        locks.acquire(BILLING_DATE, "SYSTEM")
        locks.acquire(date(2025, 3, 1), "SYSTEM")
        assert locks.holder_of(date(2025, 3, 1)) == "SYSTEM"

    def test_release_without_lock_is_noop(self, locks):
        locks.release(BILLING_DATE)
        assert locks.holder_of(BILLING_DATE) is None

    def test_reacquire_after_release(self, locks):
        locks.acquire(BILLING_DATE, "SYSTEM")
        locks.release(BILLING_DATE)
        locks.acquire(BILLING_DATE, "jdoe")
        assert locks.holder_of(BILLING_DATE) == "jdoe"
