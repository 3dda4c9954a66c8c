"""Tests for the injectable clocks."""

from datetime import date, datetime, timezone

from billing_kernel.domain.clock import DeterministicClock, SystemClock


class TestDeterministicClock:
    def test_default_time(self):
        clock = DeterministicClock()
        assert clock.now() == datetime(2025, 1, 1, 6, 0, tzinfo=timezone.utc)
        assert clock.today() == date(2025, 1, 1)

    def test_fixed_until_advanced(self):
        clock = DeterministicClock(datetime(2025, 2, 1, 6, 0, tzinfo=timezone.utc))
        assert clock.now() == clock.now()
        clock.advance(30)
        assert clock.now() == datetime(2025, 2, 1, 6, 0, 30, tzinfo=timezone.utc)

    def test_advance_days(self):
        clock = DeterministicClock(datetime(2025, 1, 31, 6, 0, tzinfo=timezone.utc))
        clock.advance_days(1)
        assert clock.today() == date(2025, 2, 1)

    def test_set_time_resets_offset(self):
        clock = DeterministicClock()
        clock.advance_days(10)
        clock.set_time(datetime(2025, 3, 1, tzinfo=timezone.utc))
        assert clock.today() == date(2025, 3, 1)


class TestSystemClock:
    def test_returns_aware_utc(self):
        now = SystemClock().now_utc()
        assert now.tzinfo is not None
        assert now.utcoffset().total_seconds() == 0
