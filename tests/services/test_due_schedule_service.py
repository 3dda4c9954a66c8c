"""Tests for DueScheduleService: generation, rollback and operator actions."""

import json
import logging
from datetime import date
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    DueScheduleNotFoundError,
    DueScheduleStateError,
    SubscriptionNotFoundError,
)
from billing_kernel.logging_config import configure_logging, reset_logging
from billing_kernel.models import BillingCycle, DueStatus, Invoice
from billing_kernel.services.due_schedule_service import DueScheduleService


@pytest.fixture
def service(db_session, actor_id, clock):
    return DueScheduleService(db_session, actor_id, clock)


@pytest.fixture
def info_log_stream():
    """Production-style logging: INFO level, JSON lines to a stream."""
    stream = StringIO()
    reset_logging()
    configure_logging(level=logging.INFO, handler=logging.StreamHandler(stream))
    yield stream
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _invoice(db_session, actor_id, customer_id) -> Invoice:
    invoice = Invoice(
        invoice_number=f"RE-TEST-{uuid4().hex[:8]}",
        invoice_date=date(2025, 2, 1),
        due_date=date(2025, 2, 15),
        customer_id=customer_id,
        created_by_id=actor_id,
    )
    db_session.add(invoice)
    db_session.flush()
    return invoice


# =============================================================================
# Generation
# =============================================================================


class TestGeneration:
    def test_monthly_periods(self, service, create_subscription):
        subscription = create_subscription(start_date=date(2025, 1, 1))

        schedules = service.generate_for_subscription(subscription.id, 3)

        assert [(s.period_start, s.period_end) for s in schedules] == [
            (date(2025, 1, 1), date(2025, 1, 31)),
            (date(2025, 2, 1), date(2025, 2, 28)),
            (date(2025, 3, 1), date(2025, 3, 31)),
        ]
        assert all(s.due_date == s.period_start for s in schedules)
        assert all(s.amount == Decimal("49.99") for s in schedules)
        assert all(s.current_status is DueStatus.ACTIVE for s in schedules)
        assert schedules[0].due_number == "DUE-2025-000001"

    def test_month_end_start_does_not_drift(self, service, create_subscription):
        subscription = create_subscription(start_date=date(2025, 1, 31))

        schedules = service.generate_for_subscription(subscription.id, 3)

        assert [s.period_start for s in schedules] == [
            date(2025, 1, 31),
            date(2025, 2, 28),
            date(2025, 3, 31),
        ]
        assert schedules[0].period_end == date(2025, 2, 27)

    def test_quarterly_amount(self, service, create_subscription):
        subscription = create_subscription(
            monthly_price=Decimal("10.00"), billing_cycle=BillingCycle.QUARTERLY,
        )

        schedules = service.generate_for_subscription(subscription.id, 2)

        assert schedules[0].amount == Decimal("30.00")
        assert schedules[1].period_start == date(2025, 4, 1)

    def test_continues_after_existing_schedules(self, service, create_subscription):
        subscription = create_subscription(start_date=date(2025, 1, 1))
        service.generate_for_subscription(subscription.id, 2)

        more = service.generate_for_subscription(subscription.id, 2)

        assert [s.period_start for s in more] == [date(2025, 3, 1), date(2025, 4, 1)]

    def test_clipped_at_end_date(self, service, create_subscription):
        subscription = create_subscription(
            start_date=date(2025, 1, 1), end_date=date(2025, 2, 15),
        )

        schedules = service.generate_for_subscription(subscription.id, 12)

        assert len(schedules) == 2
        assert schedules[-1].period_end == date(2025, 2, 15)

    def test_unknown_subscription(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            service.generate_for_subscription(uuid4(), 1)

    def test_generation_logs_at_info(self, service, create_subscription, info_log_stream):
        subscription = create_subscription()

        created = service.generate_for_subscription(subscription.id, 2)

        records = [json.loads(line) for line in info_log_stream.getvalue().splitlines()]
        generated = [r for r in records if r["message"] == "due_schedules_generated"]
        assert len(generated) == 1
        assert generated[0]["created_count"] == 2
        assert generated[0]["due_numbers"] == [s.due_number for s in created]

    def test_periods_must_be_positive(self, service, create_subscription):
        with pytest.raises(ValueError):
            service.generate_for_subscription(create_subscription().id, 0)


# =============================================================================
# Billing transitions
# =============================================================================


class TestRollbackCompleted:
    def test_reverts_completed(
        self, service, db_session, actor_id, create_subscription, create_due_schedule,
    ):
        subscription = create_subscription()
        schedule = create_due_schedule(subscription, date(2025, 2, 1))
        invoice = _invoice(db_session, actor_id, subscription.customer_id)
        service.mark_completed(schedule, invoice, "BATCH-1", date(2025, 2, 1))

        assert service.rollback_completed(schedule.id) is True

        assert schedule.current_status is DueStatus.ACTIVE
        assert schedule.invoice_id is None
        assert schedule.updated_by_id == actor_id

    def test_active_schedule_left_untouched(
        self, service, create_subscription, create_due_schedule, captured_logs,
    ):
        schedule = create_due_schedule(create_subscription(), date(2025, 2, 1))

        assert service.rollback_completed(schedule.id) is False

        assert schedule.current_status is DueStatus.ACTIVE
        assert any(r["message"] == "due_schedule_rollback_skipped" for r in captured_logs())

    def test_unknown_schedule(self, service):
        with pytest.raises(DueScheduleNotFoundError):
            service.rollback_completed(uuid4())


# =============================================================================
# Operator transitions and queries
# =============================================================================


class TestOperatorActions:
    def test_pause_resume(self, service, create_subscription, create_due_schedule):
        schedule = create_due_schedule(create_subscription(), date(2025, 2, 1))

        service.pause(schedule.id)
        assert service.find_by_status(DueStatus.PAUSED) == [schedule]

        service.resume(schedule.id)
        assert schedule.current_status is DueStatus.ACTIVE

    def test_suspend_and_soft_delete(self, service, create_subscription, create_due_schedule):
        schedule = create_due_schedule(create_subscription(), date(2025, 2, 1))

        service.suspend(schedule.id)
        service.soft_delete(schedule.id)

        assert schedule.deleted is True
        assert service.find_by_status(DueStatus.SUSPENDED) == []

    def test_invalid_transition_propagates(self, service, create_subscription, create_due_schedule):
        schedule = create_due_schedule(create_subscription(), date(2025, 2, 1))
        with pytest.raises(DueScheduleStateError):
            service.resume(schedule.id)

    def test_find_in_range(self, service, create_subscription, create_due_schedule):
        subscription = create_subscription()
        january = create_due_schedule(subscription, date(2025, 1, 1))
        february = create_due_schedule(subscription, date(2025, 2, 1))
        create_due_schedule(subscription, date(2025, 3, 1))

        found = service.find_in_range(date(2025, 1, 1), date(2025, 2, 28))

        assert found == [january, february]
        assert service.find_in_range(
            date(2025, 1, 1), date(2025, 2, 28), status=DueStatus.COMPLETED,
        ) == []

    def test_find_by_batch(
        self, service, db_session, actor_id, create_subscription, create_due_schedule,
    ):
        subscription = create_subscription()
        schedule = create_due_schedule(subscription, date(2025, 2, 1))
        invoice = _invoice(db_session, actor_id, subscription.customer_id)
        service.mark_completed(schedule, invoice, "BATCH-42", date(2025, 2, 1))

        assert service.find_by_batch("BATCH-42") == [schedule]
