"""
Tests for BatchProcessor -- invoices and open items per due schedule.

Covers exactly-once invoicing, per-item savepoint isolation, the
post-run integrity check under both policies, and the statistics the
processor writes onto the process record.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from billing_kernel.config import BillingConfig
from billing_kernel.exceptions import BatchIntegrityError
from billing_kernel.models import (
    DueStatus,
    Invoice,
    InvoiceItemType,
    InvoiceStatus,
    InvoiceType,
    OpenItem,
    OpenItemStatus,
    ProcessType,
)
from billing_kernel.services.numbering import DocumentNumberService
from billing_kernel.services.process_record_service import ProcessRecordService

from billing_batch.services.analyzer import BatchAnalyzer
from billing_batch.services.factories import InvoiceFactory, overdue_tag
from billing_batch.services.processor import BatchProcessor, batch_id_for

BILLING_DATE = date(2025, 2, 1)


@pytest.fixture
def numbering(db_session, clock):
    return DocumentNumberService(db_session, clock)


@pytest.fixture
def process_record(db_session, actor_id, clock, numbering):
    service = ProcessRecordService(db_session, actor_id, clock, numbering)
    return service.start_automatic(ProcessType.BILLING_RUN, title="Billing run for 01.02.2025")


def _processor(db_session, actor_id, clock, numbering, config=None):
    return BatchProcessor(
        db_session,
        actor_id,
        clock=clock,
        config=config or BillingConfig(),
        numbering=numbering,
    )


@pytest.fixture
def processor(db_session, actor_id, clock, numbering):
    return _processor(db_session, actor_id, clock, numbering)


def _count(session, model, **filters) -> int:
    query = select(func.count()).select_from(model)
    for name, value in filters.items():
        query = query.where(getattr(model, name) == value)
    return session.execute(query).scalar_one()


# =============================================================================
# Happy path
# =============================================================================


class TestProcessCreatesArtifacts:
    def test_one_invoice_and_open_item_per_schedule(
        self, db_session, processor, process_record, two_due_schedules,
    ):
        _, overdue, current = two_due_schedules
        analysis = BatchAnalyzer(db_session).analyze(BILLING_DATE)

        result = processor.process(analysis, process_record, BILLING_DATE)

        batch_id = batch_id_for(process_record.process_number)
        assert result.batch_id == batch_id
        assert result.processed_due_schedules == 2
        assert result.created_invoices == 2
        assert result.created_open_items == 2
        assert result.total_amount == Decimal("99.98")
        assert result.overdue_count == 1
        assert result.current_count == 1
        assert result.is_successful()

        assert _count(db_session, Invoice, batch_id=batch_id) == 2
        for schedule in (overdue, current):
            assert schedule.current_status is DueStatus.COMPLETED
            assert schedule.batch_id == batch_id
            assert schedule.invoice is not None
            assert schedule.invoiced_on == BILLING_DATE
            assert schedule.process_record_id == process_record.id
            assert len(schedule.invoice.open_items) == 1

    def test_invoice_contents(
        self, db_session, processor, process_record, two_due_schedules, config,
    ):
        subscription, overdue, current = two_due_schedules
        analysis = BatchAnalyzer(db_session).analyze(BILLING_DATE)

        processor.process(analysis, process_record, BILLING_DATE)

        invoice = current.invoice
        assert invoice.invoice_number.startswith("RE-2025-")
        assert invoice.current_status is InvoiceStatus.OPEN
        assert InvoiceType(invoice.invoice_type) is InvoiceType.AUTO_GENERATED
        assert invoice.invoice_date == BILLING_DATE
        assert invoice.due_date == date(2025, 2, 15)
        assert invoice.customer_id == subscription.customer_id
        assert invoice.subscription_id == subscription.id
        assert invoice.process_record_id == process_record.id
        assert invoice.total_amount == Decimal("49.99")
        assert len(invoice.items) == 1
        item = invoice.items[0]
        assert InvoiceItemType(item.item_type) is InvoiceItemType.SUBSCRIPTION
        assert item.due_schedule_id == current.id
        assert item.description == "Web Hosting S for period 01.02.2025 to 28.02.2025"

    def test_overdue_schedule_is_tagged(
        self, db_session, processor, process_record, two_due_schedules,
    ):
        _, overdue, _ = two_due_schedules
        analysis = BatchAnalyzer(db_session).analyze(BILLING_DATE)

        processor.process(analysis, process_record, BILLING_DATE)

        description = overdue.invoice.items[0].description
        assert description.endswith(overdue_tag(date(2025, 1, 1)))
        assert "[OVERDUE since 01.01.2025]" in description
        open_item = overdue.invoice.open_items[0]
        assert open_item.description.endswith("(from overdue due schedule)")

    def test_open_item_mirrors_invoice(
        self, db_session, processor, process_record, two_due_schedules,
    ):
        _, _, current = two_due_schedules
        analysis = BatchAnalyzer(db_session).analyze(BILLING_DATE)

        processor.process(analysis, process_record, BILLING_DATE)

        invoice = current.invoice
        open_item = invoice.open_items[0]
        assert open_item.amount == invoice.total_amount
        assert open_item.due_date == invoice.due_date
        assert open_item.current_status is OpenItemStatus.OPEN
        assert open_item.outstanding_amount == Decimal("49.99")
        assert open_item.customer_id == invoice.customer_id

    def test_process_record_statistics(
        self, db_session, processor, process_record, two_due_schedules,
    ):
        analysis = BatchAnalyzer(db_session).analyze(BILLING_DATE)

        processor.process(analysis, process_record, BILLING_DATE)

        assert process_record.processed_count == 2
        assert process_record.success_count == 2
        assert process_record.error_count == 0
        assert process_record.total_amount == Decimal("99.98")

    def test_tax_rate_from_config(
        self, db_session, actor_id, clock, numbering, process_record,
        create_subscription, create_due_schedule,
    ):
        create_due_schedule(create_subscription(monthly_price=Decimal("100.00")), BILLING_DATE)
        processor = _processor(
            db_session, actor_id, clock, numbering, BillingConfig(default_tax_rate="19"),
        )

        result = processor.process(
            BatchAnalyzer(db_session).analyze(BILLING_DATE), process_record, BILLING_DATE,
        )

        assert result.total_amount == Decimal("119.00")


# =============================================================================
# Exactly-once
# =============================================================================


class TestExactlyOnce:
    def test_second_analysis_finds_nothing(
        self, db_session, processor, process_record, two_due_schedules,
    ):
        analyzer = BatchAnalyzer(db_session)
        processor.process(analyzer.analyze(BILLING_DATE), process_record, BILLING_DATE)

        assert analyzer.analyze(BILLING_DATE).is_empty()

    def test_reprocessing_a_stale_analysis_creates_nothing(
        self, db_session, processor, process_record, two_due_schedules,
        actor_id, clock, numbering,
    ):
        _, overdue, current = two_due_schedules
        analysis = BatchAnalyzer(db_session).analyze(BILLING_DATE)
        processor.process(analysis, process_record, BILLING_DATE)
        invoices_before = _count(db_session, Invoice)
        second_record = ProcessRecordService(
            db_session, actor_id, clock, numbering,
        ).start_automatic(ProcessType.BILLING_RUN, title="Second run")

        result = processor.process(analysis, second_record, BILLING_DATE)

        assert result.processed_due_schedules == 0
        assert len(result.errors) == 2
        assert _count(db_session, Invoice) == invoices_before
        assert _count(db_session, OpenItem) == invoices_before
        # Already-invoiced schedules keep their first invoice
        assert overdue.current_status is DueStatus.COMPLETED
        assert current.current_status is DueStatus.COMPLETED
        assert overdue.batch_id == batch_id_for(process_record.process_number)


# =============================================================================
# Per-item isolation
# =============================================================================


class TestItemIsolation:
    def test_missing_subscription_is_isolated(
        self, db_session, processor, process_record,
        create_subscription, create_due_schedule,
    ):
        subscription = create_subscription()
        good_before = create_due_schedule(subscription, date(2025, 1, 1))
        orphan = create_due_schedule(None, date(2025, 1, 15))
        good_after = create_due_schedule(subscription, date(2025, 2, 1))
        analysis = BatchAnalyzer(db_session).analyze(BILLING_DATE)

        result = processor.process(analysis, process_record, BILLING_DATE)

        assert result.processed_due_schedules == 2
        assert result.created_invoices == 2
        assert result.errors == (
            f"Error for due schedule {orphan.due_number}: "
            f"Due schedule {orphan.due_number} has no subscription",
        )
        assert not result.is_successful()
        assert good_before.current_status is DueStatus.COMPLETED
        assert good_after.current_status is DueStatus.COMPLETED
        assert orphan.current_status is DueStatus.ACTIVE
        assert orphan.invoice_id is None
        assert process_record.processed_count == 3
        assert process_record.success_count == 2
        assert process_record.error_count == 1

    def test_failure_after_invoice_creation_leaves_no_trace(
        self, db_session, processor, process_record, two_due_schedules,
        captured_logs, monkeypatch,
    ):
        _, overdue, current = two_due_schedules
        real_create = processor._open_item_factory.create_from_invoice

        def failing_create(invoice, record, actor_id, from_overdue=False):
            if from_overdue:
                raise RuntimeError("open item store unavailable")
            return real_create(invoice, record, actor_id, from_overdue)

        monkeypatch.setattr(processor._open_item_factory, "create_from_invoice", failing_create)
        analysis = BatchAnalyzer(db_session).analyze(BILLING_DATE)

        result = processor.process(analysis, process_record, BILLING_DATE)

        assert result.processed_due_schedules == 1
        assert result.errors == (
            f"Error for due schedule {overdue.due_number}: open item store unavailable",
        )
        assert overdue.current_status is DueStatus.ACTIVE
        assert overdue.invoice_id is None
        assert current.current_status is DueStatus.COMPLETED
        assert _count(db_session, Invoice, batch_id=result.batch_id) == 1
        assert _count(db_session, OpenItem) == 1
        messages = [r["message"] for r in captured_logs()]
        assert "due_schedule_processing_failed" in messages

    def test_failed_item_number_is_not_consumed_by_success(
        self, db_session, processor, process_record, two_due_schedules, monkeypatch,
    ):
        real_create = processor._open_item_factory.create_from_invoice

        def failing_create(invoice, record, actor_id, from_overdue=False):
            if from_overdue:
                raise RuntimeError("boom")
            return real_create(invoice, record, actor_id, from_overdue)

        monkeypatch.setattr(processor._open_item_factory, "create_from_invoice", failing_create)

        result = processor.process(
            BatchAnalyzer(db_session).analyze(BILLING_DATE), process_record, BILLING_DATE,
        )

        # The failed item's allocation was rolled back with its savepoint
        assert result.invoice_numbers == ("RE-2025-000001",)

    def test_rollback_failure_is_only_logged(
        self, db_session, processor, process_record, two_due_schedules,
        captured_logs, monkeypatch,
    ):
        def failing_invoice(**kwargs):
            raise RuntimeError("cannot build invoice")

        def failing_rollback(due_schedule_id):
            raise RuntimeError("rollback unavailable")

        monkeypatch.setattr(
            processor._invoice_factory, "create_from_due_schedule", failing_invoice,
        )
        monkeypatch.setattr(processor._due_schedules, "rollback_completed", failing_rollback)

        result = processor.process(
            BatchAnalyzer(db_session).analyze(BILLING_DATE), process_record, BILLING_DATE,
        )

        assert len(result.errors) == 2
        messages = [r["message"] for r in captured_logs()]
        assert messages.count("due_schedule_rollback_failed") == 2


# =============================================================================
# Integrity check
# =============================================================================


class TestIntegrityCheck:
    def test_log_policy_adds_error(
        self, db_session, processor, process_record, two_due_schedules,
        captured_logs, monkeypatch,
    ):
        monkeypatch.setattr(processor, "_persisted_counts", lambda batch_id: (2, 2, 1))

        result = processor.process(
            BatchAnalyzer(db_session).analyze(BILLING_DATE), process_record, BILLING_DATE,
        )

        assert result.processed_due_schedules == 2
        assert result.has_errors()
        assert result.errors[-1].startswith(f"Integrity check failed for {result.batch_id}")
        assert any(r["message"] == "batch_integrity_mismatch" for r in captured_logs())

    def test_fail_policy_raises(
        self, db_session, actor_id, clock, numbering, process_record,
        two_due_schedules, monkeypatch,
    ):
        processor = _processor(
            db_session, actor_id, clock, numbering, BillingConfig(integrity_policy="fail"),
        )
        monkeypatch.setattr(processor, "_persisted_counts", lambda batch_id: (2, 1, 2))

        with pytest.raises(BatchIntegrityError) as exc_info:
            processor.process(
                BatchAnalyzer(db_session).analyze(BILLING_DATE), process_record, BILLING_DATE,
            )

        assert exc_info.value.invoices == 1
        assert exc_info.value.batch_id == batch_id_for(process_record.process_number)

    def test_consistent_run_passes(
        self, db_session, processor, process_record, two_due_schedules,
    ):
        result = processor.process(
            BatchAnalyzer(db_session).analyze(BILLING_DATE), process_record, BILLING_DATE,
        )

        assert processor._persisted_counts(result.batch_id) == (2, 2, 2)
        assert not result.has_errors()


# =============================================================================
# Factories
# =============================================================================


class TestInvoiceFactory:
    def test_payment_terms_from_config(
        self, db_session, numbering, process_record, actor_id,
        create_subscription, create_due_schedule,
    ):
        subscription = create_subscription()
        schedule = create_due_schedule(subscription, BILLING_DATE)
        factory = InvoiceFactory(numbering, BillingConfig(payment_terms_days=30))

        invoice = factory.create_from_due_schedule(
            schedule=schedule,
            subscription=subscription,
            billing_date=BILLING_DATE,
            batch_id="BATCH-TEST",
            process_record=process_record,
            actor_id=actor_id,
        )

        assert invoice.due_date == date(2025, 3, 3)
        assert invoice.batch_id == "BATCH-TEST"
        assert invoice.billing_address == subscription.customer.billing_address
        assert schedule.due_number in invoice.notes
