"""Tests for SequenceService and DocumentNumberService."""

from datetime import date

import pytest

from billing_kernel.services.numbering import DocumentNumberService
from billing_kernel.services.sequence_service import SequenceService


@pytest.fixture
def sequences(db_session):
    return SequenceService(db_session)


@pytest.fixture
def numbering(db_session, clock, sequences):
    return DocumentNumberService(db_session, clock, sequences)


class TestSequenceService:
    def test_starts_at_one_and_increments(self, sequences):
        assert sequences.current_value("invoice:2025") is None
        assert sequences.next_value("invoice:2025") == 1
        assert sequences.next_value("invoice:2025") == 2
        assert sequences.current_value("invoice:2025") == 2

    def test_sequences_are_independent(self, sequences):
        sequences.next_value("invoice:2025")
        assert sequences.next_value("invoice:2026") == 1

    def test_name_required(self, sequences):
        with pytest.raises(ValueError):
            sequences.next_value("")

    def test_rolled_back_allocation_is_reused(self, db_session, sequences):
        sequences.next_value("invoice:2025")
        savepoint = db_session.begin_nested()
        assert sequences.next_value("invoice:2025") == 2
        savepoint.rollback()

        assert sequences.next_value("invoice:2025") == 2


class TestDocumentNumbers:
    def test_invoice_numbers(self, numbering):
        assert numbering.next_invoice_number(date(2025, 2, 1)) == "RE-2025-000001"
        assert numbering.next_invoice_number(date(2025, 12, 31)) == "RE-2025-000002"
        assert numbering.next_invoice_number(date(2026, 1, 1)) == "RE-2026-000001"

    def test_credit_note_numbers(self, numbering):
        assert numbering.next_credit_note_number(date(2025, 2, 1)) == "GS-2025-000001"

    def test_due_numbers(self, numbering):
        assert numbering.next_due_number(date(2025, 3, 1)) == "DUE-2025-000001"

    def test_process_numbers_restart_daily(self, numbering):
        assert numbering.next_process_number(date(2025, 2, 1)) == "VG-20250201-00001"
        assert numbering.next_process_number(date(2025, 2, 1)) == "VG-20250201-00002"
        assert numbering.next_process_number(date(2025, 2, 2)) == "VG-20250202-00001"

    def test_defaults_to_clock_date(self, numbering):
        assert numbering.next_invoice_number() == "RE-2025-000001"
        assert numbering.next_process_number() == "VG-20250201-00001"
