"""
Typed exception hierarchy for the billing engine.

Every error carries a machine-readable ``code`` class attribute and the
structured data needed to act on it, so callers catch by type and never
parse messages.

    BillingError (base)
    |
    +-- ValidationError
    |   +-- InvalidPaymentAmountError
    |   +-- MissingSubscriptionError
    |
    +-- DueScheduleError
    |   +-- DueScheduleNotFoundError
    |   +-- DueScheduleStateError
    |
    +-- InvoiceError
    |   +-- InvoiceNotFoundError
    |   +-- InvoiceStateError
    |
    +-- OpenItemError
    |   +-- OpenItemNotFoundError
    |   +-- OpenItemStateError
    |
    +-- SubscriptionNotFoundError
    |
    +-- ProcessRecordError
    |   +-- ProcessRecordNotFoundError
    |   +-- ProcessRecordClosedError
    |   +-- ProcessStatisticsError
    |
    +-- BatchError
        +-- BillingRunInProgressError
        +-- BatchIntegrityError
        +-- BillingRunError

Per-item errors inside a billing run are caught by the processor and
reported in the batch result.  Only ``BatchError`` subclasses escape a run.
"""

from decimal import Decimal


class BillingError(Exception):
    """Base exception for all billing engine errors."""

    code: str = "BILLING_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# Validation
# =============================================================================


class ValidationError(BillingError):
    """Input rejected before any state change."""

    code: str = "VALIDATION_ERROR"


class InvalidPaymentAmountError(ValidationError):
    """Payment or reversal amount is not acceptable."""

    code: str = "INVALID_PAYMENT_AMOUNT"

    def __init__(self, amount: Decimal, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid payment amount {amount}: {reason}")


class MissingSubscriptionError(ValidationError):
    """A due schedule does not reference a subscription."""

    code: str = "MISSING_SUBSCRIPTION"

    def __init__(self, due_number: str):
        self.due_number = due_number
        super().__init__(f"Due schedule {due_number} has no subscription")


# =============================================================================
# Due schedules
# =============================================================================


class DueScheduleError(BillingError):
    code: str = "DUE_SCHEDULE_ERROR"


class DueScheduleNotFoundError(DueScheduleError):
    code: str = "DUE_SCHEDULE_NOT_FOUND"

    def __init__(self, due_schedule_id: str):
        self.due_schedule_id = due_schedule_id
        super().__init__(f"Due schedule not found: {due_schedule_id}")


class DueScheduleStateError(DueScheduleError):
    """Requested transition is not allowed from the current status."""

    code: str = "INVALID_DUE_SCHEDULE_TRANSITION"

    def __init__(self, due_number: str, current_status: str, action: str):
        self.due_number = due_number
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} due schedule {due_number} in status {current_status}"
        )


# =============================================================================
# Invoices
# =============================================================================


class InvoiceError(BillingError):
    code: str = "INVOICE_ERROR"


class InvoiceNotFoundError(InvoiceError):
    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class InvoiceStateError(InvoiceError):
    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, invoice_number: str, current_status: str, action: str):
        self.invoice_number = invoice_number
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} invoice {invoice_number} in status {current_status}"
        )


# =============================================================================
# Open items
# =============================================================================


class OpenItemError(BillingError):
    code: str = "OPEN_ITEM_ERROR"


class OpenItemNotFoundError(OpenItemError):
    code: str = "OPEN_ITEM_NOT_FOUND"

    def __init__(self, open_item_id: str):
        self.open_item_id = open_item_id
        super().__init__(f"Open item not found: {open_item_id}")


class OpenItemStateError(OpenItemError):
    code: str = "INVALID_OPEN_ITEM_TRANSITION"

    def __init__(self, open_item_id: str, current_status: str, action: str):
        self.open_item_id = open_item_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} open item {open_item_id} in status {current_status}"
        )


# =============================================================================
# Subscriptions
# =============================================================================


class SubscriptionNotFoundError(BillingError):
    code: str = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription not found: {subscription_id}")


# =============================================================================
# Process records
# =============================================================================


class ProcessRecordError(BillingError):
    code: str = "PROCESS_RECORD_ERROR"


class ProcessRecordNotFoundError(ProcessRecordError):
    code: str = "PROCESS_RECORD_NOT_FOUND"

    def __init__(self, process_number: str):
        self.process_number = process_number
        super().__init__(f"Process record not found: {process_number}")


class ProcessRecordClosedError(ProcessRecordError):
    """Mutation attempted on a record that already reached a terminal status."""

    code: str = "PROCESS_RECORD_CLOSED"

    def __init__(self, process_number: str, status: str):
        self.process_number = process_number
        self.status = status
        super().__init__(
            f"Process record {process_number} is closed with status {status}"
        )


class ProcessStatisticsError(ProcessRecordError):
    """Run counters may only grow within a run."""

    code: str = "PROCESS_STATISTICS_DECREASED"

    def __init__(self, process_number: str, counter: str, current: int, requested: int):
        self.process_number = process_number
        self.counter = counter
        self.current = current
        self.requested = requested
        super().__init__(
            f"Process record {process_number}: {counter} cannot decrease "
            f"from {current} to {requested}"
        )


# =============================================================================
# Batch runs
# =============================================================================


class BatchError(BillingError):
    code: str = "BATCH_ERROR"


class BillingRunInProgressError(BatchError):
    """Another billing run holds the lock for the same billing date."""

    code: str = "BILLING_RUN_IN_PROGRESS"

    def __init__(self, billing_date: str, holder: str | None):
        self.billing_date = billing_date
        self.holder = holder
        super().__init__(
            f"Billing run for {billing_date} is already in progress"
            + (f" (held by {holder})" if holder else "")
        )


class BatchIntegrityError(BatchError):
    """Created artifact counts disagree after a billing run."""

    code: str = "BATCH_INTEGRITY_MISMATCH"

    def __init__(
        self,
        batch_id: str,
        processed: int,
        invoices: int,
        open_items: int,
    ):
        self.batch_id = batch_id
        self.processed = processed
        self.invoices = invoices
        self.open_items = open_items
        super().__init__(
            f"Batch {batch_id} integrity mismatch: processed={processed}, "
            f"invoices={invoices}, open_items={open_items}"
        )


class BillingRunError(BatchError):
    """A billing run aborted; carries the process number for correlation."""

    code: str = "BILLING_RUN_FAILED"

    def __init__(self, process_number: str, reason: str):
        self.process_number = process_number
        self.reason = reason
        super().__init__(f"Billing run {process_number} failed: {reason}")
