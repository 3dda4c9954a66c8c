"""ORM models for the billing engine.

Importing this package registers every table on ``Base.metadata``.
"""

from billing_kernel.models.due_schedule import DueSchedule, DueStatus
from billing_kernel.models.invoice import (
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    InvoiceType,
)
from billing_kernel.models.open_item import (
    OpenItem,
    OpenItemStatus,
    derive_open_item_status,
)
from billing_kernel.models.process_record import (
    ProcessRecord,
    ProcessStatus,
    ProcessType,
)
from billing_kernel.models.run_lock import BillingRunLock
from billing_kernel.models.subscription import (
    BillingCycle,
    Customer,
    Subscription,
    SubscriptionStatus,
)
from billing_kernel.services.sequence_service import SequenceCounter

__all__ = [
    "BillingCycle",
    "BillingRunLock",
    "Customer",
    "DueSchedule",
    "DueStatus",
    "Invoice",
    "InvoiceItem",
    "InvoiceItemType",
    "InvoiceStatus",
    "InvoiceType",
    "OpenItem",
    "OpenItemStatus",
    "ProcessRecord",
    "ProcessStatus",
    "ProcessType",
    "SequenceCounter",
    "Subscription",
    "SubscriptionStatus",
    "derive_open_item_status",
]
