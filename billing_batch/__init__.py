"""
billing_batch -- the recurring billing run.

Turns ACTIVE due schedules into invoices and open items, one SAVEPOINT per
schedule, under a process record that is always closed.

Architecture:
    billing_batch/ sits on top of billing_kernel.  Nothing in billing_kernel
    imports from billing_batch.

    domain/types.py          BatchAnalysis, BatchPreview, BatchResult,
                             HousekeepingResult,
                             BatchResultAccumulator (frozen values + builder)
    services/analyzer.py     read-only scoping for a billing date
    services/factories.py    InvoiceFactory, OpenItemFactory
    services/processor.py    per-item processing, rollback, integrity check
    orchestrator.py          run_invoice_batch(), preview, housekeeping,
                             process record

Invariants:
    - Exactly one Invoice and one OpenItem per successfully processed
      due schedule.
    - Re-running a billing date never re-invoices a COMPLETED schedule.
    - Every run leaves a closed process record.
    - At most one run per billing date at a time (run lock).
"""
