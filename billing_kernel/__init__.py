"""
billing_kernel -- persistence, domain rules and services of the recurring
billing engine.

Layers (inner to outer):
    domain/     Clock and money arithmetic; no I/O.
    db/         Declarative base and engine/session management.
    models/     ORM entities carrying their own state machines
                (DueSchedule, Invoice, OpenItem, ProcessRecord).
    services/   Sequences, document numbers, process records, due
                schedules, invoices, open items, run locks, subscription
                lifecycle.

The batch layer (billing_batch) sits on top and is the only caller of the
billing-run operations.
"""
