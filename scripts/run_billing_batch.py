#!/usr/bin/env python3
"""
Run (or preview) the recurring billing batch for one billing date, or run
housekeeping between billing runs.

Usage:
    python3 scripts/run_billing_batch.py --date 2025-02-01 [options]

Examples:
    # Preview what would be billed, write nothing
    python3 scripts/run_billing_batch.py --date 2025-02-01 --preview

    # Bill only schedules due exactly on the date
    python3 scripts/run_billing_batch.py --date 2025-02-01 --no-overdue

    # Fail stuck runs, purge old process records, refresh overdue open items
    python3 scripts/run_billing_batch.py --housekeeping

    # Use a config file and a specific database
    python3 scripts/run_billing_batch.py --date 2025-02-01 \\
        --config billing.yaml --database-url postgresql://billing@localhost/billing

Exit codes: 0 success, 1 run finished with item errors, 2 run aborted.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_DB_URL = "sqlite:///billing.db"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the recurring billing batch for a billing date.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--date",
        dest="billing_date",
        type=date.fromisoformat,
        default=None,
        help="Billing date (YYYY-MM-DD). Default: today.",
    )
    parser.add_argument(
        "--no-overdue",
        action="store_true",
        help="Only bill schedules due exactly on the billing date.",
    )
    parser.add_argument(
        "--preview",
        action="store_true",
        help="Analyze only; print the preview and write nothing.",
    )
    parser.add_argument(
        "--housekeeping",
        action="store_true",
        help="Run process-record and open-item housekeeping instead of billing.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML billing config file.",
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("BILLING_DATABASE_URL", DEFAULT_DB_URL),
        help="SQLAlchemy database URL (default: $BILLING_DATABASE_URL or sqlite:///billing.db).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Emit DEBUG logs.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from billing_kernel.config import BillingConfig, load_billing_config
    from billing_kernel.db.engine import create_tables, init_engine_from_url, session_scope
    from billing_kernel.domain.clock import SystemClock
    from billing_kernel.exceptions import BatchError
    from billing_kernel.logging_config import configure_logging

    from billing_batch.orchestrator import BatchOrchestrator, run_in_new_transaction

    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    config = load_billing_config(args.config) if args.config else BillingConfig.with_defaults()
    init_engine_from_url(args.database_url)
    create_tables()

    clock = SystemClock()
    billing_date = args.billing_date or clock.today()
    include_overdue = not args.no_overdue

    if args.housekeeping:
        with session_scope() as session:
            housekeeping = BatchOrchestrator.from_session(
                session, clock=clock, config=config,
            ).run_housekeeping()
        print(housekeeping.summary())
        return 0

    if args.preview:
        with session_scope() as session:
            preview = BatchOrchestrator.from_session(
                session, clock=clock, config=config,
            ).preview_invoice_batch(billing_date, include_overdue)
            print(preview.summary())
        return 0

    try:
        result = run_in_new_transaction(
            billing_date, include_overdue, clock=clock, config=config,
        )
    except BatchError as exc:
        print(f"Billing run aborted [{exc.code}]: {exc}", file=sys.stderr)
        return 2

    print(result.summary())
    for error in result.errors:
        print(f"  ERROR {error}", file=sys.stderr)
    return 0 if result.is_successful() else 1


if __name__ == "__main__":
    sys.exit(main())
