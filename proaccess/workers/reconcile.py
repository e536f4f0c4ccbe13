"""
Run the entitlement reconciliation sweep.

    python -m proaccess.workers.reconcile            # report only
    python -m proaccess.workers.reconcile --fix      # apply repairs
    python -m proaccess.workers.reconcile --fix --since-hours 24 --limit 500
"""
from __future__ import annotations

import argparse
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from proaccess.core.config import settings
from proaccess.core.database import create_all_tables
from proaccess.core.errors import BillingDisabled
from proaccess.core.logging import configure_logging
from proaccess.features.billing.service import get_provider
from proaccess.features.reconciliation.reconcile_job import run_reconcile_job


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile the idempotency ledger with entitlement records.")
    parser.add_argument("--fix", dest="fix", action="store_true", help="Apply repairs.")
    parser.add_argument("--report-only", dest="fix", action="store_false", help="Run without writes.")
    parser.add_argument("--limit", type=int, default=int(os.getenv("PROACCESS_RECONCILE_LIMIT", "100")))
    parser.add_argument(
        "--since-hours",
        type=float,
        default=None,
        help="Only scan ledger entries processed in the last N hours.",
    )
    parser.set_defaults(fix=_parse_bool(os.getenv("PROACCESS_RECONCILE_FIX"), False))
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    create_all_tables()

    try:
        provider = get_provider()
    except BillingDisabled:
        provider = None

    since = None
    if args.since_hours is not None:
        since = datetime.now(timezone.utc) - timedelta(hours=args.since_hours)

    report = run_reconcile_job(fix=args.fix, limit=args.limit, provider=provider, since=since)
    print(json.dumps(report, default=str, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
