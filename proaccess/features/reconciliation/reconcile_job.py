"""
Scheduled reconciliation sweep.

Claim and persist commit in one transaction, so the sweep should find
nothing. It exists to catch drift from manual edits, partial restores or a
store without multi-row atomicity, and records every run in
`reconcile_job_runs`.

Issue types:
- missing_outcome: ledger entry with a payment log row but no resulting_state
- unpersisted_claim: ledger entry with no payment log row
- pro_not_applied: ledger says pro, user record is not pro
- pro_missing_since: pro user without pro_since
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple
import logging
from sqlalchemy import and_, or_, select, update, insert
from sqlalchemy.exc import DBAPIError

from proaccess.core.database import (
    get_db_session,
    idempotency_ledger,
    payment_log,
    reconcile_job_runs,
    users,
)
from proaccess.core.errors import AppError
from proaccess.features.billing.provider import PaymentProvider
from proaccess.features.billing.service import signal_from_session
from proaccess.features.entitlements import store
from proaccess.features.entitlements.state_machine import EntitlementState
from proaccess.features.reconciliation import engine

logger = logging.getLogger("proaccess.reconcile")

JOB_NAME = "system.reconcile"


def _find_issues(session, limit: int, since: Optional[datetime] = None) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Return at most `limit` issues, oldest ledger entries first, and whether
    more remain. Only drifted rows are selected; healthy entries never leave
    the database.
    """
    issues: List[Dict[str, Any]] = []

    drifted = or_(
        payment_log.c.user_id.is_(None),
        idempotency_ledger.c.resulting_state.is_(None),
        and_(
            idempotency_ledger.c.resulting_state == EntitlementState.PRO.value,
            or_(users.c.entitlement_state.is_(None), users.c.entitlement_state != EntitlementState.PRO.value),
        ),
    )
    query = (
        select(
            idempotency_ledger.c.idempotency_key,
            idempotency_ledger.c.resulting_state,
            payment_log.c.user_id,
            users.c.entitlement_state,
        )
        .select_from(
            idempotency_ledger.outerjoin(
                payment_log,
                payment_log.c.idempotency_key == idempotency_ledger.c.idempotency_key,
            ).outerjoin(users, users.c.user_id == payment_log.c.user_id)
        )
        .where(drifted)
    )
    if since is not None:
        query = query.where(idempotency_ledger.c.processed_at >= since)
    query = query.order_by(
        idempotency_ledger.c.processed_at, idempotency_ledger.c.idempotency_key
    ).limit(limit + 1)
    rows = session.execute(query).fetchall()

    for key, resulting_state, user_id, user_state in rows:
        if user_id is None:
            issues.append({"type": "unpersisted_claim", "idempotency_key": key})
        elif resulting_state is None:
            issues.append({"type": "missing_outcome", "idempotency_key": key, "user_id": user_id})
        elif resulting_state == EntitlementState.PRO.value and user_state != EntitlementState.PRO.value:
            issues.append({"type": "pro_not_applied", "idempotency_key": key, "user_id": user_id})

    if len(issues) > limit:
        return issues[:limit], True

    missing_since = session.execute(
        select(users.c.user_id)
        .where(
            users.c.entitlement_state == EntitlementState.PRO.value,
            users.c.pro_since.is_(None),
        )
        .order_by(users.c.user_id)
        .limit(limit - len(issues) + 1)
    ).fetchall()
    for (user_id,) in missing_since:
        issues.append({"type": "pro_missing_since", "user_id": user_id})

    return issues[:limit], len(issues) > limit


def _repair_unpersisted(session, key: str, provider: PaymentProvider, now: datetime) -> bool:
    """Re-derive the signal from the provider and persist it under the existing claim."""
    checkout = provider.retrieve_checkout_session(key)
    if not checkout.user_id:
        return False
    engine.persist_claimed(session, signal_from_session(checkout, checkout.user_id), now)
    return True


def _fix(session, issue: Dict[str, Any], provider: Optional[PaymentProvider], now: datetime) -> bool:
    kind = issue["type"]
    if kind == "missing_outcome":
        record = store.lock_record(session, issue["user_id"])
        session.execute(
            update(idempotency_ledger)
            .where(idempotency_ledger.c.idempotency_key == issue["idempotency_key"])
            .values(resulting_state=record.entitlement_state.value)
        )
        return True
    if kind == "pro_not_applied":
        record = store.lock_record(session, issue["user_id"])
        store.write_state(session, record, EntitlementState.PRO, now=now)
        return True
    if kind == "pro_missing_since":
        session.execute(
            update(users)
            .where(users.c.user_id == issue["user_id"], users.c.pro_since.is_(None))
            .values(pro_since=now)
        )
        return True
    if kind == "unpersisted_claim" and provider is not None:
        return _repair_unpersisted(session, issue["idempotency_key"], provider, now)
    return False


def run_reconcile_job(
    now: Optional[datetime] = None,
    fix: bool = False,
    limit: int = 100,
    provider: Optional[PaymentProvider] = None,
    since: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Scan for drift between the ledger, the payment log and entitlement records.

    Args:
        now: Job start time (injectable for tests)
        fix: Apply repairs to the issues found
        limit: Page size; at most this many issues are scanned, reported and fixed.
            `truncated` in the report means the next run has more to do.
        provider: Needed to repair unpersisted claims; they are only reported without it
        since: Only look at ledger entries processed at or after this time
    """
    now = now or datetime.now(timezone.utc)
    corrections = 0
    failures = 0

    with get_db_session() as session:
        issues, truncated = _find_issues(session, limit, since)

    if fix:
        for issue in issues:
            try:
                with get_db_session() as session:
                    if _fix(session, issue, provider, now):
                        corrections += 1
            except (AppError, DBAPIError) as e:
                # Provider or store trouble for one issue; the next run retries it
                failures += 1
                logger.warning(
                    "reconcile.fix_failed",
                    exc_info=isinstance(e, DBAPIError),
                    extra={
                        "error_code": e.code if isinstance(e, AppError) else "ledger_unavailable",
                        "idempotency_key": issue.get("idempotency_key"),
                        "user_id": issue.get("user_id"),
                    },
                )

    stats = {
        "issues_found": len(issues),
        "corrections_applied": corrections,
        "fix_failures": failures,
        "truncated": truncated,
    }
    with get_db_session() as session:
        session.execute(
            insert(reconcile_job_runs).values(
                job_name=JOB_NAME,
                started_at=now,
                finished_at=datetime.now(timezone.utc),
                status="success" if not failures else "partial",
                stats_json=json.dumps(stats),
            )
        )

    logger.info("reconcile.run", extra=stats)
    return {
        **stats,
        "issues": issues,
        "timestamp": now.isoformat(),
    }
