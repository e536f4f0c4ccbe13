"""
Entitlement store.

One record per user in `app_users`. Reads are free to happen anywhere;
writes of `entitlement_state` only come from the reconciliation engine,
inside the transaction that holds the ledger claim.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from proaccess.core.database import get_db_session, users
from proaccess.features.entitlements.state_machine import EntitlementState
from proaccess.models.entitlement import EntitlementRecord


def _to_record(row) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=row.user_id,
        entitlement_state=EntitlementState(row.entitlement_state),
        provider_customer_id=row.provider_customer_id,
        pro_since=row.pro_since,
        created_at=row.created_at,
    )


def get_entitlement(user_id: str) -> Optional[EntitlementRecord]:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
        return _to_record(row) if row else None


def create_user(user_id: str) -> EntitlementRecord:
    """Create the record at account creation (state=free). Idempotent."""
    with get_db_session() as session:
        ensure_record(session, user_id)
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
        return _to_record(row)


def ensure_record(session: Session, user_id: str) -> None:
    """Insert a free record for user_id unless one exists. Safe under races."""
    exists = session.execute(
        select(users.c.user_id).where(users.c.user_id == user_id)
    ).first()
    if exists:
        return
    try:
        with session.begin_nested():
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    entitlement_state=EntitlementState.FREE.value,
                    created_at=datetime.now(timezone.utc),
                )
            )
    except IntegrityError:
        # Created concurrently by another request
        pass


def lock_record(session: Session, user_id: str) -> EntitlementRecord:
    """Read the record for update within the caller's transaction."""
    ensure_record(session, user_id)
    row = session.execute(
        select(users).where(users.c.user_id == user_id).with_for_update()
    ).first()
    return _to_record(row)


def write_state(
    session: Session,
    record: EntitlementRecord,
    new_state: EntitlementState,
    *,
    provider_customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Persist a committed transition. `pro_since` is set once, on the first upgrade."""
    values = {
        "entitlement_state": new_state.value,
        "updated_at": now or datetime.now(timezone.utc),
    }
    if new_state is EntitlementState.PRO and record.pro_since is None:
        values["pro_since"] = now or datetime.now(timezone.utc)
    if provider_customer_id and not record.provider_customer_id:
        values["provider_customer_id"] = provider_customer_id

    session.execute(
        update(users).where(users.c.user_id == record.user_id).values(**values)
    )
