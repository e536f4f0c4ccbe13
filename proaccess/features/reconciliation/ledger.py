"""
Idempotency ledger.

`try_claim` is a single INSERT against the ledger primary key. The unique
constraint decides the winner; there is no read-then-write. Claims run inside
the caller's transaction (SAVEPOINT) so claim and persistence commit or roll
back together.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, DBAPIError
from sqlalchemy.orm import Session

from proaccess.core.database import get_db_session, idempotency_ledger
from proaccess.core.errors import LedgerUnavailable
from proaccess.features.entitlements.state_machine import EntitlementState
from proaccess.models.entitlement import LedgerEntry


def try_claim(
    session: Session,
    idempotency_key: str,
    *,
    source: str,
    provider_event_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Atomically reserve an idempotency key.

    Returns:
        True if this caller now owns the key, False if it was already claimed

    Raises:
        LedgerUnavailable: The store could not be reached or written
    """
    try:
        with session.begin_nested():
            session.execute(
                insert(idempotency_ledger).values(
                    idempotency_key=idempotency_key,
                    source=source,
                    provider_event_id=provider_event_id,
                    processed_at=now or datetime.now(timezone.utc),
                )
            )
        return True
    except IntegrityError:
        return False
    except DBAPIError as e:
        raise LedgerUnavailable(f"Idempotency ledger unavailable: {e.__class__.__name__}") from e


def record_outcome(session: Session, idempotency_key: str, resulting_state: EntitlementState) -> None:
    """Attach the final state to a claimed entry."""
    try:
        session.execute(
            update(idempotency_ledger)
            .where(idempotency_ledger.c.idempotency_key == idempotency_key)
            .values(resulting_state=resulting_state.value)
        )
    except DBAPIError as e:
        raise LedgerUnavailable(f"Idempotency ledger unavailable: {e.__class__.__name__}") from e


def get_entry(idempotency_key: str) -> Optional[LedgerEntry]:
    with get_db_session() as session:
        row = session.execute(
            select(idempotency_ledger).where(
                idempotency_ledger.c.idempotency_key == idempotency_key
            )
        ).first()
    if not row:
        return None
    return LedgerEntry(
        idempotency_key=row.idempotency_key,
        source=row.source,
        provider_event_id=row.provider_event_id,
        resulting_state=EntitlementState(row.resulting_state) if row.resulting_state else None,
        processed_at=row.processed_at,
    )
