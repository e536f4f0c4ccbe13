"""
Reconciliation engine.

Single write path for entitlement changes. Both ingress paths hand a
PaymentSignal to `apply_signal`, which runs one database transaction:

1. claim the idempotency key (ledger INSERT)
2. lock and read the user's entitlement record
3. run the state machine
4. write the record and the payment log row
5. stamp the outcome on the ledger entry

Either all of it commits or none of it does. A lost claim is a normal,
successful no-op.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
import logging
from sqlalchemy import insert, select
from sqlalchemy.exc import DBAPIError

from proaccess.core.database import get_session_factory, payment_log, users
from proaccess.core.errors import LedgerUnavailable
from proaccess.core.logging import log_event
from proaccess.core.metrics import entitlement_transitions_total
from proaccess.features.entitlements import store
from proaccess.features.entitlements.state_machine import (
    EntitlementState,
    PaymentSignal,
    transition,
)
from proaccess.features.reconciliation import ledger
from proaccess.models.entitlement import EntitlementRecord

logger = logging.getLogger("proaccess.reconciliation")


@dataclass(frozen=True)
class ApplyResult:
    applied: bool  # False when the key had already been claimed
    previous_state: Optional[EntitlementState]
    state: EntitlementState

    @property
    def changed(self) -> bool:
        return self.applied and self.previous_state is not self.state


def _current_state(session, user_id: str) -> EntitlementState:
    row = session.execute(
        select(users.c.entitlement_state).where(users.c.user_id == user_id)
    ).first()
    return EntitlementState(row[0]) if row else EntitlementState.FREE


def persist_claimed(session, signal: PaymentSignal, now: datetime) -> Tuple[EntitlementRecord, EntitlementState]:
    """Steps 2-5 for a key the caller has already claimed in `session`."""
    record = store.lock_record(session, signal.user_id)
    new_state = transition(record.entitlement_state, signal)
    store.write_state(
        session,
        record,
        new_state,
        provider_customer_id=signal.provider_customer_id,
        now=now,
    )
    session.execute(
        insert(payment_log).values(
            idempotency_key=signal.idempotency_key,
            user_id=signal.user_id,
            amount=signal.amount_minor_units,
            currency=signal.currency,
            provider_status=signal.provider_status,
            created_at=now,
        )
    )
    ledger.record_outcome(session, signal.idempotency_key, new_state)
    return record, new_state


def apply_signal(signal: PaymentSignal, now: Optional[datetime] = None) -> ApplyResult:
    """
    Apply a payment signal exactly once.

    Raises:
        LedgerUnavailable: The claim or the commit could not reach the store.
            Nothing was applied; the caller (or the provider) may retry.
    """
    now = now or datetime.now(timezone.utc)
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        claimed = ledger.try_claim(
            session,
            signal.idempotency_key,
            source=signal.source.value,
            provider_event_id=signal.provider_event_id,
            now=now,
        )
        if not claimed:
            session.rollback()
            state = _current_state(session, signal.user_id)
            session.commit()
            log_event(
                "info",
                "reconcile.duplicate",
                user_id=signal.user_id,
                idempotency_key=signal.idempotency_key,
                extra={"source": signal.source.value},
            )
            return ApplyResult(applied=False, previous_state=None, state=state)

        record, new_state = persist_claimed(session, signal, now)
        session.commit()
    except LedgerUnavailable:
        session.rollback()
        raise
    except DBAPIError as e:
        session.rollback()
        logger.error(
            "reconcile.persist_failed",
            exc_info=True,
            extra={"idempotency_key": signal.idempotency_key, "user_id": signal.user_id},
        )
        raise LedgerUnavailable(f"Could not persist entitlement change: {e.__class__.__name__}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    entitlement_transitions_total.inc(labels={
        "from_state": record.entitlement_state.value,
        "to_state": new_state.value,
    })
    log_event(
        "info",
        "reconcile.applied",
        user_id=signal.user_id,
        idempotency_key=signal.idempotency_key,
        extra={
            "source": signal.source.value,
            "from_state": record.entitlement_state.value,
            "to_state": new_state.value,
            "provider_status": signal.provider_status,
        },
    )
    return ApplyResult(applied=True, previous_state=record.entitlement_state, state=new_state)
