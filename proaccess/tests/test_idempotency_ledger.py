"""
Idempotency ledger claims.

A key can be claimed once. A claim rolled back with its transaction leaves
the key free for the next attempt.
"""
import pytest
from sqlalchemy.exc import OperationalError

from proaccess.core.database import get_db_session
from proaccess.core.errors import LedgerUnavailable
from proaccess.features.entitlements.state_machine import EntitlementState
from proaccess.features.reconciliation import ledger


def test_first_claim_wins_second_loses():
    with get_db_session() as session:
        assert ledger.try_claim(session, "cs_key_1", source="webhook", provider_event_id="evt_1") is True

    with get_db_session() as session:
        assert ledger.try_claim(session, "cs_key_1", source="verify") is False

    entry = ledger.get_entry("cs_key_1")
    assert entry is not None
    assert entry.source == "webhook"
    assert entry.provider_event_id == "evt_1"
    assert entry.resulting_state is None


def test_duplicate_claim_in_same_transaction_keeps_outer_work():
    with get_db_session() as session:
        assert ledger.try_claim(session, "cs_key_2", source="webhook") is True
        assert ledger.try_claim(session, "cs_key_2", source="webhook") is False

    assert ledger.get_entry("cs_key_2") is not None


def test_rolled_back_claim_frees_key():
    with pytest.raises(RuntimeError):
        with get_db_session() as session:
            ledger.try_claim(session, "cs_key_3", source="verify")
            raise RuntimeError("persist failed")

    assert ledger.get_entry("cs_key_3") is None
    with get_db_session() as session:
        assert ledger.try_claim(session, "cs_key_3", source="verify") is True


def test_record_outcome():
    with get_db_session() as session:
        ledger.try_claim(session, "cs_key_4", source="webhook")
        ledger.record_outcome(session, "cs_key_4", EntitlementState.PRO)

    assert ledger.get_entry("cs_key_4").resulting_state is EntitlementState.PRO


def test_unknown_key_has_no_entry():
    assert ledger.get_entry("cs_missing") is None


def test_store_failure_is_ledger_unavailable():
    class BrokenSession:
        def begin_nested(self):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

    with pytest.raises(LedgerUnavailable):
        ledger.try_claim(BrokenSession(), "cs_key_5", source="webhook")
