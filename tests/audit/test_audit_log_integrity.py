"""
Audit log integrity tests.

Entries are append-only at the ORM level, and the per-loan hash chain
detects edits made below the ORM (raw SQL, direct database access).
"""

import pytest
from sqlalchemy import select, text

from lending_kernel.exceptions import AuditChainBrokenError, ImmutabilityViolationError
from lending_kernel.models.audit_entry import AuditLogEntry
from lending_kernel.services.ledger_service import LedgerService


@pytest.fixture
def funded_loan(workflow_engine, open_loan, make_event):
    open_loan("L1")
    workflow_engine.handle_event(make_event("KYC_APPROVED"))
    return "L1"


def _entry(session, loan_id: str, seq: int) -> AuditLogEntry:
    return session.execute(
        select(AuditLogEntry)
        .where(AuditLogEntry.loan_id == loan_id)
        .where(AuditLogEntry.seq == seq)
    ).scalar_one()


def _raw_update(session_factory, sql: str, **params) -> None:
    with session_factory() as sess:
        sess.execute(text(sql), params)
        sess.commit()


class TestOrmImmutability:

    def test_update_rejected(self, funded_loan, session):
        entry = _entry(session, funded_loan, 2)
        entry.details = "rewritten history"

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "AuditLogEntry"
        assert exc_info.value.code == "IMMUTABILITY_VIOLATION"

    def test_delete_rejected(self, funded_loan, session):
        session.delete(_entry(session, funded_loan, 1))

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_rejected_edit_leaves_row_untouched(self, funded_loan, session, session_factory):
        entry = _entry(session, funded_loan, 2)
        original = entry.details
        entry.details = "rewritten history"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

        with session_factory() as fresh:
            assert _entry(fresh, funded_loan, 2).details == original


class TestHashChain:

    def test_untouched_chain_verifies(self, funded_loan, session):
        assert LedgerService(session).verify_audit_chain(funded_loan)

    def test_empty_chain_verifies(self, db_engine, session):
        assert LedgerService(session).verify_audit_chain("NOBODY")

    def test_content_tamper_detected(self, funded_loan, session_factory, session):
        _raw_update(
            session_factory,
            "UPDATE loan_audit_log SET details = :d WHERE loan_id = :l AND seq = 2",
            d="nothing to see here",
            l=funded_loan,
        )

        with pytest.raises(AuditChainBrokenError) as exc_info:
            LedgerService(session).verify_audit_chain(funded_loan)

        assert exc_info.value.seq == 2
        assert exc_info.value.code == "AUDIT_CHAIN_BROKEN"

    def test_actor_tamper_detected(self, funded_loan, session_factory, session):
        _raw_update(
            session_factory,
            "UPDATE loan_audit_log SET actor = 'admin' WHERE loan_id = :l AND seq = 3",
            l=funded_loan,
        )

        with pytest.raises(AuditChainBrokenError) as exc_info:
            LedgerService(session).verify_audit_chain(funded_loan)
        assert exc_info.value.seq == 3

    def test_relinked_entry_detected(self, funded_loan, session_factory, session):
        _raw_update(
            session_factory,
            "UPDATE loan_audit_log SET prev_hash = NULL WHERE loan_id = :l AND seq = 3",
            l=funded_loan,
        )

        with pytest.raises(AuditChainBrokenError) as exc_info:
            LedgerService(session).verify_audit_chain(funded_loan)
        assert exc_info.value.seq == 3
        assert exc_info.value.actual_hash is None

    def test_deleted_entry_detected(self, funded_loan, session_factory, session):
        _raw_update(
            session_factory,
            "DELETE FROM loan_audit_log WHERE loan_id = :l AND seq = 2",
            l=funded_loan,
        )

        with pytest.raises(AuditChainBrokenError) as exc_info:
            LedgerService(session).verify_audit_chain(funded_loan)
        assert exc_info.value.seq == 3

    def test_chain_failure_logged_critical(self, funded_loan, session_factory, session, captured_logs):
        _raw_update(
            session_factory,
            "UPDATE loan_audit_log SET details = 'x' WHERE loan_id = :l AND seq = 1",
            l=funded_loan,
        )

        with pytest.raises(AuditChainBrokenError):
            LedgerService(session).verify_audit_chain(funded_loan)

        broken = [r for r in captured_logs() if r["message"] == "audit_chain_broken"]
        assert broken[0]["level"] == "CRITICAL"
        assert broken[0]["check"] == "content"
