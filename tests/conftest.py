"""
Pytest fixtures for the lending workflow test suite.

Provides:
- A fresh SQLite ledger database per test (file-backed, so concurrent
  threads share it; BEGIN IMMEDIATE transactions serialize writers)
- Immutability listeners registered for every test
- A deterministic clock, the bundled process definition, and a ready
  WorkflowEngine
- Factories for opening loans and building events

Environment Variables:
- LENDING_TEST_DATABASE_URL: run against another database (e.g. a
  throwaway PostgreSQL) instead of a per-test SQLite file.  Tables are
  dropped and recreated around each test.
"""

import json
import logging
import os
from datetime import timedelta
from io import StringIO
from typing import Generator
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from lending_config import get_active_definition
from lending_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from lending_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from lending_kernel.domain.clock import DeterministicClock
from lending_kernel.domain.events import WorkflowEvent
from lending_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from lending_kernel.models.loan import Loan
from lending_kernel.selectors.ledger_selector import LedgerSelector
from lending_kernel.services.ledger_service import LedgerService
from lending_services.loan_locks import LoanLockTable
from lending_services.workflow_engine import WorkflowEngine

TEST_FOUNDER_ID = "founder-001"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture lending_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_engine, make_event):
            workflow_engine.handle_event(make_event("KYC_APPROVED"))
            logs = captured_logs()
            assert any(r["message"] == "workflow_transition" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("lending_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def database_url(tmp_path) -> str:
    return os.environ.get(
        "LENDING_TEST_DATABASE_URL",
        f"sqlite:///{tmp_path / 'ledger.db'}",
    )


@pytest.fixture
def db_engine(database_url):
    """Fresh ledger schema for one test, immutability listeners on."""
    eng = init_engine_from_url(database_url, pool_size=30, max_overflow=20)
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield eng
    unregister_immutability_listeners()
    register_immutability_listeners()
    if not database_url.startswith("sqlite"):
        drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """A session for direct service tests.  Rolled back at teardown."""
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.rollback()
        sess.close()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture(scope="session")
def founder_loan_definition():
    """The bundled founder_loan v1 process definition."""
    return get_active_definition()


@pytest.fixture
def ledger(session, deterministic_clock) -> LedgerService:
    return LedgerService(session, deterministic_clock)


@pytest.fixture
def selector(session) -> LedgerSelector:
    return LedgerSelector(session)


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def loan_locks() -> LoanLockTable:
    return LoanLockTable()


@pytest.fixture
def workflow_engine(
    founder_loan_definition,
    session_factory,
    deterministic_clock,
    loan_locks,
) -> WorkflowEngine:
    return WorkflowEngine(
        founder_loan_definition,
        session_factory=session_factory,
        clock=deterministic_clock,
        locks=loan_locks,
    )


@pytest.fixture
def force_state(session_factory):
    """
    Write a loan's state directly, bypassing the engine.

    This is how tests set up mid-lifecycle loans and simulate drift between
    the ledger and the loaded definition.
    """

    def _force(loan_id: str, state: str) -> None:
        with session_factory() as sess:
            sess.execute(
                update(Loan)
                .where(Loan.loan_id == loan_id)
                .values(status_state=state, version=Loan.version + 1)
                .execution_options(synchronize_session=False)
            )
            sess.commit()

    return _force


@pytest.fixture
def open_loan(workflow_engine, force_state):
    """Open a loan, optionally placing it straight into ``state``."""

    def _open(loan_id: str = "L1", state: str | None = None, founder_id: str = TEST_FOUNDER_ID):
        workflow_engine.open_loan(loan_id, founder_id)
        if state is not None:
            force_state(loan_id, state)
        return loan_id

    return _open


@pytest.fixture
def make_event(deterministic_clock):
    """
    Build WorkflowEvents with distinct ids and advancing timestamps.

    Usage::

        event = make_event("KYC_APPROVED", loan_id="L1")
    """

    def _make(
        event_type: str,
        loan_id: str = "L1",
        founder_id: str = TEST_FOUNDER_ID,
        event_id: str | None = None,
        actor: str = "system",
        payload: dict | None = None,
    ) -> WorkflowEvent:
        occurred_at = deterministic_clock.now() + timedelta(milliseconds=1)
        deterministic_clock.advance(1)
        return WorkflowEvent(
            type=event_type,
            loan_id=loan_id,
            founder_id=founder_id,
            occurred_at=occurred_at,
            payload=payload or {},
            actor=actor,
            event_id=event_id or f"evt-{uuid4().hex[:12]}",
        )

    return _make


@pytest.fixture
def read_ledger(session_factory):
    """Run a selector query in its own short-lived session."""

    def _read(fn):
        with session_factory() as sess:
            return fn(LedgerSelector(sess))

    return _read
