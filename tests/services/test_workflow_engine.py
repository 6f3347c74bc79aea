"""
Tests for WorkflowEngine.handle_event: the founder loan lifecycle, ignored
events, missing loans, definition drift, unknown actions, retries and the
workflow_transition trace.
"""

import itertools

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from lending_kernel.domain.audit import AuditTag
from lending_kernel.domain.workflow import Action, ProcessDefinition, State, Transition
from lending_kernel.exceptions import InvalidStateError, LoanNotFoundError
from lending_kernel.models.disbursement import DisbursementKind, DisbursementStatus
from lending_services.action_dispatch import ActionDispatcher
from lending_services.workflow_engine import OutcomeStatus, WorkflowEngine


# =============================================================================
# Reference lifecycle
# =============================================================================


class TestFounderLoanLifecycle:

    def test_kyc_approval_funds_and_creates_filing_fee(
        self, workflow_engine, open_loan, make_event, read_ledger,
    ):
        open_loan("L1")

        outcome = workflow_engine.handle_event(make_event("KYC_APPROVED", loan_id="L1"))

        assert outcome.status is OutcomeStatus.APPLIED
        assert (outcome.from_state, outcome.to_state) == ("PENDING_KYC", "FUNDED")
        assert workflow_engine.current_state("L1") == "FUNDED"

        disbursements = read_ledger(lambda s: s.list_disbursements("L1"))
        assert [d.kind for d in disbursements] == [DisbursementKind.FILING_FEE]
        assert disbursements[0].status is DisbursementStatus.PENDING
        assert outcome.created_disbursement_ids == (disbursements[0].disbursement_id,)

        log = workflow_engine.audit_log("L1")
        assert [e.event for e in log] == [
            AuditTag.LOAN_OPENED,
            AuditTag.DISBURSEMENT_CREATED,
            AuditTag.STATE_TRANSITION,
        ]
        assert log[2].attributes["from_state"] == "PENDING_KYC"
        assert log[2].attributes["to_state"] == "FUNDED"
        assert log[1].attributes["disbursement_id"] == disbursements[0].disbursement_id

    def test_unmatched_event_is_ignored_and_audited(
        self, workflow_engine, open_loan, make_event, read_ledger,
    ):
        open_loan("L2", state="FUNDED")

        outcome = workflow_engine.handle_event(make_event("MILESTONE_SUBMITTED", loan_id="L2"))

        assert outcome.status is OutcomeStatus.IGNORED
        assert outcome.to_state is None
        assert workflow_engine.current_state("L2") == "FUNDED"
        assert [e.event for e in workflow_engine.audit_log("L2")] == [
            AuditTag.LOAN_OPENED,
            AuditTag.IGNORED_EVENT,
        ]
        assert read_ledger(lambda s: s.list_disbursements("L2")) == []

    def test_unknown_loan_raises_and_writes_nothing(
        self, workflow_engine, make_event, read_ledger,
    ):
        with pytest.raises(LoanNotFoundError) as exc_info:
            workflow_engine.handle_event(make_event("KYC_APPROVED", loan_id="GHOST"))

        assert exc_info.value.loan_id == "GHOST"
        assert exc_info.value.code == "LOAN_NOT_FOUND"
        assert read_ledger(lambda s: s.get_audit_log("GHOST")) == []

    def test_full_lifecycle(self, workflow_engine, open_loan, make_event, read_ledger):
        open_loan("L1")
        for event_type in (
            "KYC_APPROVED",
            "LOAN_ISSUED",
            "MILESTONE_SUBMITTED",
            "GOVERNANCE_FREEZE",
            "GOVERNANCE_UNFREEZE",
            "MILESTONE_APPROVED",
            "LOAN_REPAID",
        ):
            assert workflow_engine.handle_event(make_event(event_type)).applied

        assert workflow_engine.current_state("L1") == "CLOSED"
        kinds = [d.kind for d in read_ledger(lambda s: s.list_disbursements("L1"))]
        assert sorted(kinds) == [DisbursementKind.FILING_FEE, DisbursementKind.REMAINING_FUNDS]
        assert read_ledger(lambda s: s.audit_tags("L1")).count(AuditTag.STATE_TRANSITION) == 7

    def test_rejected_milestone_returns_to_issued(self, workflow_engine, open_loan, make_event):
        open_loan("L1", state="MILESTONE_REVIEW")

        outcome = workflow_engine.handle_event(make_event("MILESTONE_REJECTED"))

        assert outcome.to_state == "ISSUED"

    def test_terminal_state_ignores_everything(self, workflow_engine, open_loan, make_event):
        open_loan("L1", state="CLOSED")
        assert workflow_engine.handle_event(make_event("LOAN_REPAID")).status is OutcomeStatus.IGNORED

    def test_audit_records_in_external_form(self, workflow_engine, open_loan, make_event, read_ledger):
        open_loan("L1")
        event = make_event("KYC_APPROVED", actor="kyc-bot")
        workflow_engine.handle_event(event)

        records = read_ledger(lambda s: s.audit_records("L1"))
        assert set(records[-1]) == {"timestamp", "actor", "event", "details"}
        assert records[-1]["event"] == "state_transition"
        assert records[-1]["actor"] == "kyc-bot"
        assert records[-1]["timestamp"] == event.occurred_at.isoformat()

    def test_audit_chain_verifies_after_lifecycle(
        self, workflow_engine, open_loan, make_event, session,
    ):
        from lending_kernel.services.ledger_service import LedgerService

        open_loan("L1")
        workflow_engine.handle_event(make_event("KYC_APPROVED"))
        workflow_engine.handle_event(make_event("NOT_A_THING"))
        workflow_engine.handle_event(make_event("LOAN_ISSUED"))

        assert LedgerService(session).verify_audit_chain("L1")


# =============================================================================
# Definition drift and unknown actions
# =============================================================================


class TestDefinitionDrift:

    def test_state_missing_from_definition(
        self, workflow_engine, open_loan, force_state, make_event, read_ledger,
    ):
        open_loan("L1")
        force_state("L1", "LEGACY_STATE")

        with pytest.raises(InvalidStateError) as exc_info:
            workflow_engine.handle_event(make_event("KYC_APPROVED"))

        assert exc_info.value.state == "LEGACY_STATE"
        assert exc_info.value.definition_name == "founder_loan"
        assert read_ledger(lambda s: s.audit_tags("L1")) == [AuditTag.LOAN_OPENED]


@pytest.fixture
def notify_definition() -> ProcessDefinition:
    return ProcessDefinition(
        name="notify_loan",
        version=2,
        initial_state="PENDING_KYC",
        states=(
            State(id="PENDING_KYC", transitions=(
                Transition(on="KYC_APPROVED", to="FUNDED", actions=(
                    Action.from_trigger("NOTIFY_FOUNDER"),
                    Action.from_trigger("DISBURSEMENT_1"),
                )),
            )),
            State(id="FUNDED"),
        ),
    )


class TestUnknownActions:

    def test_unknown_action_is_audited_not_fatal(
        self, notify_definition, session_factory, deterministic_clock, make_event, read_ledger,
    ):
        engine = WorkflowEngine(
            notify_definition, session_factory=session_factory, clock=deterministic_clock,
        )
        engine.open_loan("L1", "F1")

        outcome = engine.handle_event(make_event("KYC_APPROVED"))

        assert outcome.applied
        assert outcome.unknown_actions == ("NOTIFY_FOUNDER",)
        assert read_ledger(lambda s: s.audit_tags("L1")) == [
            AuditTag.LOAN_OPENED,
            AuditTag.UNKNOWN_ACTION,
            AuditTag.DISBURSEMENT_CREATED,
            AuditTag.STATE_TRANSITION,
        ]
        unknown = read_ledger(lambda s: s.get_audit_log("L1", event=AuditTag.UNKNOWN_ACTION))
        assert unknown[0].attributes["trigger"] == "NOTIFY_FOUNDER"

    def test_handler_map_without_a_kind_falls_back(
        self, founder_loan_definition, session_factory, deterministic_clock, make_event, read_ledger,
    ):
        engine = WorkflowEngine(
            founder_loan_definition,
            session_factory=session_factory,
            clock=deterministic_clock,
            dispatcher=ActionDispatcher(handlers={}),
        )
        engine.open_loan("L1", "F1")

        outcome = engine.handle_event(make_event("KYC_APPROVED"))

        assert outcome.applied
        assert outcome.unknown_actions == ("DISBURSEMENT_1",)
        assert read_ledger(lambda s: s.list_disbursements("L1")) == []


# =============================================================================
# Retries and idempotency
# =============================================================================


class TestRetries:

    def test_same_event_twice_is_duplicate(self, workflow_engine, open_loan, make_event, read_ledger):
        open_loan("L1")
        event = make_event("KYC_APPROVED", event_id="evt-kyc")

        first = workflow_engine.handle_event(event)
        second = workflow_engine.handle_event(event)

        assert first.status is OutcomeStatus.APPLIED
        assert second.status is OutcomeStatus.DUPLICATE
        assert second.idempotency_key == first.idempotency_key
        assert (second.from_state, second.to_state) == ("PENDING_KYC", "FUNDED")
        assert read_ledger(lambda s: s.audit_tags("L1")).count(AuditTag.STATE_TRANSITION) == 1
        assert len(read_ledger(lambda s: s.list_disbursements("L1"))) == 1

    def test_same_type_new_event_is_evaluated(self, workflow_engine, open_loan, make_event):
        open_loan("L1", state="MILESTONE_REVIEW")
        workflow_engine.handle_event(make_event("MILESTONE_REJECTED"))
        workflow_engine.handle_event(make_event("MILESTONE_SUBMITTED"))

        outcome = workflow_engine.handle_event(make_event("MILESTONE_REJECTED"))

        assert outcome.applied
        assert workflow_engine.current_state("L1") == "ISSUED"

    def test_existing_disbursement_is_reused(
        self, workflow_engine, open_loan, force_state, make_event, read_ledger,
    ):
        """Re-entering a funding transition does not pay the filing fee twice."""
        open_loan("L1")
        workflow_engine.handle_event(make_event("KYC_APPROVED"))
        force_state("L1", "PENDING_KYC")

        outcome = workflow_engine.handle_event(make_event("KYC_APPROVED"))

        assert outcome.applied
        assert outcome.created_disbursement_ids == ()
        assert len(read_ledger(lambda s: s.list_disbursements("L1"))) == 1
        assert read_ledger(lambda s: s.audit_tags("L1")).count(AuditTag.DISBURSEMENT_CREATED) == 1


class TestSettlement:

    def test_mark_disbursement_paid(self, workflow_engine, open_loan, make_event, read_ledger):
        open_loan("L1")
        outcome = workflow_engine.handle_event(make_event("KYC_APPROVED"))
        (disbursement_id,) = outcome.created_disbursement_ids

        record = workflow_engine.mark_disbursement_paid("L1", disbursement_id, actor="rails")

        assert record.is_paid
        assert read_ledger(lambda s: s.list_disbursements("L1"))[0].status is DisbursementStatus.PAID
        assert read_ledger(lambda s: s.audit_tags("L1"))[-1] is AuditTag.DISBURSEMENT_PAID


# =============================================================================
# Structured trace
# =============================================================================


class TestWorkflowTrace:

    def test_applied_trace(self, workflow_engine, open_loan, make_event, captured_logs):
        open_loan("L1")
        event = make_event("KYC_APPROVED", event_id="evt-1")
        workflow_engine.handle_event(event)

        traces = [r for r in captured_logs() if r["message"] == "workflow_transition"]
        assert len(traces) == 1
        trace = traces[0]
        assert trace["trace_type"] == "WORKFLOW_TRANSITION"
        assert trace["outcome"] == "applied"
        assert trace["from_state"] == "PENDING_KYC"
        assert trace["to_state"] == "FUNDED"
        assert trace["disbursements_created"] == 1
        assert trace["loan_id"] == "L1"
        assert trace["correlation_id"] == "evt-1"
        assert trace["workflow"] == "founder_loan:v1"

    def test_failed_trace_carries_error_code(self, workflow_engine, make_event, captured_logs):
        with pytest.raises(LoanNotFoundError):
            workflow_engine.handle_event(make_event("KYC_APPROVED", loan_id="GHOST"))

        trace = [r for r in captured_logs() if r["message"] == "workflow_transition"][0]
        assert trace["outcome"] == "failed"
        assert trace["error_code"] == "LOAN_NOT_FOUND"
        assert trace["level"] == "WARNING"

    def test_action_transition_commits_with_debug_logging(
        self, workflow_engine, open_loan, make_event, read_ledger, captured_logs,
    ):
        open_loan("L1")

        outcome = workflow_engine.handle_event(make_event("KYC_APPROVED"))

        assert outcome.applied
        assert workflow_engine.current_state("L1") == "FUNDED"
        assert len(read_ledger(lambda s: s.list_disbursements("L1"))) == 1
        dispatched = [r for r in captured_logs() if r["message"] == "action_dispatched"]
        assert dispatched[0]["loan_id"] == "L1"
        assert dispatched[0]["disbursement_created"] is True

    def test_context_is_unbound_afterwards(self, workflow_engine, open_loan, make_event):
        from lending_kernel.logging_config import LogContext

        open_loan("L1")
        workflow_engine.handle_event(make_event("KYC_APPROVED"))

        assert LogContext.get_all() == {}


# =============================================================================
# Property: the ledger follows the definition
# =============================================================================


EVENT_TYPES = [
    "KYC_APPROVED",
    "KYC_REJECTED",
    "LOAN_ISSUED",
    "MILESTONE_SUBMITTED",
    "MILESTONE_APPROVED",
    "MILESTONE_REJECTED",
    "GOVERNANCE_FREEZE",
    "GOVERNANCE_UNFREEZE",
    "LOAN_REPAID",
    "UNRELATED_NOISE",
]

_loan_numbers = itertools.count(1)


@settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
@given(event_types=st.lists(st.sampled_from(EVENT_TYPES), max_size=12))
def test_state_matches_definition_walk(
    event_types, workflow_engine, founder_loan_definition, make_event, read_ledger,
):
    loan_id = f"P{next(_loan_numbers)}"
    workflow_engine.open_loan(loan_id, "F1")

    expected = founder_loan_definition.initial_state
    applied = 0
    for event_type in event_types:
        transition = founder_loan_definition.find_state(expected).find_transition(event_type)
        outcome = workflow_engine.handle_event(make_event(event_type, loan_id=loan_id))
        if transition is None:
            assert outcome.status is OutcomeStatus.IGNORED
        else:
            assert outcome.applied
            expected = transition.to
            applied += 1

    assert workflow_engine.current_state(loan_id) == expected
    tags = read_ledger(lambda s: s.audit_tags(loan_id))
    assert len(tags) == 1 + len(event_types) + tags.count(AuditTag.DISBURSEMENT_CREATED)
    assert tags.count(AuditTag.STATE_TRANSITION) == applied
    kinds = [d.kind for d in read_ledger(lambda s: s.list_disbursements(loan_id))]
    assert len(kinds) == len(set(kinds))
