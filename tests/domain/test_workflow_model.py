"""
Tests for the pure workflow domain: process definition lookups, workflow
events and the inbound event parser.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from lending_kernel.domain.clock import DeterministicClock
from lending_kernel.domain.events import SYSTEM_ACTOR, WorkflowEvent, parse_workflow_event
from lending_kernel.domain.workflow import (
    Action,
    ActionKind,
    ProcessDefinition,
    State,
    Transition,
)
from lending_kernel.exceptions import InvalidEventFieldError, MissingEventFieldError

T0 = datetime(2024, 3, 1, 9, 30, tzinfo=UTC)


def _review_state() -> State:
    return State(
        id="MILESTONE_REVIEW",
        transitions=(
            Transition(on="MILESTONE_APPROVED", to="DISBURSED",
                       actions=(Action.from_trigger("DISBURSEMENT_2"),)),
            Transition(on="MILESTONE_APPROVED", to="FROZEN"),
            Transition(on="GOVERNANCE_FREEZE", to="FROZEN"),
        ),
    )


class TestProcessDefinition:

    def test_first_matching_transition_wins(self):
        transition = _review_state().find_transition("MILESTONE_APPROVED")
        assert transition.to == "DISBURSED"

    def test_no_match_returns_none(self):
        assert _review_state().find_transition("LOAN_REPAID") is None

    def test_trigger_match_is_exact(self):
        assert _review_state().find_transition("milestone_approved") is None

    def test_terminal_state(self):
        assert State(id="CLOSED").is_terminal
        assert not _review_state().is_terminal

    def test_find_state_and_label(self, founder_loan_definition):
        assert founder_loan_definition.find_state("FUNDED") is not None
        assert founder_loan_definition.find_state("LIMBO") is None
        assert founder_loan_definition.label == "founder_loan:v1"

    def test_first_declared_state_wins(self):
        definition = ProcessDefinition(
            name="d", version=1, initial_state="A",
            states=(State(id="A", description="first"), State(id="A", description="second")),
        )
        assert definition.find_state("A").description == "first"

    def test_transitions_in_definition_order(self, founder_loan_definition):
        pairs = founder_loan_definition.transitions()
        assert pairs[0][0] == "PENDING_KYC"
        assert pairs[0][1].on == "KYC_APPROVED"

    def test_action_kinds(self):
        assert ActionKind.from_trigger("DISBURSEMENT_1") is ActionKind.FIRST_DISBURSEMENT
        assert ActionKind.from_trigger("DISBURSEMENT_2") is ActionKind.SECOND_DISBURSEMENT
        assert ActionKind.from_trigger("UNRECOGNIZED") is ActionKind.UNRECOGNIZED
        assert not Action.from_trigger("NOTIFY_FOUNDER").is_recognized

    def test_founder_loan_graph(self, founder_loan_definition):
        kyc = founder_loan_definition.find_state("PENDING_KYC").find_transition("KYC_APPROVED")
        assert kyc.to == "FUNDED"
        assert [a.kind for a in kyc.actions] == [ActionKind.FIRST_DISBURSEMENT]

        review = founder_loan_definition.find_state("MILESTONE_REVIEW")
        approved = review.find_transition("MILESTONE_APPROVED")
        assert approved.to == "DISBURSED"
        assert [a.kind for a in approved.actions] == [ActionKind.SECOND_DISBURSEMENT]
        assert review.find_transition("GOVERNANCE_FREEZE").to == "FROZEN"
        assert founder_loan_definition.find_state("CLOSED").is_terminal


class TestWorkflowEvent:

    def test_requires_aware_timestamp(self):
        with pytest.raises(InvalidEventFieldError):
            WorkflowEvent(
                type="KYC_APPROVED", loan_id="L1", founder_id="F1",
                occurred_at=datetime(2024, 1, 1),
            )

    def test_payload_is_read_only_copy(self):
        payload = {"reviewer": "r1"}
        event = WorkflowEvent(
            type="KYC_APPROVED", loan_id="L1", founder_id="F1",
            occurred_at=T0, payload=payload,
        )
        payload["reviewer"] = "changed"

        assert event.payload["reviewer"] == "r1"
        with pytest.raises(TypeError):
            event.payload["reviewer"] = "x"

    def test_identity_prefers_event_id(self):
        with_id = WorkflowEvent("E", "L1", "F1", T0, event_id="evt-1")
        without_id = WorkflowEvent("E", "L1", "F1", T0)

        assert with_id.identity == "evt-1"
        assert without_id.identity == T0.isoformat()


class TestParseWorkflowEvent:

    def _data(self, **overrides):
        data = {
            "type": "KYC_APPROVED",
            "loan_id": "L1",
            "founder_id": "F1",
            "occurred_at": "2024-03-01T09:30:00Z",
        }
        data.update(overrides)
        return data

    def test_full_event(self):
        event = parse_workflow_event(self._data(
            payload={"score": 9}, actor="kyc-bot", event_id="evt-9",
        ))

        assert event.type == "KYC_APPROVED"
        assert event.occurred_at == T0
        assert event.payload == {"score": 9}
        assert event.actor == "kyc-bot"
        assert event.event_id == "evt-9"

    def test_defaults(self):
        clock = DeterministicClock()
        data = self._data()
        del data["occurred_at"]

        event = parse_workflow_event(data, clock=clock)

        assert event.occurred_at == clock.now()
        assert event.actor == SYSTEM_ACTOR
        assert event.event_id is None
        assert event.payload == {}

    def test_offset_preserved(self):
        event = parse_workflow_event(self._data(occurred_at="2024-03-01T11:30:00+02:00"))
        assert event.occurred_at.utcoffset() == timedelta(hours=2)
        assert event.occurred_at == T0

    def test_datetime_value_accepted(self):
        stamp = datetime(2024, 3, 1, 9, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert parse_workflow_event(self._data(occurred_at=stamp)).occurred_at == stamp

    @pytest.mark.parametrize("name", ["type", "loan_id", "founder_id"])
    def test_missing_required_field(self, name):
        data = self._data()
        del data[name]
        with pytest.raises(MissingEventFieldError) as exc_info:
            parse_workflow_event(data)
        assert exc_info.value.field_name == name
        assert exc_info.value.code == "MISSING_EVENT_FIELD"

    def test_governance_resolution_without_type_rejected(self):
        """A governance resolution must name its event type; none is inferred."""
        data = self._data(payload={"resolution": "freeze"})
        del data["type"]
        with pytest.raises(MissingEventFieldError):
            parse_workflow_event(data)

    def test_blank_required_field(self):
        with pytest.raises(MissingEventFieldError):
            parse_workflow_event(self._data(loan_id="   "))

    def test_non_string_field(self):
        with pytest.raises(InvalidEventFieldError) as exc_info:
            parse_workflow_event(self._data(loan_id=17))
        assert exc_info.value.field_name == "loan_id"

    def test_naive_timestamp_rejected(self):
        with pytest.raises(InvalidEventFieldError):
            parse_workflow_event(self._data(occurred_at="2024-03-01T09:30:00"))

    def test_garbage_timestamp_rejected(self):
        with pytest.raises(InvalidEventFieldError):
            parse_workflow_event(self._data(occurred_at="yesterday"))

    def test_payload_must_be_mapping(self):
        with pytest.raises(InvalidEventFieldError):
            parse_workflow_event(self._data(payload=["a"]))


class TestDeterministicClock:

    def test_fixed_until_advanced(self):
        clock = DeterministicClock(T0)
        assert clock.now() == clock.now() == T0
        clock.advance(5)
        assert clock.now() == T0 + timedelta(seconds=5)
        assert clock.tick() == T0 + timedelta(seconds=6)

    def test_set_time_resets_offset(self):
        clock = DeterministicClock(T0)
        clock.advance(10)
        later = T0 + timedelta(days=1)
        clock.set_time(later)
        assert clock.now() == later
        assert clock.now_utc().tzinfo is not None
