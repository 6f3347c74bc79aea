"""
lending_services.workflow_engine -- the loan lifecycle interpreter.

Responsibility:
    Applies one inbound ``WorkflowEvent`` to one loan: reads the loan's
    state from the ledger, finds the matching transition in the process
    definition, runs its actions, moves the state and writes the audit
    trail.  Everything the event changes commits together or not at all.

Architecture position:
    Services -- the root of the dependency graph.  Uses the kernel's ledger
    and disbursement services, the frozen process definition, the action
    dispatcher and the per-loan lock table.

Invariants enforced:
    - Per-loan serialization: the loan lock is held from the state read to
      the commit; the loan row is also read FOR UPDATE.  Distinct loans
      never wait on each other's locks.
    - All-or-nothing: one ledger transaction per event.  Any failure before
      commit rolls back disbursements, audit entries and the state change.
    - Audit completeness: an ignored event writes exactly one
      ``ignored_event`` entry; an applied transition writes exactly one
      ``state_transition`` entry, after every action entry.
    - Idempotent retry: the ``state_transition`` entry carries the event's
      idempotency key.  Re-handling an event whose transition already
      committed returns a DUPLICATE outcome and writes nothing.
    - Cancellation is honoured up to the commit, which is the point of no
      return.

Failure modes:
    - LoanNotFoundError: no such loan; nothing is written.
    - InvalidStateError: the loan's state is not in the definition.
    - EventCancelledError: the caller's cancel token was set before commit.
    - LoanLockTimeoutError / OptimisticLockError: concurrency conflicts.
    - LedgerUnavailableError / DisbursementServiceError: collaborator
      failures.  The engine never retries; callers may safely re-submit.

Audit relevance:
    Every call emits one ``workflow_transition`` trace with the outcome
    code and duration, whether it applied, ignored, deduplicated or failed.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from lending_kernel.db.engine import get_session_factory
from lending_kernel.domain.audit import AuditRecord, AuditTag
from lending_kernel.domain.clock import Clock, SystemClock
from lending_kernel.domain.events import SYSTEM_ACTOR, WorkflowEvent
from lending_kernel.domain.workflow import ProcessDefinition
from lending_kernel.exceptions import (
    DuplicateTransitionError,
    EventCancelledError,
    InvalidStateError,
    LendingKernelError,
)
from lending_kernel.logging_config import LogContext, get_logger
from lending_kernel.models.disbursement import DisbursementRecord
from lending_kernel.models.loan import Loan
from lending_kernel.selectors.ledger_selector import AuditEntryView, LedgerSelector
from lending_kernel.services.disbursement_orchestrator import DisbursementOrchestrator
from lending_kernel.services.ledger_service import LedgerService, ledger_operation
from lending_kernel.utils.idempotency import generate_idempotency_key
from lending_services.action_dispatch import ActionContext, ActionDispatcher, ActionResult
from lending_services.loan_locks import LoanLockTable

logger = get_logger("services.workflow_engine")

# Trace message and outcome codes for structured logging
TRACE_TYPE_WORKFLOW_TRANSITION = "WORKFLOW_TRANSITION"
OUTCOME_APPLIED = "applied"
OUTCOME_IGNORED = "ignored"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_FAILED = "failed"

OrchestratorFactory = Callable[[Session, Clock, LedgerService], DisbursementOrchestrator]


def _default_orchestrator(
    session: Session,
    clock: Clock,
    ledger: LedgerService,
) -> DisbursementOrchestrator:
    return DisbursementOrchestrator(session, clock=clock, ledger=ledger)


class OutcomeStatus(str, Enum):
    APPLIED = OUTCOME_APPLIED
    IGNORED = OUTCOME_IGNORED
    DUPLICATE = OUTCOME_DUPLICATE


@dataclass(frozen=True)
class TransitionOutcome:
    """What ``handle_event`` did."""

    status: OutcomeStatus
    loan_id: str
    event_type: str
    from_state: str
    to_state: str | None = None
    disbursements: tuple[ActionResult, ...] = ()
    unknown_actions: tuple[str, ...] = ()
    idempotency_key: str | None = None

    @property
    def applied(self) -> bool:
        return self.status is OutcomeStatus.APPLIED

    @property
    def created_disbursement_ids(self) -> tuple[str, ...]:
        return tuple(
            r.disbursement_id for r in self.disbursements
            if r.created and r.disbursement_id is not None
        )


def _emit_workflow_trace(
    definition: ProcessDefinition,
    event: WorkflowEvent,
    outcome: str,
    reason: str,
    duration_ms: float,
    from_state: str | None = None,
    to_state: str | None = None,
    disbursements_created: int = 0,
    unknown_actions: int = 0,
    error_code: str | None = None,
) -> None:
    """Emit a structured workflow transition record for traceability."""
    record: dict[str, Any] = {
        "trace_type": TRACE_TYPE_WORKFLOW_TRANSITION,
        "ts": datetime.now(UTC).isoformat(),
        "workflow": definition.label,
        "event_occurred_at": event.occurred_at.isoformat(),
        "outcome": outcome,
        "reason": reason,
        "duration_ms": round(duration_ms, 3),
        "disbursements_created": disbursements_created,
        "unknown_actions": unknown_actions,
    }
    if from_state is not None:
        record["from_state"] = from_state
    if to_state is not None:
        record["to_state"] = to_state
    if error_code is not None:
        record["error_code"] = error_code
    record.update(LogContext.get_all())
    if outcome == OUTCOME_FAILED:
        logger.warning("workflow_transition", extra=record)
    else:
        logger.info("workflow_transition", extra=record)


def _check_cancelled(
    cancel: threading.Event | None,
    event: WorkflowEvent,
    stage: str,
) -> None:
    if cancel is not None and cancel.is_set():
        raise EventCancelledError(event.loan_id, event.type, stage)


class WorkflowEngine:
    """
    Interprets a process definition against ledger-held loan state.

    Contract:
        ``handle_event`` is safe to call from many threads at once.  The
        engine holds no loan state between calls; every call re-reads it.

    Non-goals:
        - Does NOT retry.  Callers own retry policy.
        - Does NOT reload the definition; build a new engine for that.
    """

    def __init__(
        self,
        definition: ProcessDefinition,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        locks: LoanLockTable | None = None,
        dispatcher: ActionDispatcher | None = None,
        orchestrator_factory: OrchestratorFactory | None = None,
        lock_timeout: float | None = None,
    ):
        self._definition = definition
        self._session_factory = (
            session_factory if session_factory is not None else get_session_factory()
        )
        self._clock = clock if clock is not None else SystemClock()
        self._locks = locks if locks is not None else LoanLockTable()
        self._dispatcher = dispatcher if dispatcher is not None else ActionDispatcher()
        self._orchestrator_factory = (
            orchestrator_factory if orchestrator_factory is not None else _default_orchestrator
        )
        self._lock_timeout = lock_timeout

    @property
    def definition(self) -> ProcessDefinition:
        return self._definition

    @property
    def locks(self) -> LoanLockTable:
        return self._locks

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_event(
        self,
        event: WorkflowEvent,
        cancel: threading.Event | None = None,
    ) -> TransitionOutcome:
        """
        Apply ``event`` to its loan.

        Args:
            event: The inbound event.
            cancel: Optional token.  Checked after the loan lock is taken,
                before each action and just before commit.

        Returns:
            TransitionOutcome with status APPLIED, IGNORED or DUPLICATE.

        Raises:
            LoanNotFoundError, InvalidStateError, EventCancelledError,
            LoanLockTimeoutError, OptimisticLockError,
            LedgerUnavailableError, DisbursementServiceError.
        """
        t0 = time.monotonic()
        key = generate_idempotency_key(event.loan_id, event.type, event.identity)

        with LogContext.bind(
            correlation_id=event.event_id,
            loan_id=event.loan_id,
            event_type=event.type,
            actor=event.actor,
        ):
            try:
                with self._locks.hold(event.loan_id, self._lock_timeout):
                    _check_cancelled(cancel, event, "lock_acquired")
                    outcome = self._apply(event, key, cancel)
            except LendingKernelError as exc:
                _emit_workflow_trace(
                    self._definition,
                    event,
                    outcome=OUTCOME_FAILED,
                    reason=str(exc),
                    duration_ms=(time.monotonic() - t0) * 1000,
                    error_code=exc.code,
                )
                raise

            _emit_workflow_trace(
                self._definition,
                event,
                outcome=outcome.status.value,
                reason=self._reason(outcome),
                duration_ms=(time.monotonic() - t0) * 1000,
                from_state=outcome.from_state,
                to_state=outcome.to_state,
                disbursements_created=len(outcome.created_disbursement_ids),
                unknown_actions=len(outcome.unknown_actions),
            )
            return outcome

    @staticmethod
    def _reason(outcome: TransitionOutcome) -> str:
        if outcome.status is OutcomeStatus.IGNORED:
            return f"No transition from '{outcome.from_state}' on '{outcome.event_type}'"
        if outcome.status is OutcomeStatus.DUPLICATE:
            return "Transition already committed for this event"
        return f"Transitioned '{outcome.from_state}' -> '{outcome.to_state}'"

    def _apply(
        self,
        event: WorkflowEvent,
        key: str,
        cancel: threading.Event | None,
    ) -> TransitionOutcome:
        session = self._session_factory()
        try:
            ledger = LedgerService(session, self._clock)

            loan = ledger.require_loan(event.loan_id, for_update=True)
            current = loan.status_state
            state = self._definition.find_state(current)
            if state is None:
                logger.error(
                    "loan_state_not_in_definition",
                    extra={"state": current, "workflow": self._definition.label},
                )
                raise InvalidStateError(event.loan_id, current, self._definition.name)

            existing = ledger.find_transition_entry(key)
            if existing is not None:
                attributes = dict(existing.attributes or {})
                session.rollback()
                return self._duplicate_outcome(event, key, attributes)

            transition = state.find_transition(event.type)
            if transition is None:
                ledger.append_log(
                    event.loan_id,
                    AuditRecord(
                        timestamp=event.occurred_at,
                        actor=event.actor,
                        event=AuditTag.IGNORED_EVENT,
                        details=f"Event {event.type} ignored: no transition from state {current}",
                        attributes={"event_type": event.type, "state": current},
                    ),
                )
                _check_cancelled(cancel, event, "commit")
                self._commit(session)
                return TransitionOutcome(
                    status=OutcomeStatus.IGNORED,
                    loan_id=event.loan_id,
                    event_type=event.type,
                    from_state=current,
                )

            orchestrator = self._orchestrator_factory(session, self._clock, ledger)
            ctx = ActionContext(
                event=event,
                from_state=current,
                to_state=transition.to,
                ledger=ledger,
                orchestrator=orchestrator,
            )
            results: list[ActionResult] = []
            for action in transition.actions:
                _check_cancelled(cancel, event, f"action:{action.trigger}")
                results.append(self._dispatcher.dispatch(action, ctx))

            ledger.update_state(event.loan_id, transition.to, expected_state=current)
            ledger.append_log(
                event.loan_id,
                AuditRecord(
                    timestamp=event.occurred_at,
                    actor=event.actor,
                    event=AuditTag.STATE_TRANSITION,
                    details=f"{current} -> {transition.to} on {event.type}",
                    attributes={
                        "from_state": current,
                        "to_state": transition.to,
                        "event_type": event.type,
                    },
                    idempotency_key=key,
                ),
            )

            _check_cancelled(cancel, event, "commit")
            self._commit(session)
        except DuplicateTransitionError:
            session.rollback()
            with ledger_operation("find_transition_entry"):
                entry = LedgerService(session, self._clock).find_transition_entry(key)
            attributes = dict(entry.attributes or {}) if entry is not None else {}
            session.rollback()
            return self._duplicate_outcome(event, key, attributes)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        return TransitionOutcome(
            status=OutcomeStatus.APPLIED,
            loan_id=event.loan_id,
            event_type=event.type,
            from_state=current,
            to_state=transition.to,
            disbursements=tuple(r for r in results if r.disbursement_id is not None),
            unknown_actions=tuple(r.trigger for r in results if not r.recognized),
            idempotency_key=key,
        )

    @staticmethod
    def _commit(session: Session) -> None:
        # Point of no return: once this succeeds the transition is durable.
        with ledger_operation("commit"):
            session.commit()

    @staticmethod
    def _duplicate_outcome(
        event: WorkflowEvent,
        key: str,
        attributes: Any,
    ) -> TransitionOutcome:
        logger.info("workflow_event_duplicate", extra={"idempotency_key": key})
        attributes = attributes or {}
        return TransitionOutcome(
            status=OutcomeStatus.DUPLICATE,
            loan_id=event.loan_id,
            event_type=event.type,
            from_state=attributes.get("from_state", ""),
            to_state=attributes.get("to_state"),
            idempotency_key=key,
        )

    # ------------------------------------------------------------------
    # Ledger-facing helpers
    # ------------------------------------------------------------------

    def open_loan(self, loan_id: str, founder_id: str, actor: str = SYSTEM_ACTOR) -> Loan:
        """Open a loan in the definition's initial state."""
        with self._locks.hold(loan_id, self._lock_timeout):
            session = self._session_factory()
            try:
                loan = LedgerService(session, self._clock).open_loan(
                    loan_id, founder_id, self._definition, actor=actor,
                )
                self._commit(session)
                return loan
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def mark_disbursement_paid(
        self,
        loan_id: str,
        disbursement_id: str,
        actor: str = SYSTEM_ACTOR,
    ) -> DisbursementRecord:
        """Settlement callback: mark a disbursement PAID under the loan lock."""
        with self._locks.hold(loan_id, self._lock_timeout):
            session = self._session_factory()
            try:
                ledger = LedgerService(session, self._clock)
                orchestrator = self._orchestrator_factory(session, self._clock, ledger)
                record = orchestrator.mark_paid(loan_id, disbursement_id, actor=actor)
                self._commit(session)
                return record
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def current_state(self, loan_id: str) -> str:
        """The loan's state as committed in the ledger."""
        session = self._session_factory()
        try:
            return LedgerService(session, self._clock).require_loan(loan_id).status_state
        finally:
            session.close()

    def audit_log(self, loan_id: str) -> list[AuditEntryView]:
        """The loan's audit log in ledger order."""
        session = self._session_factory()
        try:
            with ledger_operation("audit_log"):
                return LedgerSelector(session).get_audit_log(loan_id)
        finally:
            session.close()
