"""
DisbursementOrchestrator -- idempotent disbursement requests per loan.

Responsibility:
    Records disbursement requests against the ledger (one per loan and
    tranche) and marks them paid when settlement reports back.  It does not
    move money.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the workflow engine's
    action handlers inside the event's ledger transaction, and by the
    settlement path through ``WorkflowEngine.mark_disbursement_paid``.

Invariants enforced:
    - At most one record per (loan_id, kind).  A repeated request returns
      the existing record with ``created=False``.  The unique constraint
      resolves concurrent inserts: the loser's savepoint rolls back and it
      re-reads the winner's row.
    - PENDING -> PAID only; marking a paid record paid again is a no-op.

Failure modes:
    - DisbursementNotFoundError from ``mark_paid`` for an unknown record.
    - LedgerUnavailableError on ledger I/O failure.

Audit relevance:
    ``mark_paid`` appends one ``disbursement_paid`` entry.  Creation is
    audited by the action handler that requested it, so the entry sits in
    the same transaction as the triggering state transition.
"""

from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lending_kernel.domain.audit import AuditRecord, AuditTag
from lending_kernel.domain.clock import Clock, SystemClock
from lending_kernel.domain.events import SYSTEM_ACTOR
from lending_kernel.exceptions import DisbursementAlreadyExistsError
from lending_kernel.logging_config import get_logger
from lending_kernel.models.disbursement import (
    DisbursementKind,
    DisbursementRecord,
    DisbursementStatus,
)
from lending_kernel.services.ledger_service import LedgerService, ledger_operation

logger = get_logger("services.disbursement")


def _default_disbursement_id() -> str:
    return f"disb-{uuid4().hex}"


@dataclass(frozen=True)
class DisbursementResult:
    """Outcome of a disbursement request."""

    record: DisbursementRecord
    created: bool

    @property
    def disbursement_id(self) -> str:
        return self.record.disbursement_id

    @property
    def kind(self) -> DisbursementKind:
        return self.record.disbursement_kind


class DisbursementOrchestrator:
    """
    Creates and settles disbursement records.

    Contract:
        Works inside the caller's transaction; flushes, never commits.

    Non-goals:
        - Does NOT call payment rails.
        - Does NOT write ``disbursement_created`` audit entries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: LedgerService | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self._session = session
        self._clock = clock if clock is not None else SystemClock()
        self._ledger = ledger if ledger is not None else LedgerService(session, self._clock)
        self._id_factory = id_factory if id_factory is not None else _default_disbursement_id

    def submit(self, loan_id: str, kind: DisbursementKind) -> DisbursementRecord:
        """
        Insert a new disbursement record.

        Raises:
            DisbursementAlreadyExistsError: (loan_id, kind) already has one.
        """
        kind = DisbursementKind(kind)
        existing = self._ledger.find_disbursement(loan_id, kind)
        if existing is not None:
            raise DisbursementAlreadyExistsError(loan_id, kind.value, existing.disbursement_id)

        record = DisbursementRecord(
            disbursement_id=self._id_factory(),
            loan_id=loan_id,
            kind=kind.value,
            status=DisbursementStatus.PENDING.value,
            created_at=self._clock.now(),
        )
        with ledger_operation("create_disbursement"):
            savepoint = self._session.begin_nested()
            try:
                self._session.add(record)
                self._session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                winner = self._ledger.find_disbursement(loan_id, kind)
                if winner is None:
                    raise
                raise DisbursementAlreadyExistsError(
                    loan_id, kind.value, winner.disbursement_id,
                ) from None
        return record

    def create_disbursement(
        self,
        loan_id: str,
        kind: DisbursementKind,
    ) -> DisbursementResult:
        """
        Request a disbursement, idempotently.

        Postconditions:
            - Exactly one record exists for (loan_id, kind).
            - ``created`` is True only for the call that inserted it.
        """
        try:
            record = self.submit(loan_id, kind)
        except DisbursementAlreadyExistsError as exc:
            logger.info(
                "disbursement_already_exists",
                extra={
                    "loan_id": loan_id,
                    "kind": exc.kind,
                    "disbursement_id": exc.disbursement_id,
                },
            )
            record = self._ledger.get_disbursement(loan_id, exc.disbursement_id)
            return DisbursementResult(record=record, created=False)

        logger.info(
            "disbursement_created",
            extra={
                "loan_id": loan_id,
                "kind": record.kind,
                "disbursement_id": record.disbursement_id,
            },
        )
        return DisbursementResult(record=record, created=True)

    def mark_paid(
        self,
        loan_id: str,
        disbursement_id: str,
        actor: str = SYSTEM_ACTOR,
    ) -> DisbursementRecord:
        """
        Mark a disbursement PAID and audit it.

        Idempotent: a record that is already paid is returned unchanged and
        no second ``disbursement_paid`` entry is written.

        Raises:
            DisbursementNotFoundError: no such record for this loan.
        """
        record = self._ledger.get_disbursement(loan_id, disbursement_id)
        if record.is_paid:
            logger.info(
                "disbursement_already_paid",
                extra={"loan_id": loan_id, "disbursement_id": disbursement_id},
            )
            return record

        now = self._clock.now()
        record.status = DisbursementStatus.PAID.value
        record.paid_at = now
        with ledger_operation("mark_paid"):
            self._session.flush()

        self._ledger.append_log(
            loan_id,
            AuditRecord(
                timestamp=now,
                actor=actor,
                event=AuditTag.DISBURSEMENT_PAID,
                details=f"Disbursement {disbursement_id} ({record.kind}) marked paid",
                attributes={
                    "disbursement_id": disbursement_id,
                    "kind": record.kind,
                },
            ),
        )
        logger.info(
            "disbursement_paid",
            extra={"loan_id": loan_id, "disbursement_id": disbursement_id},
        )
        return record
