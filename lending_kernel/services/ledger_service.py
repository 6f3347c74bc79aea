"""
LedgerService -- loan state, audit log and disbursement records.

Responsibility:
    The single write path for the lending ledger: opens loans, moves a loan's
    state (compare-and-set), appends sequenced, hash-chained audit entries,
    and looks up disbursement records.  Also verifies a loan's audit chain.

Architecture position:
    Kernel > Services -- imperative shell, called by the workflow engine,
    the disbursement orchestrator and action handlers.  Flushes only; the
    caller owns the transaction.

Invariants enforced:
    - Audit entries are sequenced per loan by SequenceService and chained:
      ``hash = H(loan_id | seq | event | payload_hash | prev_hash)``.
    - ``update_state`` is compare-and-set: with ``expected_state`` given, a
      loan found in any other state raises OptimisticLockError.  The loan
      row's version column catches writers that bypassed the row lock.
    - A state_transition entry's idempotency key is unique; a second one
      raises DuplicateTransitionError.

Failure modes:
    - LoanNotFoundError / DisbursementNotFoundError for absent rows.
    - LoanAlreadyExistsError from ``open_loan``.
    - OptimisticLockError on a lost state race.
    - LedgerUnavailableError wrapping any other SQLAlchemy error.
    - AuditChainBrokenError from ``verify_audit_chain``.

Audit relevance:
    Every audit entry in the system is created by ``append_log``.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from lending_kernel.domain.audit import AuditRecord, AuditTag
from lending_kernel.domain.clock import Clock, SystemClock
from lending_kernel.domain.events import SYSTEM_ACTOR
from lending_kernel.domain.workflow import ProcessDefinition
from lending_kernel.exceptions import (
    AuditChainBrokenError,
    DisbursementNotFoundError,
    DuplicateTransitionError,
    LedgerUnavailableError,
    LoanAlreadyExistsError,
    LoanNotFoundError,
    OptimisticLockError,
)
from lending_kernel.logging_config import get_logger
from lending_kernel.models.audit_entry import AuditLogEntry
from lending_kernel.models.disbursement import DisbursementKind, DisbursementRecord
from lending_kernel.models.loan import Loan
from lending_kernel.services.base import BaseService
from lending_kernel.services.sequence_service import SequenceService
from lending_kernel.utils.hashing import hash_audit_entry, hash_payload

logger = get_logger("services.ledger")


@contextmanager
def ledger_operation(operation: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as LedgerUnavailableError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error(
            "ledger_unavailable",
            extra={"operation": operation, "error_type": type(exc).__name__},
        )
        raise LedgerUnavailableError(operation, str(exc)) from exc


class LedgerService(BaseService[Loan]):
    """
    Write-side access to the lending ledger.

    Contract:
        All methods run inside the caller's transaction and flush their
        changes.  Nothing here commits.

    Non-goals:
        - Does NOT interpret the process definition beyond recording which
          one a loan was opened under.
        - Does NOT run read models; see ``LedgerSelector``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock if clock is not None else SystemClock()
        self._sequences = SequenceService(session)

    # Loans

    def get_loan(self, loan_id: str, for_update: bool = False) -> Loan | None:
        """
        Fetch a loan by business id.

        With ``for_update`` the row is locked until the transaction ends
        (``SELECT ... FOR UPDATE``; a no-op on SQLite, where BEGIN IMMEDIATE
        already holds the database write lock).
        """
        stmt = select(Loan).where(Loan.loan_id == loan_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        with ledger_operation("get_loan"):
            return self.session.execute(stmt).scalar_one_or_none()

    def require_loan(self, loan_id: str, for_update: bool = False) -> Loan:
        loan = self.get_loan(loan_id, for_update=for_update)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def open_loan(
        self,
        loan_id: str,
        founder_id: str,
        definition: ProcessDefinition,
        actor: str = SYSTEM_ACTOR,
    ) -> Loan:
        """
        Create a loan in the definition's initial state.

        Appends a ``loan_opened`` entry as the genesis of the loan's chain.

        Raises:
            LoanAlreadyExistsError: ``loan_id`` is taken.
        """
        if self.get_loan(loan_id) is not None:
            raise LoanAlreadyExistsError(loan_id)

        loan = Loan(
            loan_id=loan_id,
            founder_id=founder_id,
            status_state=definition.initial_state,
            definition_name=definition.name,
            definition_version=definition.version,
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(loan)
            self.session.flush()
            savepoint.commit()
        except IntegrityError as exc:
            savepoint.rollback()
            raise LoanAlreadyExistsError(loan_id) from exc

        self.append_log(
            loan_id,
            AuditRecord(
                timestamp=self._clock.now(),
                actor=actor,
                event=AuditTag.LOAN_OPENED,
                details=(
                    f"Loan opened for founder {founder_id} in state "
                    f"{definition.initial_state} ({definition.label})"
                ),
                attributes={
                    "founder_id": founder_id,
                    "initial_state": definition.initial_state,
                    "definition": definition.name,
                    "definition_version": definition.version,
                },
            ),
        )

        logger.info(
            "loan_opened",
            extra={
                "loan_id": loan_id,
                "founder_id": founder_id,
                "initial_state": definition.initial_state,
                "definition": definition.label,
            },
        )
        return loan

    def update_state(
        self,
        loan_id: str,
        new_state: str,
        expected_state: str | None = None,
    ) -> Loan:
        """
        Move a loan to ``new_state``.

        Preconditions:
            - With ``expected_state``, the loan must currently be in it.

        Raises:
            LoanNotFoundError: no such loan.
            OptimisticLockError: the loan is not in ``expected_state``, or
                its version moved under this transaction.
        """
        loan = self.require_loan(loan_id)
        if expected_state is not None and loan.status_state != expected_state:
            raise OptimisticLockError(loan_id, expected_state, loan.status_state)

        previous = loan.status_state
        loan.status_state = new_state
        with ledger_operation("update_state"):
            try:
                self.session.flush()
            except StaleDataError as exc:
                logger.warning(
                    "loan_version_conflict",
                    extra={"loan_id": loan_id, "expected_state": previous},
                )
                raise OptimisticLockError(loan_id, previous, None) from exc

        logger.debug(
            "loan_state_updated",
            extra={"loan_id": loan_id, "from_state": previous, "to_state": new_state},
        )
        return loan

    # Audit log

    def _last_entry(self, loan_id: str) -> AuditLogEntry | None:
        return self.session.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.loan_id == loan_id)
            .order_by(AuditLogEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _next_entry(self, loan_id: str, record: AuditRecord) -> AuditLogEntry:
        seq = self._sequences.next_value(SequenceService.loan_audit_sequence(loan_id))
        last = self._last_entry(loan_id)
        prev_hash = last.hash if last is not None else None

        entry = AuditLogEntry(
            loan_id=loan_id,
            seq=seq,
            timestamp=record.timestamp.astimezone(UTC),
            recorded_at=self._clock.now().astimezone(UTC),
            actor=record.actor,
            event=record.event.value,
            details=record.details,
            attributes=dict(record.attributes),
            idempotency_key=record.idempotency_key,
        )
        entry.payload_hash = hash_payload(entry.hash_fields())
        entry.prev_hash = prev_hash
        entry.hash = hash_audit_entry(
            loan_id=loan_id,
            seq=seq,
            event=record.event.value,
            payload_hash=entry.payload_hash,
            prev_hash=prev_hash,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def append_log(self, loan_id: str, record: AuditRecord) -> AuditLogEntry:
        """
        Append one entry to the loan's audit log.

        Postconditions:
            - The entry is flushed with the next per-loan ``seq`` and linked
              to the loan's previous entry by ``prev_hash``.
            - A rejected duplicate consumes no ``seq``.

        Raises:
            DuplicateTransitionError: ``record.idempotency_key`` is already
                recorded.
            LedgerUnavailableError: any other ledger failure.
        """
        with ledger_operation("append_log"):
            if record.idempotency_key is None:
                entry = self._next_entry(loan_id, record)
            else:
                savepoint = self.session.begin_nested()
                try:
                    entry = self._next_entry(loan_id, record)
                    savepoint.commit()
                except IntegrityError as exc:
                    savepoint.rollback()
                    if self.find_transition_entry(record.idempotency_key) is None:
                        raise
                    raise DuplicateTransitionError(loan_id, record.idempotency_key) from exc

        logger.info(
            "audit_entry_appended",
            extra={
                "loan_id": loan_id,
                "seq": entry.seq,
                "audit_event": record.event.value,
            },
        )
        return entry

    def find_transition_entry(self, idempotency_key: str) -> AuditLogEntry | None:
        """The state_transition entry recorded under ``idempotency_key``, if any."""
        with ledger_operation("find_transition_entry"):
            return self.session.execute(
                select(AuditLogEntry).where(
                    AuditLogEntry.idempotency_key == idempotency_key
                )
            ).scalar_one_or_none()

    def verify_audit_chain(self, loan_id: str) -> bool:
        """
        Validate a loan's audit hash chain.

        Recomputes every entry's payload hash from its stored content and its
        chain hash from its predecessor.

        Raises:
            AuditChainBrokenError: at the first entry that does not match.
        """
        with ledger_operation("verify_audit_chain"):
            entries = self.session.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.loan_id == loan_id)
                .order_by(AuditLogEntry.seq)
            ).scalars().all()

        prev_hash: str | None = None
        for entry in entries:
            if entry.prev_hash != prev_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"loan_id": loan_id, "seq": entry.seq, "check": "linkage"},
                )
                raise AuditChainBrokenError(loan_id, entry.seq, prev_hash, entry.prev_hash)

            payload_hash = hash_payload(entry.hash_fields())
            expected_hash = hash_audit_entry(
                loan_id=entry.loan_id,
                seq=entry.seq,
                event=entry.tag.value,
                payload_hash=payload_hash,
                prev_hash=entry.prev_hash,
            )
            if payload_hash != entry.payload_hash or expected_hash != entry.hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"loan_id": loan_id, "seq": entry.seq, "check": "content"},
                )
                raise AuditChainBrokenError(loan_id, entry.seq, expected_hash, entry.hash)

            prev_hash = entry.hash

        return True

    # Disbursements

    def find_disbursement(
        self,
        loan_id: str,
        kind: DisbursementKind,
    ) -> DisbursementRecord | None:
        with ledger_operation("find_disbursement"):
            return self.session.execute(
                select(DisbursementRecord)
                .where(DisbursementRecord.loan_id == loan_id)
                .where(DisbursementRecord.kind == DisbursementKind(kind).value)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()

    def get_disbursement(self, loan_id: str, disbursement_id: str) -> DisbursementRecord:
        """
        Disbursement accessor keyed by ``(loan_id, disbursement_id)``.

        Raises:
            DisbursementNotFoundError: no such record for this loan.
        """
        with ledger_operation("get_disbursement"):
            record = self.session.execute(
                select(DisbursementRecord)
                .where(DisbursementRecord.loan_id == loan_id)
                .where(DisbursementRecord.disbursement_id == disbursement_id)
            ).scalar_one_or_none()
        if record is None:
            raise DisbursementNotFoundError(loan_id, disbursement_id)
        return record
