"""
Module: lending_kernel.models.loan
Responsibility: ORM persistence for the loan's workflow position.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - loan_id is unique (uq_loan_id).
    - status_state names a state of the process definition the loan was
      opened under.  Checked at runtime by the workflow engine, which raises
      InvalidStateError on drift rather than repairing the row.
    - version is bumped on every UPDATE and checked in the UPDATE's WHERE
      clause (SQLAlchemy version_id_col), so a concurrent writer that slipped
      past the row lock fails with StaleDataError instead of overwriting.

Failure modes:
    - IntegrityError on duplicate loan_id (LedgerService maps it to
      LoanAlreadyExistsError).
    - StaleDataError on a lost version race (mapped to OptimisticLockError).

Audit relevance:
    Every change to status_state is paired, in the same transaction, with a
    state_transition entry in the loan audit log.
"""

from sqlalchemy import BigInteger, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from lending_kernel.db.base import TrackedBase


class Loan(TrackedBase):
    """
    A loan and its current position in the lifecycle.

    Contract:
        Owned by the ledger.  The workflow engine reads it fresh on every
        event and changes it only through ``LedgerService.update_state``.
    """

    __tablename__ = "loans"

    __table_args__ = (
        UniqueConstraint("loan_id", name="uq_loan_id"),
        Index("idx_loan_founder", "founder_id"),
    )

    loan_id: Mapped[str] = mapped_column(String(100), nullable=False)

    founder_id: Mapped[str] = mapped_column(String(100), nullable=False)

    status_state: Mapped[str] = mapped_column(String(100), nullable=False)

    # Definition the loan was opened under (drift diagnosis)
    definition_name: Mapped[str] = mapped_column(String(100), nullable=False)
    definition_version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Loan {self.loan_id} state={self.status_state} v{self.version}>"
