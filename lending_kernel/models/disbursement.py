"""
Module: lending_kernel.models.disbursement
Responsibility: ORM persistence for disbursement requests recorded against
    a loan.  Creating a record requests a payout; it does not move money.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - At most one record per (loan_id, kind) (uq_disbursement_loan_kind).
      The unique constraint is what makes create_disbursement idempotent
      under concurrent callers.
    - Status moves PENDING -> PAID only.

Failure modes:
    - IntegrityError on a duplicate (loan_id, kind), resolved by the
      orchestrator into the existing record.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from lending_kernel.db.base import Base
from lending_kernel.db.types import UTCDateTime


class DisbursementKind(str, Enum):
    """Which tranche of the loan a disbursement pays out."""

    FILING_FEE = "D1_FILING_FEE"
    REMAINING_FUNDS = "D2_REMAINING_FUNDS"


class DisbursementStatus(str, Enum):
    """Contract: PENDING -> PAID; never back."""

    PENDING = "PENDING"
    PAID = "PAID"


class DisbursementRecord(Base):
    """A requested payout for one loan and tranche."""

    __tablename__ = "disbursements"

    __table_args__ = (
        UniqueConstraint("loan_id", "kind", name="uq_disbursement_loan_kind"),
        UniqueConstraint("disbursement_id", name="uq_disbursement_id"),
        Index("idx_disbursement_loan", "loan_id"),
    )

    disbursement_id: Mapped[str] = mapped_column(String(100), nullable=False)

    loan_id: Mapped[str] = mapped_column(String(100), nullable=False)

    kind: Mapped[DisbursementKind] = mapped_column(String(50), nullable=False)

    status: Mapped[DisbursementStatus] = mapped_column(
        String(20),
        nullable=False,
        default=DisbursementStatus.PENDING.value,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<DisbursementRecord {self.disbursement_id} {self.kind} {self.status}>"

    @property
    def disbursement_kind(self) -> DisbursementKind:
        return DisbursementKind(self.kind)

    @property
    def is_paid(self) -> bool:
        return DisbursementStatus(self.status) is DisbursementStatus.PAID
