"""
Module: lending_kernel.models.audit_entry
Responsibility: ORM persistence for the per-loan, append-only audit log.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - Append-only: UPDATE and DELETE are rejected by ORM listeners
      (db/immutability.py).
    - (loan_id, seq) is unique; seq is allocated per loan by SequenceService
      and is the authoritative order of the log.  ``timestamp`` is the
      caller's event time and is for display only.
    - idempotency_key is unique when present.  Only state_transition entries
      carry one, which makes a second commit of the same event impossible.
    - hash = H(loan_id | seq | event | payload_hash | prev_hash), chained
      per loan.  Verified by LedgerService.verify_audit_chain.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError on a duplicate (loan_id, seq) or idempotency_key.
    - AuditChainBrokenError when chain validation detects a mismatch.

Audit relevance:
    This table IS the loan audit trail.  Compliance tooling reconstructs why
    a loan is in its state and why each disbursement exists from these rows.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from lending_kernel.db.base import Base
from lending_kernel.db.types import UTCDateTime
from lending_kernel.domain.audit import AuditTag


class AuditLogEntry(Base):
    """
    One immutable line of a loan's audit log.

    Guarantees:
        - seq strictly increases within a loan.
        - prev_hash is None only for the loan's first entry.

    Non-goals:
        - This model does NOT compute hashes; LedgerService.append_log does.
    """

    __tablename__ = "loan_audit_log"

    __table_args__ = (
        UniqueConstraint("loan_id", "seq", name="uq_audit_loan_seq"),
        UniqueConstraint("idempotency_key", name="uq_audit_idempotency_key"),
        Index("idx_audit_loan_event", "loan_id", "event"),
    )

    loan_id: Mapped[str] = mapped_column(String(100), nullable=False)

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Caller-supplied event time (display only)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Ledger clock at append time
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    actor: Mapped[str] = mapped_column(String(100), nullable=False)

    event: Mapped[AuditTag] = mapped_column(String(50), nullable=False)

    details: Mapped[str] = mapped_column(Text, nullable=False, default="")

    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    idempotency_key: Mapped[str | None] = mapped_column(String(300), nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLogEntry {self.loan_id}#{self.seq} {self.tag.value}>"

    @property
    def tag(self) -> AuditTag:
        return AuditTag(self.event)

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None

    def hash_fields(self) -> dict[str, Any]:
        """Content covered by ``payload_hash``."""
        return {
            "timestamp": self.timestamp,
            "recorded_at": self.recorded_at,
            "actor": self.actor,
            "event": self.tag.value,
            "details": self.details,
            "attributes": dict(self.attributes or {}),
            "idempotency_key": self.idempotency_key,
        }

    def to_record(self) -> dict[str, str]:
        """External audit format: ``{timestamp, actor, event, details}``."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "event": self.tag.value,
            "details": self.details,
        }
