"""
Module: lending_kernel.selectors.ledger_selector
Responsibility: Read models over a loan's audit log and disbursements.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Audit entries are always returned in ledger ``seq`` order.  The
      caller's event timestamps never reorder the log.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select

from lending_kernel.domain.audit import AuditTag
from lending_kernel.models.audit_entry import AuditLogEntry
from lending_kernel.models.disbursement import (
    DisbursementKind,
    DisbursementRecord,
    DisbursementStatus,
)
from lending_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class AuditEntryView:
    """Read-only projection of one audit log entry."""

    loan_id: str
    seq: int
    timestamp: datetime
    recorded_at: datetime
    actor: str
    event: AuditTag
    details: str
    attributes: dict[str, Any]
    hash: str

    def to_record(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "event": self.event.value,
            "details": self.details,
        }


@dataclass(frozen=True)
class DisbursementView:
    """Read-only projection of one disbursement record."""

    disbursement_id: str
    loan_id: str
    kind: DisbursementKind
    status: DisbursementStatus
    created_at: datetime
    paid_at: datetime | None


class LedgerSelector(BaseSelector[AuditLogEntry]):
    """Queries over a single loan's ledger rows."""

    def get_audit_log(
        self,
        loan_id: str,
        event: AuditTag | None = None,
    ) -> list[AuditEntryView]:
        """The loan's audit entries in seq order, optionally one tag only."""
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.loan_id == loan_id)
            .order_by(AuditLogEntry.seq)
        )
        if event is not None:
            stmt = stmt.where(AuditLogEntry.event == AuditTag(event).value)
        rows = self.session.execute(stmt).scalars().all()
        return [
            AuditEntryView(
                loan_id=row.loan_id,
                seq=row.seq,
                timestamp=row.timestamp,
                recorded_at=row.recorded_at,
                actor=row.actor,
                event=row.tag,
                details=row.details,
                attributes=dict(row.attributes or {}),
                hash=row.hash,
            )
            for row in rows
        ]

    def audit_records(self, loan_id: str) -> list[dict[str, str]]:
        """The loan's log in the external ``{timestamp, actor, event, details}`` form."""
        return [entry.to_record() for entry in self.get_audit_log(loan_id)]

    def audit_tags(self, loan_id: str) -> list[AuditTag]:
        return [entry.event for entry in self.get_audit_log(loan_id)]

    def list_disbursements(self, loan_id: str) -> list[DisbursementView]:
        rows = self.session.execute(
            select(DisbursementRecord)
            .where(DisbursementRecord.loan_id == loan_id)
            .order_by(DisbursementRecord.created_at, DisbursementRecord.kind)
        ).scalars().all()
        return [
            DisbursementView(
                disbursement_id=row.disbursement_id,
                loan_id=row.loan_id,
                kind=DisbursementKind(row.kind),
                status=DisbursementStatus(row.status),
                created_at=row.created_at,
                paid_at=row.paid_at,
            )
            for row in rows
        ]
