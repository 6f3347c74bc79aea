"""ORM models for the lending kernel ledger."""

from lending_kernel.models.audit_entry import AuditLogEntry
from lending_kernel.models.disbursement import (
    DisbursementKind,
    DisbursementRecord,
    DisbursementStatus,
)
from lending_kernel.models.loan import Loan

__all__ = [
    "AuditLogEntry",
    "DisbursementKind",
    "DisbursementRecord",
    "DisbursementStatus",
    "Loan",
]
