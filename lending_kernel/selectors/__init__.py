"""Read-only selectors over the lending ledger."""

from lending_kernel.selectors.base import BaseSelector
from lending_kernel.selectors.ledger_selector import (
    AuditEntryView,
    DisbursementView,
    LedgerSelector,
)

__all__ = [
    "AuditEntryView",
    "BaseSelector",
    "DisbursementView",
    "LedgerSelector",
]
