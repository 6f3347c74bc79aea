"""Kernel services: ledger writes, sequencing and disbursements."""

from lending_kernel.services.base import BaseService
from lending_kernel.services.disbursement_orchestrator import (
    DisbursementOrchestrator,
    DisbursementResult,
)
from lending_kernel.services.ledger_service import LedgerService
from lending_kernel.services.sequence_service import SequenceService

__all__ = [
    "BaseService",
    "DisbursementOrchestrator",
    "DisbursementResult",
    "LedgerService",
    "SequenceService",
]
