"""
ORM-Level Immutability Enforcement for the loan audit log.

===============================================================================
WHY THIS EXISTS
===============================================================================

The audit log is the system's proof of behaviour. Compliance tooling reads
it to reconstruct why a loan is in its current state and why a disbursement
exists. An audit entry that can be edited proves nothing, so entries are
append-only from the moment they are flushed.

Two mechanisms back this up:

  1. THIS FILE (ORM event listeners)
    - Catches modifications through Python/SQLAlchemy code
    - Fires BEFORE the SQL is sent to the database

  2. The per-loan hash chain (LedgerService.verify_audit_chain)
    - Detects edits that bypassed the ORM (raw SQL, direct DB access)

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update event] --> _check_audit_entry_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete event] --> _check_audit_entry_delete() ----------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

If a check fails the flush aborts and the transaction is rolled back by its
owner. The database is never modified.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | When Immutable         | Why
----------------|------------------------|------------------------------------
AuditLogEntry   | ALWAYS (from creation) | The audit trail is the proof

Loans and disbursement records are mutable by design (state, paid status);
every such change is itself recorded as a new audit entry.

===============================================================================
USAGE
===============================================================================

Called once at startup (the composition root does this):

    from lending_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()
    # ... simulate tampering ...
    register_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event

from lending_kernel.exceptions import ImmutabilityViolationError
from lending_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_audit_entry_immutability(mapper, connection, target):
    """Prevent any updates to AuditLogEntry records."""
    from lending_kernel.models.audit_entry import AuditLogEntry

    if not isinstance(target, AuditLogEntry):
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditLogEntry",
            "entity_id": str(target.id),
            "audit_loan_id": target.loan_id,
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditLogEntry",
        entity_id=str(target.id),
        reason="Audit log entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Prevent deletion of AuditLogEntry records."""
    from lending_kernel.models.audit_entry import AuditLogEntry

    if not isinstance(target, AuditLogEntry):
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditLogEntry",
            "entity_id": str(target.id),
            "audit_loan_id": target.loan_id,
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditLogEntry",
        entity_id=str(target.id),
        reason="Audit log entries cannot be deleted",
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners that are already registered are left alone.
    """
    from lending_kernel.models.audit_entry import AuditLogEntry

    if not event.contains(AuditLogEntry, "before_update", _check_audit_entry_immutability):
        event.listen(AuditLogEntry, "before_update", _check_audit_entry_immutability)
    if not event.contains(AuditLogEntry, "before_delete", _check_audit_entry_delete):
        event.listen(AuditLogEntry, "before_delete", _check_audit_entry_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    from lending_kernel.models.audit_entry import AuditLogEntry

    _safe_remove_listener(AuditLogEntry, "before_update", _check_audit_entry_immutability)
    _safe_remove_listener(AuditLogEntry, "before_delete", _check_audit_entry_delete)
