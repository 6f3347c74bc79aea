"""
Typed Exception Hierarchy for the Lending Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A loan workflow that moves real obligations must fail precisely. Callers at
the transport boundary translate failures into distinct response codes, and
operators triage them by category. That only works if every failure is:

  1. A TYPED exception class (catch by type, not by message)
  2. Tagged with a CODE class attribute (machine-readable, API-safe)
  3. Carrying structured DATA as attributes (not just a message string)

Example - WRONG way to handle errors:
    try:
        engine.handle_event(event)
    except Exception as e:
        if "not found" in str(e):  # FRAGILE - message might change
            return 404

Example - RIGHT way (what this module enables):
    try:
        engine.handle_event(event)
    except LoanNotFoundError as e:
        return api_response(404, code=e.code, loan_id=e.loan_id)
    except InvalidStateError as e:
        page_operator(e.loan_id, e.state)   # definition / ledger drift

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from LendingKernelError:

    LendingKernelError (base)
    |
    +-- LoanError
    |   +-- LoanNotFoundError
    |   +-- LoanAlreadyExistsError
    |
    +-- WorkflowError
    |   +-- InvalidStateError
    |   +-- EventCancelledError
    |
    +-- DefinitionError
    |   +-- ProcessDefinitionInvalidError
    |
    +-- DisbursementError
    |   +-- DisbursementNotFoundError
    |   +-- DisbursementAlreadyExistsError
    |
    +-- DependencyFailureError
    |   +-- LedgerUnavailableError
    |   +-- DisbursementServiceError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |   +-- LoanLockTimeoutError
    |   +-- DuplicateTransitionError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- BadRequestError
        +-- MissingEventFieldError
        +-- InvalidEventFieldError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|----------------------------------------
Loan            | LOAN_NOT_FOUND                | Event names a loan the ledger lacks
                | LOAN_ALREADY_EXISTS           | open_loan with a taken loan id
----------------|-------------------------------|----------------------------------------
Workflow        | INVALID_STATE                 | Loan state absent from the definition
                | EVENT_CANCELLED               | Caller cancelled before commit
----------------|-------------------------------|----------------------------------------
Definition      | PROCESS_DEFINITION_INVALID    | Load-time validation failed
----------------|-------------------------------|----------------------------------------
Disbursement    | DISBURSEMENT_NOT_FOUND        | No record for (loan, disbursement id)
                | DISBURSEMENT_ALREADY_EXISTS   | (loan, kind) already has a record (OK)
----------------|-------------------------------|----------------------------------------
Dependency      | LEDGER_UNAVAILABLE            | Ledger I/O failed
                | DISBURSEMENT_SERVICE_FAILURE  | Disbursement collaborator failed
----------------|-------------------------------|----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT      | Loan state changed under the commit
                | LOAN_LOCK_TIMEOUT             | Per-loan lock not acquired in time
                | DUPLICATE_TRANSITION          | Event's transition already committed
----------------|-------------------------------|----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION        | UPDATE/DELETE of an audit entry
----------------|-------------------------------|----------------------------------------
Audit           | AUDIT_CHAIN_BROKEN            | Hash chain validation failed
----------------|-------------------------------|----------------------------------------
Bad request     | MISSING_EVENT_FIELD           | Required inbound field absent/blank
                | INVALID_EVENT_FIELD           | Inbound field has the wrong shape

===============================================================================
HANDLING PATTERNS
===============================================================================

1. NOT ERRORS: an event with no matching transition returns an IGNORED
   outcome, and an unknown action name becomes an audit entry. Neither
   raises.

2. IDEMPOTENCY SIGNAL (DisbursementAlreadyExistsError is success):

    try:
        record = gateway.submit(loan_id, kind)
    except DisbursementAlreadyExistsError as e:
        record = ledger.get_disbursement(e.loan_id, e.disbursement_id)

3. DEPENDENCY FAILURES are retriable by the CALLER. The engine never retries
   internally; disbursement creation and the transition commit are both
   idempotent, so re-submitting the same event is safe.

4. INTEGRITY FAULTS (InvalidStateError, AuditChainBrokenError) need an
   operator. Never auto-retry them.

===============================================================================
"""


class LendingKernelError(Exception):
    """
    Base exception for all lending kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LENDING_KERNEL_ERROR"


# Loan-related exceptions


class LoanError(LendingKernelError):
    """Base exception for loan-related errors."""

    code: str = "LOAN_ERROR"


class LoanNotFoundError(LoanError):
    """Loan with given ID was not found in the ledger."""

    code: str = "LOAN_NOT_FOUND"

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan not found: {loan_id}")


class LoanAlreadyExistsError(LoanError):
    """A loan with this ID has already been opened."""

    code: str = "LOAN_ALREADY_EXISTS"

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan already exists: {loan_id}")


# Workflow-related exceptions


class WorkflowError(LendingKernelError):
    """Base exception for workflow interpretation errors."""

    code: str = "WORKFLOW_ERROR"


class InvalidStateError(WorkflowError):
    """
    The loan's recorded state does not exist in the active process definition.

    Indicates drift between the ledger and the loaded definition. This is a
    configuration integrity fault: surfaced, never repaired, never retried.
    """

    code: str = "INVALID_STATE"

    def __init__(self, loan_id: str, state: str, definition_name: str):
        self.loan_id = loan_id
        self.state = state
        self.definition_name = definition_name
        super().__init__(
            f"Loan {loan_id} is in state '{state}' which does not exist "
            f"in process definition '{definition_name}'"
        )


class EventCancelledError(WorkflowError):
    """The caller cancelled event handling before the transition committed."""

    code: str = "EVENT_CANCELLED"

    def __init__(self, loan_id: str, event_type: str, stage: str):
        self.loan_id = loan_id
        self.event_type = event_type
        self.stage = stage
        super().__init__(
            f"Handling of {event_type} for loan {loan_id} cancelled at {stage}"
        )


# Definition-related exceptions


class DefinitionError(LendingKernelError):
    """Base exception for process definition errors."""

    code: str = "DEFINITION_ERROR"


class ProcessDefinitionInvalidError(DefinitionError):
    """The process definition failed load-time validation."""

    code: str = "PROCESS_DEFINITION_INVALID"

    def __init__(self, source: str, errors: list[str]):
        self.source = source
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"Invalid process definition {source}: {summary}")


# Disbursement-related exceptions


class DisbursementError(LendingKernelError):
    """Base exception for disbursement errors."""

    code: str = "DISBURSEMENT_ERROR"


class DisbursementNotFoundError(DisbursementError):
    """No disbursement record exists for the given loan and disbursement ID."""

    code: str = "DISBURSEMENT_NOT_FOUND"

    def __init__(self, loan_id: str, disbursement_id: str):
        self.loan_id = loan_id
        self.disbursement_id = disbursement_id
        super().__init__(
            f"Disbursement {disbursement_id} not found for loan {loan_id}"
        )


class DisbursementAlreadyExistsError(DisbursementError):
    """
    A disbursement of this kind already exists for the loan.

    This is an idempotency signal, not a failure. Callers that receive it
    treat the existing record as the result.
    """

    code: str = "DISBURSEMENT_ALREADY_EXISTS"

    def __init__(self, loan_id: str, kind: str, disbursement_id: str):
        self.loan_id = loan_id
        self.kind = kind
        self.disbursement_id = disbursement_id
        super().__init__(
            f"Disbursement {kind} already exists for loan {loan_id}: "
            f"{disbursement_id}"
        )


# Dependency failures


class DependencyFailureError(LendingKernelError):
    """
    A collaborator (ledger or disbursement service) call failed.

    Propagated to the caller, who owns the retry policy.
    """

    code: str = "DEPENDENCY_FAILURE"

    def __init__(self, dependency: str, operation: str, reason: str):
        self.dependency = dependency
        self.operation = operation
        self.reason = reason
        super().__init__(f"{dependency} failed during {operation}: {reason}")


class LedgerUnavailableError(DependencyFailureError):
    """The ledger store could not complete an operation."""

    code: str = "LEDGER_UNAVAILABLE"

    def __init__(self, operation: str, reason: str):
        super().__init__("ledger", operation, reason)


class DisbursementServiceError(DependencyFailureError):
    """The disbursement collaborator could not complete a request."""

    code: str = "DISBURSEMENT_SERVICE_FAILURE"

    def __init__(self, operation: str, reason: str):
        super().__init__("disbursement_orchestrator", operation, reason)


# Concurrency-related exceptions


class ConcurrencyError(LendingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """The loan changed between the state read and the state commit."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        loan_id: str,
        expected_state: str | None = None,
        actual_state: str | None = None,
    ):
        self.loan_id = loan_id
        self.expected_state = expected_state
        self.actual_state = actual_state
        detail = ""
        if expected_state is not None:
            detail = f" (expected '{expected_state}', found '{actual_state}')"
        super().__init__(
            f"Optimistic lock conflict on loan {loan_id}: "
            f"loan was modified by another transaction{detail}"
        )


class LoanLockTimeoutError(ConcurrencyError):
    """The per-loan critical section could not be entered in time."""

    code: str = "LOAN_LOCK_TIMEOUT"

    def __init__(self, loan_id: str, timeout_seconds: float):
        self.loan_id = loan_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out after {timeout_seconds}s waiting for lock on loan {loan_id}"
        )


class DuplicateTransitionError(ConcurrencyError):
    """
    A state transition for this event has already been committed.

    Raised by the ledger when the unique idempotency key rejects a second
    state_transition entry.  The workflow engine turns it into a DUPLICATE
    outcome; callers of handle_event never see it.
    """

    code: str = "DUPLICATE_TRANSITION"

    def __init__(self, loan_id: str, idempotency_key: str):
        self.loan_id = loan_id
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Transition already recorded for loan {loan_id}: {idempotency_key}"
        )


# Immutability-related exceptions


class ImmutabilityError(LendingKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit-related exceptions


class AuditError(LendingKernelError):
    """Base exception for audit trail errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """The per-loan audit hash chain failed validation."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(
        self,
        loan_id: str,
        seq: int,
        expected_hash: str | None,
        actual_hash: str | None,
    ):
        self.loan_id = loan_id
        self.seq = seq
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken for loan {loan_id} at seq {seq}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Inbound request errors


class BadRequestError(LendingKernelError):
    """Base exception for malformed inbound events."""

    code: str = "BAD_REQUEST"


class MissingEventFieldError(BadRequestError):
    """A required inbound event field is absent or blank."""

    code: str = "MISSING_EVENT_FIELD"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Missing required event field: {field_name}")


class InvalidEventFieldError(BadRequestError):
    """An inbound event field is present but has the wrong shape."""

    code: str = "INVALID_EVENT_FIELD"

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid event field {field_name}: {reason}")
