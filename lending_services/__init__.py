"""
lending_services -- workflow orchestration over the lending kernel.

Public surface: ``WorkflowEngine`` (the interpreter), ``ActionDispatcher``,
``LoanLockTable`` and the composition root ``build_workflow_engine``.
"""

from lending_services.action_dispatch import (
    DEFAULT_HANDLERS,
    ActionContext,
    ActionDispatcher,
    ActionResult,
)
from lending_services.bootstrap import build_workflow_engine
from lending_services.loan_locks import LoanLockTable
from lending_services.workflow_engine import (
    OutcomeStatus,
    TransitionOutcome,
    WorkflowEngine,
)

__all__ = [
    "DEFAULT_HANDLERS",
    "ActionContext",
    "ActionDispatcher",
    "ActionResult",
    "LoanLockTable",
    "OutcomeStatus",
    "TransitionOutcome",
    "WorkflowEngine",
    "build_workflow_engine",
]
