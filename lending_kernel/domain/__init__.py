"""
Pure domain layer.

Immutable value objects and deterministic logic with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O (other than SystemClock)
"""

from lending_kernel.domain.audit import AuditRecord, AuditTag
from lending_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from lending_kernel.domain.events import SYSTEM_ACTOR, WorkflowEvent, parse_workflow_event
from lending_kernel.domain.workflow import (
    Action,
    ActionKind,
    ProcessDefinition,
    State,
    Transition,
)

__all__ = [
    "Action",
    "ActionKind",
    "AuditRecord",
    "AuditTag",
    "Clock",
    "DeterministicClock",
    "ProcessDefinition",
    "State",
    "SYSTEM_ACTOR",
    "SystemClock",
    "Transition",
    "WorkflowEvent",
    "parse_workflow_event",
]
