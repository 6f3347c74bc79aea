"""
Workflow events (``lending_kernel.domain.events``).

Responsibility
--------------
The immutable inbound fact consumed by ``WorkflowEngine.handle_event`` and the
boundary parser that builds one from a transport-layer mapping.

Architecture position
---------------------
**Kernel domain layer** -- pure.  The parser is the only place inbound field
names are interpreted; it does not guess.  ``type``, ``loan_id`` and
``founder_id`` are required and a missing one fails fast with a BadRequest
class error.  In particular, a governance resolution that does not name its
event type is rejected rather than defaulted.

Invariants enforced
-------------------
* ``occurred_at`` is timezone-aware.  It is a display attribute; ledger
  sequence numbers, not caller timestamps, order the audit log.
* ``payload`` is copied into a read-only mapping.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from lending_kernel.domain.clock import Clock, SystemClock
from lending_kernel.exceptions import InvalidEventFieldError, MissingEventFieldError

SYSTEM_ACTOR = "system"

_REQUIRED_FIELDS = ("type", "loan_id", "founder_id")


@dataclass(frozen=True)
class WorkflowEvent:
    """Something that happened to a loan, consumed once by the engine."""

    type: str
    loan_id: str
    founder_id: str
    occurred_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)
    actor: str = SYSTEM_ACTOR
    event_id: str | None = None

    def __post_init__(self) -> None:
        if self.occurred_at.tzinfo is None:
            raise InvalidEventFieldError("occurred_at", "must be timezone-aware")
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def identity(self) -> str:
        """Stable identity of this occurrence, used for retry detection."""
        if self.event_id:
            return self.event_id
        return self.occurred_at.isoformat()


def _require_str(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if value is None:
        raise MissingEventFieldError(name)
    if not isinstance(value, str):
        raise InvalidEventFieldError(name, f"expected string, got {type(value).__name__}")
    value = value.strip()
    if not value:
        raise MissingEventFieldError(name)
    return value


def _parse_occurred_at(value: Any, clock: Clock) -> datetime:
    if value is None:
        return clock.now()
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidEventFieldError("occurred_at", str(exc)) from exc
    else:
        raise InvalidEventFieldError(
            "occurred_at", f"expected ISO-8601 string, got {type(value).__name__}"
        )
    if parsed.tzinfo is None:
        raise InvalidEventFieldError("occurred_at", "must include a UTC offset")
    return parsed


def parse_workflow_event(
    data: Mapping[str, Any],
    clock: Clock | None = None,
) -> WorkflowEvent:
    """
    Build a ``WorkflowEvent`` from an inbound mapping.

    Recognised keys: ``type``, ``loan_id``, ``founder_id`` (required);
    ``occurred_at`` (ISO-8601 with offset, defaults to the clock),
    ``payload`` (mapping), ``actor``, ``event_id``.

    Raises:
        MissingEventFieldError: a required field is absent or blank.
        InvalidEventFieldError: a field has the wrong type or format.
    """
    clock = clock or SystemClock()
    for name in _REQUIRED_FIELDS:
        _require_str(data, name)

    payload = data.get("payload") or {}
    if not isinstance(payload, Mapping):
        raise InvalidEventFieldError("payload", "expected an object")

    actor = data.get("actor")
    event_id = data.get("event_id")

    return WorkflowEvent(
        type=_require_str(data, "type"),
        loan_id=_require_str(data, "loan_id"),
        founder_id=_require_str(data, "founder_id"),
        occurred_at=_parse_occurred_at(data.get("occurred_at"), clock),
        payload=payload,
        actor=_require_str(data, "actor") if actor is not None else SYSTEM_ACTOR,
        event_id=_require_str(data, "event_id") if event_id is not None else None,
    )
