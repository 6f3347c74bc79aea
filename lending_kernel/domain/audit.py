"""
Audit record value types (``lending_kernel.domain.audit``).

Responsibility:
    The closed set of audit tags and the in-memory record the engine hands to
    ``LedgerService.append_log``.  The ledger assigns ``seq``, ``recorded_at``
    and the hash chain; everything else comes from here.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.

Audit relevance:
    ``details`` is human-readable text.  ``attributes`` carries the same facts
    in structured form (from/to state, event type, disbursement kind, trigger)
    so compliance tooling never has to parse prose.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class AuditTag(str, Enum):
    """Kinds of loan audit entries.

    Contract: every ledger mutation made while handling an event produces
    exactly one entry with one of these tags.
    """

    IGNORED_EVENT = "ignored_event"
    STATE_TRANSITION = "state_transition"
    DISBURSEMENT_CREATED = "disbursement_created"
    UNKNOWN_ACTION = "unknown_action"
    LOAN_OPENED = "loan_opened"
    DISBURSEMENT_PAID = "disbursement_paid"


@dataclass(frozen=True)
class AuditRecord:
    """An audit entry before the ledger has sequenced and chained it."""

    timestamp: datetime
    actor: str
    event: AuditTag
    details: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
