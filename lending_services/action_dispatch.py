"""
lending_services.action_dispatch -- transition actions by kind.

Responsibility:
    Runs the side effect of one transition action and writes its audit
    entry.  Dispatch is a closed mapping from ``ActionKind`` to a handler;
    trigger names were resolved to kinds when the definition was loaded.

Architecture position:
    Services.  Called by ``WorkflowEngine`` inside the event's ledger
    transaction, once per action, in definition order.

Invariants enforced:
    - A newly created disbursement produces exactly one
      ``disbursement_created`` entry.  An already-existing one produces none.
    - An action with no handler (``ActionKind.UNRECOGNIZED``, or a kind a
      custom handler map leaves out) produces one ``unknown_action`` entry
      and does NOT abort the transition.  A definition that names a new
      action must not brick loans running on an older engine.
    - Each handler's side effect and audit entry are flushed before the
      next action runs.

Failure modes:
    - DisbursementServiceError when the disbursement collaborator raises a
      connection, timeout or other OS-level error.
    - LedgerUnavailableError from ledger writes.
    Both propagate; the engine rolls back the whole event.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from lending_kernel.domain.audit import AuditRecord, AuditTag
from lending_kernel.domain.events import WorkflowEvent
from lending_kernel.domain.workflow import Action, ActionKind
from lending_kernel.exceptions import DisbursementServiceError
from lending_kernel.logging_config import get_logger
from lending_kernel.models.disbursement import DisbursementKind
from lending_kernel.services.disbursement_orchestrator import DisbursementOrchestrator
from lending_kernel.services.ledger_service import LedgerService

logger = get_logger("services.action_dispatch")


@dataclass(frozen=True)
class ActionContext:
    """What a handler may see and touch while running one action."""

    event: WorkflowEvent
    from_state: str
    to_state: str
    ledger: LedgerService
    orchestrator: DisbursementOrchestrator

    @property
    def loan_id(self) -> str:
        return self.event.loan_id


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one dispatched action."""

    trigger: str
    kind: ActionKind
    recognized: bool = True
    disbursement_id: str | None = None
    disbursement_kind: DisbursementKind | None = None
    created: bool = False


ActionHandler = Callable[[Action, ActionContext], ActionResult]


def create_disbursement_handler(kind: DisbursementKind) -> ActionHandler:
    """Handler that requests a disbursement of ``kind`` and audits it."""

    def handle(action: Action, ctx: ActionContext) -> ActionResult:
        try:
            result = ctx.orchestrator.create_disbursement(ctx.loan_id, kind)
        except (ConnectionError, TimeoutError, OSError) as exc:
            raise DisbursementServiceError("create_disbursement", str(exc)) from exc

        if result.created:
            ctx.ledger.append_log(
                ctx.loan_id,
                AuditRecord(
                    timestamp=ctx.event.occurred_at,
                    actor=ctx.event.actor,
                    event=AuditTag.DISBURSEMENT_CREATED,
                    details=(
                        f"Created {kind.value} disbursement {result.disbursement_id} "
                        f"(action {action.trigger})"
                    ),
                    attributes={
                        "kind": kind.value,
                        "disbursement_id": result.disbursement_id,
                        "trigger": action.trigger,
                        "event_type": ctx.event.type,
                    },
                ),
            )

        return ActionResult(
            trigger=action.trigger,
            kind=action.kind,
            disbursement_id=result.disbursement_id,
            disbursement_kind=kind,
            created=result.created,
        )

    handle.__name__ = f"create_{kind.name.lower()}_disbursement"
    return handle


def record_unknown_action(action: Action, ctx: ActionContext) -> ActionResult:
    """Fallback: audit the unrecognized trigger and carry on."""
    logger.warning(
        "unknown_action",
        extra={"trigger": action.trigger, "from_state": ctx.from_state},
    )
    ctx.ledger.append_log(
        ctx.loan_id,
        AuditRecord(
            timestamp=ctx.event.occurred_at,
            actor=ctx.event.actor,
            event=AuditTag.UNKNOWN_ACTION,
            details=f"Unknown action {action.trigger!r} skipped",
            attributes={
                "trigger": action.trigger,
                "event_type": ctx.event.type,
                "from_state": ctx.from_state,
            },
        ),
    )
    return ActionResult(trigger=action.trigger, kind=action.kind, recognized=False)


DEFAULT_HANDLERS: Mapping[ActionKind, ActionHandler] = MappingProxyType({
    ActionKind.FIRST_DISBURSEMENT: create_disbursement_handler(DisbursementKind.FILING_FEE),
    ActionKind.SECOND_DISBURSEMENT: create_disbursement_handler(
        DisbursementKind.REMAINING_FUNDS
    ),
})


class ActionDispatcher:
    """
    Maps action kinds to handlers.

    Contract:
        ``dispatch`` never raises for an unknown kind; it runs ``fallback``.

    Non-goals:
        - Does NOT commit.  Handlers write through the context's ledger,
          inside the caller's transaction.
    """

    def __init__(
        self,
        handlers: Mapping[ActionKind, ActionHandler] | None = None,
        fallback: ActionHandler = record_unknown_action,
    ) -> None:
        # A custom map replaces the defaults; extend with {**DEFAULT_HANDLERS, ...}.
        table = dict(DEFAULT_HANDLERS if handlers is None else handlers)
        table.pop(ActionKind.UNRECOGNIZED, None)
        self._handlers = MappingProxyType(table)
        self._fallback = fallback

    @property
    def handled_kinds(self) -> frozenset[ActionKind]:
        return frozenset(self._handlers)

    def dispatch(self, action: Action, ctx: ActionContext) -> ActionResult:
        handler = self._handlers.get(action.kind, self._fallback)
        result = handler(action, ctx)
        logger.debug(
            "action_dispatched",
            extra={
                "trigger": action.trigger,
                "action_kind": action.kind.value,
                "recognized": result.recognized,
                "disbursement_created": result.created,
            },
        )
        return result
