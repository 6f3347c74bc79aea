"""
Process Definition Validator (``lending_config.validator``).

Responsibility
--------------
Validates a parsed ``ProcessDefinition`` at load time, so that a broken
definition stops the service from starting instead of failing on the first
event that reaches the broken state.

Invariants enforced
-------------------
Errors (the definition MUST NOT be used):

* name is non-empty and version is positive
* state ids are non-empty and unique
* ``initial_state`` is a declared state
* every transition has a non-empty trigger
* every transition destination is a declared state

Warnings (usable, but review):

* two transitions in one state share a trigger (only the first can fire)
* an action trigger the engine does not recognise (it will be audited as
  ``unknown_action`` at runtime)
* a state that cannot be reached from ``initial_state``

Failure modes
-------------
None.  The validator only reports; ``get_active_definition`` decides.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from lending_kernel.domain.workflow import ProcessDefinition


@dataclass
class ConfigValidationResult:
    """
    Result of definition validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    * Warnings do not block loading but should be reviewed.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_process_definition(definition: ProcessDefinition) -> ConfigValidationResult:
    """
    Validate a process definition.

    Postconditions:
        - Returns a ``ConfigValidationResult`` with errors and warnings.
        - A definition with errors MUST NOT be handed to the engine.
    """
    result = ConfigValidationResult()

    _validate_identity(definition, result)
    _validate_state_ids(definition, result)
    _validate_initial_state(definition, result)
    _validate_transitions(definition, result)
    _validate_actions(definition, result)
    _validate_reachability(definition, result)

    return result


def _validate_identity(definition: ProcessDefinition, result: ConfigValidationResult) -> None:
    if not definition.name:
        result.add_error("Definition name must not be empty")
    if definition.version <= 0:
        result.add_error(f"Definition version must be positive, got {definition.version}")


def _validate_state_ids(definition: ProcessDefinition, result: ConfigValidationResult) -> None:
    if not definition.states:
        result.add_error("Definition declares no states")
    seen: set[str] = set()
    for state in definition.states:
        if not state.id:
            result.add_error("State with empty id")
            continue
        if state.id in seen:
            result.add_error(f"Duplicate state id: {state.id}")
        seen.add(state.id)


def _validate_initial_state(
    definition: ProcessDefinition, result: ConfigValidationResult
) -> None:
    if not definition.initial_state:
        result.add_error("initial_state must not be empty")
    elif definition.find_state(definition.initial_state) is None:
        result.add_error(f"initial_state {definition.initial_state!r} is not a declared state")


def _validate_transitions(
    definition: ProcessDefinition, result: ConfigValidationResult
) -> None:
    for state in definition.states:
        triggers: set[str] = set()
        for transition in state.transitions:
            if not transition.on:
                result.add_error(f"State {state.id}: transition with empty trigger")
            elif transition.on in triggers:
                result.add_warning(
                    f"State {state.id}: duplicate trigger {transition.on!r}; "
                    f"only the first transition can fire"
                )
            triggers.add(transition.on)

            if definition.find_state(transition.to) is None:
                result.add_error(
                    f"State {state.id}: transition on {transition.on!r} targets "
                    f"undeclared state {transition.to!r}"
                )


def _validate_actions(definition: ProcessDefinition, result: ConfigValidationResult) -> None:
    for state_id, transition in definition.transitions():
        for action in transition.actions:
            if not action.is_recognized:
                result.add_warning(
                    f"State {state_id}: transition on {transition.on!r} has "
                    f"unrecognized action {action.trigger!r}"
                )


def _validate_reachability(
    definition: ProcessDefinition, result: ConfigValidationResult
) -> None:
    start = definition.find_state(definition.initial_state)
    if start is None:
        return

    reached = {start.id}
    frontier = [start]
    while frontier:
        state = frontier.pop()
        for transition in state.transitions:
            target = definition.find_state(transition.to)
            if target is not None and target.id not in reached:
                reached.add(target.id)
                frontier.append(target)

    for state_id in dict.fromkeys(definition.state_ids):
        if state_id and state_id not in reached:
            result.add_warning(f"State {state_id} is unreachable from {start.id}")
