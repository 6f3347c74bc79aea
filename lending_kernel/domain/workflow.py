"""
Canonical process definition types (``lending_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the loan lifecycle state machine: the process
definition, its states, their transitions, and the actions each transition
triggers.  Built once at load time by ``lending_config.loader`` and shared
read-only by every concurrent event handler.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* All types are frozen; lookups never mutate.
* ``State.find_transition`` returns the FIRST transition whose trigger equals
  the event type (exact string match).  Definition authors own
  disambiguation; the loader warns about duplicate triggers.
* Every action carries an ``ActionKind`` resolved at load time.  Names the
  engine does not know resolve to ``ActionKind.UNRECOGNIZED``; they are
  recorded, not rejected.

Not enforced here
-----------------
* That destinations exist and ``initial_state`` is a state.  That is the
  loader's load-time validation (``lending_config.validator``); the engine
  still checks loan state membership at runtime to catch ledger drift.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ActionKind(str, Enum):
    """Closed set of action behaviours the engine knows how to run.

    Values are the trigger names used in process definitions.
    ``UNRECOGNIZED`` is the explicit fallback for any other name.
    """

    FIRST_DISBURSEMENT = "DISBURSEMENT_1"
    SECOND_DISBURSEMENT = "DISBURSEMENT_2"
    UNRECOGNIZED = "UNRECOGNIZED"

    @classmethod
    def from_trigger(cls, trigger: str) -> ActionKind:
        for kind in cls:
            if kind is not cls.UNRECOGNIZED and kind.value == trigger:
                return kind
        return cls.UNRECOGNIZED


@dataclass(frozen=True)
class Action:
    """A named side-effecting step attached to a transition."""

    trigger: str
    kind: ActionKind

    @classmethod
    def from_trigger(cls, trigger: str) -> Action:
        return cls(trigger=trigger, kind=ActionKind.from_trigger(trigger))

    @property
    def is_recognized(self) -> bool:
        return self.kind is not ActionKind.UNRECOGNIZED


@dataclass(frozen=True)
class Transition:
    """Rule mapping an event type to a destination state and ordered actions."""

    on: str
    to: str
    actions: tuple[Action, ...] = ()


@dataclass(frozen=True)
class State:
    """A state and its outgoing transitions, in definition order."""

    id: str
    transitions: tuple[Transition, ...] = ()
    description: str = ""

    def find_transition(self, event_type: str) -> Transition | None:
        """Return the first transition triggered by ``event_type``, if any."""
        for transition in self.transitions:
            if transition.on == event_type:
                return transition
        return None

    @property
    def is_terminal(self) -> bool:
        return not self.transitions


@dataclass(frozen=True)
class ProcessDefinition:
    """A named, versioned loan lifecycle graph.

    Contract: frozen; shared read-only across threads.
    """

    name: str
    version: int
    initial_state: str
    states: tuple[State, ...]
    description: str = ""
    checksum: str = ""
    _index: dict[str, State] = field(
        init=False, repr=False, compare=False, hash=False,
    )

    def __post_init__(self) -> None:
        index: dict[str, State] = {}
        for state in self.states:
            # First declaration wins, matching transition lookup semantics.
            index.setdefault(state.id, state)
        object.__setattr__(self, "_index", index)

    def find_state(self, state_id: str) -> State | None:
        return self._index.get(state_id)

    @property
    def state_ids(self) -> tuple[str, ...]:
        return tuple(s.id for s in self.states)

    def transitions(self) -> tuple[tuple[str, Transition], ...]:
        """All (from_state, transition) pairs in definition order."""
        return tuple(
            (state.id, transition)
            for state in self.states
            for transition in state.transitions
        )

    @property
    def label(self) -> str:
        return f"{self.name}:v{self.version}"
