"""
Process Definition Loader (``lending_config.loader``).

Responsibility
--------------
Loads a process definition YAML document and parses it into the frozen
``lending_kernel.domain.workflow`` types.  The single runtime entry point is
``lending_config.get_active_definition()``, which also validates; call the
functions here directly only from tooling and tests.

Architecture position
---------------------
**Config layer**.  Depends on the kernel's pure domain types only.

Invariants enforced
-------------------
* Parsing is shape-only and total: every state, transition and action in
  the document becomes a typed value in document order.  Missing scalar
  fields parse as empty values so that ``validator`` reports them together
  instead of failing on the first one.
* Action triggers are resolved to an ``ActionKind`` here, once.
* ``compute_checksum`` gives a deterministic SHA-256 of the document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong container shapes (states not a list, a transition not a mapping,
  a non-integer version)  -> ``ProcessDefinitionInvalidError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from lending_kernel.domain.workflow import Action, ProcessDefinition, State, Transition
from lending_kernel.exceptions import ProcessDefinitionInvalidError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _canonical_keys(value: Any) -> Any:
    # A bare ``on`` key arrives as True; give it back its name so the
    # mapping's keys are all strings and sort together.
    if isinstance(value, dict):
        return {
            ("on" if k is True else str(k)): _canonical_keys(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_canonical_keys(v) for v in value]
    return value


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(_canonical_keys(data), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_action(entry: Any, source: str = "<definition>") -> Action:
    """An action is a bare trigger string or a ``{trigger: NAME}`` mapping."""
    if isinstance(entry, str):
        return Action.from_trigger(entry.strip())
    if isinstance(entry, dict):
        return Action.from_trigger(_text(entry.get("trigger")))
    raise ProcessDefinitionInvalidError(
        source, [f"action must be a string or mapping, got {type(entry).__name__}"]
    )


def parse_transition(data: Any, source: str = "<definition>") -> Transition:
    if not isinstance(data, dict):
        raise ProcessDefinitionInvalidError(
            source, [f"transition must be a mapping, got {type(data).__name__}"]
        )
    # YAML 1.1 reads a bare ``on`` key as boolean True.
    trigger = data.get("on", data.get(True))
    actions = data.get("actions") or []
    if not isinstance(actions, list):
        raise ProcessDefinitionInvalidError(source, ["transition actions must be a list"])
    return Transition(
        on=_text(trigger),
        to=_text(data.get("to")),
        actions=tuple(parse_action(a, source) for a in actions),
    )


def parse_state(data: Any, source: str = "<definition>") -> State:
    if not isinstance(data, dict):
        raise ProcessDefinitionInvalidError(
            source, [f"state must be a mapping, got {type(data).__name__}"]
        )
    transitions = data.get("transitions") or []
    if not isinstance(transitions, list):
        raise ProcessDefinitionInvalidError(
            source, [f"state {_text(data.get('id'))!r}: transitions must be a list"]
        )
    return State(
        id=_text(data.get("id")),
        transitions=tuple(parse_transition(t, source) for t in transitions),
        description=_text(data.get("description")),
    )


def parse_process_definition(
    data: dict[str, Any],
    source: str = "<definition>",
    checksum: str = "",
) -> ProcessDefinition:
    """
    Parse a ``ProcessDefinition`` from a loaded YAML mapping.

    Postconditions:
        - States, transitions and actions keep document order.
        - The result is NOT validated; see ``lending_config.validator``.
    """
    if not isinstance(data, dict):
        raise ProcessDefinitionInvalidError(source, ["document must be a mapping"])

    states = data.get("states") or []
    if not isinstance(states, list):
        raise ProcessDefinitionInvalidError(source, ["states must be a list"])

    raw_version = data.get("version", 0)
    try:
        version = int(raw_version)
    except (TypeError, ValueError) as exc:
        raise ProcessDefinitionInvalidError(
            source, [f"version must be an integer, got {raw_version!r}"]
        ) from exc

    return ProcessDefinition(
        name=_text(data.get("name")),
        version=version,
        initial_state=_text(data.get("initial_state")),
        states=tuple(parse_state(s, source) for s in states),
        description=_text(data.get("description")),
        checksum=checksum,
    )


def load_process_definition(path: Path) -> ProcessDefinition:
    """Load and parse (but do not validate) a definition file."""
    path = Path(path)
    data = load_yaml_file(path)
    return parse_process_definition(data, source=str(path), checksum=compute_checksum(data))
