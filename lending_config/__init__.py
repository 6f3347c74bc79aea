"""
lending_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain the process definition at runtime through
    ``get_active_definition()``, and the only reader of environment variables
    through ``WorkflowSettings.from_env()``.

Architecture position:
    Configuration.  Sits above ``lending_kernel`` and below
    ``lending_services``.  The kernel MUST NEVER import from
    ``lending_config``.

Invariants enforced:
    - Single entrypoint: all runtime definitions flow through
      ``get_active_definition()``.
    - Load-time validation: a definition with validation errors never
      reaches the engine.
    - Deterministic identity: the same YAML document always produces the
      same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the definition file does not exist.
    - ``yaml.YAMLError`` -- the file is not valid YAML.
    - ``ProcessDefinitionInvalidError`` -- shape or validation errors.

Audit relevance:
    Every successful ``get_active_definition()`` call emits a
    ``process_definition_loaded`` log entry with the definition name,
    version and checksum.  That checksum ties every transition the engine
    applies back to the exact document that allowed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from lending_config.loader import load_process_definition
from lending_config.settings import DEFAULT_DEFINITION_PATH, WorkflowSettings
from lending_config.validator import ConfigValidationResult, validate_process_definition
from lending_kernel.domain.workflow import ProcessDefinition
from lending_kernel.exceptions import ProcessDefinitionInvalidError

_logger = logging.getLogger("lending_kernel.config")

__all__ = [
    "ConfigValidationResult",
    "WorkflowSettings",
    "get_active_definition",
]


def get_active_definition(path: Path | str | None = None) -> ProcessDefinition:
    """The ONLY public process-definition entrypoint.

    Guarantees:
        - The returned definition has passed load-time validation.
        - Validation warnings are logged, one entry each.
        - A ``process_definition_loaded`` entry is logged on success.

    Non-goals:
        - Does NOT cache; the composition root loads once and shares the
          frozen result across threads.

    Raises:
        FileNotFoundError: If the file does not exist.
        ProcessDefinitionInvalidError: If validation reports errors.
    """
    source = Path(path) if path is not None else DEFAULT_DEFINITION_PATH
    definition = load_process_definition(source)

    validation = validate_process_definition(definition)
    for warning in validation.warnings:
        _logger.warning(
            "process_definition_warning",
            extra={"source": str(source), "warning": warning},
        )
    if not validation.is_valid:
        _logger.error(
            "process_definition_invalid",
            extra={"source": str(source), "errors": validation.errors},
        )
        raise ProcessDefinitionInvalidError(str(source), validation.errors)

    _logger.info(
        "process_definition_loaded",
        extra={
            "source": str(source),
            "definition_name": definition.name,
            "definition_version": definition.version,
            "checksum": definition.checksum,
            "state_count": len(definition.states),
            "transition_count": len(definition.transitions()),
        },
    )
    return definition
