"""
lending_services.bootstrap -- composition root.

Builds a ready-to-use ``WorkflowEngine`` from ``WorkflowSettings``:
configures logging, initializes the ledger database, creates tables,
registers the audit immutability listeners and loads the active process
definition.  Nothing else in the codebase wires these together.
"""

from __future__ import annotations

from lending_config import WorkflowSettings, get_active_definition
from lending_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from lending_kernel.db.immutability import register_immutability_listeners
from lending_kernel.domain.clock import Clock
from lending_kernel.logging_config import configure_logging, get_logger
from lending_services.action_dispatch import ActionDispatcher
from lending_services.workflow_engine import WorkflowEngine

logger = get_logger("services.bootstrap")


def build_workflow_engine(
    settings: WorkflowSettings | None = None,
    clock: Clock | None = None,
    dispatcher: ActionDispatcher | None = None,
) -> WorkflowEngine:
    settings = settings if settings is not None else WorkflowSettings.from_env()

    configure_logging(level=settings.log_level)
    init_engine_from_url(settings.database_url)
    create_tables()
    register_immutability_listeners()

    definition = get_active_definition(settings.definition_path)

    engine = WorkflowEngine(
        definition,
        session_factory=get_session_factory(),
        clock=clock,
        dispatcher=dispatcher,
        lock_timeout=settings.lock_timeout_seconds,
    )
    logger.info(
        "workflow_engine_ready",
        extra={
            "workflow": definition.label,
            "checksum": definition.checksum,
            "lock_timeout_seconds": settings.lock_timeout_seconds,
        },
    )
    return engine
