"""
Runtime settings (``lending_config.settings``).

Responsibility
--------------
The only reader of environment variables.  Produces a frozen
``WorkflowSettings`` consumed by the composition root.

Variables
---------
``LENDING_DATABASE_URL``          ledger database URL
                                  (default ``sqlite:///lending_workflow.db``)
``LENDING_PROCESS_DEFINITION``    path to the process definition YAML
                                  (default: bundled ``founder_loan_v1.yaml``)
``LENDING_LOG_LEVEL``             log level name (default ``INFO``)
``LENDING_LOCK_TIMEOUT_SECONDS``  per-loan lock wait; unset waits forever

Failure modes
-------------
* ``ValueError`` for a non-numeric or negative lock timeout, or an unknown
  log level.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATABASE_URL = "sqlite:///lending_workflow.db"
DEFAULT_DEFINITION_PATH = Path(__file__).parent / "definitions" / "founder_loan_v1.yaml"


@dataclass(frozen=True)
class WorkflowSettings:
    database_url: str = DEFAULT_DATABASE_URL
    definition_path: Path = DEFAULT_DEFINITION_PATH
    log_level: str = "INFO"
    lock_timeout_seconds: float | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WorkflowSettings:
        env = os.environ if environ is None else environ

        log_level = env.get("LENDING_LOG_LEVEL", "INFO").strip().upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"Unknown LENDING_LOG_LEVEL: {log_level!r}")

        raw_timeout = env.get("LENDING_LOCK_TIMEOUT_SECONDS", "").strip()
        timeout: float | None = None
        if raw_timeout:
            timeout = float(raw_timeout)
            if timeout < 0:
                raise ValueError(
                    f"LENDING_LOCK_TIMEOUT_SECONDS must be >= 0, got {raw_timeout!r}"
                )

        definition = env.get("LENDING_PROCESS_DEFINITION", "").strip()

        return cls(
            database_url=env.get("LENDING_DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
            definition_path=Path(definition) if definition else DEFAULT_DEFINITION_PATH,
            log_level=log_level,
            lock_timeout_seconds=timeout,
        )
