"""
lending_services.loan_locks -- per-loan mutual exclusion.

Responsibility:
    Serializes event handling per loan id inside one process while letting
    distinct loans proceed in parallel.

Invariants enforced:
    - At most one holder per loan id at a time.
    - No global lock is held while waiting for, or while holding, a loan
      lock.  The table guard only protects the bookkeeping dict.
    - Entries are reference counted and removed when no thread holds or
      waits on them, so memory is bounded by in-flight loans.

Failure modes:
    - LoanLockTimeoutError when a lock is not acquired within ``timeout``.

Cross-process safety is not provided here; the ledger's row lock and the
loan's version column cover that.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from lending_kernel.exceptions import LoanLockTimeoutError
from lending_kernel.logging_config import get_logger

logger = get_logger("services.loan_locks")


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0


class LoanLockTable:
    """Keyed lock table, one lock per loan id, reclaimed when idle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    def _checkout(self, loan_id: str) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(loan_id)
            if entry is None:
                entry = _LockEntry()
                self._entries[loan_id] = entry
            entry.refs += 1
            return entry

    def _checkin(self, loan_id: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[loan_id]

    @contextmanager
    def hold(self, loan_id: str, timeout: float | None = None) -> Iterator[None]:
        """
        Hold the lock for ``loan_id`` for the duration of the block.

        Args:
            loan_id: Loan to serialize on.
            timeout: Seconds to wait; None waits indefinitely.

        Raises:
            LoanLockTimeoutError: the lock was not acquired in time.
        """
        entry = self._checkout(loan_id)
        acquired = False
        try:
            if timeout is None:
                acquired = entry.lock.acquire()
            else:
                acquired = entry.lock.acquire(timeout=timeout)
            if not acquired:
                logger.warning(
                    "loan_lock_timeout",
                    extra={"loan_id": loan_id, "timeout_seconds": timeout},
                )
                raise LoanLockTimeoutError(loan_id, timeout)
            yield
        finally:
            if acquired:
                entry.lock.release()
            self._checkin(loan_id, entry)

    def is_held(self, loan_id: str) -> bool:
        with self._guard:
            entry = self._entries.get(loan_id)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def __contains__(self, loan_id: object) -> bool:
        with self._guard:
            return loan_id in self._entries
