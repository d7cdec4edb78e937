"""Thread-safe collection of outcome and error records for one session."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from db_sync.orchestrator.models import ErrorRecord, OutcomeRecord, Stage, TaskKey, TaskStatus
from db_sync.orchestrator.report import error_counts_by_stage

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    """Stable storage receiving every record as it is appended."""

    def add_outcome(self, outcome: OutcomeRecord) -> None: ...

    def add_error(self, error: ErrorRecord) -> None: ...


class StatusAggregator:
    """Mutex-guarded record store shared by executors and the progress monitor.

    Writers append whole records under the lock; readers copy under the same lock,
    so a reader never observes a partially written record. When ``store`` is
    given each record is also written through to it. Store failures are logged
    and the in-memory view stays authoritative.
    """

    def __init__(self, *, session_id: str, store: RecordStore | None = None) -> None:
        self.session_id = session_id
        self.store = store
        self._lock = threading.Lock()
        self._outcomes: dict[TaskKey, OutcomeRecord] = {}
        self._errors: list[ErrorRecord] = []

    def record_outcome(self, outcome: OutcomeRecord) -> None:
        with self._lock:
            if outcome.key in self._outcomes:
                raise ValueError(f"Outcome already recorded for {outcome.key.label}")
            self._outcomes[outcome.key] = outcome
        self._write_through("outcome", outcome.key, lambda store: store.add_outcome(outcome))

    def record_error(self, error: ErrorRecord) -> None:
        with self._lock:
            self._errors.append(error)
        self._write_through("error", error.key, lambda store: store.add_error(error))

    def completed_count(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def status_counts(self) -> dict[TaskStatus, int]:
        with self._lock:
            counts = Counter(outcome.status for outcome in self._outcomes.values())
        return {status: counts.get(status, 0) for status in TaskStatus}

    def outcomes(self) -> list[OutcomeRecord]:
        with self._lock:
            return list(self._outcomes.values())

    def errors(self) -> list[ErrorRecord]:
        with self._lock:
            return list(self._errors)

    def errors_for(self, key: TaskKey) -> list[ErrorRecord]:
        with self._lock:
            return [error for error in self._errors if error.key == key]

    def error_counts_by_stage(self) -> dict[Stage, int]:
        return error_counts_by_stage(self.errors())

    def _write_through(
        self,
        kind: str,
        key: TaskKey,
        write: Callable[[RecordStore], None],
    ) -> None:
        if self.store is None:
            return
        try:
            write(self.store)
        except (SQLAlchemyError, OSError, ValueError) as error:
            logger.warning("Failed to persist %s for %s: %s", kind, key.label, error)
