"""One synchronization session: resolve, schedule, monitor, report."""

from __future__ import annotations

import logging
import os
import time
import uuid
from collections.abc import Sequence
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from db_sync.config import Settings
from db_sync.orchestrator.aggregator import StatusAggregator
from db_sync.orchestrator.backend.base import TransferBackend
from db_sync.orchestrator.backend.cli_backend import MySqlCliBackend
from db_sync.orchestrator.errors import ResolutionError
from db_sync.orchestrator.executor import TaskExecutor
from db_sync.orchestrator.models import (
    ErrorRecord,
    OutcomeRecord,
    SessionInfo,
    SyncMode,
    SyncTask,
    TaskStatus,
    utc_now,
)
from db_sync.orchestrator.monitor import ProgressMonitor, ProgressReporter, log_progress
from db_sync.orchestrator.report import render_report_lines
from db_sync.orchestrator.repository import SessionRepository
from db_sync.orchestrator.resolver import ResolutionResult, TaskResolver
from db_sync.orchestrator.scheduler import Scheduler

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"
SESSION_CANCELLED = "cancelled"
SESSION_EMPTY = "empty"


def new_session_id(now: datetime | None = None) -> str:
    """Time-derived id with a short random suffix, unique per invocation."""

    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")  # noqa: DTZ005
    return f"{stamp}_{uuid.uuid4().hex[:6]}"


@dataclass(slots=True)
class SessionReport:
    """Everything a caller needs after a session finished."""

    session_id: str
    mode: SyncMode
    tasks: list[SyncTask] = field(default_factory=list)
    outcomes: list[OutcomeRecord] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    resolution_failures: list[ResolutionError] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    not_dispatched: int = 0
    peak_concurrency: int = 0
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == TaskStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == TaskStatus.FAILED)

    @property
    def status(self) -> str:
        if self.cancelled:
            return SESSION_CANCELLED
        if not self.tasks:
            return SESSION_EMPTY
        if self.failed:
            return SESSION_FAILED
        return SESSION_COMPLETED

    @property
    def success(self) -> bool:
        return self.status == SESSION_COMPLETED

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def lines(self) -> list[str]:
        return render_report_lines(
            session_id=self.session_id,
            mode=self.mode,
            outcomes=self.outcomes,
            errors=self.errors,
            resolution_failures=self.resolution_failures,
            elapsed_seconds=self.elapsed_seconds,
            not_dispatched=self.not_dispatched,
            cancelled=self.cancelled,
        )


class SyncSession:
    """Wire resolver, aggregator, monitor and scheduler for one invocation."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        mode: SyncMode,
        entries: Sequence[str] | None = None,
        backend: TransferBackend | None = None,
        repository: SessionRepository | None = None,
        session_id: str | None = None,
        reporter: ProgressReporter = log_progress,
        handle_signals: bool = False,
    ) -> None:
        self.settings = settings
        self.mode = mode
        self.session_id = session_id or new_session_id()
        if entries is None:
            entries = {
                SyncMode.DATABASES: settings.sync.databases,
                SyncMode.TABLES: settings.sync.table_specs,
            }.get(mode, ())
        self.entries = tuple(entries)
        self.backend = backend or MySqlCliBackend(settings, session_id=self.session_id, mode=mode)
        self.repository = repository
        self.reporter = reporter
        self.handle_signals = handle_signals
        self.scheduler = Scheduler(max_workers=settings.sync.max_threads)

    def run(self) -> SessionReport:
        started = time.monotonic()
        resolution = self._resolve()
        tasks = resolution.tasks
        report = SessionReport(
            session_id=self.session_id,
            mode=self.mode,
            tasks=tasks,
            resolution_failures=resolution.failures,
        )
        store = self._start_store(tasks, resolution)
        aggregator = StatusAggregator(session_id=self.session_id, store=store)

        if not tasks:
            logger.error("No tasks resolved for session %s; nothing to do", self.session_id)
        else:
            logger.info(
                "Session %s: %d task(s), %d worker(s), %d attempt(s) each",
                self.session_id,
                len(tasks),
                self.settings.sync.max_threads,
                self.settings.sync.max_attempts,
            )
            executor = TaskExecutor(
                self.backend,
                aggregator,
                settings=self.settings.sync,
                stop_requested=self.scheduler.stop_requested,
            )
            monitor = ProgressMonitor(
                aggregator,
                total=len(tasks),
                interval_seconds=self.settings.sync.progress_interval_seconds,
                reporter=self.reporter,
            )
            monitor.start()
            try:
                with self._signal_scope():
                    scheduled = self.scheduler.run(tasks, executor.run)
            finally:
                monitor.stop()
            self.reporter(monitor.snapshot())
            report.not_dispatched = scheduled.not_dispatched
            report.peak_concurrency = scheduled.peak_concurrency
            report.cancelled = scheduled.cancelled

        report.outcomes = aggregator.outcomes()
        report.errors = aggregator.errors()
        report.elapsed_seconds = time.monotonic() - started
        self._finish_store(store, report)
        logger.info(
            "Session %s finished: %d succeeded, %d failed, status %s",
            self.session_id,
            report.succeeded,
            report.failed,
            report.status,
        )
        return report

    def _resolve(self) -> ResolutionResult:
        resolver = TaskResolver(self.backend, self.settings)
        if self.mode == SyncMode.IMPORT:
            return resolver.resolve_backups(self.settings.import_dir)
        if self.mode == SyncMode.DATABASES:
            return resolver.resolve_databases(self.entries)
        return resolver.resolve_tables(self.entries)

    def _signal_scope(self) -> AbstractContextManager[None]:
        if self.handle_signals:
            return self.scheduler.signal_handlers()
        return nullcontext()

    def _start_store(
        self,
        tasks: list[SyncTask],
        resolution: ResolutionResult,
    ) -> SessionRepository | None:
        if self.repository is None:
            return None
        info = SessionInfo(
            session_id=self.session_id,
            mode=self.mode,
            started_at=utc_now(),
            tasks=tasks,
            pid=os.getpid(),
        )
        try:
            self.repository.start_session(info, resolution_failures=resolution.failure_count)
        except (SQLAlchemyError, OSError) as error:
            logger.warning("Session store unavailable, continuing in memory: %s", error)
            return None
        return self.repository

    def _finish_store(self, store: SessionRepository | None, report: SessionReport) -> None:
        if store is None:
            return
        try:
            store.finish_session(session_id=self.session_id, status=report.status)
        except (SQLAlchemyError, OSError, ValueError) as error:
            logger.warning("Failed to finalize session %s: %s", self.session_id, error)
