"""Controllers for sync CLI commands."""

from __future__ import annotations

import logging
import os
import signal
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from db_sync.config import Settings
from db_sync.orchestrator.backend import MySqlCliBackend, TransferBackend
from db_sync.orchestrator.models import Stage, SyncMode
from db_sync.orchestrator.report import error_counts_by_stage
from db_sync.orchestrator.repository import SESSION_RUNNING, SessionRepository
from db_sync.orchestrator.session import SESSION_CANCELLED, SyncSession, new_session_id

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Settings, str, SyncMode], TransferBackend]


def _default_backend(settings: Settings, session_id: str, mode: SyncMode) -> TransferBackend:
    return MySqlCliBackend(settings, session_id=session_id, mode=mode)


@dataclass(slots=True)
class SyncRunCommand:
    """CLI input for one sync session."""

    mode: SyncMode
    entries: tuple[str, ...]
    env_file: Path | None
    db_path: Path | None
    max_threads: int | None = None
    max_attempts: int | None = None
    retry_delay: float | None = None


@dataclass(slots=True)
class ImportBackupsCommand:
    """CLI input for re-importing dump files into the local server."""

    env_file: Path | None
    db_path: Path | None
    backup_dir: Path | None = None
    db_prefix: str | None = None
    max_threads: int | None = None
    max_attempts: int | None = None
    retry_delay: float | None = None


@dataclass(slots=True)
class StopSessionCommand:
    """CLI input for stopping a running session from another shell."""

    env_file: Path | None
    db_path: Path | None
    session_id: str | None = None


@dataclass(slots=True)
class CheckConfigCommand:
    """CLI input for configuration validation."""

    env_file: Path | None
    db_path: Path | None


@dataclass(slots=True)
class ListSessionsCommand:
    """CLI input for recent session listing."""

    env_file: Path | None
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class SessionErrorsCommand:
    """CLI input for error inspection of one session."""

    env_file: Path | None
    db_path: Path | None
    session_id: str | None
    stage: Stage | None = None


@dataclass(slots=True)
class SyncRunResult:
    """Report to render in CLI plus overall success."""

    lines: list[str]
    success: bool


class SyncCliController:
    """Coordinates sync runs and session store inspection."""

    def __init__(self, backend_factory: BackendFactory = _default_backend) -> None:
        self.backend_factory = backend_factory

    def run(self, command: SyncRunCommand) -> SyncRunResult:
        settings = Settings.from_env(env_file=command.env_file, db_path=command.db_path)
        _apply_run_overrides(settings, command)
        settings.validate()
        return self._run_session(settings, mode=command.mode, entries=command.entries or None)

    def import_backups(self, command: ImportBackupsCommand) -> SyncRunResult:
        settings = Settings.from_env(env_file=command.env_file, db_path=command.db_path)
        _apply_run_overrides(settings, command)
        if command.backup_dir is not None:
            settings.imports.backup_dir = command.backup_dir
        if command.db_prefix is not None:
            settings.imports.db_prefix = command.db_prefix
        settings.validate(require_remote=False)
        return self._run_session(settings, mode=SyncMode.IMPORT, entries=None)

    def stop(self, command: StopSessionCommand) -> SyncRunResult:
        """Send SIGTERM to the process running a session; it stops like on Ctrl+C."""

        settings = Settings.from_env(env_file=command.env_file, db_path=command.db_path)
        with _repository(settings) as repository:
            session_id = command.session_id or repository.latest_session_id()
            if session_id is None:
                return SyncRunResult(lines=["No sessions recorded."], success=False)
            view = repository.get_session(session_id)
            if view is None:
                return SyncRunResult(lines=[f"Unknown session: {session_id}"], success=False)
            if view.status != SESSION_RUNNING:
                return SyncRunResult(
                    lines=[f"Session {session_id} is not running (status={view.status})."],
                    success=False,
                )
            if view.pid is None or view.pid == os.getpid():
                return SyncRunResult(
                    lines=[f"Session {session_id} has no process that can be signalled."],
                    success=False,
                )
            try:
                os.kill(view.pid, signal.SIGTERM)
            except ProcessLookupError:
                logger.warning(
                    "Process %d of session %s is gone; marking it %s",
                    view.pid,
                    session_id,
                    SESSION_CANCELLED,
                )
                repository.finish_session(session_id=session_id, status=SESSION_CANCELLED)
                return SyncRunResult(
                    lines=[
                        f"Process {view.pid} of session {session_id} is no longer running; "
                        f"session marked {SESSION_CANCELLED}.",
                    ],
                    success=True,
                )
            except PermissionError as error:
                return SyncRunResult(
                    lines=[f"Not allowed to signal process {view.pid}: {error}"],
                    success=False,
                )

        logger.info("Sent SIGTERM to process %d of session %s", view.pid, session_id)
        return SyncRunResult(
            lines=[
                f"Stop requested for session {session_id} (SIGTERM to process {view.pid}).",
                "Running client commands are terminated; queued tasks are not started.",
            ],
            success=True,
        )

    def check_config(self, command: CheckConfigCommand) -> SyncRunResult:
        settings = Settings.from_env(env_file=command.env_file, db_path=command.db_path)
        settings.validate()
        return SyncRunResult(
            lines=["Configuration OK", *settings.summary_lines()],
            success=True,
        )

    def _run_session(
        self,
        settings: Settings,
        *,
        mode: SyncMode,
        entries: tuple[str, ...] | None,
    ) -> SyncRunResult:
        session_id = new_session_id()
        with _repository(settings) as repository:
            session = SyncSession(
                settings,
                mode=mode,
                entries=entries,
                backend=self.backend_factory(settings, session_id, mode),
                repository=repository,
                session_id=session_id,
                handle_signals=True,
            )
            report = session.run()
        return SyncRunResult(lines=report.lines(), success=report.success)

    def list_sessions(self, command: ListSessionsCommand) -> list[str]:
        settings = Settings.from_env(env_file=command.env_file, db_path=command.db_path)
        with _repository(settings) as repository:
            sessions = repository.list_sessions(limit=command.limit)

        if not sessions:
            return ["No sessions recorded."]
        lines = [f"Sessions: {len(sessions)}"]
        for view in sessions:
            finished = view.finished_at.isoformat() if view.finished_at else "-"
            lines.append(
                f"- {view.session_id} mode={view.mode} status={view.status} "
                f"started={view.started_at.isoformat()} finished={finished} "
                f"tasks={view.total_tasks} succeeded={view.succeeded} failed={view.failed} "
                f"resolution_failures={view.resolution_failures}"
                + (f" pid={view.pid}" if view.status == SESSION_RUNNING and view.pid else ""),
            )
        return lines

    def errors(self, command: SessionErrorsCommand) -> list[str]:
        settings = Settings.from_env(env_file=command.env_file, db_path=command.db_path)
        with _repository(settings) as repository:
            session_id = command.session_id or repository.latest_session_id()
            if session_id is None:
                return ["No sessions recorded."]
            errors = repository.list_errors(session_id=session_id, stage=command.stage)

        lines = [f"Session: {session_id}", f"Errors: {len(errors)}"]
        if not errors:
            return lines

        lines.append("By stage:")
        lines.extend(
            f"  {stage.value}: {count}" for stage, count in error_counts_by_stage(errors).items()
        )
        lines.append("By source:")
        by_source = Counter(error.key.source for error in errors)
        lines.extend(f"  {source}: {count}" for source, count in sorted(by_source.items()))
        lines.append("Details:")
        lines.extend(f"  {error.to_line()}" for error in errors)
        return lines


def _apply_run_overrides(
    settings: Settings,
    command: SyncRunCommand | ImportBackupsCommand,
) -> None:
    if command.max_threads is not None:
        settings.sync.max_threads = command.max_threads
    if command.max_attempts is not None:
        settings.sync.max_attempts = command.max_attempts
    if command.retry_delay is not None:
        settings.sync.retry_delay_seconds = command.retry_delay


@contextmanager
def _repository(settings: Settings) -> Iterator[SessionRepository]:
    repository = SessionRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
