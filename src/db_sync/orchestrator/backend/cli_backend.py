"""Subprocess-based transfer backend driving the MySQL client tools."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from db_sync.config import Settings
from db_sync.orchestrator.backend.base import BackendError, StageRequest, StageResult
from db_sync.orchestrator.failure_classifier import (
    STAGE_CLASSIFIER_VERSION,
    StageClassification,
    StageOutputClass,
    classify_stage_output,
)
from db_sync.orchestrator.models import SyncMode, SyncTask

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
POLL_INTERVAL_SECONDS = 0.1

# Replication statements in a dump that must not replay on the local server.
REPLICATION_MARKERS: tuple[bytes, ...] = (
    b"SET @@GLOBAL.GTID_PURGED",
    b"SET @@SESSION.SQL_LOG_BIN",
    b"SET @@GLOBAL.GTID_EXECUTED",
    b"CHANGE MASTER",
)


@dataclass(slots=True)
class CommandResult:
    """Exit status and captured output of one client tool run."""

    exit_code: int
    timed_out: bool
    cancelled: bool
    stdout: str
    stderr: str


class MySqlCliBackend:
    """Run extract/prepare/load/verify through ``mysqldump`` and ``mysql``."""

    def __init__(self, settings: Settings, *, session_id: str, mode: SyncMode) -> None:
        self.settings = settings
        self.session_id = session_id
        self.mode = mode
        self.artifact_dir = settings.backup_dir / mode.value

    def list_tables(self, database: str, *, timeout_seconds: float) -> list[str]:
        result = self._run(
            [
                *self._remote_client_args(),
                "--batch",
                "--skip-column-names",
                "--execute=SHOW TABLES",
                database,
            ],
            timeout_seconds=timeout_seconds,
        )
        if result.timed_out:
            raise BackendError(f"Table discovery timed out for database {database!r}.")
        classification = _classify("table discovery", result)
        if classification.failed:
            raise BackendError(
                f"Table discovery failed for database {database!r}: {classification.message}",
            )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def artifact_path_for(self, task: SyncTask) -> Path:
        key = task.key
        stem = key.source if key.table is None else f"{key.source}_{key.table}"
        return self.artifact_dir / f"{stem}-{self.session_id}.sql"

    def extract(self, request: StageRequest) -> StageResult:
        key = request.task.key
        artifact_path = self.artifact_path_for(request.task)
        artifact_path.parent.mkdir(parents=True, exist_ok=True)

        options = (
            self.settings.dump.database_options
            if key.table is None
            else self.settings.dump.table_options
        )
        args = [
            *shlex.split(self.settings.dump.dump_command),
            *self._connection_args(remote=True),
            *shlex.split(options),
            key.source,
        ]
        if key.table is not None:
            args.append(key.table)

        result = self._run(
            args,
            timeout_seconds=request.timeout_seconds,
            stdout_path=artifact_path,
            shutdown_requested=request.shutdown_requested,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
        )
        interrupted = _interrupted_result(result, what="dump")
        if interrupted is not None:
            return interrupted

        artifact_size = artifact_path.stat().st_size if artifact_path.exists() else 0
        classification = _classify("dump", result, artifact_size=artifact_size)
        if classification.failed:
            return StageResult.failure(classification.message)
        if artifact_size == 0:
            return StageResult.failure("Empty or missing dump file")
        if key.table is not None and not _file_contains(artifact_path, b"CREATE TABLE"):
            return StageResult.failure("No table structure found in dump file")

        return StageResult.success(
            f"dump written to {artifact_path} ({artifact_size} bytes)",
            warnings=classification.warnings,
            artifact_path=artifact_path,
        )

    def prepare(self, request: StageRequest) -> StageResult:
        key = request.task.key
        database = quote_identifier(key.destination)
        if key.table is None:
            statements = [
                f"DROP DATABASE IF EXISTS {database}",
                self._create_database_sql(key.destination),
            ]
        else:
            statements = [self._create_database_sql(key.destination, if_not_exists=True)]

        warnings: list[str] = []
        for statement in statements:
            outcome = self._run_local_sql(request, statement)
            if not outcome.ok:
                return outcome
            warnings.extend(outcome.warnings)

        if key.table is not None and self.settings.local.drop_existing_table:
            dropped = self._run_local_sql(
                request,
                f"DROP TABLE IF EXISTS {quote_identifier(key.table)}",
                database=key.destination,
            )
            if dropped.cancelled or dropped.timed_out:
                return dropped
            if not dropped.ok:
                logger.warning(
                    "Failed to drop existing table %s: %s",
                    key.label,
                    dropped.message,
                )
                warnings.append(f"drop table failed: {dropped.message}")
            else:
                warnings.extend(dropped.warnings)

        return StageResult.success(f"destination {key.destination} ready", warnings=tuple(warnings))

    def load(self, request: StageRequest) -> StageResult:
        key = request.task.key
        if request.artifact_path is None or not request.artifact_path.exists():
            return StageResult.failure("Dump file is missing; nothing to load")

        args = [*self._local_client_args()]
        if self.settings.local.sql_mode:
            args.append(f"--init-command=SET SESSION sql_mode='{self.settings.local.sql_mode}'")
        args.append(key.destination)

        with self._load_source(request.artifact_path) as source:
            result = self._run(
                args,
                timeout_seconds=request.timeout_seconds,
                stdin_path=source,
                shutdown_requested=request.shutdown_requested,
                graceful_shutdown_seconds=request.graceful_shutdown_seconds,
            )
        interrupted = _interrupted_result(result, what="import")
        if interrupted is not None:
            return interrupted
        classification = _classify("import", result)
        if classification.failed:
            return StageResult.failure(classification.message)
        return StageResult.success(
            f"loaded into {key.destination}",
            warnings=classification.warnings,
        )

    def verify(self, request: StageRequest) -> StageResult:
        key = request.task.key
        if key.table is None:
            listed = self._query_local(request, "SHOW TABLES", database=key.destination)
            if not listed.ok:
                return listed
            tables = [line for line in listed.message.splitlines() if line.strip()]
            if not tables:
                return StageResult.failure("No tables found after import")
            return StageResult.success(f"{len(tables)} tables present in {key.destination}")

        pattern = key.table.replace("\\", "\\\\").replace("'", "\\'")
        listed = self._query_local(
            request,
            f"SHOW TABLES LIKE '{pattern}'",
            database=key.destination,
        )
        if not listed.ok:
            return listed
        if key.table not in {line.strip() for line in listed.message.splitlines()}:
            return StageResult.failure("Table not found after import")

        counted = self._query_local(
            request,
            f"SELECT COUNT(*) FROM {quote_identifier(key.table)}",
            database=key.destination,
        )
        if not counted.ok:
            return counted
        rows = counted.message.strip().splitlines()[-1:] or ["unknown"]
        return StageResult.success(f"{rows[0]} rows in {key.destination}.{key.table}")

    # -- command helpers ----------------------------------------------------

    @contextmanager
    def _load_source(self, dump_path: Path) -> Iterator[Path]:
        if self.mode != SyncMode.IMPORT:
            yield dump_path
            return
        with tempfile.TemporaryDirectory(prefix="db-sync-import-") as workdir:
            script = Path(workdir) / dump_path.name
            dropped = write_import_script(dump_path, script)
            if dropped:
                logger.info(
                    "Dropped %d replication line(s) from %s",
                    dropped,
                    dump_path.name,
                )
            yield script

    def _create_database_sql(self, name: str, *, if_not_exists: bool = False) -> str:
        sql = "CREATE DATABASE "
        if if_not_exists:
            sql += "IF NOT EXISTS "
        sql += quote_identifier(name)
        if self.settings.local.charset:
            sql += f" CHARACTER SET {self.settings.local.charset}"
        if self.settings.local.collation:
            sql += f" COLLATE {self.settings.local.collation}"
        return sql

    def _run_local_sql(
        self,
        request: StageRequest,
        statement: str,
        *,
        database: str | None = None,
    ) -> StageResult:
        args = [*self._local_client_args(), f"--execute={statement}"]
        if database is not None:
            args.append(database)
        result = self._run(
            args,
            timeout_seconds=request.timeout_seconds,
            shutdown_requested=request.shutdown_requested,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
        )
        interrupted = _interrupted_result(result, what="statement")
        if interrupted is not None:
            return interrupted
        classification = _classify("statement", result)
        if classification.failed:
            verb = statement.split(" ", 1)[0]
            return StageResult.failure(f"{verb} failed - {classification.message}")
        return StageResult.success(statement, warnings=classification.warnings)

    def _query_local(self, request: StageRequest, query: str, *, database: str) -> StageResult:
        result = self._run(
            [
                *self._local_client_args(),
                "--batch",
                "--skip-column-names",
                f"--execute={query}",
                database,
            ],
            timeout_seconds=request.timeout_seconds,
            shutdown_requested=request.shutdown_requested,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
        )
        interrupted = _interrupted_result(result, what="verification query")
        if interrupted is not None:
            return interrupted
        classification = _classify("verification query", result)
        if classification.failed:
            return StageResult.failure(f"Verification query failed - {classification.message}")
        return StageResult.success(result.stdout, warnings=classification.warnings)

    def _remote_client_args(self) -> list[str]:
        client = shlex.split(self.settings.dump.client_command)
        return [*client, *self._connection_args(remote=True)]

    def _local_client_args(self) -> list[str]:
        client = shlex.split(self.settings.dump.client_command)
        return [*client, *self._connection_args(remote=False)]

    def _connection_args(self, *, remote: bool) -> list[str]:
        conn = self.settings.remote if remote else self.settings.local
        return [
            f"--host={conn.host}",
            f"--port={conn.port}",
            f"--user={conn.user}",
            f"--password={conn.password}",
            f"--connect-timeout={self.settings.sync.connect_timeout_seconds}",
        ]

    def _run(  # noqa: PLR0913
        self,
        args: list[str],
        *,
        timeout_seconds: float,
        stdout_path: Path | None = None,
        stdin_path: Path | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: float | None = None,
    ) -> CommandResult:
        logger.debug("Running %s", _redact(args))
        try:
            return run_command(
                args,
                timeout_seconds=timeout_seconds,
                stdout_path=stdout_path,
                stdin_path=stdin_path,
                shutdown_requested=shutdown_requested,
                graceful_shutdown_seconds=(
                    self.settings.sync.graceful_shutdown_seconds
                    if graceful_shutdown_seconds is None
                    else graceful_shutdown_seconds
                ),
            )
        except FileNotFoundError as error:
            raise BackendError(f"Client command not found: {args[0]}") from error
        except OSError as error:
            raise BackendError(f"Client command failed to start: {error}") from error


def run_command(  # noqa: PLR0913
    args: list[str],
    *,
    timeout_seconds: float,
    stdout_path: Path | None = None,
    stdin_path: Path | None = None,
    shutdown_requested: Callable[[], bool] | None = None,
    graceful_shutdown_seconds: float = 5.0,
) -> CommandResult:
    """Run one command in its own process group with timeout and cooperative stop.

    On timeout or stop request the whole group receives SIGTERM, then SIGKILL if
    it is still alive after ``graceful_shutdown_seconds``.
    """

    with (
        _open_stdout(stdout_path) as stdout_handle,
        tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as stderr_handle,
        _open_stdin(stdin_path) as stdin_handle,
    ):
        process = subprocess.Popen(  # noqa: S603
            args,
            stdin=stdin_handle if stdin_handle is not None else subprocess.DEVNULL,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
            start_new_session=True,
        )
        timed_out = False
        cancelled = False
        start_monotonic = time.monotonic()
        while True:
            returncode = process.poll()
            if returncode is not None:
                break
            if time.monotonic() - start_monotonic >= timeout_seconds:
                timed_out = True
                terminate_process_group(process, grace_seconds=graceful_shutdown_seconds)
                break
            if shutdown_requested is not None and shutdown_requested():
                cancelled = True
                terminate_process_group(process, grace_seconds=graceful_shutdown_seconds)
                break
            time.sleep(POLL_INTERVAL_SECONDS)

        stderr_handle.seek(0)
        stderr = stderr_handle.read()
        stdout = ""
        if stdout_path is None:
            stdout_handle.seek(0)
            stdout = stdout_handle.read()

    exit_code = TIMEOUT_EXIT_CODE if timed_out or cancelled else process.returncode
    return CommandResult(
        exit_code=exit_code,
        timed_out=timed_out,
        cancelled=cancelled,
        stdout=stdout,
        stderr=stderr,
    )


def terminate_process_group(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    """SIGTERM the process group, wait, then SIGKILL whatever is left."""

    if not hasattr(os, "killpg"):
        _terminate_single(process, grace_seconds=grace_seconds)
        return
    try:
        pgid = os.getpgid(process.pid)
    except ProcessLookupError:
        process.wait()
        return
    try:
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        process.wait()
        return
    try:
        process.wait(timeout=max(0.0, grace_seconds))
    except subprocess.TimeoutExpired:
        logger.warning("Process group %s ignored SIGTERM; sending SIGKILL", pgid)
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        process.wait()


def write_import_script(dump_path: Path, target: Path) -> int:
    """Copy a dump into ``target`` with binary logging off and replication lines removed.

    A removed statement that spans several lines is skipped up to its closing
    semicolon. Returns the number of lines dropped.
    """

    dropped = 0
    skipping = False
    with dump_path.open("rb") as source, target.open("wb") as sink:
        sink.write(b"SET SESSION sql_log_bin=0;\n")
        for line in source:
            if skipping or any(marker in line for marker in REPLICATION_MARKERS):
                dropped += 1
                skipping = not line.rstrip().endswith(b";")
                continue
            sink.write(line)
        sink.write(b"\nSET SESSION sql_log_bin=1;\n")
    return dropped


def quote_identifier(name: str) -> str:
    """Quote a MySQL identifier with backticks."""

    return "`" + name.replace("`", "``") + "`"


def _terminate_single(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(0.0, grace_seconds))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait()


def _classify(
    what: str,
    result: CommandResult,
    *,
    artifact_size: int | None = None,
) -> StageClassification:
    classification = classify_stage_output(
        exit_code=result.exit_code,
        stderr=result.stderr,
        artifact_size=artifact_size,
    )
    if classification.output_class != StageOutputClass.OK:
        logger.log(
            logging.WARNING if classification.failed else logging.DEBUG,
            "%s exited with %s: %s (reason=%s pattern=%s classifier=v%d)",
            what,
            result.exit_code,
            classification.output_class.value,
            classification.reason_code,
            classification.matched_pattern,
            STAGE_CLASSIFIER_VERSION,
        )
    return classification


def _interrupted_result(result: CommandResult, *, what: str) -> StageResult | None:
    if result.cancelled:
        return StageResult.failure(f"{what} cancelled by stop request", cancelled=True)
    if result.timed_out:
        return StageResult.failure(f"{what} timed out", timed_out=True)
    return None


def _file_contains(path: Path, needle: bytes, chunk_size: int = 1 << 20) -> bool:
    tail = b""
    with path.open("rb") as handle:
        while chunk := handle.read(chunk_size):
            if needle in tail + chunk:
                return True
            tail = chunk[-len(needle) :]
    return False


def _redact(args: list[str]) -> str:
    return " ".join(
        "--password=****" if arg.startswith("--password=") else shlex.quote(arg) for arg in args
    )


def _open_stdout(path: Path | None) -> IO[str]:
    if path is None:
        return tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace")
    return path.open("w", encoding="utf-8")


def _open_stdin(path: Path | None) -> AbstractContextManager[IO[str] | None]:
    if path is None:
        return nullcontext()
    return path.open("r", encoding="utf-8")
