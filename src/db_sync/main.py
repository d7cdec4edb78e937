"""CLI entrypoint for db-sync."""

import logging
import sys
from pathlib import Path

import rich_click as click

from db_sync import __version__
from db_sync.config import MAX_THREADS, MIN_THREADS
from db_sync.orchestrator.controllers import (
    CheckConfigCommand,
    ImportBackupsCommand,
    ListSessionsCommand,
    SessionErrorsCommand,
    StopSessionCommand,
    SyncCliController,
    SyncRunCommand,
    SyncRunResult,
)
from db_sync.orchestrator.errors import ConfigurationError
from db_sync.orchestrator.models import Stage, SyncMode

click.rich_click.USE_MARKDOWN = True
SYNC_CONTROLLER = SyncCliController()

ENV_FILE_OPTION = click.option(
    "--env-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Env file with `DB_SYNC_*` settings, loaded before the process environment.",
)
DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite session store path.",
)


def configure_logging(*, verbose: bool, log_file: Path | None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(threadName)s %(name)s: %(message)s",
        handlers=handlers,
    )


@click.group()
@click.version_option(version=__version__, prog_name="db-sync")
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Also write logs to this file.",
)
def db_sync(verbose: bool, log_file: Path | None) -> None:
    """Copy remote MySQL databases or tables into a local server.

    Work runs on a bounded thread pool; every task goes through
    **extract → prepare → load → verify** with whole-attempt retries.
    """

    configure_logging(verbose=verbose, log_file=log_file)


@db_sync.group()
def run() -> None:
    """Run one sync session."""


@run.command("databases")
@ENV_FILE_OPTION
@DB_PATH_OPTION
@click.option(
    "--database",
    "databases",
    multiple=True,
    help="Source database to copy whole. Can be repeated; defaults to `DB_SYNC_DATABASES`.",
)
@click.option("--max-threads", type=click.IntRange(MIN_THREADS, MAX_THREADS), default=None)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option("--retry-delay", type=click.FloatRange(min=0), default=None, help="Seconds.")
def run_databases(  # noqa: PLR0913
    env_file: Path | None,
    db_path: Path | None,
    databases: tuple[str, ...],
    max_threads: int | None,
    max_attempts: int | None,
    retry_delay: float | None,
) -> None:
    """Copy whole databases."""

    _run_session(
        SyncRunCommand(
            mode=SyncMode.DATABASES,
            entries=databases,
            env_file=env_file,
            db_path=db_path,
            max_threads=max_threads,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
        ),
    )


@run.command("tables")
@ENV_FILE_OPTION
@DB_PATH_OPTION
@click.option(
    "--spec",
    "specs",
    multiple=True,
    help=(
        "Table spec `source:dest:t1,t2`, `source:t1,t2` or `source:dest:*`. "
        "Can be repeated; defaults to `DB_SYNC_TABLE_SYNC_CONFIG`."
    ),
)
@click.option("--max-threads", type=click.IntRange(MIN_THREADS, MAX_THREADS), default=None)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option("--retry-delay", type=click.FloatRange(min=0), default=None, help="Seconds.")
def run_tables(  # noqa: PLR0913
    env_file: Path | None,
    db_path: Path | None,
    specs: tuple[str, ...],
    max_threads: int | None,
    max_attempts: int | None,
    retry_delay: float | None,
) -> None:
    """Copy individual tables."""

    _run_session(
        SyncRunCommand(
            mode=SyncMode.TABLES,
            entries=specs,
            env_file=env_file,
            db_path=db_path,
            max_threads=max_threads,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
        ),
    )


@db_sync.command("import-backups")
@ENV_FILE_OPTION
@DB_PATH_OPTION
@click.option(
    "--dir",
    "backup_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory with `*.sql` dumps; defaults to `DB_SYNC_IMPORT_BACKUP_DIR`.",
)
@click.option(
    "--prefix",
    "db_prefix",
    default=None,
    help="Local database name prefix; defaults to `DB_SYNC_IMPORT_LOCAL_DB_PREFIX`.",
)
@click.option("--max-threads", type=click.IntRange(MIN_THREADS, MAX_THREADS), default=None)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option("--retry-delay", type=click.FloatRange(min=0), default=None, help="Seconds.")
def import_backups(  # noqa: PLR0913
    env_file: Path | None,
    db_path: Path | None,
    backup_dir: Path | None,
    db_prefix: str | None,
    max_threads: int | None,
    max_attempts: int | None,
    retry_delay: float | None,
) -> None:
    """Load existing dump files into local databases named `prefix + dump name`.

    Each dump goes through **prepare → load → verify**; replication statements
    are stripped and binary logging is off while loading.
    """

    try:
        result = SYNC_CONTROLLER.import_backups(
            ImportBackupsCommand(
                env_file=env_file,
                db_path=db_path,
                backup_dir=backup_dir,
                db_prefix=db_prefix,
                max_threads=max_threads,
                max_attempts=max_attempts,
                retry_delay=retry_delay,
            ),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_result(result, failure="Backup import finished with failures.")


@db_sync.command("stop")
@ENV_FILE_OPTION
@DB_PATH_OPTION
@click.option("--session-id", default=None, help="Session to stop; latest by default.")
def stop(env_file: Path | None, db_path: Path | None, session_id: str | None) -> None:
    """Stop a running session from another shell."""

    try:
        result = SYNC_CONTROLLER.stop(
            StopSessionCommand(env_file=env_file, db_path=db_path, session_id=session_id),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_result(result, failure="Nothing was stopped.")


@db_sync.command("check-config")
@ENV_FILE_OPTION
@DB_PATH_OPTION
def check_config(env_file: Path | None, db_path: Path | None) -> None:
    """Validate configuration and print a summary with secrets masked."""

    try:
        result = SYNC_CONTROLLER.check_config(
            CheckConfigCommand(env_file=env_file, db_path=db_path),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)


@db_sync.command("sessions")
@ENV_FILE_OPTION
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=10,
    show_default=True,
    help="Number of recent sessions to show.",
)
def sessions(env_file: Path | None, db_path: Path | None, limit: int) -> None:
    """List recent sync sessions."""

    try:
        lines = SYNC_CONTROLLER.list_sessions(
            ListSessionsCommand(env_file=env_file, db_path=db_path, limit=limit),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@db_sync.command("errors")
@ENV_FILE_OPTION
@DB_PATH_OPTION
@click.option("--session-id", default=None, help="Session to inspect; latest by default.")
@click.option(
    "--stage",
    type=click.Choice([stage.value for stage in Stage]),
    default=None,
    help="Only show errors of this stage.",
)
def errors(
    env_file: Path | None,
    db_path: Path | None,
    session_id: str | None,
    stage: str | None,
) -> None:
    """Show errors of a session grouped by stage and source."""

    try:
        lines = SYNC_CONTROLLER.errors(
            SessionErrorsCommand(
                env_file=env_file,
                db_path=db_path,
                session_id=session_id,
                stage=Stage(stage) if stage else None,
            ),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _run_session(command: SyncRunCommand) -> None:
    try:
        result = SYNC_CONTROLLER.run(command)
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_result(result, failure="Sync session finished with failures.")


def _emit_result(result: SyncRunResult, *, failure: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    db_sync()
