"""Runtime configuration for database and table synchronization."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from db_sync.orchestrator.errors import ConfigurationError
from db_sync.orchestrator.models import SyncMode

MIN_THREADS = 1
MAX_THREADS = 32
MAX_PORT = 65_535
DEFAULT_IMPORT_DB_PREFIX = "imported_"

DEFAULT_DATABASE_DUMP_OPTIONS = (
    "--set-gtid-purged=OFF --skip-add-locks --skip-lock-tables "
    "--single-transaction --routines --triggers"
)
DEFAULT_TABLE_DUMP_OPTIONS = (
    "--set-gtid-purged=OFF --skip-add-locks --skip-lock-tables --skip-triggers "
    "--skip-opt --single-transaction --add-drop-table --create-options "
    "--extended-insert --quick --lock-tables=false"
)


@dataclass(slots=True)
class RemoteSettings:
    """Connection to the remote (source) server."""

    host: str = ""
    port: int = 3306
    user: str = ""
    password: str = ""


@dataclass(slots=True)
class LocalSettings:
    """Connection to the local (destination) server."""

    host: str = "localhost"
    port: int = 3306
    user: str = ""
    password: str = ""
    db_prefix: str = ""
    charset: str = ""
    collation: str = ""
    sql_mode: str = ""
    drop_existing_table: bool = True


@dataclass(slots=True)
class SyncSettings:
    """Scheduler, retry and monitoring tunables."""

    max_threads: int = 4
    max_attempts: int = 3
    retry_delay_seconds: float = 10.0
    retry_backoff_multiplier: float = 1.0
    connect_timeout_seconds: int = 60
    stage_timeout_seconds: float = 3_600.0
    graceful_shutdown_seconds: float = 5.0
    progress_interval_seconds: float = 5.0
    databases: tuple[str, ...] = ()
    table_specs: tuple[str, ...] = ()


@dataclass(slots=True)
class DumpSettings:
    """Command lines and options for the MySQL client tools."""

    dump_command: str = "mysqldump"
    client_command: str = "mysql"
    database_options: str = DEFAULT_DATABASE_DUMP_OPTIONS
    table_options: str = DEFAULT_TABLE_DUMP_OPTIONS


@dataclass(slots=True)
class ImportSettings:
    """Re-import of dump files already on disk."""

    backup_dir: Path | None = None
    db_prefix: str = DEFAULT_IMPORT_DB_PREFIX


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    data_dir: Path = Path("data")
    db_path: Path = Path(".db_sync.db")
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    local: LocalSettings = field(default_factory=LocalSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    dump: DumpSettings = field(default_factory=DumpSettings)
    imports: ImportSettings = field(default_factory=ImportSettings)

    @property
    def backup_dir(self) -> Path:
        return self.data_dir / "backups"

    @property
    def import_dir(self) -> Path:
        """Where `import-backups` looks for dumps; whole-database dumps by default."""

        return self.imports.backup_dir or self.backup_dir / SyncMode.DATABASES.value

    @classmethod
    def from_env(
        cls,
        env_file: Path | None = None,
        db_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment, optionally seeded from an env file.

        Values already present in the process environment win over the file.
        Malformed numbers and booleans raise ``ConfigurationError``.
        """

        if env_file is not None:
            if not env_file.is_file():
                raise ConfigurationError(f"Configuration file not found: {env_file}")
            load_dotenv(env_file, override=False)

        return cls(
            data_dir=Path(os.getenv("DB_SYNC_DATA_DIR", "data")),
            db_path=db_path or Path(os.getenv("DB_SYNC_DB_PATH", ".db_sync.db")),
            remote=RemoteSettings(
                host=os.getenv("DB_SYNC_REMOTE_HOST", "").strip(),
                port=_env_int("DB_SYNC_REMOTE_PORT", 3306),
                user=os.getenv("DB_SYNC_REMOTE_USER", "").strip(),
                password=os.getenv("DB_SYNC_REMOTE_PASS", ""),
            ),
            local=LocalSettings(
                host=os.getenv("DB_SYNC_LOCAL_HOST", "localhost").strip(),
                port=_env_int("DB_SYNC_LOCAL_PORT", 3306),
                user=os.getenv("DB_SYNC_LOCAL_USER", "").strip(),
                password=os.getenv("DB_SYNC_LOCAL_PASS", ""),
                db_prefix=os.getenv("DB_SYNC_LOCAL_DB_PREFIX", "").strip(),
                charset=os.getenv("DB_SYNC_CHARSET", "").strip(),
                collation=os.getenv("DB_SYNC_COLLATION", "").strip(),
                sql_mode=os.getenv("DB_SYNC_SQL_MODE", "").strip(),
                drop_existing_table=_env_bool("DB_SYNC_DROP_EXISTING_TABLE", default=True),
            ),
            sync=SyncSettings(
                max_threads=_env_int("DB_SYNC_MAX_THREADS", 4),
                max_attempts=_env_int("DB_SYNC_MAX_RETRY_ATTEMPTS", 3),
                retry_delay_seconds=_env_float("DB_SYNC_RETRY_DELAY", 10.0),
                retry_backoff_multiplier=_env_float("DB_SYNC_RETRY_BACKOFF_MULTIPLIER", 1.0),
                connect_timeout_seconds=_env_int("DB_SYNC_CONNECT_TIMEOUT", 60),
                stage_timeout_seconds=_env_float("DB_SYNC_STAGE_TIMEOUT", 3600.0),
                graceful_shutdown_seconds=_env_float("DB_SYNC_GRACEFUL_SHUTDOWN_SECONDS", 5.0),
                progress_interval_seconds=_env_float("DB_SYNC_PROGRESS_REPORT_INTERVAL", 5.0),
                databases=parse_database_list(os.getenv("DB_SYNC_DATABASES", "")),
                table_specs=parse_table_sync_config(
                    single_line=os.getenv("DB_SYNC_TABLE_SYNC_CONFIG", ""),
                    multiline=os.getenv("DB_SYNC_TABLE_SYNC_CONFIG_MULTILINE", ""),
                ),
            ),
            dump=DumpSettings(
                dump_command=os.getenv("DB_SYNC_MYSQLDUMP_COMMAND", "mysqldump"),
                client_command=os.getenv("DB_SYNC_MYSQL_COMMAND", "mysql"),
                database_options=os.getenv(
                    "DB_SYNC_MYSQLDUMP_OPTIONS",
                    DEFAULT_DATABASE_DUMP_OPTIONS,
                ),
                table_options=os.getenv(
                    "DB_SYNC_MYSQLDUMP_TABLE_OPTIONS",
                    DEFAULT_TABLE_DUMP_OPTIONS,
                ),
            ),
            imports=ImportSettings(
                backup_dir=_env_path("DB_SYNC_IMPORT_BACKUP_DIR"),
                db_prefix=os.getenv(
                    "DB_SYNC_IMPORT_LOCAL_DB_PREFIX",
                    DEFAULT_IMPORT_DB_PREFIX,
                ).strip(),
            ),
        )

    def validate(self, *, require_remote: bool = True) -> None:
        """Raise ``ConfigurationError`` listing every invalid or missing setting.

        Importing local dumps never talks to the remote server, so its
        credentials are optional there.
        """

        problems: list[str] = []
        required: dict[str, str] = {}
        if require_remote:
            required.update(
                {
                    "DB_SYNC_REMOTE_HOST": self.remote.host,
                    "DB_SYNC_REMOTE_USER": self.remote.user,
                    "DB_SYNC_REMOTE_PASS": self.remote.password,
                },
            )
        required["DB_SYNC_LOCAL_USER"] = self.local.user
        required["DB_SYNC_LOCAL_PASS"] = self.local.password
        problems.extend(
            f"Required configuration variable {name} is not set."
            for name, value in required.items()
            if not value
        )

        sync = self.sync
        if not MIN_THREADS <= sync.max_threads <= MAX_THREADS:
            problems.append(
                f"DB_SYNC_MAX_THREADS must be between {MIN_THREADS} and {MAX_THREADS}.",
            )
        if sync.max_attempts < 1:
            problems.append("DB_SYNC_MAX_RETRY_ATTEMPTS must be >= 1.")
        if sync.retry_delay_seconds < 0:
            problems.append("DB_SYNC_RETRY_DELAY must be >= 0.")
        if sync.retry_backoff_multiplier < 1:
            problems.append("DB_SYNC_RETRY_BACKOFF_MULTIPLIER must be >= 1.")
        if sync.connect_timeout_seconds <= 0:
            problems.append("DB_SYNC_CONNECT_TIMEOUT must be > 0.")
        if sync.stage_timeout_seconds <= 0:
            problems.append("DB_SYNC_STAGE_TIMEOUT must be > 0.")
        if sync.graceful_shutdown_seconds < 0:
            problems.append("DB_SYNC_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if sync.progress_interval_seconds <= 0:
            problems.append("DB_SYNC_PROGRESS_REPORT_INTERVAL must be > 0.")

        for name, port in (
            ("DB_SYNC_REMOTE_PORT", self.remote.port),
            ("DB_SYNC_LOCAL_PORT", self.local.port),
        ):
            if not 1 <= port <= MAX_PORT:
                problems.append(f"{name} must be a valid port number (1-{MAX_PORT}).")

        if problems:
            raise ConfigurationError(
                f"Configuration validation failed with {len(problems)} error(s): "
                + " ".join(problems),
            )

    def local_database_name(self, source: str) -> str:
        """Destination name derived from a source database by the prefix rule."""

        return f"{self.local.db_prefix}{source}"

    def import_database_name(self, source: str) -> str:
        """Destination name for a re-imported dump."""

        return f"{self.imports.db_prefix}{source}"

    def summary_lines(self) -> list[str]:
        """Human-readable configuration summary with secrets masked."""

        sync = self.sync
        return [
            f"Remote: {self.remote.user}@{self.remote.host}:{self.remote.port} password=****",
            f"Local: {self.local.user}@{self.local.host}:{self.local.port} password=****",
            f"Local DB prefix: {self.local.db_prefix or 'none'}",
            f"Drop existing tables: {str(self.local.drop_existing_table).lower()}",
            f"Max threads: {sync.max_threads}",
            f"Max attempts: {sync.max_attempts}",
            f"Retry delay: {sync.retry_delay_seconds:g}s "
            f"(backoff x{sync.retry_backoff_multiplier:g})",
            f"Stage timeout: {sync.stage_timeout_seconds:g}s",
            f"Progress interval: {sync.progress_interval_seconds:g}s",
            f"Data dir: {self.data_dir}",
            f"Session store: {self.db_path}",
            f"Databases ({len(sync.databases)}): {', '.join(sync.databases) or '-'}",
            f"Import dir: {self.import_dir} (prefix {self.imports.db_prefix or 'none'})",
            f"Table sync entries: {len(sync.table_specs)}",
            *(f"  - {spec}" for spec in sync.table_specs),
        ]


def parse_database_list(raw: str) -> tuple[str, ...]:
    """Split a comma separated database list, trimming blanks."""

    return tuple(part.strip() for part in raw.split(",") if part.strip())


def parse_table_sync_config(*, single_line: str, multiline: str) -> tuple[str, ...]:
    """Collect table sync entries; the multiline form wins when both are set."""

    if multiline.strip():
        entries: list[str] = []
        for line in multiline.splitlines():
            token = line.strip()
            if not token or token.startswith("#"):
                continue
            entries.append(token)
        return tuple(entries)
    return tuple(part.strip() for part in single_line.split("|") if part.strip())


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ConfigurationError(f"Invalid number value for {name}: {value!r}") from error


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")
