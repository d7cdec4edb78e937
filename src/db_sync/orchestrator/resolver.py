"""Expand unit specifications into the flat task list of a session."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from db_sync.config import Settings
from db_sync.orchestrator.backend.base import BackendError, TransferBackend
from db_sync.orchestrator.errors import ResolutionError
from db_sync.orchestrator.models import IMPORT_STAGES, SyncTask, TaskKey, UnitSpec
from db_sync.orchestrator.specs import parse_database_spec, parse_table_spec

logger = logging.getLogger(__name__)

# `<db>-<session id>.sql` as written by the extract stage; plain `<db>.sql` also works.
_DUMP_NAME_RE = re.compile(r"^(?P<database>.+?)(?:-\d{8}_\d{6}_[0-9a-f]{6})?$")


@dataclass(slots=True)
class ResolutionResult:
    """Tasks in declaration order plus every unit that was skipped."""

    tasks: list[SyncTask] = field(default_factory=list)
    failures: list[ResolutionError] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures)


class TaskResolver:
    """Turn database names or table specs into tasks, discovering ``*`` tables."""

    def __init__(self, backend: TransferBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings

    def resolve_databases(self, entries: Iterable[str]) -> ResolutionResult:
        result = ResolutionResult()
        seen: set[TaskKey] = set()
        for raw in entries:
            try:
                unit = parse_database_spec(raw, naming_rule=self.settings.local_database_name)
            except ResolutionError as error:
                self._skip(result, error)
                continue
            self._append(result, seen, TaskKey(source=unit.source, destination=unit.destination))
        return result

    def resolve_tables(self, entries: Iterable[str]) -> ResolutionResult:
        result = ResolutionResult()
        seen: set[TaskKey] = set()
        for raw in entries:
            try:
                unit = parse_table_spec(raw, naming_rule=self.settings.local_database_name)
                tables = self._tables_for(unit)
            except ResolutionError as error:
                self._skip(result, error)
                continue
            for table in tables:
                key = TaskKey(source=unit.source, destination=unit.destination, table=table)
                self._append(result, seen, key)
        return result

    def resolve_backups(self, directory: Path) -> ResolutionResult:
        """One whole-database import task per dump, newest dump per database."""

        result = ResolutionResult()
        if not directory.is_dir():
            self._skip(
                result,
                ResolutionError(f"Backup directory not found: {directory}", spec=str(directory)),
            )
            return result

        latest: dict[str, Path] = {}
        for dump in sorted(directory.glob("*.sql")):
            if not dump.is_file():
                continue
            match = _DUMP_NAME_RE.match(dump.stem)
            database = match.group("database") if match else dump.stem
            if database in latest:
                logger.info("Using %s over older dump %s", dump.name, latest[database].name)
            latest[database] = dump

        for database in sorted(latest):
            result.tasks.append(
                SyncTask(
                    key=TaskKey(
                        source=database,
                        destination=self.settings.import_database_name(database),
                    ),
                    max_attempts=self.settings.sync.max_attempts,
                    stages=IMPORT_STAGES,
                    artifact_path=latest[database],
                ),
            )
        logger.info("Found %d dump(s) in %s", len(result.tasks), directory)
        return result

    def _tables_for(self, unit: UnitSpec) -> tuple[str, ...]:
        if not unit.wildcard:
            return unit.tables
        try:
            tables = self.backend.list_tables(
                unit.source,
                timeout_seconds=self.settings.sync.stage_timeout_seconds,
            )
        except BackendError as error:
            raise ResolutionError(
                f"Failed to list tables of {unit.source!r}: {error}",
                spec=unit.raw,
            ) from error
        if not tables:
            raise ResolutionError(f"No tables found in database {unit.source!r}.", spec=unit.raw)
        logger.info("Discovered %d tables in %s", len(tables), unit.source)
        return tuple(tables)

    def _append(self, result: ResolutionResult, seen: set[TaskKey], key: TaskKey) -> None:
        if key in seen:
            logger.warning("Skipping duplicate task %s", key.label)
            return
        seen.add(key)
        result.tasks.append(SyncTask(key=key, max_attempts=self.settings.sync.max_attempts))

    def _skip(self, result: ResolutionResult, error: ResolutionError) -> None:
        logger.warning("Skipping unit %r: %s", error.spec, error)
        result.failures.append(error)
