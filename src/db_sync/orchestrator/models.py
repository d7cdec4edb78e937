"""Domain models for sync tasks, sessions and their records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Stage(str, Enum):
    """Pipeline stages, in execution order."""

    EXTRACT = "extract"
    PREPARE = "prepare"
    LOAD = "load"
    VERIFY = "verify"


PIPELINE_STAGES: tuple[Stage, ...] = (Stage.EXTRACT, Stage.PREPARE, Stage.LOAD, Stage.VERIFY)
# Dumps already on disk skip extraction.
IMPORT_STAGES: tuple[Stage, ...] = (Stage.PREPARE, Stage.LOAD, Stage.VERIFY)


class TaskStatus(str, Enum):
    """Terminal task states."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncMode(str, Enum):
    """Granularity of one session."""

    DATABASES = "databases"
    TABLES = "tables"
    IMPORT = "import"


@dataclass(frozen=True, slots=True)
class TaskKey:
    """Identity of one unit of work."""

    source: str
    destination: str
    table: str | None = None

    @property
    def label(self) -> str:
        if self.table is None:
            return f"{self.source} -> {self.destination}"
        return f"{self.source}.{self.table} -> {self.destination}"


@dataclass(slots=True)
class UnitSpec:
    """Parsed unit specification before table discovery."""

    raw: str
    source: str
    destination: str
    tables: tuple[str, ...] = ()
    wildcard: bool = False

    @property
    def whole_database(self) -> bool:
        return not self.wildcard and not self.tables


@dataclass(slots=True)
class SyncTask:
    """One database or table copy; only the attempt counter ever changes."""

    key: TaskKey
    max_attempts: int
    stages: tuple[Stage, ...] = PIPELINE_STAGES
    artifact_path: Path | None = None
    attempt: int = 0

    @property
    def label(self) -> str:
        return self.key.label


@dataclass(slots=True)
class OutcomeRecord:
    """Terminal result for one task, written exactly once."""

    key: TaskKey
    status: TaskStatus
    duration_seconds: float
    attempts: int
    session_id: str
    finished_at: datetime | None = None

    def to_line(self) -> str:
        """Render ``status:source:dest:table:duration:attempts:session_id``."""

        return ":".join(
            (
                self.status.value,
                self.key.source,
                self.key.destination,
                self.key.table or "",
                f"{self.duration_seconds:.1f}s",
                str(self.attempts),
                self.session_id,
            ),
        )


@dataclass(slots=True)
class ErrorRecord:
    """One failed stage of one attempt."""

    key: TaskKey
    stage: Stage
    attempt: int
    message: str
    session_id: str
    created_at: datetime | None = None

    def to_line(self) -> str:
        """Render ``stage:source:table:attempt_N:message:session_id``."""

        return ":".join(
            (
                self.stage.value,
                self.key.source,
                self.key.table or "",
                f"attempt_{self.attempt}",
                " ".join(self.message.split()),
                self.session_id,
            ),
        )


@dataclass(slots=True)
class ProgressSnapshot:
    """Point-in-time progress as seen by the monitor."""

    completed: int
    total: int
    elapsed_seconds: float

    @property
    def done(self) -> bool:
        return self.completed >= self.total


@dataclass(slots=True)
class SessionInfo:
    """One orchestrator invocation."""

    session_id: str
    mode: SyncMode
    started_at: datetime
    tasks: list[SyncTask] = field(default_factory=list)
    pid: int | None = None


@dataclass(slots=True)
class SessionView:
    """Stored session summary for listing."""

    session_id: str
    mode: str
    status: str
    started_at: datetime
    finished_at: datetime | None
    total_tasks: int
    succeeded: int
    failed: int
    resolution_failures: int
    pid: int | None = None
