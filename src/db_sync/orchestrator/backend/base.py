"""Transfer backend interface for pipeline stage execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from db_sync.orchestrator.models import SyncTask


class BackendError(RuntimeError):
    """Backend could not run a command at all (missing binary, OS error)."""


@dataclass(slots=True)
class StageRequest:
    """Inputs required to run one stage of one attempt."""

    task: SyncTask
    attempt: int
    timeout_seconds: float
    artifact_path: Path | None = None
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class StageResult:
    """Stage outcome reported by a backend.

    ``warnings`` carry benign diagnostics that must not count as a failure.
    """

    ok: bool
    message: str = ""
    warnings: tuple[str, ...] = ()
    artifact_path: Path | None = None
    timed_out: bool = False
    cancelled: bool = False

    @classmethod
    def success(
        cls,
        message: str = "",
        *,
        warnings: tuple[str, ...] = (),
        artifact_path: Path | None = None,
    ) -> StageResult:
        return cls(ok=True, message=message, warnings=warnings, artifact_path=artifact_path)

    @classmethod
    def failure(
        cls,
        message: str,
        *,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> StageResult:
        return cls(ok=False, message=message, timed_out=timed_out, cancelled=cancelled)


class TransferBackend(Protocol):
    """Protocol implemented by data movement backends."""

    def list_tables(self, database: str, *, timeout_seconds: float) -> list[str]:
        """Enumerate tables of a source database; raise ``BackendError`` on failure."""

    def extract(self, request: StageRequest) -> StageResult:
        """Dump the source unit; a successful result carries ``artifact_path``."""

    def prepare(self, request: StageRequest) -> StageResult:
        """Make the destination ready to receive the artifact."""

    def load(self, request: StageRequest) -> StageResult:
        """Load ``request.artifact_path`` into the destination."""

    def verify(self, request: StageRequest) -> StageResult:
        """Confirm the destination object exists and is populated."""
