"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from db_sync.config import LocalSettings, RemoteSettings, Settings, SyncSettings
from db_sync.orchestrator.backend.base import BackendError, StageRequest, StageResult
from db_sync.orchestrator.models import Stage, TaskKey


class FakeBackend:
    """In-memory transfer backend with scripted failures and call tracking.

    ``failures`` maps ``(key, stage)`` to how many times that stage fails before
    succeeding; ``-1`` fails forever.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tables: dict[str, list[str]] | None = None,
        failures: dict[tuple[TaskKey, Stage], int] | None = None,
        warnings: dict[tuple[TaskKey, Stage], tuple[str, ...]] | None = None,
        list_errors: set[str] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.tables = tables or {}
        self.failures = dict(failures or {})
        self.warnings = warnings or {}
        self.list_errors = list_errors or set()
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[TaskKey, Stage, int]] = []
        self.listed: list[str] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def list_tables(self, database: str, *, timeout_seconds: float) -> list[str]:
        del timeout_seconds
        self.listed.append(database)
        if database in self.list_errors:
            raise BackendError(f"access denied for {database}")
        return list(self.tables.get(database, []))

    def extract(self, request: StageRequest) -> StageResult:
        result = self._stage(request, Stage.EXTRACT)
        if result.ok:
            result.artifact_path = Path(f"/tmp/{request.task.key.source}.sql")  # noqa: S108
        return result

    def prepare(self, request: StageRequest) -> StageResult:
        return self._stage(request, Stage.PREPARE)

    def load(self, request: StageRequest) -> StageResult:
        if request.artifact_path is None:
            return StageResult.failure("no artifact")
        return self._stage(request, Stage.LOAD)

    def verify(self, request: StageRequest) -> StageResult:
        return self._stage(request, Stage.VERIFY)

    def stages_called(self, key: TaskKey) -> list[Stage]:
        with self._lock:
            return [stage for called_key, stage, _ in self.calls if called_key == key]

    def _stage(self, request: StageRequest, stage: Stage) -> StageResult:
        key = request.task.key
        with self._lock:
            self.calls.append((key, stage, request.attempt))
            self.active += 1
            self.peak = max(self.peak, self.active)
            remaining = self.failures.get((key, stage), 0)
            if remaining > 0:
                self.failures[(key, stage)] = remaining - 1
        try:
            if self.delay_seconds:
                time.sleep(self.delay_seconds)
            if remaining != 0:
                return StageResult.failure(f"{stage.value} failed for {key.label}")
            return StageResult.success(
                f"{stage.value} ok",
                warnings=self.warnings.get((key, stage), ()),
            )
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch):
    """Keep ``DB_SYNC_*`` variables from leaking between tests, env files included."""

    for name in list(os.environ):
        if name.startswith("DB_SYNC_"):
            monkeypatch.delenv(name)
    yield
    for name in list(os.environ):
        if name.startswith("DB_SYNC_"):
            os.environ.pop(name, None)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        db_path=tmp_path / "sync.db",
        remote=RemoteSettings(host="remote.example", user="reader", password="secret"),
        local=LocalSettings(user="root", password="local-secret", db_prefix="local_"),
        sync=SyncSettings(
            max_threads=2,
            max_attempts=3,
            retry_delay_seconds=0.0,
            progress_interval_seconds=0.05,
            stage_timeout_seconds=5.0,
        ),
    )


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def backend_factory() -> type[FakeBackend]:
    return FakeBackend
