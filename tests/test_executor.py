from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from db_sync.config import SyncSettings
from db_sync.orchestrator.aggregator import StatusAggregator
from db_sync.orchestrator.backend.base import StageRequest, StageResult
from db_sync.orchestrator.executor import CANCELLED_MESSAGE, TaskExecutor
from db_sync.orchestrator.models import IMPORT_STAGES, Stage, SyncTask, TaskKey, TaskStatus

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Pipeline & Retry Policy"),
]

KEY = TaskKey(source="shop", destination="copy", table="orders")


def _executor(backend, **overrides) -> tuple[TaskExecutor, StatusAggregator]:
    aggregator = StatusAggregator(session_id="s1")
    sync = SyncSettings(retry_delay_seconds=0.0, stage_timeout_seconds=5.0)
    for name, value in overrides.pop("sync", {}).items():
        setattr(sync, name, value)
    return TaskExecutor(backend, aggregator, settings=sync, **overrides), aggregator


def test_success_runs_all_stages_once(fake_backend) -> None:
    executor, aggregator = _executor(fake_backend)

    outcome = executor.run(SyncTask(key=KEY, max_attempts=3))

    assert outcome.status == TaskStatus.SUCCEEDED
    assert outcome.attempts == 1
    assert outcome.session_id == "s1"
    assert fake_backend.stages_called(KEY) == [
        Stage.EXTRACT,
        Stage.PREPARE,
        Stage.LOAD,
        Stage.VERIFY,
    ]
    assert aggregator.outcomes() == [outcome]
    assert aggregator.errors() == []


def test_extract_failing_every_attempt_fails_after_max_attempts(backend_factory) -> None:
    backend = backend_factory(failures={(KEY, Stage.EXTRACT): -1})
    executor, aggregator = _executor(backend)

    outcome = executor.run(SyncTask(key=KEY, max_attempts=3))

    assert outcome.status == TaskStatus.FAILED
    assert outcome.attempts == 3
    errors = aggregator.errors_for(KEY)
    assert [(error.stage, error.attempt) for error in errors] == [
        (Stage.EXTRACT, 1),
        (Stage.EXTRACT, 2),
        (Stage.EXTRACT, 3),
    ]
    assert Stage.LOAD not in backend.stages_called(KEY)
    assert Stage.PREPARE not in backend.stages_called(KEY)


def test_failure_then_success_records_error_and_succeeds(backend_factory) -> None:
    backend = backend_factory(failures={(KEY, Stage.LOAD): 1})
    executor, aggregator = _executor(backend)

    outcome = executor.run(SyncTask(key=KEY, max_attempts=3))

    assert outcome.status == TaskStatus.SUCCEEDED
    assert outcome.attempts == 2
    assert [(error.stage, error.attempt) for error in aggregator.errors()] == [(Stage.LOAD, 1)]
    assert backend.stages_called(KEY)[3] == Stage.EXTRACT
    assert len(backend.stages_called(KEY)) == 7


def test_verification_failure_retries_like_load_failure(backend_factory) -> None:
    backend = backend_factory(failures={(KEY, Stage.VERIFY): 2})
    executor, aggregator = _executor(backend)

    outcome = executor.run(SyncTask(key=KEY, max_attempts=3))

    assert outcome.status == TaskStatus.SUCCEEDED
    assert outcome.attempts == 3
    assert aggregator.error_counts_by_stage() == {Stage.VERIFY: 2}


def test_single_attempt_task_is_not_retried(backend_factory) -> None:
    backend = backend_factory(failures={(KEY, Stage.PREPARE): 1})
    executor, _ = _executor(backend)

    outcome = executor.run(SyncTask(key=KEY, max_attempts=1))

    assert outcome.status == TaskStatus.FAILED
    assert outcome.attempts == 1


def test_warning_is_logged_and_does_not_consume_retry(
    backend_factory,
    caplog: pytest.LogCaptureFixture,
) -> None:
    warning = (
        "mysqldump: [Warning] Using a password on the command line interface can be insecure."
    )
    backend = backend_factory(warnings={(KEY, Stage.EXTRACT): (warning,)})
    executor, aggregator = _executor(backend)

    with caplog.at_level(logging.WARNING):
        outcome = executor.run(SyncTask(key=KEY, max_attempts=3))

    assert outcome.status == TaskStatus.SUCCEEDED
    assert outcome.attempts == 1
    assert aggregator.errors() == []
    assert "can be insecure" in caplog.text


def test_backend_exception_becomes_stage_failure(fake_backend) -> None:
    class _ExplodingLoad(type(fake_backend)):
        def load(self, request: StageRequest) -> StageResult:
            raise RuntimeError("segfault-ish")

    executor, aggregator = _executor(_ExplodingLoad())

    outcome = executor.run(SyncTask(key=KEY, max_attempts=2))

    assert outcome.status == TaskStatus.FAILED
    assert [error.stage for error in aggregator.errors()] == [Stage.LOAD, Stage.LOAD]
    assert "segfault-ish" in aggregator.errors()[0].message


def test_timed_out_stage_is_a_failure_with_timeout_message(fake_backend) -> None:
    class _SlowExtract(type(fake_backend)):
        def extract(self, request: StageRequest) -> StageResult:
            return StageResult.failure("dump", timed_out=True)

    executor, aggregator = _executor(_SlowExtract())

    outcome = executor.run(SyncTask(key=KEY, max_attempts=1))

    assert outcome.status == TaskStatus.FAILED
    assert "timed out" in aggregator.errors()[0].message


def test_duration_is_measured_from_first_attempt(backend_factory) -> None:
    ticks = iter([100.0, 107.5])
    backend = backend_factory(failures={(KEY, Stage.EXTRACT): 1})
    aggregator = StatusAggregator(session_id="s1")
    executor = TaskExecutor(
        backend,
        aggregator,
        settings=SyncSettings(retry_delay_seconds=0.0),
        clock=lambda: next(ticks, 107.5),
    )

    outcome = executor.run(SyncTask(key=KEY, max_attempts=2))

    assert outcome.duration_seconds == pytest.approx(7.5)


def test_stop_before_start_records_cancelled_error(fake_backend) -> None:
    executor, aggregator = _executor(fake_backend, stop_requested=lambda: True)

    outcome = executor.run(SyncTask(key=KEY, max_attempts=3))

    assert outcome.status == TaskStatus.FAILED
    assert outcome.attempts == 1
    assert fake_backend.calls == []
    [error] = aggregator.errors()
    assert (error.stage, error.message) == (Stage.EXTRACT, CANCELLED_MESSAGE)


def test_stop_during_retry_wait_ends_task(backend_factory) -> None:
    backend = backend_factory(failures={(KEY, Stage.EXTRACT): -1})
    stop = {"requested": False}

    def _sleep(_seconds: float) -> None:
        stop["requested"] = True

    aggregator = StatusAggregator(session_id="s1")
    executor = TaskExecutor(
        backend,
        aggregator,
        settings=SyncSettings(retry_delay_seconds=30.0),
        stop_requested=lambda: stop["requested"],
        sleep=_sleep,
    )

    outcome = executor.run(SyncTask(key=KEY, max_attempts=3))

    assert outcome.status == TaskStatus.FAILED
    assert outcome.attempts == 1
    assert [error.message for error in aggregator.errors()][-1] == CANCELLED_MESSAGE


def test_retry_delay_is_fixed_by_default_and_geometric_with_multiplier(fake_backend) -> None:
    fixed, _ = _executor(fake_backend, sync={"retry_delay_seconds": 10.0})
    backoff, _ = _executor(
        fake_backend,
        sync={"retry_delay_seconds": 2.0, "retry_backoff_multiplier": 3.0},
    )

    assert [fixed.retry_delay(attempt) for attempt in (1, 2, 3)] == [10.0, 10.0, 10.0]
    assert [backoff.retry_delay(attempt) for attempt in (1, 2, 3)] == [2.0, 6.0, 18.0]


def test_task_with_existing_dump_skips_extract(fake_backend, tmp_path: Path) -> None:
    key = TaskKey(source="crm", destination="imported_crm")
    dump = tmp_path / "crm.sql"
    executor, _ = _executor(fake_backend)

    outcome = executor.run(
        SyncTask(key=key, max_attempts=1, stages=IMPORT_STAGES, artifact_path=dump),
    )

    assert outcome.status == TaskStatus.SUCCEEDED
    assert fake_backend.stages_called(key) == [Stage.PREPARE, Stage.LOAD, Stage.VERIFY]
