"""Per-task retry loop over the extract/prepare/load/verify pipeline."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from db_sync.config import SyncSettings
from db_sync.orchestrator.aggregator import StatusAggregator
from db_sync.orchestrator.backend.base import (
    BackendError,
    StageRequest,
    StageResult,
    TransferBackend,
)
from db_sync.orchestrator.errors import StageError, TaskCancelledError
from db_sync.orchestrator.models import (
    ErrorRecord,
    OutcomeRecord,
    Stage,
    SyncTask,
    TaskStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"
_SLEEP_SLICE_SECONDS = 0.1


def _never_stop() -> bool:
    return False


class TaskExecutor:
    """Drive tasks through every stage, retrying whole attempts on failure.

    Each failed stage appends an error record before the retry decision. The
    executor writes exactly one outcome per task it runs; a stop request is
    honoured before each stage and during retry sleeps.
    """

    def __init__(  # noqa: PLR0913
        self,
        backend: TransferBackend,
        aggregator: StatusAggregator,
        *,
        settings: SyncSettings,
        stop_requested: Callable[[], bool] = _never_stop,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.aggregator = aggregator
        self.settings = settings
        self.stop_requested = stop_requested
        self._clock = clock
        self._sleep = sleep

    @property
    def session_id(self) -> str:
        return self.aggregator.session_id

    def run(self, task: SyncTask) -> OutcomeRecord:
        """Run ``task`` to a terminal outcome and record it."""

        started = self._clock()
        logger.info("Starting %s", task.label)
        while True:
            task.attempt += 1
            try:
                self._run_attempt(task)
            except TaskCancelledError as cancelled:
                self._record_error(task, cancelled.stage, CANCELLED_MESSAGE)
                logger.warning("Cancelled %s at %s", task.label, cancelled.stage.value)
                return self._finish(task, TaskStatus.FAILED, started)
            except StageError as error:
                self._record_error(task, error.stage, str(error))
                if task.attempt >= task.max_attempts:
                    logger.error(
                        "Failed %s after %d attempt(s): %s failed: %s",
                        task.label,
                        task.attempt,
                        error.stage.value,
                        error,
                    )
                    return self._finish(task, TaskStatus.FAILED, started)
                delay = self.retry_delay(task.attempt)
                logger.warning(
                    "Attempt %d/%d for %s failed at %s: %s; retrying in %.1fs",
                    task.attempt,
                    task.max_attempts,
                    task.label,
                    error.stage.value,
                    error,
                    delay,
                )
                if not self._sleep_with_stop(delay):
                    self._record_error(task, task.stages[0], CANCELLED_MESSAGE)
                    logger.warning("Cancelled %s during retry wait", task.label)
                    return self._finish(task, TaskStatus.FAILED, started)
                continue

            logger.info("Completed %s (attempt %d)", task.label, task.attempt)
            return self._finish(task, TaskStatus.SUCCEEDED, started)

    def retry_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt``."""

        base = self.settings.retry_delay_seconds
        multiplier = self.settings.retry_backoff_multiplier
        if multiplier <= 1:
            return base
        return base * multiplier ** max(attempt - 1, 0)

    def _run_attempt(self, task: SyncTask) -> None:
        artifact_path: Path | None = task.artifact_path
        for stage in task.stages:
            if self.stop_requested():
                raise TaskCancelledError(stage)
            result = self._call_stage(task, stage, artifact_path)
            if result.cancelled:
                raise TaskCancelledError(stage)
            if not result.ok:
                message = result.message or f"{stage.value} failed"
                if result.timed_out and "timed out" not in message:
                    message = f"{message} (timed out)"
                raise StageError.for_stage(stage, message)
            for warning in result.warnings:
                logger.warning("%s %s warning: %s", task.label, stage.value, warning)
            if result.artifact_path is not None:
                artifact_path = result.artifact_path
            logger.debug("%s %s ok: %s", task.label, stage.value, result.message)

    def _call_stage(
        self,
        task: SyncTask,
        stage: Stage,
        artifact_path: Path | None,
    ) -> StageResult:
        request = StageRequest(
            task=task,
            attempt=task.attempt,
            timeout_seconds=self.settings.stage_timeout_seconds,
            artifact_path=artifact_path,
            shutdown_requested=self.stop_requested,
            graceful_shutdown_seconds=self.settings.graceful_shutdown_seconds,
        )
        handler: Callable[[StageRequest], StageResult] = getattr(self.backend, stage.value)
        try:
            return handler(request)
        except BackendError as error:
            return StageResult.failure(str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected %s error for %s", stage.value, task.label)
            return StageResult.failure(f"unexpected error: {error}")

    def _record_error(self, task: SyncTask, stage: Stage, message: str) -> None:
        self.aggregator.record_error(
            ErrorRecord(
                key=task.key,
                stage=stage,
                attempt=task.attempt,
                message=message,
                session_id=self.session_id,
                created_at=utc_now(),
            ),
        )

    def _finish(self, task: SyncTask, status: TaskStatus, started: float) -> OutcomeRecord:
        outcome = OutcomeRecord(
            key=task.key,
            status=status,
            duration_seconds=max(0.0, self._clock() - started),
            attempts=task.attempt,
            session_id=self.session_id,
            finished_at=utc_now(),
        )
        self.aggregator.record_outcome(outcome)
        return outcome

    def _sleep_with_stop(self, seconds: float) -> bool:
        """Sleep in short slices; return ``False`` when a stop interrupted the wait."""

        deadline = self._clock() + seconds
        while not self.stop_requested():
            remaining = deadline - self._clock()
            if remaining <= 0:
                return True
            self._sleep(min(_SLEEP_SLICE_SECONDS, remaining))
        return False
