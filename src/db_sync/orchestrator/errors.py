"""Error taxonomy for resolution, stage execution and configuration."""

from __future__ import annotations

from db_sync.orchestrator.models import Stage


class SyncError(RuntimeError):
    """Base class for synchronization errors."""


class ResolutionError(SyncError):
    """A unit specification could not be turned into tasks; the unit is skipped."""

    def __init__(self, message: str, *, spec: str) -> None:
        super().__init__(message)
        self.spec = spec


class StageError(SyncError):
    """One pipeline stage failed for one attempt."""

    stage: Stage = Stage.EXTRACT

    @classmethod
    def for_stage(cls, stage: Stage, message: str) -> StageError:
        return _STAGE_ERRORS[stage](message)


class ExtractError(StageError):
    stage = Stage.EXTRACT


class PrepareError(StageError):
    stage = Stage.PREPARE


class LoadError(StageError):
    stage = Stage.LOAD


class VerificationError(StageError):
    stage = Stage.VERIFY


class TaskCancelledError(SyncError):
    """A stop request interrupted a task before or during ``stage``."""

    def __init__(self, stage: Stage) -> None:
        super().__init__("cancelled")
        self.stage = stage


class ConfigurationError(ValueError):
    """Missing or invalid settings; fatal before any task runs."""


_STAGE_ERRORS: dict[Stage, type[StageError]] = {
    Stage.EXTRACT: ExtractError,
    Stage.PREPARE: PrepareError,
    Stage.LOAD: LoadError,
    Stage.VERIFY: VerificationError,
}
