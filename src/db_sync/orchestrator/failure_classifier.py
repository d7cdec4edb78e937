"""Deterministic classification of client tool stderr for stage results."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

STAGE_CLASSIFIER_VERSION = 1
ERROR_PREVIEW_LINES = 3

_BENIGN_STDERR_PATTERNS: tuple[str, ...] = (
    "using a password on the command line interface can be insecure",
    "deprecated program name",
    "[warning] option '--set-gtid-purged'",
)


class StageOutputClass(str, Enum):
    """Normalized result of one client tool invocation."""

    OK = "ok"
    BENIGN_WARNING = "benign_warning"
    FAILURE = "failure"


@dataclass(slots=True)
class StageClassification:
    """Classification result with diagnostics."""

    output_class: StageOutputClass
    reason_code: str
    message: str
    warnings: tuple[str, ...] = ()
    matched_pattern: str | None = None

    @property
    def failed(self) -> bool:
        return self.output_class == StageOutputClass.FAILURE


def classify_stage_output(
    *,
    exit_code: int,
    stderr: str,
    artifact_size: int | None = None,
) -> StageClassification:
    """Classify one non-timeout command run.

    A non-zero exit whose stderr only contains benign warnings counts as a
    warning only when the caller passes an artifact size and it is non-empty.
    Every other non-zero exit is a failure.
    """

    lines = _stderr_lines(stderr)
    benign = [line for line in lines if _first_match(line.lower()) is not None]
    real = [line for line in lines if _first_match(line.lower()) is None]

    if exit_code == 0:
        if lines:
            return StageClassification(
                output_class=StageOutputClass.BENIGN_WARNING,
                reason_code="stderr_on_success",
                message="completed with warnings",
                warnings=tuple(lines),
                matched_pattern=_first_match(benign[0].lower()) if benign else None,
            )
        return StageClassification(
            output_class=StageOutputClass.OK,
            reason_code="completed",
            message="completed",
        )

    if benign and not real and artifact_size is not None and artifact_size > 0:
        return StageClassification(
            output_class=StageOutputClass.BENIGN_WARNING,
            reason_code="benign_warning_nonzero_exit",
            message=f"completed with warning (exit code {exit_code})",
            warnings=tuple(benign),
            matched_pattern=_first_match(benign[0].lower()),
        )

    preview = " ".join(real[:ERROR_PREVIEW_LINES])
    if not preview:
        preview = (
            f"command killed by signal {-exit_code}"
            if exit_code < 0
            else f"command exited with code {exit_code}"
        )
    return StageClassification(
        output_class=StageOutputClass.FAILURE,
        reason_code="command_failed" if real else "nonzero_exit",
        message=preview,
        warnings=tuple(benign),
        matched_pattern=_first_match(benign[0].lower()) if benign else None,
    )


def _stderr_lines(stderr: str) -> list[str]:
    return [line.strip() for line in stderr.splitlines() if line.strip()]


def _first_match(haystack: str) -> str | None:
    for pattern in _BENIGN_STDERR_PATTERNS:
        if pattern in haystack:
            return pattern
    return None
