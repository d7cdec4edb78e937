"""Final session report rendering."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from db_sync.orchestrator.errors import ResolutionError
from db_sync.orchestrator.models import (
    ErrorRecord,
    OutcomeRecord,
    Stage,
    SyncMode,
    TaskStatus,
)


def render_report_lines(  # noqa: PLR0913
    *,
    session_id: str,
    mode: SyncMode,
    outcomes: list[OutcomeRecord],
    errors: list[ErrorRecord],
    resolution_failures: list[ResolutionError],
    elapsed_seconds: float,
    not_dispatched: int = 0,
    cancelled: bool = False,
) -> list[str]:
    succeeded = [outcome for outcome in outcomes if outcome.status == TaskStatus.SUCCEEDED]
    failed = [outcome for outcome in outcomes if outcome.status == TaskStatus.FAILED]

    lines = [
        f"Session: {session_id} ({mode.value})",
        f"Elapsed: {elapsed_seconds:.1f}s",
        f"Succeeded: {len(succeeded)}",
        f"Failed: {len(failed)}",
    ]
    if cancelled:
        lines.append(f"Cancelled: yes (not dispatched: {not_dispatched})")
    if resolution_failures:
        lines.append(f"Resolution failures: {len(resolution_failures)}")
        lines.extend(f"  - {failure.spec}: {failure}" for failure in resolution_failures)

    if succeeded:
        lines.append("Successful:")
        lines.extend(_outcome_line(outcome) for outcome in succeeded)
    if failed:
        lines.append("Failed:")
        last_errors = _last_error_by_task(errors)
        for outcome in failed:
            line = _outcome_line(outcome)
            last = last_errors.get(outcome.key.label)
            if last is not None:
                line += f" [{last.stage.value}: {last.message}]"
            lines.append(line)

    stage_counts = error_counts_by_stage(errors)
    if stage_counts:
        lines.append("Errors by stage:")
        lines.extend(f"  {stage.value}: {count}" for stage, count in stage_counts.items())
    return lines


def error_counts_by_stage(errors: Iterable[ErrorRecord]) -> dict[Stage, int]:
    counts = Counter(error.stage for error in errors)
    return {stage: counts[stage] for stage in Stage if counts.get(stage)}


def _outcome_line(outcome: OutcomeRecord) -> str:
    return (
        f"  - {outcome.key.label}: {outcome.attempts} attempt(s), "
        f"{outcome.duration_seconds:.1f}s"
    )


def _last_error_by_task(errors: Iterable[ErrorRecord]) -> dict[str, ErrorRecord]:
    last: dict[str, ErrorRecord] = {}
    for error in errors:
        last[error.key.label] = error
    return last
