from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

import allure

from db_sync.config import Settings
from db_sync.orchestrator.models import ProgressSnapshot, Stage, SyncMode, TaskKey, TaskStatus
from db_sync.orchestrator.report import render_report_lines
from db_sync.orchestrator.repository import SessionRepository
from db_sync.orchestrator.session import SyncSession, new_session_id

pytestmark = [
    allure.epic("Sync Session"),
    allure.feature("Session Runner & Final Report"),
]


def test_session_id_is_time_derived_and_unique() -> None:
    first = new_session_id(datetime(2026, 5, 4, 3, 2, 1))
    second = new_session_id(datetime(2026, 5, 4, 3, 2, 1))

    assert re.fullmatch(r"20260504_030201_[0-9a-f]{6}", first)
    assert first != second


def test_all_tasks_succeed(settings: Settings, backend_factory) -> None:
    backend = backend_factory(tables={"shop": ["a", "b", "c"]})
    snapshots: list[ProgressSnapshot] = []

    report = SyncSession(
        settings,
        mode=SyncMode.TABLES,
        entries=["shop:copy:*"],
        backend=backend,
        reporter=snapshots.append,
    ).run()

    assert report.succeeded == 3
    assert report.failed == 0
    assert report.exit_code == 0
    assert report.status == "completed"
    assert len(report.outcomes) == len(report.tasks) == 3
    assert snapshots[-1] == ProgressSnapshot(
        completed=3,
        total=3,
        elapsed_seconds=snapshots[-1].elapsed_seconds,
    )


def test_failed_task_makes_exit_code_non_zero(settings: Settings, backend_factory) -> None:
    failing = TaskKey(source="shop", destination="copy", table="b")
    backend = backend_factory(failures={(failing, Stage.EXTRACT): -1})

    report = SyncSession(
        settings,
        mode=SyncMode.TABLES,
        entries=["shop:copy:a,b"],
        backend=backend,
        reporter=lambda _snapshot: None,
    ).run()

    assert report.succeeded == 1
    assert report.failed == 1
    assert report.exit_code == 1
    assert report.succeeded + report.failed == len(report.tasks)
    [failed] = [outcome for outcome in report.outcomes if outcome.status == TaskStatus.FAILED]
    assert failed.attempts == 3
    assert len(report.errors) == 3


def test_nothing_resolved_is_a_failure(settings: Settings, fake_backend) -> None:
    report = SyncSession(
        settings,
        mode=SyncMode.TABLES,
        entries=["broken"],
        backend=fake_backend,
    ).run()

    assert report.tasks == []
    assert report.status == "empty"
    assert report.exit_code == 1
    assert len(report.resolution_failures) == 1


def test_entries_default_to_configured_databases(settings: Settings, fake_backend) -> None:
    settings.sync.databases = ("crm", "billing")

    report = SyncSession(
        settings,
        mode=SyncMode.DATABASES,
        backend=fake_backend,
        reporter=lambda _snapshot: None,
    ).run()

    assert [task.key.destination for task in report.tasks] == ["local_crm", "local_billing"]
    assert report.success


def test_records_are_persisted_to_session_store(settings: Settings, backend_factory) -> None:
    backend = backend_factory(failures={(TaskKey("crm", "local_crm"), Stage.VERIFY): 1})
    repository = SessionRepository(settings.db_path)
    repository.init_schema()
    try:
        report = SyncSession(
            settings,
            mode=SyncMode.DATABASES,
            entries=["crm"],
            backend=backend,
            repository=repository,
            session_id="persisted",
            reporter=lambda _snapshot: None,
        ).run()

        [view] = repository.list_sessions()
        errors = repository.list_errors(session_id="persisted")
    finally:
        repository.close()

    assert report.success
    assert (view.session_id, view.status, view.succeeded, view.total_tasks) == (
        "persisted",
        "completed",
        1,
        1,
    )
    assert [(error.stage, error.attempt) for error in errors] == [(Stage.VERIFY, 1)]


def test_cancelled_session_is_reported(settings: Settings, fake_backend) -> None:
    session = SyncSession(
        settings,
        mode=SyncMode.DATABASES,
        entries=["crm", "billing", "sales"],
        backend=fake_backend,
        reporter=lambda _snapshot: None,
    )
    session.scheduler.request_stop(reason="test")

    report = session.run()

    assert report.cancelled
    assert report.status == "cancelled"
    assert report.exit_code == 1
    assert report.not_dispatched == 3
    assert any("Cancelled: yes" in line for line in report.lines())


def test_report_lists_successes_failures_and_stage_counts(
    settings: Settings,
    backend_factory,
) -> None:
    failing = TaskKey(source="shop", destination="copy", table="b")
    backend = backend_factory(failures={(failing, Stage.LOAD): -1})
    report = SyncSession(
        settings,
        mode=SyncMode.TABLES,
        entries=["shop:copy:a,b", "bad"],
        backend=backend,
        session_id="rep",
        reporter=lambda _snapshot: None,
    ).run()

    lines = render_report_lines(
        session_id=report.session_id,
        mode=report.mode,
        outcomes=report.outcomes,
        errors=report.errors,
        resolution_failures=report.resolution_failures,
        elapsed_seconds=1.0,
    )

    assert lines[0] == "Session: rep (tables)"
    assert "Succeeded: 1" in lines
    assert "Failed: 1" in lines
    assert "Resolution failures: 1" in lines
    assert any(line.startswith("  - shop.a -> copy: 1 attempt(s)") for line in lines)
    assert any("shop.b -> copy: 3 attempt(s)" in line and "[load:" in line for line in lines)
    assert "  load: 3" in lines


def test_import_session_loads_dumps_without_extracting(
    settings: Settings,
    fake_backend,
    tmp_path: Path,
) -> None:
    backups = tmp_path / "dumps"
    backups.mkdir()
    (backups / "crm.sql").write_text("CREATE TABLE t (id int);\n", encoding="utf-8")
    (backups / "billing.sql").write_text("CREATE TABLE t (id int);\n", encoding="utf-8")
    settings.imports.backup_dir = backups
    settings.imports.db_prefix = "restored_"

    report = SyncSession(
        settings,
        mode=SyncMode.IMPORT,
        backend=fake_backend,
        reporter=lambda _snapshot: None,
    ).run()

    assert report.success
    assert [task.key.destination for task in report.tasks] == ["restored_billing", "restored_crm"]
    assert all(stage != Stage.EXTRACT for _key, stage, _attempt in fake_backend.calls)
    assert report.lines()[0] == f"Session: {report.session_id} (import)"
