"""Persistent session store backed by SQLModel + SQLite."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Session, SQLModel, col, create_engine, func, select

from db_sync.orchestrator.models import (
    ErrorRecord,
    OutcomeRecord,
    SessionInfo,
    SessionView,
    Stage,
    TaskKey,
    TaskStatus,
    utc_now,
)
from db_sync.storage.sqlmodel_models import SyncSessionRow, TaskErrorRow, TaskOutcomeRow

SESSION_RUNNING = "running"

# Columns added after the first release; create_all does not alter existing tables.
_ADDED_SESSION_COLUMNS: dict[str, str] = {"pid": "INTEGER"}


class SessionRepository:
    """Session, outcome and error persistence keyed by session id."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = _session_store_engine(db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables if they do not exist yet."""

        if self.db_path.parent != Path():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(self.engine)
        self._add_missing_session_columns()

    def start_session(self, info: SessionInfo, *, resolution_failures: int = 0) -> None:
        with Session(self.engine) as session:
            session.add(
                SyncSessionRow(
                    session_id=info.session_id,
                    mode=info.mode.value,
                    status=SESSION_RUNNING,
                    started_at=info.started_at,
                    total_tasks=len(info.tasks),
                    resolution_failures=resolution_failures,
                    pid=info.pid,
                ),
            )
            session.commit()

    def finish_session(self, *, session_id: str, status: str) -> None:
        with Session(self.engine) as session:
            row = session.get(SyncSessionRow, session_id)
            if row is None:
                raise ValueError(f"Unknown session: {session_id}")
            row.status = status
            row.finished_at = utc_now()
            session.add(row)
            session.commit()

    def add_outcome(self, outcome: OutcomeRecord) -> None:
        with Session(self.engine) as session:
            session.add(
                TaskOutcomeRow(
                    session_id=outcome.session_id,
                    source=outcome.key.source,
                    destination=outcome.key.destination,
                    table_name=outcome.key.table or "",
                    status=outcome.status.value,
                    duration_seconds=outcome.duration_seconds,
                    attempts=outcome.attempts,
                    finished_at=outcome.finished_at or utc_now(),
                ),
            )
            session.commit()

    def add_error(self, error: ErrorRecord) -> None:
        with Session(self.engine) as session:
            session.add(
                TaskErrorRow(
                    session_id=error.session_id,
                    source=error.key.source,
                    destination=error.key.destination,
                    table_name=error.key.table or "",
                    stage=error.stage.value,
                    attempt=error.attempt,
                    message=error.message,
                    created_at=error.created_at or utc_now(),
                ),
            )
            session.commit()

    def list_outcomes(self, *, session_id: str) -> list[OutcomeRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskOutcomeRow)
                .where(TaskOutcomeRow.session_id == session_id)
                .order_by(col(TaskOutcomeRow.id).asc()),
            ).all()
        return [_to_outcome(row) for row in rows]

    def list_errors(self, *, session_id: str, stage: Stage | None = None) -> list[ErrorRecord]:
        with Session(self.engine) as session:
            query = select(TaskErrorRow).where(TaskErrorRow.session_id == session_id)
            if stage is not None:
                query = query.where(TaskErrorRow.stage == stage.value)
            rows = session.exec(query.order_by(col(TaskErrorRow.id).asc())).all()
        return [_to_error(row) for row in rows]

    def latest_session_id(self) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SyncSessionRow).order_by(col(SyncSessionRow.started_at).desc()).limit(1),
            ).one_or_none()
        return row.session_id if row is not None else None

    def get_session(self, session_id: str) -> SessionView | None:
        with Session(self.engine) as session:
            row = session.get(SyncSessionRow, session_id)
            if row is None:
                return None
            counts = self._outcome_counts(session, [row.session_id])
        return _to_view(row, counts)

    def list_sessions(self, *, limit: int = 10) -> list[SessionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SyncSessionRow)
                .order_by(col(SyncSessionRow.started_at).desc())
                .limit(limit),
            ).all()
            counts = self._outcome_counts(session, [row.session_id for row in rows])
        return [_to_view(row, counts) for row in rows]

    def _outcome_counts(
        self,
        session: Session,
        session_ids: list[str],
    ) -> dict[tuple[str, str], int]:
        if not session_ids:
            return {}
        rows = session.exec(
            select(TaskOutcomeRow.session_id, TaskOutcomeRow.status, func.count())
            .where(col(TaskOutcomeRow.session_id).in_(session_ids))
            .group_by(TaskOutcomeRow.session_id, TaskOutcomeRow.status),
        ).all()
        return {(session_id, status): int(count) for session_id, status, count in rows}

    def _add_missing_session_columns(self) -> None:
        table = SyncSessionRow.__tablename__
        present = {column["name"] for column in inspect(self.engine).get_columns(table)}
        missing = {
            name: sql_type
            for name, sql_type in _ADDED_SESSION_COLUMNS.items()
            if name not in present
        }
        if not missing:
            return
        with self.engine.begin() as connection:
            for name, sql_type in missing.items():
                connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {sql_type}"))


def _session_store_engine(db_path: Path, *, busy_timeout_ms: int) -> Engine:
    """One connection per unit of work; worker threads write concurrently."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    return engine


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_view(row: SyncSessionRow, counts: dict[tuple[str, str], int]) -> SessionView:
    return SessionView(
        session_id=row.session_id,
        mode=row.mode,
        status=row.status,
        started_at=_as_utc(row.started_at),
        finished_at=_as_utc(row.finished_at) if row.finished_at else None,
        total_tasks=row.total_tasks,
        succeeded=counts.get((row.session_id, TaskStatus.SUCCEEDED.value), 0),
        failed=counts.get((row.session_id, TaskStatus.FAILED.value), 0),
        resolution_failures=row.resolution_failures,
        pid=row.pid,
    )


def _to_key(row: TaskOutcomeRow | TaskErrorRow) -> TaskKey:
    return TaskKey(
        source=row.source,
        destination=row.destination,
        table=row.table_name or None,
    )


def _to_outcome(row: TaskOutcomeRow) -> OutcomeRecord:
    return OutcomeRecord(
        key=_to_key(row),
        status=TaskStatus(row.status),
        duration_seconds=row.duration_seconds,
        attempts=row.attempts,
        session_id=row.session_id,
        finished_at=_as_utc(row.finished_at),
    )


def _to_error(row: TaskErrorRow) -> ErrorRecord:
    return ErrorRecord(
        key=_to_key(row),
        stage=Stage(row.stage),
        attempt=row.attempt,
        message=row.message,
        session_id=row.session_id,
        created_at=_as_utc(row.created_at),
    )
