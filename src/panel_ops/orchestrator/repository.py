"""Persistent operation store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import DateTime, delete, func, insert, literal
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from panel_ops.orchestrator.models import (
    TERMINAL_STATUSES,
    ArchivedOperationView,
    ArchiveResult,
    OperationDetails,
    OperationEventView,
    OperationSource,
    OperationStats,
    OperationStatus,
    OperationView,
)
from panel_ops.storage.alembic_runner import upgrade_head
from panel_ops.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from panel_ops.storage.sqlmodel_models import Operation, OperationArchive, OperationEvent

logger = logging.getLogger(__name__)


class OperationStore:
    """Operation queue persistence facade.

    Every status transition is one conditional ``UPDATE`` keyed on the
    current status, so concurrent dispatchers and the watchdog can only
    move a row along the state machine; the boolean return value tells
    the caller whether its transition won.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        operation_type: str,
        payload: dict[str, Any],
        source: OperationSource = OperationSource.API,
    ) -> OperationView:
        """Insert a pending operation and return it."""

        if not operation_type.strip():
            raise ValueError("Operation type must be a non-empty string.")
        if not isinstance(payload, dict):
            raise ValueError(f"Operation payload must be a JSON object, got {type(payload).__name__}.")

        now = utc_now()
        with Session(self.engine) as session:
            row = Operation(
                type=operation_type,
                data=json.dumps(payload, ensure_ascii=False, sort_keys=True),
                status=OperationStatus.PENDING.value,
                source=OperationSource(source).value,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            if row.id is None:
                raise RuntimeError("Inserted operation row has no id")
            self._add_event(
                session=session,
                operation_id=row.id,
                event_type="enqueued",
                status_from=None,
                status_to=OperationStatus.PENDING,
                details={"type": operation_type, "source": row.source},
            )
            session.commit()
            session.refresh(row)
            return _to_operation_view(row)

    def claim(self, operation_id: int) -> bool:
        """Atomically move one ``api`` operation from pending to processing."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Operation)
                .where(
                    col(Operation.id) == operation_id,
                    col(Operation.status) == OperationStatus.PENDING.value,
                    col(Operation.source) == OperationSource.API.value,
                )
                .values(
                    status=OperationStatus.PROCESSING.value,
                    started_at=now,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                operation_id=operation_id,
                event_type="claimed",
                status_from=OperationStatus.PENDING,
                status_to=OperationStatus.PROCESSING,
                details={},
            )
            session.commit()
            return True

    def set_terminal(
        self,
        operation_id: int,
        status: OperationStatus,
        *,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Finish a processing operation as completed or failed."""

        status = OperationStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Unsupported terminal status: {status.value}")

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": now,
            "updated_at": now,
            "error": error,
        }
        if result is not None:
            values["result"] = json.dumps(result, ensure_ascii=False, sort_keys=True)

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(Operation)
                .where(
                    col(Operation.id) == operation_id,
                    col(Operation.status) == OperationStatus.PROCESSING.value,
                )
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                operation_id=operation_id,
                event_type=status.value,
                status_from=OperationStatus.PROCESSING,
                status_to=status,
                details={"error": error} if error else {},
            )
            session.commit()
            return True

    def reset_for_retry(self, operation_id: int, note: str, *, max_retries: int) -> bool:
        """Requeue a processing operation, consuming one retry.

        Refuses (returns False) once ``retry_count`` has reached
        ``max_retries``, so the bound holds no matter who calls.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Operation)
                .where(
                    col(Operation.id) == operation_id,
                    col(Operation.status) == OperationStatus.PROCESSING.value,
                    col(Operation.retry_count) < max_retries,
                )
                .values(
                    status=OperationStatus.PENDING.value,
                    retry_count=Operation.retry_count + 1,
                    started_at=None,
                    completed_at=None,
                    error=note,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                operation_id=operation_id,
                event_type="retry_scheduled",
                status_from=OperationStatus.PROCESSING,
                status_to=OperationStatus.PENDING,
                details={"note": note, "max_retries": max_retries},
            )
            session.commit()
            return True

    def list_pending(
        self,
        source: OperationSource = OperationSource.API,
        *,
        limit: int | None = None,
    ) -> list[OperationView]:
        """List pending operations of one source, oldest first."""

        with Session(self.engine) as session:
            statement = (
                select(Operation)
                .where(
                    Operation.status == OperationStatus.PENDING.value,
                    Operation.source == OperationSource(source).value,
                )
                .order_by(col(Operation.created_at).asc(), col(Operation.id).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_operation_view(row) for row in rows]

    def list_stalled(self, *, started_before: datetime) -> list[OperationView]:
        """Processing ``api`` operations started before the given instant."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Operation)
                .where(
                    Operation.status == OperationStatus.PROCESSING.value,
                    Operation.source == OperationSource.API.value,
                    col(Operation.started_at).is_not(None),
                    col(Operation.started_at) < to_db_datetime(started_before),
                )
                .order_by(col(Operation.started_at).asc(), col(Operation.id).asc()),
            ).all()
        return [_to_operation_view(row) for row in rows]

    def list_stuck(self, threshold: timedelta, *, now: datetime | None = None) -> list[OperationView]:
        return self.list_stalled(started_before=(now or utc_now()) - threshold)

    def list_timed_out(
        self,
        max_runtime: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[OperationView]:
        return self.list_stalled(started_before=(now or utc_now()) - max_runtime)

    def archive_and_delete(self, *, older_than: datetime, dry_run: bool = False) -> ArchiveResult:
        """Move terminal operations completed before the cutoff into the archive.

        Copy and delete share one transaction: either both happen or neither.
        """

        cutoff_db = to_db_datetime(older_than)
        archived_at = to_db_datetime(utc_now())
        terminal_values = [status.value for status in TERMINAL_STATUSES]
        with Session(self.engine) as session:
            operation_ids = list(
                session.exec(
                    select(Operation.id)
                    .where(
                        col(Operation.status).in_(terminal_values),
                        col(Operation.completed_at).is_not(None),
                        col(Operation.completed_at) < cutoff_db,
                    )
                    .order_by(col(Operation.id).asc()),
                ).all(),
            )
            if dry_run or not operation_ids:
                return ArchiveResult(
                    cutoff=to_utc_aware_datetime(cutoff_db),
                    dry_run=dry_run,
                    archived=len(operation_ids),
                    operation_ids=operation_ids,
                )

            live = Operation.__table__
            column_names = [column.name for column in live.columns]
            session.exec(
                insert(OperationArchive.__table__).from_select(
                    [*column_names, "archived_at"],
                    select(
                        *(live.c[name] for name in column_names),
                        literal(archived_at, DateTime(timezone=True)).label("archived_at"),
                    ).where(live.c.id.in_(operation_ids)),
                ),
            )
            deleted = session.exec(
                delete(Operation).where(
                    col(Operation.id).in_(operation_ids),
                    col(Operation.status).in_(terminal_values),
                ),
            )
            if deleted.rowcount != len(operation_ids):
                session.rollback()
                raise RuntimeError(
                    "Operation rows changed concurrently while archiving; "
                    f"expected {len(operation_ids)} deletions, got {deleted.rowcount}.",
                )
            session.commit()

        logger.info("Archived %d operations completed before %s", len(operation_ids), older_than)
        return ArchiveResult(
            cutoff=to_utc_aware_datetime(cutoff_db),
            dry_run=False,
            archived=len(operation_ids),
            operation_ids=operation_ids,
        )

    def get_operation(self, operation_id: int) -> OperationView | None:
        with Session(self.engine) as session:
            row = session.get(Operation, operation_id)
            if row is None:
                return None
            return _to_operation_view(row)

    def get_archived(self, operation_id: int) -> ArchivedOperationView | None:
        with Session(self.engine) as session:
            row = session.get(OperationArchive, operation_id)
            if row is None:
                return None
            return _to_archived_view(row)

    def get_details(self, operation_id: int) -> OperationDetails | None:
        """Return operation details with event stream."""

        with Session(self.engine) as session:
            row = session.get(Operation, operation_id)
            if row is None:
                return None
            event_rows = session.exec(
                select(OperationEvent)
                .where(OperationEvent.operation_id == operation_id)
                .order_by(col(OperationEvent.created_at).asc(), col(OperationEvent.id).asc()),
            ).all()
            operation = _to_operation_view(row)

        events: list[OperationEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                OperationEventView(
                    event_id=event_row.id or 0,
                    operation_id=event_row.operation_id,
                    event_type=event_row.event_type,
                    status_from=(
                        OperationStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        OperationStatus(event_row.status_to)
                        if event_row.status_to is not None
                        else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return OperationDetails(operation=operation, events=events)

    def list_by_status(
        self,
        *,
        status: OperationStatus | None = None,
        limit: int = 50,
    ) -> list[OperationView]:
        """List recent operations, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(Operation)
                .order_by(col(Operation.created_at).desc(), col(Operation.id).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(Operation.status == OperationStatus(status).value)
            rows = session.exec(statement).all()
        return [_to_operation_view(row) for row in rows]

    def aggregate_stats(self, *, since: datetime) -> OperationStats:
        """Per-status counts and mean completed duration for rows created since ``since``."""

        since_db = to_db_datetime(since)
        stats = OperationStats(since=to_utc_aware_datetime(since_db))
        with Session(self.engine) as session:
            counts = session.exec(
                select(Operation.status, func.count())
                .where(col(Operation.created_at) >= since_db)
                .group_by(Operation.status),
            ).all()
            durations = session.exec(
                select(Operation.started_at, Operation.completed_at).where(
                    col(Operation.created_at) >= since_db,
                    Operation.status == OperationStatus.COMPLETED.value,
                    col(Operation.started_at).is_not(None),
                    col(Operation.completed_at).is_not(None),
                ),
            ).all()

        for status_value, count in counts:
            setattr(stats, OperationStatus(status_value).value, int(count))
            stats.total += int(count)
        seconds = [
            (completed_at - started_at).total_seconds()
            for started_at, completed_at in durations
            if started_at is not None and completed_at is not None
        ]
        if seconds:
            stats.avg_completed_seconds = sum(seconds) / len(seconds)
        return stats

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        operation_id: int,
        event_type: str,
        status_from: OperationStatus | None,
        status_to: OperationStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            OperationEvent(
                operation_id=operation_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _load_json_object(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_operation_view(row: Operation) -> OperationView:
    if row.id is None:
        raise RuntimeError("Operation row has no id")
    return OperationView(
        id=row.id,
        type=row.type,
        data=_load_json_object(row.data) or {},
        status=OperationStatus(row.status),
        source=OperationSource(row.source),
        retry_count=row.retry_count,
        error=row.error,
        result=_load_json_object(row.result),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_archived_view(row: OperationArchive) -> ArchivedOperationView:
    return ArchivedOperationView(
        id=row.id,
        type=row.type,
        data=_load_json_object(row.data) or {},
        status=OperationStatus(row.status),
        source=OperationSource(row.source),
        retry_count=row.retry_count,
        error=row.error,
        result=_load_json_object(row.result),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        archived_at=to_utc_aware_datetime(row.archived_at),
    )
