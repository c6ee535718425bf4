"""Controllers for panel-ops CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from panel_ops.config import Settings
from panel_ops.orchestrator.dispatcher import Dispatcher
from panel_ops.orchestrator.metrics import render_stats_lines
from panel_ops.orchestrator.registry import HandlerRegistry
from panel_ops.orchestrator.repository import OperationStore
from panel_ops.orchestrator.services import OperationService
from panel_ops.orchestrator.watchdog import Watchdog
from panel_ops.storage.common import utc_now


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for operation enqueue."""

    db_path: Path | None
    operation_type: str
    payload_json: str


@dataclass(slots=True)
class StatusCommand:
    """CLI input for operation inspection."""

    db_path: Path | None
    operation_id: int
    show_events: bool = False


@dataclass(slots=True)
class ListCommand:
    """CLI input for operation listing."""

    db_path: Path | None
    status: str
    limit: int


@dataclass(slots=True)
class StatsCommand:
    """CLI input for aggregate statistics."""

    db_path: Path | None
    hours: int


@dataclass(slots=True)
class ArchiveCommand:
    """CLI input for manual archive sweep."""

    db_path: Path | None
    older_than_days: int | None
    dry_run: bool


@dataclass(slots=True)
class HandlersCommand:
    """CLI input for handler registry check."""

    handlers_config: Path | None


@dataclass(slots=True)
class DispatcherCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    once: bool
    max_polls: int | None = None


@dataclass(slots=True)
class WatchdogCommand:
    """CLI input for watchdog execution."""

    db_path: Path | None
    once: bool
    max_cycles: int | None = None


class OperationsCliController:
    """Coordinates queue, dispatcher, watchdog and inspection CLI operations."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        try:
            payload = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            accepted = OperationService(store=store).enqueue(command.operation_type, payload)
        return [
            f"{accepted.message}: operation_id={accepted.operation_id} "
            f"type={command.operation_type} status={accepted.status.value}",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            details = store.get_details(command.operation_id)
            archived = store.get_archived(command.operation_id) if details is None else None

        if details is None:
            if archived is None:
                return [f"Operation not found: {command.operation_id}"]
            return [
                f"Operation: {archived.id} (archived {archived.archived_at.isoformat()})",
                f"Type: {archived.type}",
                f"Status: {archived.status.value}",
                f"Retries: {archived.retry_count}",
                f"Error: {archived.error or '-'}",
            ]

        operation = details.operation
        lines = [
            f"Operation: {operation.id}",
            f"Type: {operation.type}",
            f"Source: {operation.source.value}",
            f"Status: {operation.status.value}",
            f"Retries: {operation.retry_count}",
            f"Created: {operation.created_at.isoformat()}",
            f"Started: {operation.started_at.isoformat() if operation.started_at else '-'}",
            f"Completed: {operation.completed_at.isoformat() if operation.completed_at else '-'}",
            f"Error: {operation.error or '-'}",
            f"Result: {json.dumps(operation.result, sort_keys=True) if operation.result else '-'}",
        ]
        if command.show_events:
            lines.append(f"Events: {len(details.events)}")
            for event in details.events:
                lines.append(
                    f"  {event.created_at.isoformat()} {event.event_type} "
                    f"{event.status_from.value if event.status_from else '-'} -> "
                    f"{event.status_to.value if event.status_to else '-'}",
                )
        return lines

    def list_operations(self, command: ListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            operations = OperationService(store=store).list_by_status(
                command.status,
                command.limit,
            )

        lines = [f"Operations ({command.status}): {len(operations)}"]
        for operation in operations:
            lines.append(
                f"  {operation.id} type={operation.type} status={operation.status.value} "
                f"retries={operation.retry_count} created_at={operation.created_at.isoformat()}",
            )
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        since = utc_now() - timedelta(hours=max(1, command.hours))
        with _store(settings) as store:
            stats = store.aggregate_stats(since=since)
        return render_stats_lines(stats)

    def archive(self, command: ArchiveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        days = (
            command.older_than_days
            if command.older_than_days is not None
            else settings.orchestrator.archive_retention_days
        )
        with _store(settings) as store:
            result = store.archive_and_delete(
                older_than=utc_now() - timedelta(days=days),
                dry_run=command.dry_run,
            )
        verb = "Would archive" if result.dry_run else "Archived"
        return [f"{verb} {result.archived} operations completed before {result.cutoff.isoformat()}"]

    def handlers(self, command: HandlersCommand) -> list[str]:
        settings = Settings.from_env()
        path = command.handlers_config or settings.orchestrator.handlers_config
        registry = HandlerRegistry.load(path)
        checks = registry.check()
        lines = [f"Handlers ({path}): {len(checks)}"]
        for check in checks:
            state = "ok" if check.available else "unavailable"
            lines.append(f"  {check.operation_type} -> {check.executable} [{state}]")
        return lines

    def run_dispatcher(self, command: DispatcherCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        registry = HandlerRegistry.load(settings.orchestrator.handlers_config)
        with _store(settings) as store:
            dispatcher = Dispatcher(
                store=store,
                registry=registry,
                settings=settings.orchestrator,
            )
            summary = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(max_polls=command.max_polls)
            )

        return [
            "Dispatcher summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} retried={summary.retried} "
            f"skipped={summary.skipped} idle_polls={summary.idle_polls} errors={summary.errors}",
        ]

    def run_watchdog(self, command: WatchdogCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _store(settings) as store:
            watchdog = Watchdog(store=store, settings=settings.orchestrator)
            cycles = (
                [watchdog.run_once()]
                if command.once
                else watchdog.run_loop(max_cycles=command.max_cycles)
            )

        lines = [f"Watchdog cycles: {len(cycles)}"]
        for cycle in cycles:
            lines.append(
                f"  stuck={cycle.stuck} timed_out={cycle.timed_out} retried={cycle.retried} "
                f"failed={cycle.failed} daily={'yes' if cycle.daily_ran else 'no'} "
                f"archived={cycle.archive.archived if cycle.archive else 0} errors={cycle.errors}",
            )
        return lines


@contextmanager
def _store(settings: Settings) -> Iterator[OperationStore]:
    store = OperationStore(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
