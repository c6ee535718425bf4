"""CLI entrypoint for panel-ops."""

from pathlib import Path

import rich_click as click

from panel_ops import __version__
from panel_ops.config import Settings
from panel_ops.logging_config import configure_logging
from panel_ops.orchestrator.controllers import (
    ArchiveCommand,
    DispatcherCommand,
    EnqueueCommand,
    HandlersCommand,
    ListCommand,
    OperationsCliController,
    StatsCommand,
    StatusCommand,
    WatchdogCommand,
)
from panel_ops.orchestrator.errors import RegistryConfigError
from panel_ops.orchestrator.models import OperationStatus

click.rich_click.USE_MARKDOWN = True
OPERATIONS_CONTROLLER = OperationsCliController()

STATUS_CHOICES = [status.value for status in OperationStatus]


@click.group()
@click.version_option(version=__version__, prog_name="panel-ops")
def panel_ops() -> None:
    """Hosting panel operation queue CLI."""

    configure_logging(Settings.from_env().logging)


@panel_ops.group()
def ops() -> None:
    """Operation queue commands."""


@ops.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("operation_type")
@click.option(
    "--data",
    "payload_json",
    default="{}",
    show_default=True,
    help="Operation payload as a JSON object.",
)
def ops_enqueue(db_path: Path | None, operation_type: str, payload_json: str) -> None:
    """Queue an operation, for example `site.create`."""

    try:
        lines = OPERATIONS_CONTROLLER.enqueue(
            EnqueueCommand(
                db_path=db_path,
                operation_type=operation_type,
                payload_json=payload_json,
            ),
        )
    except ValueError as error:
        raise click.BadParameter(str(error)) from error
    _emit_lines(lines)


@ops.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("operation_id", type=int)
@click.option("--events", "show_events", is_flag=True, help="Include the event trail.")
def ops_status(db_path: Path | None, operation_id: int, show_events: bool) -> None:
    """Show one operation, live or archived."""

    _emit_lines(
        OPERATIONS_CONTROLLER.status(
            StatusCommand(db_path=db_path, operation_id=operation_id, show_events=show_events),
        ),
    )


@ops.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(STATUS_CHOICES),
    default=OperationStatus.PENDING.value,
    show_default=True,
    help="Status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=10,
    show_default=True,
    help="Maximum operations to display.",
)
def ops_list(db_path: Path | None, status: str, limit: int) -> None:
    """List operations in one status, newest first."""

    _emit_lines(
        OPERATIONS_CONTROLLER.list_operations(
            ListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@ops.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def ops_stats(db_path: Path | None, hours: int) -> None:
    """Show per-status counts and mean completed duration."""

    _emit_lines(OPERATIONS_CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


@ops.command("archive")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window; defaults to PANEL_OPS_ARCHIVE_RETENTION_DAYS.",
)
@click.option("--dry-run", is_flag=True, help="Only count what would be archived.")
def ops_archive(db_path: Path | None, older_than_days: int | None, dry_run: bool) -> None:
    """Move finished operations past retention into the archive table."""

    _emit_lines(
        OPERATIONS_CONTROLLER.archive(
            ArchiveCommand(db_path=db_path, older_than_days=older_than_days, dry_run=dry_run),
        ),
    )


@ops.command("handlers")
@click.option(
    "--config",
    "handlers_config",
    type=click.Path(path_type=Path),
    default=None,
    help="Handler registry file; defaults to PANEL_OPS_HANDLERS_CONFIG.",
)
def ops_handlers(handlers_config: Path | None) -> None:
    """Check that every registered handler is runnable."""

    try:
        lines = OPERATIONS_CONTROLLER.handlers(HandlersCommand(handlers_config=handlers_config))
    except RegistryConfigError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@panel_ops.group()
def dispatcher() -> None:
    """Dispatcher commands."""


@dispatcher.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, help="Run a single poll and exit.")
@click.option(
    "--max-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many polls.",
)
def dispatcher_run(db_path: Path | None, once: bool, max_polls: int | None) -> None:
    """Claim pending operations and run their handlers."""

    try:
        lines = OPERATIONS_CONTROLLER.run_dispatcher(
            DispatcherCommand(db_path=db_path, once=once, max_polls=max_polls),
        )
    except (RegistryConfigError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@panel_ops.group()
def watchdog() -> None:
    """Watchdog commands."""


@watchdog.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, help="Run a single cycle and exit.")
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many cycles.",
)
def watchdog_run(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Recover stalled operations, report daily stats and archive history."""

    try:
        lines = OPERATIONS_CONTROLLER.run_watchdog(
            WatchdogCommand(db_path=db_path, once=once, max_cycles=max_cycles),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    panel_ops()
