"""Daily operation statistics rendering."""

from __future__ import annotations

from panel_ops.orchestrator.models import OperationStats, OperationStatus


def render_stats_lines(stats: OperationStats) -> list[str]:
    """Render aggregate counts as report lines for logs and CLI."""

    lines = [
        f"Operations since {stats.since.isoformat()}: total={stats.total}",
    ]
    for status in OperationStatus:
        lines.append(f"  {status.value}: {getattr(stats, status.value)}")
    if stats.avg_completed_seconds is None:
        lines.append("  avg_completed_duration: n/a")
    else:
        lines.append(f"  avg_completed_duration: {stats.avg_completed_seconds:.1f}s")
    return lines


def failure_share(stats: OperationStats) -> float | None:
    """Failed share of terminal operations in the window."""

    terminal = stats.completed + stats.failed
    if terminal == 0:
        return None
    return stats.failed / terminal
