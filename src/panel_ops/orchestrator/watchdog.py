"""Status monitor: stalled-operation recovery, daily report and archiving."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from panel_ops.config import OrchestratorSettings
from panel_ops.orchestrator.errors import (
    OperationTimeoutError,
    RetryExhaustedError,
    StuckOperationError,
)
from panel_ops.orchestrator.metrics import failure_share, render_stats_lines
from panel_ops.orchestrator.models import ArchiveResult, OperationStats, OperationView, StallKind
from panel_ops.orchestrator.repository import OperationStore
from panel_ops.orchestrator.retry import RetryOutcome, retry_or_fail
from panel_ops.orchestrator.signals import stop_on_signals
from panel_ops.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

STATS_WINDOW = timedelta(hours=24)


@dataclass(slots=True)
class WatchdogCycleSummary:
    """Counters for one watchdog cycle."""

    stuck: int = 0
    timed_out: int = 0
    retried: int = 0
    failed: int = 0
    lost: int = 0
    daily_ran: bool = False
    stats: OperationStats | None = None
    archive: ArchiveResult | None = None
    errors: int = 0


class Watchdog:
    """Detects stalled ``api`` operations and applies bounded retry.

    Each stalled row gets one decision per cycle. Rows running longer than
    ``max_operation_seconds`` are labelled timed out, the rest stuck; both
    labels share one retry budget.
    """

    def __init__(
        self,
        *,
        store: OperationStore,
        settings: OrchestratorSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self._daily_time = settings.daily_tasks_time
        self._last_daily_date: date | None = None
        self._stop_requested = threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self) -> None:
        self._stop_requested.set()

    def run_once(self) -> WatchdogCycleSummary:
        summary = WatchdogCycleSummary()
        now = to_utc_aware_datetime(self.clock())
        try:
            self._sweep_stalled(now=now, summary=summary)
        except SQLAlchemyError:
            summary.errors += 1
            logger.exception("Stalled-operation sweep failed")

        if self._daily_due(now):
            try:
                self._run_daily_tasks(now=now, summary=summary)
            except SQLAlchemyError:
                summary.errors += 1
                logger.exception("Daily tasks failed; will retry next cycle")
        return summary

    def run_loop(self, *, max_cycles: int | None = None) -> list[WatchdogCycleSummary]:
        """Run cycles every ``watchdog_interval_seconds`` until stopped."""

        cycles: list[WatchdogCycleSummary] = []
        logger.info(
            "Watchdog started: interval=%ss stuck_threshold=%ss max_operation_time=%ss",
            self.settings.watchdog_interval_seconds,
            self.settings.stuck_threshold_seconds,
            self.settings.max_operation_seconds,
        )
        with stop_on_signals(self.request_stop, name="Watchdog"):
            while not self.stop_requested:
                cycles.append(self.run_once())
                if max_cycles is not None and len(cycles) >= max_cycles:
                    break
                self._stop_requested.wait(timeout=self.settings.watchdog_interval_seconds)
        logger.info("Watchdog stopped after %d cycles", len(cycles))
        return cycles

    def classify(self, operation: OperationView, *, now: datetime) -> StallKind:
        max_runtime = timedelta(seconds=self.settings.max_operation_seconds)
        if operation.started_at is not None and operation.started_at < now - max_runtime:
            return StallKind.TIMED_OUT
        return StallKind.STUCK

    def _sweep_stalled(self, *, now: datetime, summary: WatchdogCycleSummary) -> None:
        stalled = self.store.list_stuck(
            timedelta(seconds=self.settings.stuck_threshold_seconds),
            now=now,
        )
        for operation in stalled:
            kind = self.classify(operation, now=now)
            if kind is StallKind.TIMED_OUT:
                summary.timed_out += 1
                note = str(OperationTimeoutError(operation.id))
            else:
                summary.stuck += 1
                note = str(StuckOperationError(operation.id))
            exhausted = RetryExhaustedError(
                operation.id,
                max_retries=self.settings.max_retries,
                timed_out=kind is StallKind.TIMED_OUT,
            )
            outcome = retry_or_fail(
                store=self.store,
                operation=operation,
                note=note,
                exhausted_error=str(exhausted),
                max_retries=self.settings.max_retries,
            )
            if outcome is RetryOutcome.RETRIED:
                summary.retried += 1
            elif outcome is RetryOutcome.FAILED:
                summary.failed += 1
            else:
                summary.lost += 1

    def _daily_due(self, now: datetime) -> bool:
        if self._last_daily_date == now.date():
            return False
        return now.timetz().replace(tzinfo=None) >= self._daily_time

    def _run_daily_tasks(self, *, now: datetime, summary: WatchdogCycleSummary) -> None:
        stats = self.store.aggregate_stats(since=now - STATS_WINDOW)
        for line in render_stats_lines(stats):
            logger.info("%s", line)
        share = failure_share(stats)
        if share is not None and share > 0:
            logger.warning("Failed share of finished operations in last 24h: %.1f%%", share * 100)

        archive = self.store.archive_and_delete(
            older_than=now - timedelta(days=self.settings.archive_retention_days),
        )
        logger.info("Daily archive moved %d operations", archive.archived)

        self._last_daily_date = now.date()
        summary.daily_ran = True
        summary.stats = stats
        summary.archive = archive
