"""Polling dispatcher that claims pending operations and runs their handlers."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from panel_ops.config import OrchestratorSettings
from panel_ops.orchestrator.backend import (
    HandlerBackend,
    HandlerRunError,
    HandlerRunRequest,
    SubprocessHandlerBackend,
)
from panel_ops.orchestrator.errors import (
    HandlerUnavailableError,
    NoHandlerError,
    RetryExhaustedError,
)
from panel_ops.orchestrator.models import OperationSource, OperationStatus, OperationView
from panel_ops.orchestrator.registry import HandlerRegistry
from panel_ops.orchestrator.repository import OperationStore
from panel_ops.orchestrator.retry import RetryOutcome, retry_or_fail
from panel_ops.orchestrator.signals import stop_on_signals

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRIED = "retried"
    SELF_REPORTED = "self_reported"


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    self_reported: int = 0
    skipped: int = 0
    idle_polls: int = 0
    errors: int = 0

    def record(self, outcome: DispatchOutcome) -> None:
        self.processed += 1
        if outcome is DispatchOutcome.COMPLETED:
            self.completed += 1
        elif outcome is DispatchOutcome.FAILED:
            self.failed += 1
        elif outcome is DispatchOutcome.RETRIED:
            self.retried += 1
        else:
            self.self_reported += 1

    def merge(self, other: DispatchSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.retried += other.retried
        self.self_reported += other.self_reported
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls
        self.errors += other.errors


class Dispatcher:
    """Claims ``api`` operations in creation order and runs mapped handlers."""

    def __init__(
        self,
        *,
        store: OperationStore,
        registry: HandlerRegistry,
        settings: OrchestratorSettings,
        backend: HandlerBackend | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings
        self.backend = backend or SubprocessHandlerBackend()
        self._stop_requested = threading.Event()
        self._summary_lock = threading.Lock()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self) -> None:
        self._stop_requested.set()

    def run_once(self) -> DispatchSummary:
        """Claim and execute every operation pending at poll time."""

        summary = DispatchSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        pending = self.store.list_pending(OperationSource.API)
        if not pending:
            summary.idle_polls = 1
            return summary

        if self.settings.dispatcher_workers > 1:
            self._run_pooled(pending, summary)
            return summary

        for operation in pending:
            if self.stop_requested:
                break
            if not self.store.claim(operation.id):
                summary.skipped += 1
                continue
            summary.record(self.execute(operation))
        return summary

    def run_loop(self, *, max_polls: int | None = None) -> DispatchSummary:
        """Poll until a stop signal arrives or ``max_polls`` polls have run."""

        aggregate = DispatchSummary()
        polls = 0
        logger.info(
            "Dispatcher started: poll_interval=%ss workers=%d",
            self.settings.poll_interval_seconds,
            self.settings.dispatcher_workers,
        )
        with stop_on_signals(self.request_stop, name="Dispatcher"):
            while not self.stop_requested:
                polls += 1
                try:
                    aggregate.merge(self.run_once())
                except SQLAlchemyError:
                    aggregate.errors += 1
                    logger.exception("Dispatcher poll failed; retrying after poll interval")
                if max_polls is not None and polls >= max_polls:
                    break
                self._sleep_with_stop(self.settings.poll_interval_seconds)
        logger.info(
            "Dispatcher stopped: processed=%d completed=%d failed=%d retried=%d",
            aggregate.processed,
            aggregate.completed,
            aggregate.failed,
            aggregate.retried,
        )
        return aggregate

    def execute(self, operation: OperationView) -> DispatchOutcome:
        """Run the handler for an already claimed operation and record the outcome."""

        try:
            entry = self.registry.resolve(operation.type)
        except (NoHandlerError, HandlerUnavailableError) as error:
            logger.error("Operation %s (%s): %s", operation.id, operation.type, error)
            return self._fail(operation, str(error))

        logger.info("Executing operation %s (%s)", operation.id, operation.type)
        request = HandlerRunRequest(
            operation_id=operation.id,
            operation_type=operation.type,
            command=entry.command,
            db_path=self.store.db_path,
            log_path=self._log_path(operation),
        )
        try:
            run = self.backend.run(request)
        except HandlerRunError as error:
            logger.error("Operation %s (%s): %s", operation.id, operation.type, error)
            message = (
                str(HandlerUnavailableError(operation.type, entry.executable))
                if error.missing
                else str(error)
            )
            return self._fail(operation, message)
        except Exception as error:  # noqa: BLE001
            logger.exception("Operation %s (%s): handler run failed", operation.id, operation.type)
            return self._fail(operation, f"Handler run failed: {error}")

        if run.succeeded:
            result = run.result if run.result is not None else {
                "exit_code": 0,
                "output": run.output,
            }
            if self.store.set_terminal(operation.id, OperationStatus.COMPLETED, result=result):
                logger.info("Operation %s (%s) completed", operation.id, operation.type)
                return DispatchOutcome.COMPLETED
            return self._self_reported(operation)

        error_text = run.output or f"Handler exited with code {run.exit_code}"
        logger.warning(
            "Operation %s (%s) handler exited with code %d",
            operation.id,
            operation.type,
            run.exit_code,
        )
        if self.settings.retry_failed_exits:
            outcome = retry_or_fail(
                store=self.store,
                operation=operation,
                note=f"Handler exited with code {run.exit_code} - attempting retry",
                exhausted_error=str(
                    RetryExhaustedError(operation.id, max_retries=self.settings.max_retries),
                ),
                max_retries=self.settings.max_retries,
            )
            if outcome is RetryOutcome.RETRIED:
                return DispatchOutcome.RETRIED
            if outcome is RetryOutcome.FAILED:
                return DispatchOutcome.FAILED
            return self._self_reported(operation)
        return self._fail(operation, error_text)

    def _fail(self, operation: OperationView, error: str) -> DispatchOutcome:
        if self.store.set_terminal(operation.id, OperationStatus.FAILED, error=error):
            return DispatchOutcome.FAILED
        return self._self_reported(operation)

    def _self_reported(self, operation: OperationView) -> DispatchOutcome:
        logger.info(
            "Operation %s (%s) already left processing; leaving its status alone",
            operation.id,
            operation.type,
        )
        return DispatchOutcome.SELF_REPORTED

    def _log_path(self, operation: OperationView) -> Path:
        return self.settings.handler_log_dir / f"{operation.domain}_operations.log"

    def _run_pooled(self, pending: list[OperationView], summary: DispatchSummary) -> None:
        # One slot is taken before each claim so claimed rows never wait in
        # ``processing`` for a free worker.
        slots = threading.Semaphore(self.settings.dispatcher_workers)
        futures: list[Future[None]] = []
        with ThreadPoolExecutor(
            max_workers=self.settings.dispatcher_workers,
            thread_name_prefix="panel-ops-dispatch",
        ) as pool:
            for operation in pending:
                slots.acquire()
                if self.stop_requested:
                    slots.release()
                    break
                try:
                    claimed = self.store.claim(operation.id)
                except BaseException:
                    slots.release()
                    raise
                if not claimed:
                    slots.release()
                    summary.skipped += 1
                    continue
                futures.append(pool.submit(self._execute_in_slot, operation, slots, summary))
        for future in futures:
            future.result()

    def _execute_in_slot(
        self,
        operation: OperationView,
        slots: threading.Semaphore,
        summary: DispatchSummary,
    ) -> None:
        try:
            outcome = self.execute(operation)
        except SQLAlchemyError:
            logger.exception("Operation %s (%s) could not be recorded", operation.id, operation.type)
            with self._summary_lock:
                summary.errors += 1
            return
        finally:
            slots.release()
        with self._summary_lock:
            summary.record(outcome)

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_requested.wait(timeout=max(0.0, seconds))

