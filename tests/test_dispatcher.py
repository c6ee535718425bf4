from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import OperationalError

from panel_ops.orchestrator.backend import HandlerRunRequest, HandlerRunResult
from panel_ops.orchestrator.dispatcher import Dispatcher, DispatchOutcome
from panel_ops.orchestrator.models import OperationSource, OperationStatus
from panel_ops.orchestrator.registry import HandlerEntry, HandlerRegistry
from panel_ops.orchestrator.repository import OperationStore

pytestmark = [
    allure.epic("Operation Queue"),
    allure.feature("Dispatcher"),
]


class _RecordingBackend:
    """In-process backend that tracks concurrency and succeeds."""

    def __init__(self, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds
        self.requests: list[HandlerRunRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def run(self, request: HandlerRunRequest) -> HandlerRunResult:
        with self._lock:
            self.requests.append(request)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        time.sleep(self.delay_seconds)
        with self._lock:
            self.in_flight -= 1
        return HandlerRunResult(exit_code=0, output="done")


class _SelfReportingBackend:
    """Legacy handler that writes its own terminal status."""

    def __init__(self, store: OperationStore) -> None:
        self.store = store

    def run(self, request: HandlerRunRequest) -> HandlerRunResult:
        self.store.set_terminal(
            request.operation_id,
            OperationStatus.FAILED,
            error="handler reported failure",
        )
        return HandlerRunResult(exit_code=0, output="")


def _python_registry(*types: str) -> HandlerRegistry:
    return HandlerRegistry(HandlerEntry(name, (sys.executable,)) for name in types)


def test_site_create_completes_with_handler_result(
    store: OperationStore,
    echo_registry: HandlerRegistry,
    make_settings,
) -> None:
    settings = make_settings()
    operation = store.enqueue(
        "site.create",
        {"domain_name": "example.com", "type": "php", "php_version": "8.2"},
    )
    dispatcher = Dispatcher(store=store, registry=echo_registry, settings=settings)

    summary = dispatcher.run_once()

    assert summary.processed == 1
    assert summary.completed == 1
    finished = store.get_operation(operation.id)
    assert finished is not None
    assert finished.status == OperationStatus.COMPLETED
    assert finished.result is not None
    assert finished.result["handler"] == "echo_handler"
    assert finished.result["operation_id"] == operation.id
    assert finished.result["echo"]["domain_name"] == "example.com"
    assert finished.retry_count == 0

    log_text = (settings.handler_log_dir / "site_operations.log").read_text("utf-8")
    assert f"operation={operation.id} type=site.create exit_code=0" in log_text
    assert f"echo site.create #{operation.id}" in log_text


def test_failed_exit_marks_operation_failed_with_output(
    store: OperationStore,
    echo_registry: HandlerRegistry,
    make_settings,
) -> None:
    operation = store.enqueue("database.create", {"fail_with": 3})
    dispatcher = Dispatcher(store=store, registry=echo_registry, settings=make_settings())

    summary = dispatcher.run_once()

    assert summary.failed == 1
    failed = store.get_operation(operation.id)
    assert failed is not None
    assert failed.status == OperationStatus.FAILED
    assert failed.error is not None
    assert "exited with code 3" in failed.error
    assert failed.completed_at is not None


def test_validation_error_fails_operation(
    store: OperationStore,
    echo_registry: HandlerRegistry,
    make_settings,
) -> None:
    operation = store.enqueue("site.create", {"required": ["domain_name"]})
    dispatcher = Dispatcher(store=store, registry=echo_registry, settings=make_settings())

    dispatcher.run_once()

    failed = store.get_operation(operation.id)
    assert failed is not None
    assert failed.status == OperationStatus.FAILED
    assert "Missing required fields: domain_name" in (failed.error or "")


def test_failed_exits_retry_until_exhausted(
    store: OperationStore,
    echo_registry: HandlerRegistry,
    make_settings,
) -> None:
    settings = make_settings(retry_failed_exits=True, max_retries=3)
    operation = store.enqueue("site.create", {"fail_with": 4})
    dispatcher = Dispatcher(store=store, registry=echo_registry, settings=settings)

    outcomes = []
    for _ in range(4):
        summary = dispatcher.run_once()
        outcomes.append((summary.retried, summary.failed))

    assert outcomes == [(1, 0), (1, 0), (1, 0), (0, 1)]
    failed = store.get_operation(operation.id)
    assert failed is not None
    assert failed.status == OperationStatus.FAILED
    assert failed.retry_count == 3
    assert failed.error == "Operation failed after 3 retries"

    idle = dispatcher.run_once()
    assert idle.processed == 0
    assert idle.idle_polls == 1


def test_unregistered_type_fails_without_running_anything(
    store: OperationStore,
    make_settings,
) -> None:
    backend = _RecordingBackend()
    operation = store.enqueue("certificate.renew", {})
    dispatcher = Dispatcher(
        store=store,
        registry=HandlerRegistry(),
        settings=make_settings(),
        backend=backend,
    )

    dispatcher.run_once()

    failed = store.get_operation(operation.id)
    assert failed is not None
    assert failed.status == OperationStatus.FAILED
    assert failed.error == "no handler configured"
    assert backend.requests == []


def test_missing_executable_fails_as_handler_unavailable(
    store: OperationStore,
    make_settings,
    tmp_path: Path,
) -> None:
    operation = store.enqueue("site.delete", {})
    registry = HandlerRegistry([HandlerEntry("site.delete", (str(tmp_path / "gone.sh"),))])
    dispatcher = Dispatcher(store=store, registry=registry, settings=make_settings())

    dispatcher.run_once()

    failed = store.get_operation(operation.id)
    assert failed is not None
    assert failed.status == OperationStatus.FAILED
    assert failed.error == "handler unavailable"


def test_ui_operations_are_never_claimed(store: OperationStore, make_settings) -> None:
    backend = _RecordingBackend()
    operation = store.enqueue("site.create", {}, OperationSource.UI)
    dispatcher = Dispatcher(
        store=store,
        registry=_python_registry("site.create"),
        settings=make_settings(),
        backend=backend,
    )

    summary = dispatcher.run_once()

    assert summary.idle_polls == 1
    assert backend.requests == []
    untouched = store.get_operation(operation.id)
    assert untouched is not None
    assert untouched.status == OperationStatus.PENDING


def test_operations_run_in_creation_order_with_handler_arguments(
    store: OperationStore,
    make_settings,
) -> None:
    backend = _RecordingBackend()
    first = store.enqueue("site.create", {})
    second = store.enqueue("database.create", {})
    dispatcher = Dispatcher(
        store=store,
        registry=_python_registry("site.create", "database.create"),
        settings=make_settings(),
        backend=backend,
    )

    dispatcher.run_once()

    assert [request.operation_id for request in backend.requests] == [first.id, second.id]
    assert backend.requests[1].log_path.name == "database_operations.log"
    assert backend.requests[0].db_path == store.db_path
    completed = store.get_operation(first.id)
    assert completed is not None
    assert completed.result == {"exit_code": 0, "output": "done"}


def test_self_reported_status_is_left_alone(store: OperationStore, make_settings) -> None:
    operation = store.enqueue("site.create", {})
    dispatcher = Dispatcher(
        store=store,
        registry=_python_registry("site.create"),
        settings=make_settings(),
        backend=_SelfReportingBackend(store),
    )

    outcome_summary = dispatcher.run_once()

    assert outcome_summary.self_reported == 1
    row = store.get_operation(operation.id)
    assert row is not None
    assert row.status == OperationStatus.FAILED
    assert row.error == "handler reported failure"


def test_worker_pool_bounds_concurrency(store: OperationStore, make_settings) -> None:
    backend = _RecordingBackend(delay_seconds=0.05)
    operations = [store.enqueue("site.create", {"n": index}) for index in range(6)]
    dispatcher = Dispatcher(
        store=store,
        registry=_python_registry("site.create"),
        settings=make_settings(dispatcher_workers=2),
        backend=backend,
    )

    summary = dispatcher.run_once()

    assert summary.completed == 6
    assert backend.max_in_flight <= 2
    assert len(backend.requests) == 6
    for operation in operations:
        row = store.get_operation(operation.id)
        assert row is not None
        assert row.status == OperationStatus.COMPLETED


def test_execute_reports_outcome_for_claimed_operation(
    store: OperationStore,
    make_settings,
) -> None:
    operation = store.enqueue("site.create", {})
    store.claim(operation.id)
    claimed = store.get_operation(operation.id)
    assert claimed is not None
    dispatcher = Dispatcher(
        store=store,
        registry=_python_registry("site.create"),
        settings=make_settings(),
        backend=_RecordingBackend(),
    )

    assert dispatcher.execute(claimed) is DispatchOutcome.COMPLETED


def test_run_loop_survives_store_errors(store: OperationStore, make_settings, monkeypatch) -> None:
    calls = {"count": 0}

    def _broken_list_pending(*_args, **_kwargs):
        calls["count"] += 1
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "list_pending", _broken_list_pending)
    dispatcher = Dispatcher(
        store=store,
        registry=HandlerRegistry(),
        settings=make_settings(),
        backend=_RecordingBackend(),
    )

    summary = dispatcher.run_loop(max_polls=3)

    assert calls["count"] == 3
    assert summary.errors == 3


def test_stop_request_halts_polling(store: OperationStore, make_settings) -> None:
    store.enqueue("site.create", {})
    backend = _RecordingBackend()
    dispatcher = Dispatcher(
        store=store,
        registry=_python_registry("site.create"),
        settings=make_settings(),
        backend=backend,
    )
    dispatcher.request_stop()

    summary = dispatcher.run_loop()

    assert summary.processed == 0
    assert backend.requests == []


class _ExplodingBackend:
    """Backend that fails outside the handler process itself."""

    def run(self, request: HandlerRunRequest) -> HandlerRunResult:
        raise RuntimeError("scratch directory vanished")


def _inline_registry(operation_type: str, script: str) -> HandlerRegistry:
    return HandlerRegistry([HandlerEntry(operation_type, (sys.executable, "-c", script))])


def test_undecodable_result_document_still_completes(
    store: OperationStore,
    make_settings,
) -> None:
    operation = store.enqueue("site.create", {})
    registry = _inline_registry(
        "site.create",
        "import os; open(os.environ['PANEL_OPS_RESULT_PATH'], 'wb').write(b'\\xff\\xfe{}')",
    )
    dispatcher = Dispatcher(store=store, registry=registry, settings=make_settings())

    summary = dispatcher.run_loop(max_polls=1)

    assert summary.completed == 1
    row = store.get_operation(operation.id)
    assert row is not None
    assert row.status == OperationStatus.COMPLETED
    assert row.result == {"exit_code": 0, "output": ""}


def test_unwritable_log_dir_does_not_block_the_outcome(
    store: OperationStore,
    echo_registry: HandlerRegistry,
    make_settings,
    tmp_path: Path,
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", "utf-8")
    operation = store.enqueue("site.create", {"domain_name": "example.com"})
    dispatcher = Dispatcher(
        store=store,
        registry=echo_registry,
        settings=make_settings(handler_log_dir=blocker / "logs"),
    )

    summary = dispatcher.run_loop(max_polls=1)

    assert summary.completed == 1
    row = store.get_operation(operation.id)
    assert row is not None
    assert row.status == OperationStatus.COMPLETED
    assert row.result is not None
    assert row.result["echo"]["domain_name"] == "example.com"


def test_unexpected_backend_error_fails_claimed_operation(
    store: OperationStore,
    make_settings,
) -> None:
    operation = store.enqueue("site.create", {})
    follower = store.enqueue("site.create", {})
    dispatcher = Dispatcher(
        store=store,
        registry=_python_registry("site.create"),
        settings=make_settings(),
        backend=_ExplodingBackend(),
    )

    summary = dispatcher.run_loop(max_polls=1)

    assert summary.failed == 2
    for operation_id in (operation.id, follower.id):
        row = store.get_operation(operation_id)
        assert row is not None
        assert row.status == OperationStatus.FAILED
        assert row.error == "Handler run failed: scratch directory vanished"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_handler_killed_by_signal_is_a_failed_exit(
    store: OperationStore,
    make_settings,
) -> None:
    operation = store.enqueue("site.create", {})
    registry = _inline_registry(
        "site.create",
        "import os, signal; os.kill(os.getpid(), signal.SIGKILL)",
    )
    dispatcher = Dispatcher(store=store, registry=registry, settings=make_settings())

    dispatcher.run_once()

    row = store.get_operation(operation.id)
    assert row is not None
    assert row.status == OperationStatus.FAILED
    assert row.error == "Handler exited with code -9"
    assert row.retry_count == 0
