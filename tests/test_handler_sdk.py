from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest

from panel_ops.handlers import echo_handler
from panel_ops.handlers.sdk import (
    EXIT_ACTION_FAILED,
    EXIT_INVALID_PAYLOAD,
    EXIT_OK,
    HandlerContext,
    run_external,
    run_handler,
    should_handle_operation,
)
from panel_ops.orchestrator.errors import ExternalActionError, ValidationError
from panel_ops.orchestrator.models import OperationSource
from panel_ops.orchestrator.repository import OperationStore

pytestmark = [
    allure.epic("Operation Queue"),
    allure.feature("Handler Kit"),
]


@pytest.fixture()
def handler_env(store: OperationStore, tmp_path: Path, monkeypatch) -> Path:
    result_path = tmp_path / "result.json"
    monkeypatch.setenv("PANEL_OPS_DB_PATH", str(store.db_path))
    monkeypatch.setenv("PANEL_OPS_RESULT_PATH", str(result_path))
    return result_path


def test_context_from_argv_reads_type_id_and_environment(handler_env: Path) -> None:
    context = HandlerContext.from_argv(["site.create", "42"])

    assert context.operation_type == "site.create"
    assert context.operation_id == 42
    assert context.result_path == handler_env


def test_context_from_argv_rejects_bad_invocations(handler_env: Path) -> None:
    with pytest.raises(ValidationError, match="usage"):
        HandlerContext.from_argv(["site.create"])
    with pytest.raises(ValidationError, match="Invalid operation id"):
        HandlerContext.from_argv(["site.create", "abc"])


def test_run_handler_writes_result_document(store: OperationStore, handler_env: Path) -> None:
    operation = store.enqueue("site.create", {"domain_name": "example.com"})

    exit_code = echo_handler.main(["site.create", str(operation.id)])

    assert exit_code == EXIT_OK
    result = json.loads(handler_env.read_text("utf-8"))
    assert result["echo"] == {"domain_name": "example.com"}
    untouched = store.get_operation(operation.id)
    assert untouched is not None
    assert untouched.status.value == "pending"


def test_run_handler_maps_validation_error_to_exit_2(
    store: OperationStore,
    handler_env: Path,
    capsys,
) -> None:
    operation = store.enqueue("site.create", {"invalid": True})

    exit_code = echo_handler.main(["site.create", str(operation.id)])

    assert exit_code == EXIT_INVALID_PAYLOAD
    assert "payload flagged invalid" in capsys.readouterr().err
    assert not handler_env.exists()


def test_run_handler_maps_external_failure_to_exit_1_and_cleans_up(
    store: OperationStore,
    handler_env: Path,
) -> None:
    operation = store.enqueue("database.create", {"name": "shop"})
    cleaned: list[int] = []

    def _action(context: HandlerContext) -> dict:
        run_external([sys.executable, "-c", "import sys; print('denied'); sys.exit(5)"])
        return {}

    exit_code = run_handler(
        _action,
        cleanup=lambda context: cleaned.append(context.operation_id),
        argv=["database.create", str(operation.id)],
    )

    assert exit_code == EXIT_ACTION_FAILED
    assert cleaned == [operation.id]


def test_run_handler_rejects_type_mismatch(store: OperationStore, handler_env: Path) -> None:
    operation = store.enqueue("site.create", {})

    exit_code = echo_handler.main(["site.delete", str(operation.id)])

    assert exit_code == EXIT_INVALID_PAYLOAD


def test_ui_operations_are_a_no_op(store: OperationStore, handler_env: Path) -> None:
    operation = store.enqueue("site.create", {"fail_with": 9}, OperationSource.UI)

    assert should_handle_operation(operation) is False
    assert echo_handler.main(["site.create", str(operation.id)]) == EXIT_OK


def test_run_external_returns_output_and_raises_on_failure() -> None:
    assert run_external([sys.executable, "-c", "print('ok')"]).strip() == "ok"

    with pytest.raises(ExternalActionError) as excinfo:
        run_external([sys.executable, "-c", "import sys; print('nope'); sys.exit(7)"])
    assert excinfo.value.exit_code == 7
    assert "nope" in excinfo.value.output

    with pytest.raises(ExternalActionError, match="Command not found"):
        run_external(["/definitely/not/here"])
