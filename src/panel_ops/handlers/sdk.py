"""Helpers for writing operation handlers in Python.

A handler is started by the dispatcher as
``<command...> <operation_type> <operation_id>`` with the store location in
``PANEL_OPS_DB_PATH``. It reads its payload, performs the action and exits:
0 on success, non-zero on failure. Status transitions stay with the
dispatcher; a handler reports its result by writing a JSON object to
``PANEL_OPS_RESULT_PATH``.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from panel_ops.orchestrator.backend.subprocess_backend import (
    ENV_DB_PATH,
    ENV_RESULT_PATH,
    output_tail,
)
from panel_ops.orchestrator.errors import ExternalActionError, ValidationError
from panel_ops.orchestrator.models import OperationSource, OperationView
from panel_ops.orchestrator.repository import OperationStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ACTION_FAILED = 1
EXIT_INVALID_PAYLOAD = 2

HandlerAction = Callable[["HandlerContext"], dict[str, Any] | None]
HandlerCleanup = Callable[["HandlerContext"], None]


@dataclass(slots=True)
class HandlerContext:
    """Invocation context of one handler process."""

    operation_type: str
    operation_id: int
    db_path: Path
    result_path: Path | None
    operation: OperationView | None = None

    @classmethod
    def from_argv(cls, argv: Sequence[str] | None = None) -> HandlerContext:
        args = list(sys.argv[1:] if argv is None else argv)
        if len(args) < 2:  # noqa: PLR2004
            raise ValidationError("usage: <handler> <operation_type> <operation_id>")
        operation_type, raw_id = args[-2], args[-1]
        try:
            operation_id = int(raw_id)
        except ValueError as error:
            raise ValidationError(f"Invalid operation id: {raw_id!r}") from error
        db_path = os.getenv(ENV_DB_PATH)
        if not db_path:
            raise ValidationError(f"{ENV_DB_PATH} is not set")
        result_path = os.getenv(ENV_RESULT_PATH)
        return cls(
            operation_type=operation_type,
            operation_id=operation_id,
            db_path=Path(db_path),
            result_path=Path(result_path) if result_path else None,
        )

    @property
    def payload(self) -> dict[str, Any]:
        if self.operation is None:
            raise ValidationError(f"Operation {self.operation_id} is not loaded")
        return self.operation.data

    def load_operation(self) -> OperationView:
        store = OperationStore(self.db_path)
        try:
            operation = store.get_operation(self.operation_id)
        finally:
            store.close()
        if operation is None:
            raise ValidationError(f"Operation {self.operation_id} not found")
        if operation.type != self.operation_type:
            raise ValidationError(
                f"Operation {self.operation_id} has type {operation.type!r}, "
                f"handler was invoked for {self.operation_type!r}",
            )
        self.operation = operation
        return operation

    def require(self, *keys: str) -> None:
        """Raise ``ValidationError`` naming every missing payload key."""

        missing = [key for key in keys if self.payload.get(key) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    def write_result(self, result: dict[str, Any]) -> None:
        if self.result_path is None:
            return
        self.result_path.write_text(json.dumps(result, ensure_ascii=False), "utf-8")


def should_handle_operation(operation: OperationView) -> bool:
    """Only ``api`` operations are driven through handlers."""

    return operation.source is OperationSource.API


def run_external(argv: Sequence[str], *, timeout: float | None = None) -> str:
    """Run a delegated management command and return its combined output."""

    try:
        completed = subprocess.run(  # noqa: S603
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as error:
        raise ExternalActionError(
            f"Command not found: {argv[0]}",
            exit_code=127,
        ) from error
    except subprocess.TimeoutExpired as error:
        raise ExternalActionError(
            f"Command timed out after {timeout}s: {argv[0]}",
            exit_code=124,
            output=error.output if isinstance(error.output, str) else "",
        ) from error

    output = completed.stdout or ""
    if completed.returncode != 0:
        raise ExternalActionError(
            f"{argv[0]} exited with code {completed.returncode}: {output_tail(output, 500)}",
            exit_code=completed.returncode,
            output=output,
        )
    return output


def run_handler(
    action: HandlerAction,
    *,
    cleanup: HandlerCleanup | None = None,
    argv: Sequence[str] | None = None,
) -> int:
    """Drive one handler invocation and return the process exit code."""

    try:
        context = HandlerContext.from_argv(argv)
        operation = context.load_operation()
    except ValidationError as error:
        print(f"Invalid invocation: {error}", file=sys.stderr)
        return EXIT_INVALID_PAYLOAD

    if not should_handle_operation(operation):
        print(f"Operation {operation.id} is not an api operation; nothing to do")
        return EXIT_OK

    try:
        result = action(context)
    except ValidationError as error:
        print(f"Invalid payload for {operation.type}: {error}", file=sys.stderr)
        return EXIT_INVALID_PAYLOAD
    except ExternalActionError as error:
        print(f"{operation.type} failed: {error}", file=sys.stderr)
        if cleanup is not None:
            _best_effort_cleanup(cleanup, context)
        return EXIT_ACTION_FAILED

    context.write_result(result if result is not None else {"status": "ok"})
    return EXIT_OK


def _best_effort_cleanup(cleanup: HandlerCleanup, context: HandlerContext) -> None:
    try:
        cleanup(context)
    except ExternalActionError as error:
        print(f"Cleanup failed: {error}", file=sys.stderr)
