"""Subprocess-based runner for external handler executables."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from panel_ops.orchestrator.backend.base import HandlerRunRequest, HandlerRunResult

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 4_000

ENV_DB_PATH = "PANEL_OPS_DB_PATH"
ENV_OPERATION_ID = "PANEL_OPS_OPERATION_ID"
ENV_OPERATION_TYPE = "PANEL_OPS_OPERATION_TYPE"
ENV_RESULT_PATH = "PANEL_OPS_RESULT_PATH"


class HandlerRunError(RuntimeError):
    """Handler process could not be started."""

    def __init__(self, message: str, *, missing: bool) -> None:
        super().__init__(message)
        self.missing = missing


class SubprocessHandlerBackend:
    """Run ``[*command, operation_type, operation_id]`` and wait for it to exit.

    Combined stdout/stderr goes to the per-domain operation log. A handler
    may leave a JSON document at ``$PANEL_OPS_RESULT_PATH``; it becomes the
    operation result on success.
    """

    def run(self, request: HandlerRunRequest) -> HandlerRunResult:
        argv = [*request.command, request.operation_type, str(request.operation_id)]

        with tempfile.TemporaryDirectory(prefix="panel-ops-") as scratch:
            result_path = Path(scratch) / "result.json"
            env = os.environ.copy()
            env[ENV_DB_PATH] = str(request.db_path)
            env[ENV_OPERATION_ID] = str(request.operation_id)
            env[ENV_OPERATION_TYPE] = request.operation_type
            env[ENV_RESULT_PATH] = str(result_path)

            try:
                completed = subprocess.run(  # noqa: S603
                    argv,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    check=False,
                )
            except FileNotFoundError as error:
                raise HandlerRunError(
                    f"Handler command not found: {argv[0]}",
                    missing=True,
                ) from error
            except PermissionError as error:
                raise HandlerRunError(
                    f"Handler command is not executable: {argv[0]}",
                    missing=True,
                ) from error
            except OSError as error:
                raise HandlerRunError(f"Handler failed to start: {error}", missing=False) from error

            output = completed.stdout or ""
            _append_operation_log(
                log_path=request.log_path,
                request=request,
                exit_code=completed.returncode,
                output=output,
            )
            result = _read_result_document(result_path) if completed.returncode == 0 else None

        return HandlerRunResult(
            exit_code=completed.returncode,
            output=output_tail(output),
            result=result,
        )


def output_tail(output: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    stripped = output.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[-limit:]


def _read_result_document(path: Path) -> dict[str, object] | None:
    if not path.exists():
        return None
    try:
        raw = path.read_text("utf-8").strip()
    except (OSError, UnicodeDecodeError) as error:
        logger.warning("Ignoring unreadable handler result document at %s: %s", path, error)
        return None
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed handler result document at %s", path)
        return None
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


def _append_operation_log(
    *,
    log_path: Path,
    request: HandlerRunRequest,
    exit_code: int,
    output: str,
) -> None:
    timestamp = datetime.now(tz=UTC).strftime("%Y-%m-%d %H:%M:%S")
    header = (
        f"[{timestamp}] operation={request.operation_id} "
        f"type={request.operation_type} exit_code={exit_code}\n"
    )
    body = output if output.endswith("\n") or not output else f"{output}\n"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(header)
            handle.write(body)
    except OSError as error:
        logger.warning(
            "Could not write operation log %s for operation %s: %s",
            log_path,
            request.operation_id,
            error,
        )
