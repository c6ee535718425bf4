"""Deterministic demo handler used by dispatcher integration tests.

Payload switches: ``invalid`` fails validation (exit 2), ``fail_with``
simulates a failing management command with that exit code (exit 1),
``required`` lists payload keys that must be present.
"""

from __future__ import annotations

import sys
from typing import Any

from panel_ops.handlers.sdk import HandlerContext, run_external, run_handler
from panel_ops.orchestrator.errors import ValidationError


def _echo(context: HandlerContext) -> dict[str, Any]:
    payload = context.payload
    if payload.get("invalid"):
        raise ValidationError("payload flagged invalid")
    required = payload.get("required") or []
    if required:
        context.require(*required)
    fail_with = payload.get("fail_with")
    if fail_with is not None:
        run_external([sys.executable, "-c", f"import sys; sys.exit({int(fail_with)})"])

    print(f"echo {context.operation_type} #{context.operation_id}")
    return {
        "handler": "echo_handler",
        "operation_type": context.operation_type,
        "operation_id": context.operation_id,
        "echo": payload,
    }


def main(argv: list[str] | None = None) -> int:
    return run_handler(_echo, argv=argv)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
