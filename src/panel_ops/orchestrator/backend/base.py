"""Backend interface for handler invocation."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class HandlerRunRequest:
    """Inputs required to run one handler invocation."""

    operation_id: int
    operation_type: str
    command: tuple[str, ...]
    db_path: Path
    log_path: Path


@dataclass(slots=True)
class HandlerRunResult:
    """Execution outcome from a handler run."""

    exit_code: int
    output: str
    result: dict[str, object] | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class HandlerBackend(Protocol):
    """Protocol implemented by handler runners."""

    def run(self, request: HandlerRunRequest) -> HandlerRunResult:
        """Run a handler synchronously and return its outcome."""
