"""Handler invocation backends."""

from panel_ops.orchestrator.backend.base import (
    HandlerBackend,
    HandlerRunRequest,
    HandlerRunResult,
)
from panel_ops.orchestrator.backend.subprocess_backend import (
    HandlerRunError,
    SubprocessHandlerBackend,
)

__all__ = [
    "HandlerBackend",
    "HandlerRunError",
    "HandlerRunRequest",
    "HandlerRunResult",
    "SubprocessHandlerBackend",
]
