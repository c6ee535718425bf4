"""Error taxonomy for operation orchestration."""

from __future__ import annotations


class OperationError(RuntimeError):
    """Base class for orchestration failures that end up in ``operations.error``."""


class ValidationError(OperationError):
    """Handler-local payload problem detected before any side effects."""


class ExternalActionError(OperationError):
    """Delegated management command exited non-zero."""

    def __init__(self, message: str, *, exit_code: int, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class NoHandlerError(OperationError):
    """No handler is registered for the operation type."""

    def __init__(self, operation_type: str) -> None:
        super().__init__("no handler configured")
        self.operation_type = operation_type


class HandlerUnavailableError(OperationError):
    """Registered handler executable is missing or not runnable."""

    def __init__(self, operation_type: str, executable: str) -> None:
        super().__init__("handler unavailable")
        self.operation_type = operation_type
        self.executable = executable


class StuckOperationError(OperationError):
    """Operation stayed in processing past the stuck threshold."""

    def __init__(self, operation_id: int) -> None:
        super().__init__("Operation stuck - attempting retry")
        self.operation_id = operation_id


class OperationTimeoutError(OperationError):
    """Operation ran longer than the maximum operation time."""

    def __init__(self, operation_id: int) -> None:
        super().__init__("Operation timed out - attempting retry")
        self.operation_id = operation_id


class RetryExhaustedError(OperationError):
    """Operation used up every retry and is failed permanently."""

    def __init__(self, operation_id: int, *, max_retries: int, timed_out: bool = False) -> None:
        verb = "timed out" if timed_out else "failed"
        super().__init__(f"Operation {verb} after {max_retries} retries")
        self.operation_id = operation_id
        self.max_retries = max_retries


class RegistryConfigError(ValueError):
    """Handler registry file could not be parsed."""
