"""Producer-facing use-case service for the operation queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from panel_ops.orchestrator.models import OperationSource, OperationStatus, OperationView
from panel_ops.orchestrator.repository import OperationStore

logger = logging.getLogger(__name__)

LIST_LIMIT_MIN = 1
LIST_LIMIT_MAX = 100
ENQUEUE_MESSAGE = "Operation queued successfully"


@dataclass(slots=True)
class EnqueueAccepted:
    """Acknowledgement returned to the API layer on enqueue."""

    operation_id: int
    status: OperationStatus
    message: str = ENQUEUE_MESSAGE

    def as_dict(self) -> dict[str, object]:
        return {
            "operation_id": self.operation_id,
            "status": self.status.value,
            "message": self.message,
        }


@dataclass(slots=True)
class OperationStatusView:
    """Status snapshot exposed to producers."""

    id: int
    type: str
    status: OperationStatus
    error: str | None
    result: dict[str, Any] | None
    retry_count: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_operation(cls, operation: OperationView) -> OperationStatusView:
        return cls(
            id=operation.id,
            type=operation.type,
            status=operation.status,
            error=operation.error,
            result=operation.result,
            retry_count=operation.retry_count,
            created_at=operation.created_at,
            started_at=operation.started_at,
            completed_at=operation.completed_at,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "error": self.error,
            "result": self.result,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class OperationService:
    """Boundary consumed by the HTTP layer: enqueue and read back operations."""

    def __init__(self, *, store: OperationStore) -> None:
        self.store = store

    def enqueue(self, operation_type: str, payload: dict[str, Any]) -> EnqueueAccepted:
        """Persist a new ``api`` operation; handler lookup is deferred to dispatch."""

        operation = self.store.enqueue(operation_type, payload, OperationSource.API)
        logger.info("Queued operation %s (%s)", operation.id, operation.type)
        return EnqueueAccepted(operation_id=operation.id, status=operation.status)

    def get_status(self, operation_id: int) -> OperationStatusView | None:
        operation = self.store.get_operation(operation_id)
        if operation is None:
            return None
        return OperationStatusView.from_operation(operation)

    def list_by_status(
        self,
        status: OperationStatus | str = OperationStatus.PENDING,
        limit: int = 10,
    ) -> list[OperationStatusView]:
        """List operations in one status, newest first."""

        try:
            normalized = OperationStatus(status)
        except ValueError as error:
            allowed = ", ".join(item.value for item in OperationStatus)
            raise ValueError(f"Invalid status {status!r}; expected one of: {allowed}") from error
        if not LIST_LIMIT_MIN <= limit <= LIST_LIMIT_MAX:
            raise ValueError(
                f"limit must be between {LIST_LIMIT_MIN} and {LIST_LIMIT_MAX}, got {limit}",
            )
        operations = self.store.list_by_status(status=normalized, limit=limit)
        return [OperationStatusView.from_operation(operation) for operation in operations]
