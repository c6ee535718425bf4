"""Domain models for the operation queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class OperationStatus(str, Enum):
    """Durable operation lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OperationStatus.COMPLETED, OperationStatus.FAILED})


class OperationSource(str, Enum):
    """Which orchestration path owns an operation."""

    API = "api"
    UI = "ui"


class StallKind(str, Enum):
    """How long a processing operation has gone without finishing."""

    STUCK = "stuck"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class OperationView:
    """Readable operation row for services, dispatcher and watchdog."""

    id: int
    type: str
    data: dict[str, Any]
    status: OperationStatus
    source: OperationSource
    retry_count: int
    error: str | None
    result: dict[str, Any] | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def domain(self) -> str:
        return operation_domain(self.type)


@dataclass(slots=True)
class ArchivedOperationView:
    """Snapshot of a terminal operation moved out of the live table."""

    id: int
    type: str
    data: dict[str, Any]
    status: OperationStatus
    source: OperationSource
    retry_count: int
    error: str | None
    result: dict[str, Any] | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    archived_at: datetime


@dataclass(slots=True)
class OperationEventView:
    """Operation event entry for audit trail."""

    event_id: int
    operation_id: int
    event_type: str
    status_from: OperationStatus | None
    status_to: OperationStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OperationDetails:
    """Operation with its event stream."""

    operation: OperationView
    events: list[OperationEventView]


@dataclass(slots=True)
class ArchiveResult:
    """Outcome of one archive-and-delete sweep."""

    cutoff: datetime
    dry_run: bool
    archived: int
    operation_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class OperationStats:
    """Aggregate counts for operations created inside a window."""

    since: datetime
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    avg_completed_seconds: float | None = None


def operation_domain(operation_type: str) -> str:
    """Return the domain prefix of a namespaced type, e.g. ``site`` for ``site.create``."""

    head, _, _ = operation_type.partition(".")
    return head or "unknown"
