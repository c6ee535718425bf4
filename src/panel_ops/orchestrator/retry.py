"""Bounded retry policy shared by the dispatcher and watchdog."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from panel_ops.orchestrator.models import OperationStatus, OperationView
from panel_ops.orchestrator.repository import OperationStore

logger = logging.getLogger(__name__)


class RetryOutcome(str, Enum):
    RETRIED = "retried"
    FAILED = "failed"
    LOST = "lost"


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by retry policy."""

    should_retry: bool
    reason: str


def decide_retry(*, retry_count: int, max_retries: int) -> RetryDecision:
    """Allow a reset while ``retry_count`` is below ``max_retries``."""

    if retry_count < max_retries:
        return RetryDecision(
            should_retry=True,
            reason=f"Retry {retry_count + 1} of {max_retries}.",
        )
    return RetryDecision(should_retry=False, reason=f"All {max_retries} retries used.")


def retry_or_fail(
    *,
    store: OperationStore,
    operation: OperationView,
    note: str,
    exhausted_error: str,
    max_retries: int,
) -> RetryOutcome:
    """Reset a processing operation to pending or fail it permanently.

    ``LOST`` means the row left ``processing`` before our write landed.
    """

    decision = decide_retry(retry_count=operation.retry_count, max_retries=max_retries)
    if decision.should_retry:
        if store.reset_for_retry(operation.id, note, max_retries=max_retries):
            logger.warning(
                "Operation %s (%s) reset to pending: %s (%s)",
                operation.id,
                operation.type,
                note,
                decision.reason,
            )
            return RetryOutcome.RETRIED
        return RetryOutcome.LOST

    if store.set_terminal(operation.id, OperationStatus.FAILED, error=exhausted_error):
        logger.error("Operation %s (%s) failed: %s", operation.id, operation.type, exhausted_error)
        return RetryOutcome.FAILED
    return RetryOutcome.LOST
