"""
Delivery State Machine

    pending -> dispatched -> published | deferred | failed
    deferred -> (due again once next_attempt_at passes)
    pending | deferred | dispatched -> source-deleted

Attempts are counted when a task is dispatched. A task deferred on
attempt n waits retry_intervals[n] seconds; past the end of the table
(or at the contract's max attempts) it fails instead.
"""

import re
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import requests

from changedetect.core.enums import DeliveryStatus, ErrorKind
from changedetect.core.exceptions import DeliveryError
from changedetect.core.logging_config import get_logger
from changedetect.infrastructure.database.models import DeliveryTask
from changedetect.infrastructure.database.repositories.delivery_task import DeliveryTaskRepository

MAX_ERROR_LENGTH = 2000

# ======================== ERROR CLASSIFICATION ========================

_INFRASTRUCTURE_MARKERS = (
    "connection", "timeout", "timed out", "permission denied", "network",
    "ssl", "authentication failed", "unable to create configured logger",
)
_VALIDATION_MARKERS = ("validation", "invalid", "required", "format")
_DATA_MARKERS = ("not found", "missing", "empty")

_RESPONSE_CODE_PATTERNS = (
    re.compile(r"HTTP/\d(?:\.\d)? (\d{3})"),
    re.compile(r"status code:? (\d{3})", re.IGNORECASE),
    re.compile(r"\b(\d{3}) [A-Z]"),
)

def _kind_for_status(status_code: int) -> ErrorKind:
    if status_code in (401, 403, 407, 408, 429) or status_code >= 500:
        return ErrorKind.INFRASTRUCTURE
    if status_code in (404, 410):
        return ErrorKind.DATA
    return ErrorKind.VALIDATION

def classify_error_kind(exc: Exception, contract=None) -> ErrorKind:
    """
    Error kind of a delivery failure.

    Explicit kinds win: DeliveryError.kind, then the contract's own
    ``error_kind`` hook, then requests exception types, then message text.
    """
    if isinstance(exc, DeliveryError):
        return exc.kind

    if contract is not None:
        kind = contract.error_kind(exc)
        if kind is not None:
            return ErrorKind(kind)

    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return _kind_for_status(exc.response.status_code)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)):
        return ErrorKind.INFRASTRUCTURE

    message = str(exc).lower()
    if any(marker in message for marker in _INFRASTRUCTURE_MARKERS):
        return ErrorKind.INFRASTRUCTURE
    if any(marker in message for marker in _VALIDATION_MARKERS):
        return ErrorKind.VALIDATION
    if any(marker in message for marker in _DATA_MARKERS):
        return ErrorKind.DATA
    return ErrorKind.UNKNOWN

def extract_response_code(exc: Exception) -> Optional[int]:
    """HTTP-style status code carried by or mentioned in an exception."""
    code = getattr(exc, "response_code", None)
    if code is not None:
        return int(code)

    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code

    message = str(exc)
    for pattern in _RESPONSE_CODE_PATTERNS:
        match = pattern.search(message)
        if match:
            return int(match.group(1))
    return None

def next_retry_delay(attempt: int, retry_intervals: Dict[int, int], max_attempts: Optional[int] = None) -> Optional[int]:
    """Seconds to wait after a failed attempt, or None when retries are exhausted."""
    if not retry_intervals or attempt > len(retry_intervals):
        return None
    if max_attempts and attempt >= max_attempts:
        return None
    if attempt in retry_intervals:
        return retry_intervals[attempt]
    earlier = [number for number in retry_intervals if number <= attempt]
    return retry_intervals[max(earlier)] if earlier else min(retry_intervals.values())

# ======================== STATE MACHINE ========================

class DeliveryStateMachine:
    """Compare-and-set transitions for delivery tasks."""

    def __init__(self, tasks: DeliveryTaskRepository, clock: Optional[Callable[[], datetime]] = None):
        self.tasks = tasks
        self.clock = clock or datetime.utcnow
        self.logger = get_logger("delivery_state_machine")

    def dispatch(self, task: DeliveryTask) -> bool:
        """Claim a due task and count the attempt. False if another worker got there first."""
        claimed = self.tasks.transition(
            task.id,
            [DeliveryStatus.PENDING, DeliveryStatus.DEFERRED],
            status=DeliveryStatus.DISPATCHED,
            attempts=DeliveryTask.attempts + 1,
        )
        if claimed:
            self.tasks.refresh(task)
        return claimed

    def publish(self, task: DeliveryTask, delivered_hash: Optional[str]) -> bool:
        return self.tasks.transition(
            task.id,
            [DeliveryStatus.DISPATCHED],
            status=DeliveryStatus.PUBLISHED,
            delivered_hash=delivered_hash,
            delivered_at=self.clock(),
            next_attempt_at=None,
            last_error=None,
            last_response_code=None,
            error_kind=None,
        )

    def defer(
        self,
        task: DeliveryTask,
        retry_intervals: Dict[int, int],
        max_attempts: Optional[int],
        error: str,
        kind: ErrorKind,
        response_code: Optional[int] = None
    ) -> DeliveryStatus:
        """Schedule a retry, or fail the task when its retries are used up."""
        delay = next_retry_delay(task.attempts, retry_intervals, max_attempts)
        if delay is None:
            self.fail(task, error, kind, response_code)
            return DeliveryStatus.FAILED

        self.tasks.transition(
            task.id,
            [DeliveryStatus.DISPATCHED],
            status=DeliveryStatus.DEFERRED,
            next_attempt_at=self.clock() + timedelta(seconds=delay),
            last_error=error[:MAX_ERROR_LENGTH],
            last_response_code=response_code,
            error_kind=ErrorKind(kind).value,
        )
        return DeliveryStatus.DEFERRED

    def fail(
        self,
        task: DeliveryTask,
        error: str,
        kind: ErrorKind,
        response_code: Optional[int] = None
    ) -> bool:
        """Fail a task from any non-terminal state."""
        failed = self.tasks.transition(
            task.id,
            DeliveryStatus.open_statuses(),
            status=DeliveryStatus.FAILED,
            next_attempt_at=None,
            last_error=error[:MAX_ERROR_LENGTH],
            last_response_code=response_code,
            error_kind=ErrorKind(kind).value,
        )
        if failed:
            self.logger.warning(
                f"Delivery task {task.id} failed: {error}",
                extra={"task_id": task.id, "error_kind": ErrorKind(kind).value, "response_code": response_code}
            )
        return failed

    def drop(self, task: DeliveryTask) -> bool:
        """Close a task whose source entity is gone."""
        return self.tasks.transition(
            task.id,
            DeliveryStatus.open_statuses(),
            status=DeliveryStatus.SOURCE_DELETED,
            next_attempt_at=None,
        )

__all__ = [
    'DeliveryStateMachine',
    'classify_error_kind',
    'extract_response_code',
    'next_retry_delay',
]
