"""Error taxonomy and retry classification for pipeline jobs."""

import httpx
from pydantic import ValidationError

RETRYABLE = "retryable"
FATAL = "fatal"

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestration engine."""

    error_class = "internal"
    retryable = True
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PayloadValidationError(OrchestratorError):
    """Malformed webhook payload or enqueue request."""

    error_class = "validation"
    retryable = False
    http_status = 422


class UnknownQueueError(PayloadValidationError):
    """Enqueue targeted a queue that is not one of the stage queues."""

    def __init__(self, queue_name: str):
        super().__init__(f"Unknown queue: {queue_name}")
        self.queue_name = queue_name


class BusinessRuleError(OrchestratorError):
    """A business rule blocks the stage; retrying will not help."""

    error_class = "business_rule"
    retryable = False
    http_status = 409


class InsufficientProcessesError(BusinessRuleError):
    """Too few identified processes to generate SOPs."""

    def __init__(self, count: int, minimum: int):
        super().__init__(
            f"Insufficient processes identified ({count}). Minimum {minimum} required."
        )
        self.count = count
        self.minimum = minimum


class UnapprovedSOPError(BusinessRuleError):
    """Proposal generation was requested with SOPs nobody approved."""

    def __init__(self, sop_ids):
        super().__init__(f"SOPs not approved: {', '.join(sorted(sop_ids))}")
        self.sop_ids = list(sop_ids)


class IllegalTransitionError(BusinessRuleError):
    """Requested workflow transition is not in the allowed-transitions table."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed")
        self.from_status = from_status
        self.to_status = to_status


class TransientError(OrchestratorError):
    """Remote call failed in a way that may succeed later (timeout, 5xx, 429)."""

    error_class = "transient"
    retryable = True
    http_status = 503


class ExternalServiceError(OrchestratorError):
    """Remote service rejected the request (non-retryable 4xx)."""

    error_class = "external_service"
    retryable = False
    http_status = 502


class StaleStateError(OrchestratorError):
    """Optimistic workflow transition lost a race."""

    error_class = "stale_state"
    retryable = True
    http_status = 409

    def __init__(self, client_id: str, expected: str, actual):
        super().__init__(
            f"Client {client_id} is in status {actual}, expected {expected}"
        )
        self.client_id = client_id
        self.expected = expected
        self.actual = actual


class NotFoundError(OrchestratorError):
    """Referenced client, job, form or artifact does not exist."""

    error_class = "not_found"
    retryable = False
    http_status = 404

    def __init__(self, entity: str, identifier):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


def classify_error(exc: BaseException) -> str:
    """
    Decide whether a failed job should be retried.

    Args:
        exc: Exception raised by a stage processor or invoker

    Returns:
        RETRYABLE or FATAL
    """
    if isinstance(exc, OrchestratorError):
        return RETRYABLE if exc.retryable else FATAL
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in RETRYABLE_STATUS_CODES:
            return RETRYABLE
        return FATAL
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError, ConnectionError)):
        return RETRYABLE
    if isinstance(exc, (ValidationError, KeyError, TypeError)):
        return FATAL
    # Unknown faults are retried, bounded by max attempts
    return RETRYABLE


def error_class_of(exc: BaseException) -> str:
    """Short label stored on the job for an exception."""
    if isinstance(exc, OrchestratorError):
        return exc.error_class
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError, ConnectionError)):
        return TransientError.error_class
    if isinstance(exc, httpx.HTTPStatusError):
        return "http_status"
    if isinstance(exc, ValidationError):
        return PayloadValidationError.error_class
    return "internal"
