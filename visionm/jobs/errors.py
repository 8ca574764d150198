"""Error taxonomy for the job lifecycle.

Every failure the orchestration layer can surface falls into one of five
categories. The category decides how the tracker reacts:

  validation       missing/invalid selection, rejected before any request
  rejected         server refused the operation for the job's current state
  rate_limited     429, surfaced with the server's wait hint, never auto-retried
  transient        network failure, timeout, non-JSON body, unexpected status
  stale_reference  the job/dataset/model no longer exists server-side
"""

from typing import Any, Dict, Mapping, Optional

VALIDATION = "validation"
REJECTED = "rejected"
RATE_LIMITED = "rate_limited"
TRANSIENT = "transient"
STALE_REFERENCE = "stale_reference"


class JobError(Exception):
    """Base class for all job-lifecycle errors."""

    category: str = TRANSIENT
    title: str = "Request failed"

    def __init__(
        self,
        detail: str,
        status_code: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        self.detail = detail
        self.status_code = status_code
        self.operation = operation
        super().__init__(detail)

    @property
    def user_message(self) -> str:
        return self.detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "title": self.title,
            "message": self.user_message,
            "status_code": self.status_code,
            "operation": self.operation,
        }


class SelectionValidationError(JobError):
    category = VALIDATION
    title = "Invalid selection"


class PolicyRejectedError(JobError):
    """Server (or local guard) refused the operation for the job's current state."""

    category = REJECTED
    title = "Not allowed"


class CancelFirstError(PolicyRejectedError):
    title = "Cannot delete"

    @property
    def user_message(self) -> str:
        return "Cannot delete a running or queued job. Please cancel it first."


class InvalidTransitionError(PolicyRejectedError):
    title = "Invalid transition"


class RateLimitedError(JobError):
    category = RATE_LIMITED
    title = "Too many requests"

    def __init__(
        self,
        detail: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
        operation: Optional[str] = None,
    ):
        super().__init__(detail, status_code=status_code, operation=operation)
        self.retry_after = retry_after

    @property
    def user_message(self) -> str:
        if self.retry_after:
            return f"{self.detail} Try again in {self.retry_after:g} seconds."
        return self.detail

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class TransientJobError(JobError):
    category = TRANSIENT
    title = "Request failed"


class StaleReferenceError(JobError):
    category = STALE_REFERENCE
    title = "Not found"


class ResultsUnavailableError(JobError):
    """Artifact not materialized yet although the job reports completed."""

    category = REJECTED
    title = "Results not available"

    @property
    def user_message(self) -> str:
        return "Results are not ready yet or not found."


def _retry_after(headers: Mapping[str, str], body: Any) -> Optional[float]:
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None and isinstance(body, dict):
        raw = body.get("retryAfter", body.get("retry_after"))
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def error_detail(body: Any, fallback: str) -> str:
    """Pull a human-readable message out of an error body."""
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(body, str) and body.strip():
        return body.strip()
    return fallback


def classify_response(
    status_code: int,
    body: Any,
    headers: Mapping[str, str],
    operation: str,
) -> JobError:
    """Map a non-2xx response to the error taxonomy.

    The meaning of 400/404 depends on the operation: on ``start`` both are a
    user-correctable selection problem, on ``status``/``cancel``/``delete``
    a 404 means the job is gone, and on ``results`` both mean the artifact
    is not there yet.
    """
    detail = error_detail(body, f"{operation} failed: {status_code}")

    if status_code == 429:
        return RateLimitedError(
            detail, retry_after=_retry_after(headers, body), operation=operation
        )

    if operation == "results" and status_code in (400, 404):
        return ResultsUnavailableError(detail, status_code=status_code, operation=operation)

    if operation == "start" and status_code in (400, 404, 409):
        return SelectionValidationError(detail, status_code=status_code, operation=operation)

    if status_code == 404:
        return StaleReferenceError(detail, status_code=status_code, operation=operation)

    if status_code == 400 and operation == "delete":
        return CancelFirstError(detail, status_code=status_code, operation=operation)

    if status_code in (400, 409):
        return PolicyRejectedError(detail, status_code=status_code, operation=operation)

    return TransientJobError(detail, status_code=status_code, operation=operation)
