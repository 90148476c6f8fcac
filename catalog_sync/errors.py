"""
Error taxonomy for the webhook ingestion and sync pipeline.

Every error carries a context dict (entity_id, kind, attempt, task_id, ...)
so a failed task can be diagnosed without replaying the webhook. Callers
wrap lower-level exceptions with ``raise ... from exc`` so the original
cause stays attached.

Classes:
- AuthenticationError: bad or missing webhook signature (ingress only)
- PermanentTaskError: task must not be retried
    - PayloadValidationError: malformed task payload
    - EntityNotFoundError: upstream entity confirmed absent
- TransientError: network, timeout, 429/5xx; retried by the queue
    - CircuitOpenError: outbound circuit is open
- UpstreamAPIError: HTTP error from Shopify or Contentful; transient or
  permanent depending on the status code (see classify_http_status)
- AdvisoryFailure: best-effort step failed; logged, never propagated
"""

import asyncio
from typing import Any, Dict, Optional


class CatalogSyncError(Exception):
    """Base exception carrying diagnostic context."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {
            k: v for k, v in context.items() if v is not None
        }

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class AuthenticationError(CatalogSyncError):
    """Webhook signature is missing or does not match the body."""
    pass


class PermanentTaskError(CatalogSyncError):
    """Failure that will not go away on retry."""

    error_code = "permanent"


class PayloadValidationError(PermanentTaskError):
    """Task payload is malformed."""

    error_code = "validation_error"


class EntityNotFoundError(PermanentTaskError):
    """Upstream entity does not exist after the bounded local retry."""

    error_code = "not_found"


class TransientError(CatalogSyncError):
    """Network, timeout or server-side failure worth retrying."""

    error_code = "transient"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class CircuitOpenError(TransientError):
    """Outbound calls to a collaborator are short-circuited."""

    error_code = "circuit_open"


class UpstreamAPIError(CatalogSyncError):
    """
    Error returned by an upstream HTTP API.

    ``transient`` defaults to the HTTP status classification; a missing
    status code means the request never got a response (network, timeout).
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
        transient: Optional[bool] = None,
        **context: Any,
    ):
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code
        self.response = response
        self.transient = (
            classify_http_status(status_code) if transient is None else transient
        )

    @property
    def error_code(self) -> str:
        if self.status_code is None:
            return "upstream_unavailable" if self.transient else "upstream_error"
        return f"upstream_http_{self.status_code}"


class AdvisoryFailure(CatalogSyncError):
    """Best-effort step failed. Never fails the parent task."""
    pass


def classify_http_status(status_code: Optional[int]) -> bool:
    """
    True if a response with this status is worth retrying.

    No status (connection error, timeout), 408, 429 and 5xx are transient;
    every other 4xx is permanent.
    """
    if status_code is None:
        return True
    if status_code in (408, 429):
        return True
    return status_code >= 500


def is_permanent(exc: BaseException) -> bool:
    """True if a failed task must not be attempted again."""
    if isinstance(exc, PermanentTaskError):
        return True
    if isinstance(exc, UpstreamAPIError):
        return not exc.transient
    return False


def error_code_for(exc: BaseException) -> str:
    """Stable error code stored on failed tasks."""
    code = getattr(exc, "error_code", None)
    if code:
        return code
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return "timeout"
    return "unknown"
