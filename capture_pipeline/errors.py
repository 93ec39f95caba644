"""
Error taxonomy for the capture pipeline.

Every failure that crosses a component boundary is one of these types so the
job queue can decide, in one place, whether it consumes retry budget.
"""

import asyncio
import re
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorCategory(str, Enum):
    """Categories of errors for handling and user feedback."""
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    CONFLICT = "conflict"
    DUPLICATE = "duplicate"
    STORAGE = "storage"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Carries a technical message plus a short user-facing reason that is
    stored on failed records.
    """

    category = ErrorCategory.TERMINAL

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        service: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message
        self.service = service
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.category == ErrorCategory.RETRYABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "service": self.service,
            "details": self.details,
        }


class RetryableExternalError(PipelineError):
    """Timeout, rate limit or transient 5xx from an external service."""

    category = ErrorCategory.RETRYABLE

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TerminalExternalError(PipelineError):
    """Bad input, auth failure or permanently exhausted quota."""

    category = ErrorCategory.TERMINAL


class ParseError(TerminalExternalError):
    """Deterministic parse failure; retrying would fail identically."""


class CircuitOpenError(TerminalExternalError):
    """Raised without calling out while a service circuit is open."""


class ConflictError(PipelineError):
    """Version mismatch during sync; carries the current server state."""

    category = ErrorCategory.CONFLICT

    def __init__(self, message: str, *, current: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current = current


class DuplicateError(PipelineError):
    """Fingerprint collision with a canonical record."""

    category = ErrorCategory.DUPLICATE

    def __init__(self, message: str, *, canonical_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.canonical_id = canonical_id


class StorageError(PipelineError):
    """Durable storage write failure. Always fatal to the calling operation."""

    category = ErrorCategory.STORAGE


_RETRYABLE_PATTERNS = re.compile(
    r"timeout|timed out|rate.?limit|too many requests|temporarily unavailable|"
    r"connection (reset|refused|aborted)|network.*error|service unavailable|bad gateway",
    re.IGNORECASE,
)


def classify_exception(exc: BaseException, service: Optional[str] = None) -> PipelineError:
    """Map an arbitrary exception onto the pipeline taxonomy."""
    if isinstance(exc, PipelineError):
        if service and exc.service is None:
            exc.service = service
        return exc

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return RetryableExternalError(
            f"{service or 'external'} call timed out",
            user_message="The service took too long to respond",
            service=service,
        )
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return RetryableExternalError(
            f"{service or 'external'} transport error: {exc}",
            user_message="Temporary network problem",
            service=service,
        )
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, str(exc), service=service)

    if _RETRYABLE_PATTERNS.search(f"{type(exc).__name__} {exc}"):
        return RetryableExternalError(str(exc), service=service)
    return TerminalExternalError(
        f"{type(exc).__name__}: {exc}",
        user_message="Unexpected processing error",
        service=service,
    )


def error_for_status(
    status_code: int,
    body: str = "",
    *,
    service: Optional[str] = None,
    retry_after: Optional[float] = None,
) -> PipelineError:
    """Translate an HTTP status code from a provider into a pipeline error."""
    label = service or "external service"
    if status_code == 429:
        # Quota exhaustion is reported as 429 by several providers
        if "insufficient_quota" in body or "quota exceeded" in body.lower():
            return TerminalExternalError(
                f"{label} quota permanently exhausted",
                user_message=f"{label} quota exhausted",
                service=service,
            )
        return RetryableExternalError(
            f"{label} rate limited",
            user_message=f"{label} is busy, will retry",
            service=service,
            retry_after=retry_after,
        )
    if status_code in (408, 500, 502, 503, 504):
        return RetryableExternalError(
            f"{label} returned {status_code}",
            user_message=f"{label} temporarily unavailable",
            service=service,
            retry_after=retry_after,
        )
    if status_code in (401, 403):
        return TerminalExternalError(
            f"{label} rejected credentials ({status_code})",
            user_message=f"{label} authorization failed",
            service=service,
        )
    return TerminalExternalError(
        f"{label} returned {status_code}: {body[:200]}",
        user_message=f"{label} could not process this capture",
        service=service,
    )
