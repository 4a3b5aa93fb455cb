"""
NoteDigest Backend — Custom Exception Hierarchy
=================================================

What:  Defines the typed failures of the summarization pipeline.
Why:   Callers must be able to act on a failure without reading upstream
       internals: back off on quota, retry later on a flaky upstream, fix the
       input on a validation or permanent upstream error.
How:   Each exception class carries a message, a stable `kind`, and an
       optional context dict. Global exception handlers (registered in
       main.py) map them to HTTP responses; the batch coordinator turns them
       into per-item outcomes.
Who:   Raised by services; caught by global handlers and the batch layer.

Exception Hierarchy:
    NoteDigestError (base)
    ├── ValidationError              → 400 Bad Request (client can fix)
    ├── QuotaExceededError           → 429 Too Many Requests (+ Retry-After)
    ├── UpstreamError                → 503 Service Unavailable
    │   ├── UpstreamTransientError   → 503 (retries exhausted / circuit open)
    │   ├── UpstreamThrottledError   → 503 (+ upstream Retry-After)
    │   └── UpstreamPermanentError   → 502 Bad Gateway (do not blindly retry)
    └── InternalError                → 500 Internal Server Error
        └── CacheCollisionError      → 500 (fingerprint collision)

Security Note:
    `context` is logged server-side only. API responses expose `message` and
    the whitelisted fields returned by `public_details()`; raw upstream error
    bodies never reach the client.
"""

from typing import Any, Dict, Optional


class NoteDigestError(Exception):
    """
    Base exception for all NoteDigest application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
        kind:     Stable machine-readable error kind
    """

    kind = "internal_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def public_details(self) -> Dict[str, Any]:
        """Details that are safe to include in an API response."""
        return {}


class ValidationError(NoteDigestError):
    """
    Raised when a summarization request is invalid.

    When:    Empty or oversized content, unknown style, oversized batch.
    HTTP:    400 Bad Request. Never retried by the system.
    """

    kind = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field

    def public_details(self) -> Dict[str, Any]:
        return {"field": self.field} if self.field else {}


class QuotaExceededError(NoteDigestError):
    """
    Raised when the quota ledger denies an upstream call for a user.

    HTTP:    429 Too Many Requests with a Retry-After header.
    Caller:  Should wait `retry_after` seconds; cached summaries keep working.
    """

    kind = "quota_exceeded"

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"AI summary quota exceeded. Please wait {retry_after} seconds "
            f"before requesting new summaries."
        )
        ctx = dict(context or {})
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after

    def public_details(self) -> Dict[str, Any]:
        return {"retry_after": self.retry_after}


class UpstreamError(NoteDigestError):
    """
    Base class for failures of the language-model call.

    `reason` distinguishes transient, throttled and permanent failures in
    responses; `retry_after` is set when a retry time is known.
    """

    kind = "upstream_unavailable"
    reason = "unavailable"

    def __init__(
        self,
        message: str = "AI summarization service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after

    def public_details(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {"reason": self.reason}
        if self.retry_after:
            details["retry_after"] = self.retry_after
        return details


class UpstreamTransientError(UpstreamError):
    """
    Local retries against a flaky upstream were exhausted, or the circuit
    breaker is open. Safe for the caller to retry later.
    """

    reason = "transient"


class UpstreamThrottledError(UpstreamError):
    """
    The upstream's own rate limiter tripped. Surfaced with the upstream's
    retry-after; no local retry is layered on top.
    """

    reason = "throttled"

    def __init__(
        self,
        retry_after: int = 30,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=(
                "The AI provider is rate limiting requests. "
                f"Please retry in about {retry_after} seconds."
            ),
            retry_after=retry_after,
            context=context,
        )


class UpstreamPermanentError(UpstreamError):
    """
    The upstream rejected the request or answered with something unusable.

    HTTP:    502 Bad Gateway. Retrying the same input will fail again.
    """

    kind = "upstream_rejected"
    reason = "permanent"

    def __init__(
        self,
        message: str = "The AI provider could not summarize this note.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InternalError(NoteDigestError):
    """
    Invariant violation or unexpected exception inside the pipeline.

    Always logged with full context at the raise site; the client only sees
    a generic message.
    """

    kind = "internal_error"

    def __init__(
        self,
        message: str = "An internal error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CacheCollisionError(InternalError):
    """
    Two different normalized inputs produced the same fingerprint, or a
    cached entry does not match the content it was looked up for.
    """

    def __init__(
        self,
        fingerprint: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        ctx["fingerprint"] = fingerprint
        super().__init__(context=ctx)
        self.fingerprint = fingerprint
