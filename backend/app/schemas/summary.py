"""
NoteDigest Backend — Summarization Models and API Schemas
==========================================================

What:  Pydantic models for the summarization pipeline: the immutable domain
       values passed between services, and the request/response bodies of
       the HTTP API.
Why:   One vocabulary from route to cache. Domain values are frozen so a
       request or cache entry cannot change after it has been fingerprinted.
Who:   Services use the domain models; route handlers use the API schemas.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SummaryStyle(str, Enum):
    """Output styles a summary can be produced in."""

    CONCISE = "concise"
    BULLETED = "bulleted"
    DETAILED = "detailed"

    @classmethod
    def values(cls) -> List[str]:
        return [style.value for style in cls]


# ══════════════════════════════════════════════════════════════════════════
# Domain Models — passed between services, never persisted here
# ══════════════════════════════════════════════════════════════════════════


class SummaryRequest(BaseModel):
    """
    A validated request to summarize one note for one user.

    Built by SummarizationService.build_request(), which enforces the
    content and style rules; immutable afterwards.
    """

    user_id: str
    note_id: str
    content: str
    style: SummaryStyle

    model_config = {"frozen": True}


class CacheEntry(BaseModel):
    """
    A previously produced summary, owned by the SummaryCache.

    source_content_hash is the digest of the normalized note content alone;
    it lets the cache tell an idempotent rewrite from a fingerprint collision.
    """

    fingerprint: str
    summary_text: str
    style: SummaryStyle
    created_at: float = Field(description="Epoch seconds when the entry was produced")
    source_content_hash: str

    model_config = {"frozen": True}


class SummaryResult(BaseModel):
    """
    What a summarize call hands back to its caller.

    tokens_used is set only for the request that paid for the upstream call:
    None on cache hits and for callers that joined an in-flight call.
    """

    summary_text: str
    style: SummaryStyle
    from_cache: bool
    tokens_used: Optional[int] = None

    model_config = {"frozen": True}


class UpstreamSummary(BaseModel):
    """Raw output of one successful language-model call."""

    text: str
    tokens_used: Optional[int] = None

    model_config = {"frozen": True}


# ══════════════════════════════════════════════════════════════════════════
# Request Models — what the client sends
# ══════════════════════════════════════════════════════════════════════════


class NoteInput(BaseModel):
    """
    One note to summarize.

    style is a plain string here on purpose: an unknown style must surface
    as our 400 validation_error, not FastAPI's generic 422.
    """

    note_id: str = Field(min_length=1, max_length=128, description="Note identifier")
    content: str = Field(description="Note text to summarize")
    style: str = Field(
        default=SummaryStyle.CONCISE.value,
        description="Summary style: concise, bulleted or detailed",
    )


class BatchSummarizeRequest(BaseModel):
    """Body of POST /api/summarize/batch."""

    items: List[NoteInput] = Field(min_length=1, description="Notes to summarize, in order")


# ══════════════════════════════════════════════════════════════════════════
# Response Models — what the API returns
# ══════════════════════════════════════════════════════════════════════════


class SummaryResponse(BaseModel):
    """Returned by POST /api/summarize and inside each successful batch item."""

    note_id: str = Field(description="The note this summary belongs to")
    summary_text: str = Field(description="Generated summary")
    style: SummaryStyle = Field(description="Style the summary was produced in")
    from_cache: bool = Field(description="True when no AI call was made")
    tokens_used: Optional[int] = Field(
        default=None,
        description="Tokens consumed by the AI call (null for cached summaries)",
    )


class ErrorDetail(BaseModel):
    """Error payload of a failed batch item."""

    error: str = Field(description="Machine-readable error kind")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="retry_after, reason or field")


class BatchItemResponse(BaseModel):
    """Outcome for one batch item; exactly one of result/error is set."""

    note_id: str
    ok: bool
    result: Optional[SummaryResponse] = None
    error: Optional[ErrorDetail] = None


class BatchSummarizeResponse(BaseModel):
    """Results in the same order as the request items."""

    results: List[BatchItemResponse]
    succeeded: int
    failed: int


class UsageResponse(BaseModel):
    """
    Returned by GET /api/usage.

    window_start and resets_at are null when the user has no active window
    (never called upstream, or the last window has expired).
    """

    user_id: str
    window_start: Optional[datetime] = Field(default=None, description="Start of the active window (UTC)")
    resets_at: Optional[datetime] = Field(default=None, description="When the active window ends (UTC)")
    count: int = Field(description="AI calls made in the active window")
    limit: int = Field(description="AI calls allowed per window")
    remaining: int = Field(description="AI calls left in the active window")


class ErrorResponse(BaseModel):
    """
    Standardized error response format for all API errors.

    Example:
        {
            "error": "quota_exceeded",
            "message": "AI summary quota exceeded. Please wait 1740 seconds ...",
            "details": {"retry_after": 1740},
            "request_id": "a1b2c3d4"
        }
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """Health check response showing service and dependency status."""

    status: str = Field(description="Overall service status: healthy, degraded")
    version: str = Field(description="Application version")
    gemini: str = Field(description="Gemini API status: available, unavailable, circuit_open")
    cache_entries: int = Field(description="Summaries currently cached")
    cache_hit_ratio: Optional[float] = Field(default=None, description="Hits / lookups since startup")
    uptime_seconds: float = Field(description="Seconds since service started")
