"""
NoteDigest Backend — Summarization Service (Pipeline Orchestrator)
===================================================================

What:  Turns (user, note, style) into a summary: cache first, then quota,
       then Gemini, then write-through.
Why:   Keeps the cost-control rules in one place. The cache is checked
       before the quota so that repeats are free, and the quota is checked
       before the upstream call so that nothing is spent on denied users.
How:   Composes the SummaryCache, QuotaLedger and LLMService it is given.
Who:   Called by the summaries routes and by BatchSummarizationService.

Per-Request State Machine:
    ┌───────┐   ┌────────────┐ hit ┌──────────────────────────┐
    │ Start │──▶│ CacheCheck │────▶│ Done (from_cache=True)   │
    └───────┘   └─────┬──────┘     └──────────────────────────┘
                      │ miss
                      ▼
                ┌────────────┐ denied ┌────────────────────────┐
                │ QuotaCheck │───────▶│ QuotaExceededError     │
                └─────┬──────┘        └────────────────────────┘
                      │ admitted
                      ▼
                ┌────────────┐ failure ┌───────────────────────┐
                │  Upstream  │────────▶│ UpstreamError (typed) │
                └─────┬──────┘         └───────────────────────┘
                      │ success
                      ▼
                ┌──────────────┐
                │ StoreAndDone │  write-through, from_cache=False
                └──────────────┘

    Failures are never cached. The service keeps no state across requests
    besides the cache, the ledger and the in-flight table below.

Single-Flight:
    Concurrent misses for the same fingerprint share one upstream call.
    The first caller is admitted by the ledger and starts the call; later
    callers join it without consuming quota and receive the same result
    (from_cache=False, since the summary was freshly generated). Only the
    caller that started the call reports tokens_used; joiners get None, so
    per-request token totals count each upstream call once. The shared
    call is cancelled only once every caller waiting on it has been
    cancelled, so one client disconnecting never aborts another's summary.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

from app.exceptions import (
    CacheCollisionError,
    InternalError,
    NoteDigestError,
    QuotaExceededError,
    ValidationError,
)
from app.schemas.summary import (
    CacheEntry,
    SummaryRequest,
    SummaryResult,
    SummaryStyle,
)
from app.services.fingerprint import content_digest, fingerprint
from app.services.llm_base import LLMService
from app.services.quota_ledger import QuotaLedger, UsageSnapshot
from app.services.summary_cache import SummaryCache

logger = logging.getLogger(__name__)


@dataclass
class _InFlightCall:
    """An upstream call shared by every request for one fingerprint."""

    task: "asyncio.Task[SummaryResult]"
    waiters: int = 0


class SummarizationService:
    """
    Orchestrates one summary request through cache, quota and upstream.

    Dependencies are injected so that each test (and each app instance)
    owns isolated stores.
    """

    def __init__(
        self,
        cache: SummaryCache,
        ledger: QuotaLedger,
        llm: LLMService,
        max_content_chars: int = 20_000,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.ledger = ledger
        self.llm = llm
        self.max_content_chars = max_content_chars
        self._clock = clock
        self._in_flight: Dict[str, _InFlightCall] = {}

    def build_request(
        self,
        user_id: str,
        note_id: str,
        content: str,
        style: str,
    ) -> SummaryRequest:
        """
        Validate raw input and build an immutable SummaryRequest.

        Raises:
            ValidationError: unknown style, empty or oversized content.
        """
        try:
            summary_style = SummaryStyle(style)
        except ValueError:
            raise ValidationError(
                message=(
                    f"Unknown summary style '{style}'. "
                    f"Allowed: {', '.join(SummaryStyle.values())}"
                ),
                field="style",
            )

        if content is None or not content.strip():
            raise ValidationError(message="Note content is empty; nothing to summarize.", field="content")

        if len(content) > self.max_content_chars:
            raise ValidationError(
                message=(
                    f"Note is too long to summarize ({len(content)} characters). "
                    f"Maximum is {self.max_content_chars}."
                ),
                field="content",
                context={"length": len(content), "max": self.max_content_chars},
            )

        return SummaryRequest(
            user_id=user_id,
            note_id=note_id,
            content=content,
            style=summary_style,
        )

    async def summarize(self, request: SummaryRequest) -> SummaryResult:
        """
        Produce a summary for `request`.

        Returns:
            SummaryResult; from_cache=True means neither quota nor upstream
            was touched.

        Raises:
            QuotaExceededError: cache miss and the user's window is full.
            UpstreamError subclasses: propagated unchanged from the adapter.
            InternalError: cache invariant violated or unexpected failure.
        """
        try:
            return await self._summarize(request)
        except NoteDigestError:
            raise
        except Exception as e:
            logger.error(
                "Unexpected error summarizing note %s for user %s: %s",
                request.note_id,
                request.user_id,
                str(e),
                exc_info=True,
            )
            raise InternalError(
                context={"note_id": request.note_id, "error_type": type(e).__name__},
            ) from e

    def usage(self, user_id: str) -> UsageSnapshot:
        return self.ledger.usage(user_id)

    async def _summarize(self, request: SummaryRequest) -> SummaryResult:
        key = fingerprint(request.content, request.style)
        source_hash = content_digest(request.content)

        # ── CacheCheck ────────────────────────────────────────────────────
        cached = self.cache.get(key)
        if cached is not None:
            if cached.source_content_hash != source_hash or cached.style != request.style:
                logger.error(
                    "Cached summary %s does not match note %s (content %s vs %s)",
                    key,
                    request.note_id,
                    cached.source_content_hash,
                    source_hash,
                )
                raise CacheCollisionError(key, context={"note_id": request.note_id})
            logger.info(
                "Cache hit for note %s (user=%s, style=%s)",
                request.note_id,
                request.user_id,
                request.style.value,
            )
            return SummaryResult(
                summary_text=cached.summary_text,
                style=cached.style,
                from_cache=True,
            )

        call = self._in_flight.get(key)
        owner = call is None
        if call is None:
            # ── QuotaCheck ────────────────────────────────────────────────
            admission = self.ledger.try_admit(request.user_id)
            if not admission.admitted:
                raise QuotaExceededError(
                    retry_after=admission.retry_after,
                    context={"user_id": request.user_id},
                )
            logger.info(
                "Cache miss for note %s: calling upstream (user=%s, style=%s, %d calls left)",
                request.note_id,
                request.user_id,
                request.style.value,
                admission.remaining,
            )
            # ── Upstream ──────────────────────────────────────────────────
            call = _InFlightCall(
                task=asyncio.create_task(self._call_upstream(key, source_hash, request))
            )
            self._in_flight[key] = call
            call.task.add_done_callback(lambda _task: self._forget(key, call))
        else:
            logger.info(
                "Joining in-flight summary for note %s (user=%s, %d already waiting)",
                request.note_id,
                request.user_id,
                call.waiters,
            )

        result = await self._wait_for(key, call)
        if not owner and result.tokens_used is not None:
            result = result.model_copy(update={"tokens_used": None})
        return result

    async def _wait_for(self, key: str, call: _InFlightCall) -> SummaryResult:
        call.waiters += 1
        try:
            return await asyncio.shield(call.task)
        except asyncio.CancelledError:
            if call.waiters == 1 and not call.task.done():
                logger.info("All callers cancelled; aborting upstream call for %s", key)
                self._forget(key, call)
                call.task.cancel()
            raise
        finally:
            call.waiters -= 1

    async def _call_upstream(
        self,
        key: str,
        source_hash: str,
        request: SummaryRequest,
    ) -> SummaryResult:
        upstream = await self.llm.summarize(request.content, request.style)

        # ── StoreAndDone (write-through) ──────────────────────────────────
        stored = self.cache.put(
            CacheEntry(
                fingerprint=key,
                summary_text=upstream.text,
                style=request.style,
                created_at=self._clock(),
                source_content_hash=source_hash,
            )
        )
        return SummaryResult(
            summary_text=stored.summary_text,
            style=stored.style,
            from_cache=False,
            tokens_used=upstream.tokens_used,
        )

    def _forget(self, key: str, call: _InFlightCall) -> None:
        if self._in_flight.get(key) is call:
            del self._in_flight[key]
