"""
NoteDigest Backend — Summarization Route Handlers
===================================================

What:  POST /api/summarize, POST /api/summarize/batch and GET /api/usage.
Why:   Entry points of the AI summarization feature.
How:   Thin handlers: read the caller identity, delegate to the services,
       shape the response. Typed failures propagate to the global
       exception handlers in main.py (single summarize) or are folded into
       per-item errors (batch).

Caching headers:
    Summaries and usage are user-specific and change with every call, so
    responses are sent with Cache-Control: no-store.
"""

import logging

from fastapi import APIRouter, Depends, Response

from app.dependencies import (
    get_batch_service,
    get_current_user_id,
    get_summarization_service,
)
from app.schemas.summary import (
    BatchItemResponse,
    BatchSummarizeRequest,
    BatchSummarizeResponse,
    ErrorDetail,
    ErrorResponse,
    NoteInput,
    SummaryResponse,
    SummaryResult,
    UsageResponse,
)
from app.services.batch_service import BatchOutcome, BatchSummarizationService
from app.services.summarization_service import SummarizationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Summaries"])


def _to_response(note_id: str, result: SummaryResult) -> SummaryResponse:
    return SummaryResponse(
        note_id=note_id,
        summary_text=result.summary_text,
        style=result.style,
        from_cache=result.from_cache,
        tokens_used=result.tokens_used,
    )


def _to_item(outcome: BatchOutcome) -> BatchItemResponse:
    if outcome.ok:
        return BatchItemResponse(
            note_id=outcome.note_id,
            ok=True,
            result=_to_response(outcome.note_id, outcome.result),
        )
    error = outcome.error
    return BatchItemResponse(
        note_id=outcome.note_id,
        ok=False,
        error=ErrorDetail(
            error=error.kind,
            message=error.message,
            details=error.public_details() or None,
        ),
    )


@router.post(
    "/summarize",
    response_model=SummaryResponse,
    responses={
        400: {"description": "Empty/oversized note or unknown style", "model": ErrorResponse},
        429: {"description": "AI summary quota exceeded", "model": ErrorResponse},
        502: {"description": "AI provider rejected the note", "model": ErrorResponse},
        503: {"description": "AI provider unavailable or throttling", "model": ErrorResponse},
    },
    summary="Summarize a note",
    description=(
        "Summarizes one note in the requested style (concise, bulleted or detailed). "
        "Repeated requests for the same content and style are served from cache and "
        "do not count against the caller's AI quota."
    ),
)
async def summarize_note(
    body: NoteInput,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    service: SummarizationService = Depends(get_summarization_service),
) -> SummaryResponse:
    request = service.build_request(
        user_id=user_id,
        note_id=body.note_id,
        content=body.content,
        style=body.style,
    )
    result = await service.summarize(request)
    response.headers["Cache-Control"] = "no-store"
    return _to_response(body.note_id, result)


@router.post(
    "/summarize/batch",
    response_model=BatchSummarizeResponse,
    responses={
        400: {"description": "Batch too large", "model": ErrorResponse},
    },
    summary="Summarize several notes",
    description=(
        "Summarizes up to BATCH_MAX_ITEMS notes with bounded concurrency. Always returns "
        "one entry per input note, in input order; failed notes carry an error instead "
        "of a result and do not affect the others."
    ),
)
async def summarize_batch(
    body: BatchSummarizeRequest,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    batch_service: BatchSummarizationService = Depends(get_batch_service),
) -> BatchSummarizeResponse:
    logger.info("Batch summarize request: user=%s, %d notes", user_id, len(body.items))
    outcomes = await batch_service.summarize_notes(user_id, body.items)
    items = [_to_item(outcome) for outcome in outcomes]
    succeeded = sum(1 for item in items if item.ok)
    response.headers["Cache-Control"] = "no-store"
    return BatchSummarizeResponse(
        results=items,
        succeeded=succeeded,
        failed=len(items) - succeeded,
    )


@router.get(
    "/usage",
    response_model=UsageResponse,
    summary="AI quota usage of the caller",
    description="Calls made in the current quota window, the limit, and when it resets.",
)
async def get_usage(
    response: Response,
    user_id: str = Depends(get_current_user_id),
    service: SummarizationService = Depends(get_summarization_service),
) -> UsageResponse:
    snapshot = service.usage(user_id)
    response.headers["Cache-Control"] = "no-store"
    return UsageResponse(
        user_id=snapshot.user_id,
        window_start=snapshot.window_start,
        resets_at=snapshot.resets_at,
        count=snapshot.count,
        limit=snapshot.limit,
        remaining=snapshot.remaining,
    )
