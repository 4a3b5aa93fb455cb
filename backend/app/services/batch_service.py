"""
NoteDigest Backend — Batch Summarization
==========================================

What:  Fans a list of notes through SummarizationService with bounded
       concurrency and returns one outcome per input, in input order.
Why:   "Summarize my last 20 notes" should not fire 20 Gemini calls at once,
       and one failing note must not take the other 19 down with it.
How:   asyncio.gather over per-item coroutines, each gated by a shared
       semaphore. Every typed failure is captured into that item's outcome.

Partial failure is normal: a batch of 5 where Gemini rejects one note
returns 4 results and 1 error, in the original order.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from app.exceptions import InternalError, NoteDigestError, ValidationError
from app.schemas.summary import NoteInput, SummaryRequest, SummaryResult
from app.services.summarization_service import SummarizationService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchOutcome:
    """Result or typed error for one batch item; exactly one is set."""

    note_id: str
    result: Optional[SummaryResult] = None
    error: Optional[NoteDigestError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchSummarizationService:
    """Bounded-concurrency fan-out on top of SummarizationService."""

    def __init__(
        self,
        summarizer: SummarizationService,
        max_concurrency: int = 5,
        max_items: int = 50,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.summarizer = summarizer
        self.max_concurrency = max_concurrency
        self.max_items = max_items

    async def summarize_batch(self, requests: Sequence[SummaryRequest]) -> List[BatchOutcome]:
        """
        Summarize already-validated requests.

        Returns:
            One BatchOutcome per request, same length and order as the input.

        Raises:
            ValidationError: more than max_items requests.
        """
        self._check_size(len(requests))
        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(
            *(self._run_one(semaphore, request) for request in requests)
        )
        self._log_summary(outcomes)
        return list(outcomes)

    async def summarize_notes(self, user_id: str, notes: Sequence[NoteInput]) -> List[BatchOutcome]:
        """
        Validate and summarize raw notes for one user.

        An invalid note becomes a ValidationError outcome at its position
        instead of failing the whole batch.
        """
        self._check_size(len(notes))
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(note: NoteInput) -> BatchOutcome:
            try:
                request = self.summarizer.build_request(
                    user_id=user_id,
                    note_id=note.note_id,
                    content=note.content,
                    style=note.style,
                )
            except ValidationError as e:
                return BatchOutcome(note_id=note.note_id, error=e)
            return await self._run_one(semaphore, request)

        outcomes = await asyncio.gather(*(run(note) for note in notes))
        self._log_summary(outcomes)
        return list(outcomes)

    async def _run_one(self, semaphore: asyncio.Semaphore, request: SummaryRequest) -> BatchOutcome:
        async with semaphore:
            try:
                result = await self.summarizer.summarize(request)
            except NoteDigestError as e:
                logger.info(
                    "Batch item %s failed: %s (%s)",
                    request.note_id,
                    e.kind,
                    e.message,
                )
                return BatchOutcome(note_id=request.note_id, error=e)
            except Exception as e:
                logger.error(
                    "Unexpected error in batch item %s: %s",
                    request.note_id,
                    str(e),
                    exc_info=True,
                )
                return BatchOutcome(
                    note_id=request.note_id,
                    error=InternalError(context={"note_id": request.note_id}),
                )
        return BatchOutcome(note_id=request.note_id, result=result)

    def _check_size(self, size: int) -> None:
        if size > self.max_items:
            raise ValidationError(
                message=f"Batch has {size} notes; at most {self.max_items} are allowed.",
                field="items",
            )

    @staticmethod
    def _log_summary(outcomes: Sequence[BatchOutcome]) -> None:
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(
            "Batch finished: %d succeeded, %d failed",
            len(outcomes) - failed,
            failed,
        )
