"""
NoteDigest Backend — Summarization Service Unit Tests
=======================================================

What:  Tests for the cache → quota → upstream pipeline.
How:   Real SummaryCache and QuotaLedger on a fake clock; the upstream is the
       scripted FakeLLM from conftest.py.

What we test:
    ✅ Cache miss calls upstream once, writes through, consumes one quota slot
    ✅ Cache hit makes no upstream call and consumes no quota
    ✅ Quota exhaustion raises QuotaExceededError before any upstream call
    ✅ Upstream failures propagate typed and are never cached
    ✅ Concurrent misses for the same note share one upstream call
    ✅ Transient Gemini failures are retried under a single quota admission
    ✅ Input validation (style, empty, oversized)
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from google.api_core import exceptions as google_exceptions

from app.config import Settings
from app.exceptions import (
    CacheCollisionError,
    InternalError,
    QuotaExceededError,
    UpstreamPermanentError,
    UpstreamThrottledError,
    UpstreamTransientError,
    ValidationError,
)
from app.schemas.summary import CacheEntry, SummaryStyle
from app.services.fingerprint import fingerprint
from app.services.gemini_service import GeminiService
from app.services.summarization_service import SummarizationService


class TestBuildRequest:

    def test_valid_request(self, summarizer):
        request = summarizer.build_request("u1", "n1", "Some note", "bulleted")
        assert request.style is SummaryStyle.BULLETED
        assert request.content == "Some note"

    def test_unknown_style(self, summarizer):
        with pytest.raises(ValidationError) as exc_info:
            summarizer.build_request("u1", "n1", "Some note", "haiku")
        assert exc_info.value.field == "style"

    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_empty_content(self, summarizer, content):
        with pytest.raises(ValidationError) as exc_info:
            summarizer.build_request("u1", "n1", content, "concise")
        assert exc_info.value.field == "content"

    def test_oversized_content(self, summarizer):
        with pytest.raises(ValidationError) as exc_info:
            summarizer.build_request("u1", "n1", "x" * 1001, "concise")
        assert exc_info.value.field == "content"


class TestCacheAndQuota:

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, summarizer, fake_llm, ledger, cache):
        request = summarizer.build_request("u1", "n1", "Pick up dry cleaning", "concise")

        first = await summarizer.summarize(request)
        assert first.from_cache is False
        assert first.summary_text == "Summary: Pick up dry cleaning"
        assert first.tokens_used == 42
        assert fake_llm.call_count == 1
        assert ledger.usage("u1").count == 1
        assert len(cache) == 1

        second = await summarizer.summarize(request)
        assert second.from_cache is True
        assert second.summary_text == first.summary_text
        assert second.tokens_used is None
        assert fake_llm.call_count == 1
        assert ledger.usage("u1").count == 1

    @pytest.mark.asyncio
    async def test_equivalent_content_hits_cache(self, summarizer, fake_llm):
        await summarizer.summarize(summarizer.build_request("u1", "n1", "Call Mom", "concise"))
        result = await summarizer.summarize(
            summarizer.build_request("u1", "n1", "  call   MOM \n", "concise")
        )
        assert result.from_cache is True
        assert fake_llm.call_count == 1

    @pytest.mark.asyncio
    async def test_cache_is_shared_across_users(self, summarizer, fake_llm, ledger):
        await summarizer.summarize(summarizer.build_request("alice", "n1", "Shared text", "concise"))
        result = await summarizer.summarize(summarizer.build_request("bob", "n9", "Shared text", "concise"))

        assert result.from_cache is True
        assert ledger.usage("bob").count == 0

    @pytest.mark.asyncio
    async def test_style_is_part_of_the_key(self, summarizer, fake_llm):
        await summarizer.summarize(summarizer.build_request("u1", "n1", "Same text", "concise"))
        result = await summarizer.summarize(summarizer.build_request("u1", "n1", "Same text", "detailed"))

        assert result.from_cache is False
        assert fake_llm.call_count == 2

    @pytest.mark.asyncio
    async def test_quota_exceeded_blocks_upstream(self, summarizer, fake_llm):
        for i in range(3):
            await summarizer.summarize(summarizer.build_request("u1", f"n{i}", f"note {i}", "concise"))

        with pytest.raises(QuotaExceededError) as exc_info:
            await summarizer.summarize(summarizer.build_request("u1", "n4", "note 4", "concise"))

        assert exc_info.value.retry_after == 3600
        assert fake_llm.call_count == 3

    @pytest.mark.asyncio
    async def test_cache_hits_still_served_when_quota_exhausted(self, summarizer, fake_llm):
        for i in range(3):
            await summarizer.summarize(summarizer.build_request("u1", f"n{i}", f"note {i}", "concise"))

        result = await summarizer.summarize(summarizer.build_request("u1", "n0", "note 0", "concise"))
        assert result.from_cache is True

    @pytest.mark.asyncio
    async def test_quota_resets_after_window(self, summarizer, clock):
        for i in range(3):
            await summarizer.summarize(summarizer.build_request("u1", f"n{i}", f"note {i}", "concise"))
        clock.advance(3600)

        result = await summarizer.summarize(summarizer.build_request("u1", "n4", "note 4", "concise"))
        assert result.from_cache is False

    @pytest.mark.asyncio
    async def test_expired_cache_entry_calls_upstream_again(self, summarizer, fake_llm, clock):
        request = summarizer.build_request("u1", "n1", "Old note", "concise")
        await summarizer.summarize(request)
        clock.advance(86400)

        result = await summarizer.summarize(request)
        assert result.from_cache is False
        assert fake_llm.call_count == 2


class TestUpstreamFailures:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        UpstreamTransientError(),
        UpstreamThrottledError(retry_after=15),
        UpstreamPermanentError(),
    ])
    async def test_failures_propagate_and_are_not_cached(self, cache, ledger, clock, llm_factory, error):
        llm = llm_factory(outcomes=[error])
        summarizer = SummarizationService(cache, ledger, llm, clock=clock)
        request = summarizer.build_request("u1", "n1", "Flaky note", "concise")

        with pytest.raises(type(error)):
            await summarizer.summarize(request)
        assert len(cache) == 0
        # The failed attempt still consumed its admission
        assert ledger.usage("u1").count == 1

        result = await summarizer.summarize(request)
        assert result.from_cache is False
        assert llm.call_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal_error(self, cache, ledger, clock, llm_factory):
        llm = llm_factory(outcomes=[KeyError("bug")])
        summarizer = SummarizationService(cache, ledger, llm, clock=clock)

        with pytest.raises(InternalError):
            await summarizer.summarize(summarizer.build_request("u1", "n1", "note", "concise"))

    @pytest.mark.asyncio
    async def test_mismatched_cache_entry_raises_collision(self, summarizer, cache, fake_llm, clock):
        request = summarizer.build_request("u1", "n1", "Real note", "concise")
        cache.put(CacheEntry(
            fingerprint=fingerprint("Real note", SummaryStyle.CONCISE),
            summary_text="somebody else's summary",
            style=SummaryStyle.CONCISE,
            created_at=clock(),
            source_content_hash="0" * 64,
        ))

        with pytest.raises(CacheCollisionError):
            await summarizer.summarize(request)
        assert fake_llm.call_count == 0


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_upstream_call(self, cache, ledger, clock, llm_factory):
        gate = asyncio.Event()
        llm = llm_factory(gate=gate)
        summarizer = SummarizationService(cache, ledger, llm, clock=clock)
        requests = [
            summarizer.build_request(user, "n1", "Popular note", "concise")
            for user in ("alice", "bob", "carol")
        ]

        tasks = [asyncio.create_task(summarizer.summarize(r)) for r in requests]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert llm.call_count == 1
        assert {r.summary_text for r in results} == {"Summary: Popular note"}
        assert all(r.from_cache is False for r in results)
        # Only the caller that started the upstream call paid for it
        counts = [ledger.usage(u).count for u in ("alice", "bob", "carol")]
        assert sorted(counts) == [0, 0, 1]
        # ...and only that caller reports the tokens the call used
        payer = counts.index(1)
        assert results[payer].tokens_used == 42
        assert [r.tokens_used for i, r in enumerate(results) if i != payer] == [None, None]

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_caller(self, cache, ledger, clock, llm_factory):
        gate = asyncio.Event()
        llm = llm_factory(outcomes=[UpstreamPermanentError()], gate=gate)
        summarizer = SummarizationService(cache, ledger, llm, clock=clock)
        request = summarizer.build_request("u1", "n1", "Bad note", "concise")

        tasks = [asyncio.create_task(summarizer.summarize(request)) for _ in range(2)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, UpstreamPermanentError) for r in results)
        assert llm.call_count == 1
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_one_cancelled_caller_does_not_abort_the_others(self, cache, ledger, clock, llm_factory):
        gate = asyncio.Event()
        llm = llm_factory(gate=gate)
        summarizer = SummarizationService(cache, ledger, llm, clock=clock)
        request = summarizer.build_request("u1", "n1", "Shared note", "concise")

        leaver = asyncio.create_task(summarizer.summarize(request))
        stayer = asyncio.create_task(summarizer.summarize(request))
        await asyncio.sleep(0)

        leaver.cancel()
        await asyncio.sleep(0)
        gate.set()

        result = await stayer
        assert result.summary_text == "Summary: Shared note"
        assert leaver.cancelled()
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_last_cancelled_caller_aborts_upstream_call(self, cache, ledger, clock, llm_factory):
        gate = asyncio.Event()
        llm = llm_factory(gate=gate)
        summarizer = SummarizationService(cache, ledger, llm, clock=clock)
        request = summarizer.build_request("u1", "n1", "Abandoned note", "concise")

        task = asyncio.create_task(summarizer.summarize(request))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert llm.in_progress == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0)
        assert len(cache) == 0
        assert llm.in_progress == 0

        # A new request starts a fresh call instead of joining the cancelled one
        gate.set()
        result = await summarizer.summarize(request)
        assert result.from_cache is False
        assert llm.call_count == 2


class TestWithGeminiAdapter:
    """The pipeline over a real GeminiService whose model is mocked."""

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_inside_one_admission(self, cache, ledger, clock):
        model = MagicMock()
        model.generate_content_async = AsyncMock(side_effect=[
            google_exceptions.ServiceUnavailable("overloaded"),
            google_exceptions.ServiceUnavailable("overloaded"),
            MagicMock(text="Recovered summary", usage_metadata=MagicMock(total_token_count=64)),
        ])
        sleep = AsyncMock(return_value=None)
        with patch("app.services.gemini_service.genai"):
            gemini = GeminiService(
                config=Settings(gemini_api_key="test-key-not-real"), model=model, sleep=sleep
            )
        summarizer = SummarizationService(cache, ledger, gemini, clock=clock)

        result = await summarizer.summarize(
            summarizer.build_request("u1", "n1", "Flaky upstream note", "concise")
        )

        assert result.from_cache is False
        assert result.summary_text == "Recovered summary"
        assert result.tokens_used == 64
        assert model.generate_content_async.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.5]
        # Retries happen below the ledger: one request, one slot
        assert ledger.usage("u1").count == 1
        assert len(cache) == 1
