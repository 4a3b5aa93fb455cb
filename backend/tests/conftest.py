"""
NoteDigest Backend — Test Configuration (conftest.py)
======================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Provides reusable test infrastructure (fake clock, scripted LLM,
       isolated stores, API client).
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.
Who:   Used by all test files in the tests/ directory.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── clock:          Manually advanced time source
    ├── fake_llm:       Scripted LLMService (no Gemini calls)
    ├── ledger:         QuotaLedger on the fake clock (3 calls / hour)
    ├── cache:          SummaryCache on the fake clock
    ├── summarizer:     SummarizationService wired to the three above
    ├── test_settings:  Settings with small limits and zero backoff
    └── test_client:    HTTPX AsyncClient against a fresh app instance
"""

import asyncio
import os
from typing import List, Optional, Sequence, Tuple, Union

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport


# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

# Override settings for testing BEFORE any app imports
# Why: Prevents tests from using a real API key
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests

from app.config import Settings  # noqa: E402
from app.schemas.summary import SummaryStyle, UpstreamSummary  # noqa: E402
from app.services.llm_base import LLMService  # noqa: E402
from app.services.quota_ledger import QuotaLedger  # noqa: E402
from app.services.summarization_service import SummarizationService  # noqa: E402
from app.services.summary_cache import SummaryCache  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ══════════════════════════════════════════════════════════════════════════

class FakeClock:
    """Time source that only moves when a test advances it."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Outcome = Union[str, UpstreamSummary, BaseException]


class FakeLLM(LLMService):
    """
    Scripted LLMService.

    What:    Pops one outcome per call: a string or UpstreamSummary is
             returned, an exception is raised. Once the script runs out,
             every call returns "Summary: <content>".
    Gate:    When `gate` is set, calls block until the event is set, which
             lets tests hold an upstream call open.
    """

    def __init__(
        self,
        outcomes: Optional[Sequence[Outcome]] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.outcomes: List[Outcome] = list(outcomes or [])
        self.gate = gate
        self.calls: List[Tuple[str, SummaryStyle]] = []
        self.in_progress = 0
        self.max_in_progress = 0
        self.healthy = True

    async def summarize(self, content: str, style: SummaryStyle) -> UpstreamSummary:
        self.calls.append((content, style))
        self.in_progress += 1
        self.max_in_progress = max(self.max_in_progress, self.in_progress)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                # Yield so concurrent callers actually interleave
                await asyncio.sleep(0)
            outcome = self.outcomes.pop(0) if self.outcomes else f"Summary: {content}"
        finally:
            self.in_progress -= 1

        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, UpstreamSummary):
            return outcome
        return UpstreamSummary(text=outcome, tokens_used=42)

    async def health_check(self) -> bool:
        return self.healthy

    @property
    def call_count(self) -> int:
        return len(self.calls)


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures (created fresh for each test)
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def ledger(clock):
    """Small limit so quota exhaustion is reachable in a few calls."""
    return QuotaLedger(max_calls=3, window_seconds=3600, clock=clock)


@pytest.fixture
def cache(clock):
    return SummaryCache(ttl_seconds=86400, max_entries=100, clock=clock)


@pytest.fixture
def summarizer(cache, ledger, fake_llm, clock):
    """
    SummarizationService wired to isolated stores and the scripted LLM.

    Usage:
        async def test_hit(summarizer, fake_llm):
            request = summarizer.build_request("u1", "n1", "text", "concise")
            await summarizer.summarize(request)
    """
    return SummarizationService(
        cache=cache,
        ledger=ledger,
        llm=fake_llm,
        max_content_chars=1000,
        clock=clock,
    )


@pytest.fixture
def test_settings():
    """Settings with small limits; built explicitly so .env files are irrelevant."""
    return Settings(
        gemini_api_key="test-key-not-real",
        quota_max_calls=3,
        quota_window_seconds=3600,
        max_content_chars=1000,
        batch_max_concurrency=2,
        batch_max_items=5,
        retry_initial_backoff=0,
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def test_client(test_settings, fake_llm):
    """
    Provides an async HTTP test client for endpoint testing.

    What:    HTTPX AsyncClient configured to talk to a fresh FastAPI app.
    Why:     Enables testing of HTTP endpoints without running a server.
    How:     Uses ASGITransport to route requests directly to the app; the
             app gets its own cache and ledger and the scripted fake LLM.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    from app.main import create_app

    app = create_app(config=test_settings, llm_service=fake_llm)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def llm_factory():
    """FakeLLM constructor, for tests that need a scripted or gated upstream."""
    return FakeLLM
