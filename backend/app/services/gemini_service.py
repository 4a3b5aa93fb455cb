"""
NoteDigest Backend — Google Gemini Summarization Adapter
=========================================================

What:  Concrete LLMService that summarizes notes with the Google Gemini API.
Why:   Isolates every provider detail (SDK calls, exception types, token
       accounting) behind the LLMService contract, so the orchestrator only
       ever sees an UpstreamSummary or a typed UpstreamError.
How:   Builds the style prompt, calls Gemini under a hard per-attempt timeout,
       retries transient failures with tenacity, and classifies everything
       else immediately.
Who:   Built once by the app factory; called by SummarizationService on
       cache misses that passed the quota check.

Failure Classification:
    ┌──────────────────────────────────────┬───────────────────────────┬──────────┐
    │ Failure                              │ Surfaced as               │ Retried? │
    ├──────────────────────────────────────┼───────────────────────────┼──────────┤
    │ timeout, 5xx, connection reset       │ UpstreamTransientError    │ yes (2x) │
    │ 429 / resource exhausted             │ UpstreamThrottledError    │ no       │
    │ other 4xx, blocked or empty response │ UpstreamPermanentError    │ no       │
    │ circuit breaker open                 │ UpstreamTransientError    │ no       │
    └──────────────────────────────────────┴───────────────────────────┴──────────┘

    Throttling is never retried locally: stacking our retries on top of the
    provider's limiter only extends the time we spend being throttled.

Backoff schedule (defaults): attempt 1 → wait 0.5s → attempt 2 → wait 1.5s
→ attempt 3 → UpstreamTransientError.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import Settings, settings as default_settings
from app.exceptions import (
    UpstreamError,
    UpstreamPermanentError,
    UpstreamThrottledError,
    UpstreamTransientError,
)
from app.schemas.summary import SummaryStyle, UpstreamSummary
from app.services.llm_base import LLMService
from app.services.prompts import build_prompt

logger = logging.getLogger(__name__)

# Raised by the SDK or transport for failures that may clear on their own
_TRANSIENT_ERRORS = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    google_exceptions.ServerError,
    google_exceptions.RetryError,
)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Implements the circuit breaker pattern to prevent cascade failures.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise UpstreamTransientError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Exactly one trial call goes through; others are rejected
            → Trial answered (success, throttled or rejected): CLOSED
            → Trial exhausted its retries: back to OPEN (reset timer)
            → Trial cancelled: the next caller makes the trial

    Only exhausted transient failures count. A throttled or rejected request
    is not a failure, but it does prove Gemini is reachable again.

    Thread Safety:
        Plain counters; safe for a single asyncio event loop, which is how
        uvicorn runs this service.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock=time.time,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None
        self.trial_in_flight = False
        self._clock = clock

    def can_execute(self) -> bool:
        """
        Check if a request is allowed through the circuit breaker.

        Raises:
            UpstreamTransientError while the circuit is OPEN (retry_after is
            the remaining recovery time) or while a HALF_OPEN trial call is running.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0)
            if elapsed < self.recovery_timeout:
                remaining = max(1, int(self.recovery_timeout - elapsed))
                raise UpstreamTransientError(
                    message=(
                        "AI summarization is temporarily unavailable due to repeated failures. "
                        f"Please retry in about {remaining} seconds."
                    ),
                    retry_after=remaining,
                    context={"circuit_state": self.state},
                )
            logger.info(
                "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                elapsed,
            )
            self.state = self.HALF_OPEN

        if self.trial_in_flight:
            raise UpstreamTransientError(
                message="AI summarization is recovering. Please retry in a few seconds.",
                retry_after=1,
                context={"circuit_state": self.state},
            )
        self.trial_in_flight = True
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None
        self.trial_in_flight = False

    def record_answer(self) -> None:
        """Gemini answered with a throttle or a rejection, so it is reachable again."""
        if self.state == self.HALF_OPEN:
            self.record_success()

    def record_abandoned(self) -> None:
        """The call was cancelled before any outcome; let the next caller try."""
        self.trial_in_flight = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        self.trial_in_flight = False

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiService(LLMService):
    """
    Google Gemini implementation of the summarization adapter.

    Error Handling Chain:
        circuit open → UpstreamTransientError (no call made)
        attempt fails transiently → tenacity waits and retries
        → attempts exhausted → record circuit failure → UpstreamTransientError
        throttled / permanent → surfaced on the attempt that saw it
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        model: Any = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            config: Settings to read model, timeout and retry values from.
            model: Pre-built generative model (tests pass a mock).
            circuit_breaker: Shared breaker; one is created when omitted.
            sleep: Coroutine used to wait between retry attempts.
        """
        config = config or default_settings
        if config.gemini_api_key and config.gemini_api_key != "your_gemini_api_key_here":
            genai.configure(api_key=config.gemini_api_key)

        self.model_name = config.gemini_model
        self.model = model if model is not None else genai.GenerativeModel(config.gemini_model)
        self.timeout_seconds = config.upstream_timeout_seconds
        self.max_attempts = config.retry_max_retries + 1
        self.initial_backoff = config.retry_initial_backoff
        self.backoff_multiplier = config.retry_backoff_multiplier
        self.throttle_retry_after = config.upstream_throttle_retry_after
        self._sleep = sleep
        self.generation_config = {
            "max_output_tokens": config.summary_max_output_tokens,
            "temperature": config.summary_temperature,
        }
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=config.cb_failure_threshold,
            recovery_timeout=config.cb_recovery_timeout,
        )

        logger.info(
            "GeminiService initialized with model=%s, timeout=%.1fs, attempts=%d, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            self.model_name,
            self.timeout_seconds,
            self.max_attempts,
            self.circuit_breaker.failure_threshold,
            self.circuit_breaker.recovery_timeout,
        )

    async def summarize(self, content: str, style: SummaryStyle) -> UpstreamSummary:
        """
        Summarize a note with Gemini.

        Flow:
            1. Build the style prompt
            2. Check circuit breaker → may raise UpstreamTransientError
            3. Call Gemini with timeout + retry (transient failures only)
            4. Record the outcome in the circuit breaker
        """
        request_id = str(uuid.uuid4())[:8]
        style = SummaryStyle(style)
        prompt = build_prompt(content, style)

        self.circuit_breaker.can_execute()
        logger.info(
            "[%s] Starting Gemini %s summary for %d chars",
            request_id,
            style.value,
            len(content),
        )

        try:
            result = await self._call_with_retry(prompt, request_id)
        except UpstreamTransientError as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] All %d Gemini attempts failed: %s",
                request_id,
                self.max_attempts,
                e.context.get("error_type", "unknown"),
            )
            raise UpstreamTransientError(
                message="AI summarization failed after multiple attempts. Please try again later.",
                context={"request_id": request_id, "attempts": self.max_attempts},
            ) from e
        except UpstreamError:
            # Throttled or rejected: Gemini answered, so a recovery trial is over
            self.circuit_breaker.record_answer()
            raise
        except asyncio.CancelledError:
            self.circuit_breaker.record_abandoned()
            raise

        self.circuit_breaker.record_success()
        return result

    async def _call_with_retry(self, prompt: str, request_id: str) -> UpstreamSummary:
        """
        Run _call_gemini under the tenacity retry policy.

        Only UpstreamTransientError is retried; throttled and permanent
        errors propagate from the attempt that raised them.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(UpstreamTransientError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.initial_backoff,
                exp_base=self.backoff_multiplier,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_gemini(
                    prompt, request_id, attempt.retry_state.attempt_number
                )
        # AsyncRetrying either returns from inside the loop or reraises
        raise UpstreamTransientError(context={"request_id": request_id})

    async def _call_gemini(self, prompt: str, request_id: str, attempt: int) -> UpstreamSummary:
        """
        One Gemini attempt, with every failure translated into an UpstreamError.

        Both the SDK's request timeout and asyncio.wait_for are applied; the
        outer one cancels the call even if the transport ignores the first.
        """
        start_time = time.perf_counter()
        context = {"request_id": request_id, "attempt": attempt}

        try:
            response = await asyncio.wait_for(
                self.model.generate_content_async(
                    prompt,
                    generation_config=self.generation_config,
                    request_options={"timeout": self.timeout_seconds},
                ),
                timeout=self.timeout_seconds,
            )
        except google_exceptions.TooManyRequests as e:
            retry_after = self._retry_after_from(e)
            logger.warning(
                "[%s] Gemini throttled attempt %d, retry after %ds",
                request_id,
                attempt,
                retry_after,
            )
            raise UpstreamThrottledError(retry_after=retry_after, context=context) from e
        except _TRANSIENT_ERRORS as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.warning(
                "[%s] Gemini attempt %d failed after %.0fms: %s",
                request_id,
                attempt,
                duration_ms,
                type(e).__name__,
            )
            raise UpstreamTransientError(
                context={**context, "error_type": type(e).__name__}
            ) from e
        except Exception as e:
            # 4xx client errors, blocked prompts and anything unrecognized
            logger.error(
                "[%s] Gemini rejected attempt %d: %s",
                request_id,
                attempt,
                str(e),
                exc_info=not isinstance(e, google_exceptions.ClientError),
            )
            raise UpstreamPermanentError(
                context={**context, "error_type": type(e).__name__}
            ) from e

        summary_text = self._extract_text(response, context)
        duration_ms = (time.perf_counter() - start_time) * 1000
        tokens_used = _token_count(response)
        logger.info(
            "[%s] Gemini summary completed in %.0fms: %d chars, %s tokens",
            request_id,
            duration_ms,
            len(summary_text),
            tokens_used if tokens_used is not None else "unknown",
        )
        return UpstreamSummary(text=summary_text, tokens_used=tokens_used)

    def _extract_text(self, response: Any, context: dict) -> str:
        # .text raises ValueError when the candidate was blocked or has no parts
        try:
            text = response.text
        except ValueError as e:
            logger.warning("[%s] Gemini response had no text: %s", context["request_id"], str(e))
            raise UpstreamPermanentError(
                message="The AI provider returned no summary for this note.",
                context={**context, "error_type": "empty_response"},
            ) from e

        if not isinstance(text, str) or not text.strip():
            raise UpstreamPermanentError(
                message="The AI provider returned no summary for this note.",
                context={**context, "error_type": "empty_response"},
            )
        return text.strip()

    def _retry_after_from(self, error: google_exceptions.GoogleAPICallError) -> int:
        """Retry-After from the HTTP header or RetryInfo detail, else the default."""
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
        if headers is not None and hasattr(headers, "get"):
            value = headers.get("Retry-After")
            if value:
                try:
                    return max(1, int(float(value)))
                except (TypeError, ValueError):
                    pass

        for detail in getattr(error, "details", None) or []:
            seconds = getattr(getattr(detail, "retry_delay", None), "seconds", None)
            if isinstance(seconds, int) and seconds > 0:
                return seconds

        return self.throttle_retry_after

    async def health_check(self) -> bool:
        """
        Check if Gemini is reachable.

        How:     Lists available models (no generation tokens consumed).
        Returns: True if reachable and authenticated, False otherwise.
        """
        try:
            models = await asyncio.to_thread(lambda: list(genai.list_models()))
            target = f"models/{self.model_name}"
            if target not in [m.name for m in models]:
                logger.warning("Configured model %s not found in available models", target)
            return True
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False


def _token_count(response: Any) -> Optional[int]:
    usage = getattr(response, "usage_metadata", None)
    total = getattr(usage, "total_token_count", None)
    return total if isinstance(total, int) else None
