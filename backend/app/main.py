"""
NoteDigest Backend — FastAPI Application Factory
===================================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes service wiring, middleware registration, route mounting,
       exception mapping and lifecycle management in one place.
How:   Factory pattern: create_app() builds the summarization services, stores
       them on app.state and returns a configured FastAPI instance.
Who:   Called by uvicorn to start the server (uvicorn app.main:app) and by
       tests, which pass their own settings and a fake LLM.

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │                                                     │
    │  Middleware Chain:                                  │
    │  ┌──────────────┐ ┌──────────┐ ┌─────────────────┐  │
    │  │ Req ID + user│→│ Logging  │→│  GZip → CORS    │  │
    │  └──────────────┘ └──────────┘ └─────────────────┘  │
    │                                                     │
    │  Routes:                                            │
    │  ┌────────────────┐ ┌──────────────┐ ┌───────────┐  │
    │  │ POST summarize │ │ GET /api/usage│ │ GET health│  │
    │  └────────────────┘ └──────────────┘ └───────────┘  │
    │                                                     │
    │  app.state:                                         │
    │  SummaryCache · QuotaLedger · GeminiService         │
    │  SummarizationService · BatchSummarizationService   │
    └─────────────────────────────────────────────────────┘

Why services are built in create_app (not in lifespan):
    Test clients built on httpx.ASGITransport do not run the lifespan, and
    each app instance must own its own cache and ledger.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.config import Settings, settings as default_settings
from app.exceptions import (
    InternalError,
    NoteDigestError,
    QuotaExceededError,
    UpstreamError,
    UpstreamPermanentError,
    ValidationError,
)
from app.middleware.logging import RequestLoggingMiddleware
from app.middleware.request_id import RequestIDMiddleware, request_id_var
from app.routes import health, summaries
from app.services.batch_service import BatchSummarizationService
from app.services.gemini_service import GeminiService
from app.services.llm_base import LLMService
from app.services.quota_ledger import QuotaLedger
from app.services.summarization_service import SummarizationService
from app.services.summary_cache import SummaryCache

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str) -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Output: stdout, which Docker and most process managers capture.
    """
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party libraries that log every call at DEBUG/INFO
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: configure logging, validate settings, log the effective limits.
    Shutdown: log the final cache statistics.
    """
    config: Settings = app.state.settings
    setup_logging(config.log_level)
    logger.info("=" * 60)
    logger.info("NoteDigest Backend starting up...")

    try:
        config.validate_required_for_production()
    except ValueError as e:
        # Keep serving: cached summaries, usage and /health still work
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")

    logger.info(
        "Quota: %d AI calls per %ds per user; cache: ttl=%ds, max_entries=%d",
        config.quota_max_calls,
        config.quota_window_seconds,
        config.cache_ttl_seconds,
        config.cache_max_entries,
    )
    logger.info("Server ready at http://%s:%d", config.backend_host, config.backend_port)
    logger.info("=" * 60)

    yield

    stats = app.state.summary_cache.stats()
    logger.info(
        "NoteDigest Backend shutting down (cache: %d entries, %d hits, %d misses)",
        stats.entries,
        stats.hits,
        stats.misses,
    )


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    exc: NoteDigestError,
    status_code: int,
    retry_after: Optional[int] = None,
) -> JSONResponse:
    details = exc.public_details()
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.kind,
            "message": exc.message,
            "details": details or None,
            "request_id": request_id_var.get(""),
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the NoteDigestError hierarchy to HTTP responses.

    Handler hierarchy (most specific wins):
        ValidationError         → 400 Bad Request
        QuotaExceededError      → 429 Too Many Requests + Retry-After
        UpstreamPermanentError  → 502 Bad Gateway
        UpstreamError           → 503 Service Unavailable (+ Retry-After)
        InternalError           → 500, generic message, context logged
        NoteDigestError (base)  → 500
        Exception (fallback)    → 500, stack trace logged

    Security: responses carry only message + public_details(); context and
    upstream error text stay in the server log.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return _error_response(exc, 400)

    @app.exception_handler(QuotaExceededError)
    async def handle_quota_exceeded(request: Request, exc: QuotaExceededError):
        return _error_response(exc, 429, retry_after=exc.retry_after)

    @app.exception_handler(UpstreamPermanentError)
    async def handle_upstream_rejected(request: Request, exc: UpstreamPermanentError):
        logger.warning(
            "[%s] Upstream rejected request: %s | Context: %s",
            request_id_var.get(""),
            exc.message,
            exc.context,
        )
        return _error_response(exc, 502)

    @app.exception_handler(UpstreamError)
    async def handle_upstream_error(request: Request, exc: UpstreamError):
        logger.error(
            "[%s] Upstream unavailable (%s): %s",
            request_id_var.get(""),
            exc.reason,
            exc.message,
        )
        return _error_response(exc, 503, retry_after=exc.retry_after)

    @app.exception_handler(InternalError)
    async def handle_internal_error(request: Request, exc: InternalError):
        logger.error(
            "[%s] Internal error: %s | Context: %s",
            request_id_var.get(""),
            exc.message,
            exc.context,
        )
        return _error_response(exc, 500)

    @app.exception_handler(NoteDigestError)
    async def handle_app_error(request: Request, exc: NoteDigestError):
        logger.error(
            "[%s] Unhandled application error %s: %s",
            request_id_var.get(""),
            type(exc).__name__,
            exc.message,
        )
        return _error_response(exc, 500)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    config: Optional[Settings] = None,
    llm_service: Optional[LLMService] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Settings to use; defaults to the environment-loaded singleton.
        llm_service: Upstream adapter; defaults to GeminiService(config).

    Returns:
        FastAPI instance with its own cache, ledger and services on app.state.
    """
    config = config or default_settings

    app = FastAPI(
        title="NoteDigest API",
        description=(
            "AI summarization for personal notes: cached, quota-limited summaries "
            "in concise, bulleted or detailed style, powered by Google Gemini."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Services ──────────────────────────────────────────────────────────
    llm = llm_service or GeminiService(config)
    cache = SummaryCache(
        ttl_seconds=config.cache_ttl_seconds,
        max_entries=config.cache_max_entries,
    )
    ledger = QuotaLedger(
        max_calls=config.quota_max_calls,
        window_seconds=config.quota_window_seconds,
    )
    summarizer = SummarizationService(
        cache=cache,
        ledger=ledger,
        llm=llm,
        max_content_chars=config.max_content_chars,
    )

    app.state.settings = config
    app.state.llm_service = llm
    app.state.summary_cache = cache
    app.state.quota_ledger = ledger
    app.state.summarization_service = summarizer
    app.state.batch_service = BatchSummarizationService(
        summarizer,
        max_concurrency=config.batch_max_concurrency,
        max_items=config.batch_max_items,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Executes in REVERSE order of addition: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(summaries.router)
    app.include_router(health.router)

    return app


# uvicorn expects `app.main:app` to be importable
app = create_app()
