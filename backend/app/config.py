"""
NoteDigest Backend — Application Configuration
================================================

What:  Centralized configuration management using Pydantic Settings.
Why:   Type-safe environment variable loading with validation on startup.
       A quota of 0 or a negative TTL is rejected before the first request.
How:   Pydantic Settings reads from environment variables (or .env file),
       validates types/ranges, and provides a singleton `settings` object.
Who:   Imported by the app factory, which hands the values to each service.
When:  Loaded once at module import time; validated before app starts.

Design Decision:
    Services never read `settings` directly at call time. The app factory
    passes plain values into constructors, so tests build isolated instances
    with their own limits (e.g. a 3-call quota or a zero backoff) without
    patching module globals.
"""

from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have sensible defaults for development.
    Production deployments MUST override GEMINI_API_KEY and CORS_ORIGINS.

    Attributes are grouped by concern for readability.
    """

    # ── Google Gemini ─────────────────────────────────────────────────────
    # What: API key for Google Generative AI
    # Required: YES — every cache miss ends in a Gemini call
    gemini_api_key: str = Field(
        default="",
        description="Google Gemini API key used for note summarization"
    )

    # What: Which Gemini model produces the summaries
    # Trade-off: flash is cheap and fast; pro writes better "detailed" summaries
    gemini_model: str = Field(default="gemini-1.5-flash")

    # What: Upper bound on generated tokens per summary
    # Why 512: A "detailed" summary of a long note fits; runaway output does not
    summary_max_output_tokens: int = Field(default=512, ge=32, le=8192)

    # What: Sampling temperature for summaries
    # Why low: Summaries should be faithful, not creative
    summary_temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    # ── Upstream Resilience ───────────────────────────────────────────────
    # What: Hard timeout for a single Gemini attempt, in seconds
    upstream_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    # What: Retries AFTER the first attempt for transient failures
    # Why 2: Three attempts total; more would compound latency for the caller
    retry_max_retries: int = Field(default=2, ge=0, le=10)

    # What: Exponential backoff between attempts: initial * multiplier ** n
    # Default schedule: 0.5s, 1.5s
    retry_initial_backoff: float = Field(default=0.5, ge=0, le=30)
    retry_backoff_multiplier: float = Field(default=3.0, ge=1.0, le=10.0)

    # What: Retry-After reported when Gemini throttles us without saying how long
    upstream_throttle_retry_after: int = Field(default=30, ge=1, le=3600)

    # ── Circuit Breaker ───────────────────────────────────────────────────
    # What: After N consecutive exhausted calls, fail fast for M seconds
    cb_failure_threshold: int = Field(default=5, ge=2, le=20)
    cb_recovery_timeout: int = Field(default=60, ge=1, le=300)

    # ── Quota Ledger ──────────────────────────────────────────────────────
    # What: Per-user upstream-call budget within a fixed window
    # Only cache misses count; cache hits are free
    quota_max_calls: int = Field(default=20, ge=1, le=100_000)
    quota_window_seconds: int = Field(default=3600, ge=1, le=7 * 86400)

    # ── Summary Cache ─────────────────────────────────────────────────────
    # What: Age after which a cached summary is treated as a miss
    cache_ttl_seconds: int = Field(default=86400, ge=1, le=30 * 86400)

    # What: Maximum cached summaries; oldest-created entries go first
    cache_max_entries: int = Field(default=10_000, ge=1, le=1_000_000)

    # ── Requests & Batches ────────────────────────────────────────────────
    # What: Longest note (in characters) accepted for summarization
    max_content_chars: int = Field(default=20_000, ge=100, le=1_000_000)

    # What: Summaries computed in parallel for one batch request
    batch_max_concurrency: int = Field(default=5, ge=1, le=50)

    # What: Notes accepted in one batch request
    batch_max_items: int = Field(default=50, ge=1, le=500)

    # ── CORS ──────────────────────────────────────────────────────────────
    # Format: Comma-separated URLs (parsed by the property below)
    cors_origins: str = Field(default="http://localhost:3000")

    @property
    def cors_origins_list(self) -> List[str]:
        """Splits comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    # ── Server ────────────────────────────────────────────────────────────
    backend_host: str = Field(default="0.0.0.0")
    backend_port: int = Field(default=8000, ge=1024, le=65535)

    # Valid: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    # ── Pydantic Settings Config ──────────────────────────────────────────
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,  # GEMINI_API_KEY and gemini_api_key both work
    }

    def validate_required_for_production(self) -> None:
        """
        What:  Validates that critical settings are configured.
        When:  Called during app startup (lifespan).
        How:   Collects every problem and raises one ValueError listing them.
        """
        errors = []
        if not self.gemini_api_key or self.gemini_api_key == "your_gemini_api_key_here":
            errors.append(
                "GEMINI_API_KEY is not set. "
                "Get a key at https://aistudio.google.com/app/apikey"
            )
        if self.retry_initial_backoff * self.retry_backoff_multiplier ** self.retry_max_retries > 60:
            errors.append(
                "Retry backoff schedule exceeds 60s for the last attempt; "
                "lower RETRY_INITIAL_BACKOFF or RETRY_BACKOFF_MULTIPLIER"
            )
        if errors:
            raise ValueError(
                "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            )


# Singleton instance — the app factory reads it when no override is given
settings = Settings()
