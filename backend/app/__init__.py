"""
NoteDigest Backend — Application Package Initializer
====================================================

What:  AI summarization backend for the personal notes app.

Architecture Note:

    ┌─────────────────────────────────────┐
    │        Routes (API Layer)           │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │  SummarizationService / Batch       │  ← cache → quota → upstream
    ├─────────────────────────────────────┤
    │  SummaryCache │ QuotaLedger │ LLM   │  ← owned stores + Gemini adapter
    └─────────────────────────────────────┘

    Notes themselves are stored by the notes service; this package receives
    note content with each request and never persists it.
"""

__version__ = "1.0.0"
