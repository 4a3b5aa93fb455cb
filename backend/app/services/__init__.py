# Services package init
"""
NoteDigest Backend — Services Layer
=====================================

What:  The summarization pipeline, independent of HTTP.
How:   Services are plain objects built by the app factory and stored on
       app.state; routes reach them through FastAPI dependencies.

Service Inventory (leaf-first):
    - fingerprint: cache keys from normalized content + style
    - QuotaLedger: per-user upstream-call budget (fixed window)
    - SummaryCache: fingerprint → summary, TTL + capacity bound
    - LLMService (abstract) / GeminiService: the upstream client adapter
    - SummarizationService: cache → quota → upstream → write-through
    - BatchSummarizationService: bounded, order-preserving fan-out
"""
