# Middleware package init
"""
NoteDigest Backend — Middleware Package
========================================

Middleware Chain (order matters!):
    Request → [Request ID + user] → [Access log] → [GZip] → [CORS] → Route

    Request ID runs first so the access log line carries it. Per-user
    limits are not enforced here: the quota ledger only counts calls that
    actually reach Gemini, which a middleware cannot know.
"""
