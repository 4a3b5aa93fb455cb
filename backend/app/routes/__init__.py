# Routes package init
"""
NoteDigest Backend — API Routes Package
=========================================

Route Inventory:
    - summaries.py:  POST /api/summarize          (summarize one note)
                     POST /api/summarize/batch    (summarize several notes)
                     GET  /api/usage              (caller's AI quota)
    - health.py:     GET  /health                 (service health check)

Routes stay thin: identity and body in, service call, response out.
"""
