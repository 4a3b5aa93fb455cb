"""
NoteDigest Backend — Health Check Route
=========================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Reports Gemini reachability (or circuit breaker state) and cache
       statistics.

Status levels:
    - healthy:   Gemini reachable, circuit closed
    - degraded:  Gemini unreachable or circuit open. Still HTTP 200: cached
                 summaries and usage queries keep working.
"""

import logging
import time

from fastapi import APIRouter, Request

from app import __version__
from app.schemas.summary import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "Returns the health status of the summarization service, the Gemini API "
        "and the summary cache."
    ),
)
async def health_check(request: Request) -> HealthResponse:
    """
    Probe dependencies without spending generation quota.

    The circuit breaker is consulted first: when it is open we already know
    Gemini is failing and skip the network probe.
    """
    gemini_status = "available"
    overall = "healthy"

    llm = request.app.state.llm_service
    breaker = getattr(llm, "circuit_breaker", None)
    if breaker is not None and breaker.state == "open":
        gemini_status = "circuit_open"
        overall = "degraded"
    elif not await llm.health_check():
        gemini_status = "unavailable"
        overall = "degraded"

    stats = request.app.state.summary_cache.stats()

    return HealthResponse(
        status=overall,
        version=__version__,
        gemini=gemini_status,
        cache_entries=stats.entries,
        cache_hit_ratio=stats.hit_ratio,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
