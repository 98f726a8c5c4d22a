"""Request metrics middleware for Prometheus monitoring."""

import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.routing import Match

from podcaster.core.logging import get_logger
from podcaster.core.metrics import (
    FEED_RESPONSES,
    REQUEST_DURATION,
    REQUESTS_TOTAL,
    RESPONSES_TOTAL,
)

logger = get_logger(__name__)

UNMATCHED_ROUTE = "<unmatched>"


def route_template(request: Request) -> str:
    """Route path pattern for labels, so ids in the URL never become series."""
    for route in request.app.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return str(getattr(route, "path", UNMATCHED_ROUTE))
    return UNMATCHED_ROUTE


def feed_outcome(response: Response) -> str | None:
    """Classify a feed response by how the cache served it."""
    if response.status_code == 304:
        return "not_modified"
    cache = response.headers.get("X-Cache")
    return cache.lower() if cache in ("HIT", "MISS") else None


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect request/response metrics.

    Requests and latency are labelled by route template. Feed responses are
    additionally counted by cache outcome from the ``X-Cache`` header.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        route = route_template(request)
        REQUESTS_TOTAL.labels(method=request.method, path=route).inc()

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("request_failed", route=route, error=str(e))
            raise
        duration = time.perf_counter() - start

        REQUEST_DURATION.labels(method=request.method, route=route).observe(duration)
        RESPONSES_TOTAL.labels(status_code=str(response.status_code)).inc()
        outcome = feed_outcome(response)
        if outcome is not None:
            FEED_RESPONSES.labels(outcome=outcome).inc()

        logger.info(
            "request_processed",
            route=route,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
            cache=outcome,
        )
        return response
