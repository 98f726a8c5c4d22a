"""Correlation ID middleware for request tracking."""

import re
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from structlog.contextvars import bind_contextvars, clear_contextvars

CORRELATION_HEADER = "X-Request-ID"

# Checked in order; CDN edges forward their own request id under the second name
INCOMING_HEADERS = (CORRELATION_HEADER, "X-Correlation-ID")

# Opaque ids from proxies and CDN edges, long enough not to collide by accident
_EDGE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{15,127}$")


def is_valid_correlation_id(value: str) -> bool:
    """Accept UUIDs and opaque edge request ids, reject anything else."""
    try:
        uuid.UUID(value)
        return True
    except ValueError:
        return bool(_EDGE_ID.match(value))


def resolve_correlation_id(request: Request) -> str:
    for header in INCOMING_HEADERS:
        value = request.headers.get(header, "").strip()
        if value and is_valid_correlation_id(value):
            return value
    return str(uuid.uuid4())


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a correlation id.

    The id is echoed as ``X-Request-ID`` and bound, along with the method and
    path, into the structlog context so job, cache and invalidation logs
    emitted while serving the request can be joined back to it.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        clear_contextvars()

        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        bind_contextvars(
            correlation_id=correlation_id,
            http_method=request.method,
            http_path=request.url.path,
        )

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
