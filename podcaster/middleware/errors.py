"""Error handling middleware and exception handlers."""

from typing import Any, cast

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR

from podcaster.core.errors import PipelineError
from podcaster.core.logging import get_logger

logger = get_logger(__name__)


def _correlation_id(request: Request) -> str | None:
    correlation_id = getattr(request.state, "correlation_id", None)
    return str(correlation_id) if correlation_id is not None else None


def error_response(
    request: Request,
    error: str,
    message: str,
    status_code: int,
    kind: str | None = None,
    details: Any = None,
) -> JSONResponse:
    """Build the JSON error body shared by every handler."""
    correlation_id = _correlation_id(request)
    logger.error(
        "request_error",
        error_type=error,
        error_kind=kind,
        error_message=message,
        status_code=status_code,
        path=request.url.path,
        method=request.method,
        correlation_id=correlation_id,
    )
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "kind": kind,
            "message": message,
            "status_code": status_code,
            "correlation_id": correlation_id or "unknown",
            "details": details or {},
        },
    )
    if correlation_id:
        response.headers["X-Request-ID"] = correlation_id
    return response


async def handle_pipeline_error(request: Request, exc: Exception) -> JSONResponse:
    """Map a tagged error to its status by kind."""
    error = cast(PipelineError, exc)
    body = error.to_dict()
    return error_response(
        request,
        error=error.__class__.__name__,
        message=error.message,
        status_code=error.status_code,
        kind=body["kind"],
        details=body["details"],
    )


async def handle_http_exception(request: Request, exc: Exception) -> JSONResponse:
    http_error = cast(StarletteHTTPException, exc)
    return error_response(
        request,
        error="HTTPException",
        message=str(http_error.detail),
        status_code=http_error.status_code,
    )


async def handle_request_validation(request: Request, exc: Exception) -> JSONResponse:
    validation_error = cast(RequestValidationError, exc)
    return error_response(
        request,
        error="RequestValidationError",
        message="Request validation failed",
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        kind="validation",
        details={"errors": [_jsonable_error(e) for e in validation_error.errors()]},
    )


def _jsonable_error(error: Any) -> dict[str, Any]:
    if not isinstance(error, dict):
        return {"msg": str(error)}
    return {
        "loc": [str(part) for part in error.get("loc", ())],
        "msg": str(error.get("msg", "")),
        "type": str(error.get("type", "")),
    }


def register_error_handlers(app: FastAPI) -> None:
    """Install the handlers on a FastAPI app."""
    app.add_exception_handler(PipelineError, handle_pipeline_error)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turns exceptions no handler claimed into a JSON 500 response."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """
        Process the request/response cycle and handle errors.

        Args:
        ----
            request: The incoming request
            call_next: The next handler in the middleware chain

        Returns:
        -------
            The response from downstream handlers or error response
        """
        try:
            return await call_next(request)
        except PipelineError as exc:
            return await handle_pipeline_error(request, exc)
        except Exception as exc:
            detail = str(exc.args[0] if exc.args else exc)
            return error_response(
                request,
                error=exc.__class__.__name__,
                message=detail,
                status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            )
