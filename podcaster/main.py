"""Main FastAPI application module."""

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from podcaster.api.v1.router import router as v1_router
from podcaster.core.config import Settings
from podcaster.core.events import ServiceContainer, lifespan
from podcaster.middleware.correlation import CorrelationMiddleware
from podcaster.middleware.errors import ErrorHandlingMiddleware, register_error_handlers
from podcaster.middleware.metrics import MetricsMiddleware


def create_app(
    settings: Settings | None = None, container: ServiceContainer | None = None
) -> FastAPI:
    """Build the application around a service container.

    Args:
        settings: Settings, read from the environment when omitted
        container: Pre-built container, mainly for tests

    Returns:
        Configured FastAPI app; the container starts with the lifespan
    """
    settings = settings or (container.settings if container else Settings())
    container = container or ServiceContainer.build(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Content submission pipeline and podcast feed service",
        version=settings.version,
        default_response_class=JSONResponse,
        lifespan=lifespan,
    )
    app.state.container = container

    # Added inside -> out: errors innermost, CORS outermost
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*", "Content-Type", "X-Request-ID", "If-None-Match"],
        expose_headers=["X-Request-ID", "ETag", "X-Cache"],
        max_age=600,
    )
    register_error_handlers(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Expose Prometheus metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(v1_router, prefix=settings.api_prefix)
    return app


app = create_app()
