from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from salesops.config.logging import setup_logging
from salesops.config.settings import settings
from salesops.v1.core.exceptions import (
    RequestContextMiddleware,
    SalesOpsException,
    general_exception_handler,
    http_exception_handler,
    salesops_exception_handler,
    validation_exception_handler,
)
from salesops.v1.core.registries import job_registry
from salesops.v1.healthz import router as health_router
from salesops.v1.outbox.registry_init import register_job_handlers
from salesops.v1.outbox.routes import outbox_router
from salesops.v1.outbox.routes import router as jobs_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Transactional outbox with leased workers and an admin API",
        version=settings.version,
        debug=settings.debug,
        # All endpoints live under the /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(SalesOpsException, salesops_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(outbox_router, prefix="/v1")

    # The cron drain runs handlers in-process
    if not job_registry.list():
        register_job_handlers()

    # Freeze the registry in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "salesops.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
