"""
FastAPI application entry point for feedcast.

This module provides:
- FastAPI application setup with request logging middleware
- Prometheus metrics endpoint
- Health check and API route integration
- Plain-text error responses for pipeline failures
"""

# Load environment variables BEFORE any other imports
from pathlib import Path

from dotenv import load_dotenv

project_root = Path(__file__).parent.parent
env_file = project_root / ".env"
if env_file.exists():
    load_dotenv(env_file)

import time  # noqa: E402
import uuid  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402

import uvicorn  # noqa: E402
from fastapi import FastAPI, Request  # noqa: E402
from fastapi.responses import PlainTextResponse, Response  # noqa: E402
from starlette.exceptions import HTTPException  # noqa: E402

from .api.routes import router as api_router  # noqa: E402
from .core.config import settings  # noqa: E402
from .core.exceptions import FeedcastError  # noqa: E402
from .core.logging import get_logger, setup_logging, with_logging_context  # noqa: E402
from .models.db import db_manager  # noqa: E402
from .observability.metrics import get_metrics_response, metrics  # noqa: E402

HELLO_MESSAGE = "Hello, this is the upload server!"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown tasks."""
    logger = get_logger("app.lifespan")

    logger.info("Starting feedcast application")
    db_manager.create_tables()
    metrics.app_info.info({
        'version': settings.app.version,
        'environment': settings.app.environment,
        'name': settings.app.app_name
    })
    logger.info("Application startup completed successfully")

    yield

    logger.info("Shutting down feedcast application")
    db_manager.dispose()


def create_application() -> FastAPI:
    """Create and configure FastAPI application."""

    # Initialize logging first
    setup_logging()
    logger = get_logger("app")

    app = FastAPI(
        title="feedcast API",
        description="Media upload, storage and cross-posting to Bluesky and Mastodon",
        version=settings.app.version,
        debug=settings.app.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.app.is_development else None,
        redoc_url=None,
    )

    setup_middleware(app)
    app.include_router(api_router)

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return HELLO_MESSAGE

    @app.get("/metrics", response_class=Response)
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        content, headers = get_metrics_response()
        return Response(content=content, headers=headers)

    @app.exception_handler(FeedcastError)
    async def feedcast_exception_handler(request: Request, exc: FeedcastError):
        """Render pipeline failures as plain text with their mapped status."""
        error_logger = get_logger("app.error")
        log = error_logger.warning if exc.status_code < 500 else error_logger.error
        log(
            "Request failed",
            path=request.url.path,
            status_code=exc.status_code,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return PlainTextResponse(exc.public_message, status_code=exc.status_code)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        error_logger = get_logger("app.error")
        error_logger.error(
            "Unhandled exception in request",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True
        )
        return PlainTextResponse("Unexpected server error.", status_code=500)

    logger.info(
        "FastAPI application created",
        version=settings.app.version,
        environment=settings.app.environment,
        debug=settings.app.debug
    )

    return app


def setup_middleware(app: FastAPI):
    """Configure application middleware."""

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Add request ID and logging context."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        with with_logging_context(request_id=request_id):
            logger = get_logger("app.request")
            logger.info(
                "Request started",
                method=request.method,
                path=request.url.path,
                client_ip=request.client.host if request.client else None
            )

            try:
                response = await call_next(request)
            except Exception as exc:
                duration = time.time() - start_time
                logger.error(
                    "Request failed with exception",
                    error=str(exc),
                    duration_seconds=round(duration, 3),
                    exc_info=True
                )
                metrics.track_request(request.method, request.url.path, 500, duration)
                raise

            duration = time.time() - start_time
            logger.info(
                "Request completed",
                status_code=response.status_code,
                duration_seconds=round(duration, 3)
            )
            metrics.track_request(request.method, request.url.path, response.status_code, duration)
            response.headers["X-Request-ID"] = request_id
            return response


# Create application instance
app = create_application()


def main():
    """Run the application with Uvicorn."""
    uvicorn.run(
        "feedcast.main:app",
        host=settings.app.api_host,
        port=settings.app.api_port,
        reload=settings.app.is_development,
        log_level=settings.app.log_level.lower(),
        access_log=True,
        server_header=False,
    )


if __name__ == "__main__":
    main()
