"""
Main FastAPI application.

Payment orchestration API with:
- CORS configuration
- Error handling
- Request ID tracking and operation classification
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paybridge.config import Settings, get_settings
from paybridge.core.exceptions import PaymentError
from paybridge.core.orchestrator import PaymentOrchestrator, build_orchestrator
from paybridge.core.rate_limiter import RateLimiter, build_rate_limiter
from paybridge.core.routing import classify, is_payment_path
from paybridge.database.connection import close_db, init_db
from paybridge.monitoring.logging import bind_request_context, clear_request_context, setup_logging

from .routes import monitoring_router, pay_router
from .schemas import ErrorResponse

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[PaymentOrchestrator] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings (environment if not provided)
        orchestrator: Pre-built orchestrator; built at startup if not provided
        rate_limiter: Pre-built rate limiter; built from settings if not provided

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            webhook_secrets_required=settings.webhook_secrets_required,
        )

        owns_orchestrator = app.state.orchestrator is None
        if owns_orchestrator:
            try:
                await init_db()
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise
            app.state.orchestrator = build_orchestrator(settings)

        yield

        logger.info("application_shutdown")
        await app.state.rate_limiter.close()
        if owns_orchestrator:
            await app.state.orchestrator.close()
            await close_db()
            logger.info("database_connections_closed")

    app = FastAPI(
        title="PayBridge",
        description=(
            "Multi-provider payment orchestration: card/bank and mobile-money initiation, "
            "signed webhook reconciliation and a durable transaction ledger."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.rate_limiter = rate_limiter or build_rate_limiter(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Payment paths are classified first; unknown ones are answered here
        with 404/405 without reaching a route.
        """
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start_time = time.time()

        bind_request_context(request_id, method=request.method, path=request.url.path)

        try:
            if is_payment_path(request.url.path) and request.method != "OPTIONS":
                try:
                    route = classify(request.method, request.url.path)
                except PaymentError as e:
                    logger.info("request_unroutable", status_code=e.status_code)
                    response = JSONResponse(
                        status_code=e.status_code, content={"detail": e.message}
                    )
                    if "allowed" in e.context:
                        response.headers["Allow"] = str(e.context["allowed"])
                    response.headers["X-Request-ID"] = request_id
                    return response
                structlog.contextvars.bind_contextvars(operation=route.operation.value)

            logger.info(
                "request_started",
                client_host=request.client.host if request.client else None,
            )

            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            duration = time.time() - start_time
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=duration,
            )
            return response

        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=duration,
            )
            raise

        finally:
            clear_request_context()

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed or missing request fields are a 400, not FastAPI's 422."""
        logger.warning("request_validation_failed", errors=len(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_encoder(exc.errors(), custom_encoder={ValueError: str})},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal server error",
                message="An unexpected error occurred. Please try again later.",
            ).model_dump(),
        )

    app.include_router(pay_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "paybridge.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


_settings = get_settings()
setup_logging(_settings)
app = create_app(_settings)


if __name__ == "__main__":
    run()
