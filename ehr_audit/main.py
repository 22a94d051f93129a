"""
EHR Audit Service API

FastAPI application entry point that ties all components together.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ehr_audit import __version__
from ehr_audit.api.middleware.request_context import RequestContextMiddleware, get_request_id
from ehr_audit.api.routes import audit, health
from ehr_audit.chain.exceptions import InvalidChannelError
from ehr_audit.chain.trail import build_audit_trail
from ehr_audit.config import Settings, get_settings
from ehr_audit.infra.redis import AttemptCounterStore, RedisClient
from ehr_audit.services.audit_logger import AuditLogger
from ehr_audit.services.login_monitor import LoginMonitor


def setup_logging(settings: Settings) -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    The AuditTrail and the services around it are created here, once,
    and reach routes through app.state.

    Args:
        settings: Settings to use (defaults to get_settings())
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        # === STARTUP ===
        setup_logging(settings)
        logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

        # Set health check start time
        health.set_start_time()

        # Test Redis connection
        redis = None
        try:
            redis = await RedisClient.get_client()
            if redis:
                logger.info("Redis connection established")
            else:
                logger.warning("Redis unavailable - failed-login counters are per process")
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}")

        app.state.login_monitor = LoginMonitor(
            app.state.audit_logger,
            AttemptCounterStore(redis, settings.brute_force_window_seconds),
            threshold=settings.brute_force_threshold,
        )

        logger.info(f"Application ready at http://{settings.host}:{settings.port}")

        yield

        # === SHUTDOWN ===
        logger.info("Shutting down application...")

        # Close Redis connection
        await RedisClient.close()

        logger.info("Shutdown complete")

    app = FastAPI(
        title="EHR Audit Service",
        description="""
        Tamper-evident audit logging for an EHR back-end.

        ## Features
        - Hash-chained, append-only channel logs
        - PHI redaction before anything is written
        - Chain verification, statistics and archival
        """,
        version=__version__,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Composition root: one trail per application
    app.state.settings = settings
    app.state.audit_trail = build_audit_trail(settings)
    app.state.audit_logger = AuditLogger(app.state.audit_trail, settings.phi_hash_salt)

    # CORS middleware (runs last on request, first on response)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request context middleware (runs first - sets RequestContext)
    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(InvalidChannelError)
    async def invalid_channel_handler(
        request: Request,
        exc: InvalidChannelError,
    ) -> JSONResponse:
        """Reject channel names that are not safe file stems."""
        logger.warning(f"Invalid channel requested: {exc.channel!r}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Invalid channel",
                "detail": str(exc),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Handle Pydantic validation errors."""
        # Field locations only; the rejected input may carry PHI
        logger.warning(f"Validation error: {[error['loc'] for error in exc.errors()]}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "Validation error",
                "detail": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.exception(f"Unhandled exception: {type(exc).__name__}")

        # Don't expose internal errors in production
        detail = str(exc) if settings.is_development else "Internal server error"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": detail,
                "request_id": get_request_id(request),
            },
        )

    # Health check routes
    app.include_router(health.router)
    app.include_router(audit.router)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """
        Root endpoint.

        Returns basic API information.
        """
        return {
            "name": settings.app_name,
            "version": __version__,
            "status": "running",
            "environment": settings.app_env,
            "docs": "/docs" if settings.is_development else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "ehr_audit.main:app",
        host=_settings.host,
        port=_settings.port,
        reload=_settings.is_development,
        log_level="debug" if _settings.debug else "info",
    )
