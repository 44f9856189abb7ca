from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.cors import CORSMiddleware

from .api.v1.routers.connector import router as connector_router
from .api.v1.routers.health import router as health_router
from .api.v1.routers.sso import router as sso_router
from .api.v1.routers.webhooks import router as webhooks_router
from .core.config import Settings, get_settings, validate_settings
from .core.errors import (
    AccountCreationDenied,
    LockTimeout,
    PersistenceConflict,
    SchemaError,
)
from .core.logging import configure_structlog, get_logger
from .core.observability import add_prometheus
from .db import get_engine
from .middleware.auto_relogin import AutoReloginMiddleware
from .middleware.logging import RequestLoggingMiddleware
from .services.auto_relogin import auto_relogin_enabled
from .services.schema_migrator import SchemaMigrator


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    # Reliability: validate env/settings early
    try:
        validate_settings(settings)
    except Exception as exc:  # noqa: BLE001
        # Fail-fast with a clear error
        raise RuntimeError(f"Invalid configuration: {exc}")

    configure_structlog()
    logger = get_logger(__name__)

    app = FastAPI(title=settings.app_name, version=settings.app_version)
    app.state.settings = settings

    # Global exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle Pydantic validation errors with detailed messages."""
        logger.warning(
            "request.validation_error",
            path=request.url.path,
            errors=exc.errors(),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": "Validation error",
                "errors": exc.errors(),
            },
        )

    @app.exception_handler(LockTimeout)
    async def lock_timeout_handler(request: Request, exc: LockTimeout) -> JSONResponse:
        logger.warning(
            "request.lock_timeout",
            path=request.url.path,
            discourse_id=exc.discourse_id,
            timeout=exc.timeout,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Account is busy, try again", "error": str(exc)},
            headers={"Retry-After": str(max(1, int(exc.timeout)))},
        )

    @app.exception_handler(PersistenceConflict)
    async def conflict_handler(request: Request, exc: PersistenceConflict) -> JSONResponse:
        logger.error("request.link_conflict", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Account link conflict", "error": str(exc)},
        )

    @app.exception_handler(AccountCreationDenied)
    async def account_denied_handler(
        request: Request, exc: AccountCreationDenied
    ) -> JSONResponse:
        logger.warning("request.account_creation_denied", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": "Account creation denied", "error": str(exc)},
        )

    @app.exception_handler(SchemaError)
    async def schema_exception_handler(request: Request, exc: SchemaError) -> JSONResponse:
        logger.error("request.schema_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Database schema is not at the expected version"},
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(
        request: Request, exc: SQLAlchemyError
    ) -> JSONResponse:
        """Handle database errors gracefully."""
        logger.error(
            "request.database_error",
            path=request.url.path,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Database error occurred"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle all unhandled exceptions."""
        logger.error(
            "request.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    # Middleware (order matters - later middleware wraps earlier ones)
    if auto_relogin_enabled(settings):
        app.add_middleware(AutoReloginMiddleware, settings=settings)
        logger.info(
            "auto_relogin.enabled",
            seamless=settings.sso_enable_seamless_login,
            auto_relogin=settings.sso_enable_auto_relogin,
        )

    app.add_middleware(RequestLoggingMiddleware)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        max_age=settings.cors_max_age,
    )
    logger.info(
        "cors.configured",
        allow_origins=settings.cors_allow_origins,
        allow_credentials=settings.cors_allow_credentials,
    )

    # Metrics
    add_prometheus(app, app_name="discourse_sso")

    @app.on_event("startup")
    def on_startup() -> None:  # noqa: D401
        logger.info("startup.init_db_pool")
        engine = get_engine()
        if settings.schema_check_on_startup:
            # Raises SchemaOutdatedError / FutureSchemaError and aborts startup
            SchemaMigrator(engine).ensure_current()
            logger.info("startup.schema_ok")

    # Routers
    app.include_router(health_router)
    app.include_router(sso_router)
    app.include_router(webhooks_router)
    app.include_router(connector_router)

    @app.get("/")
    def root() -> dict:
        return {"service": "discourse_sso", "status": "ok"}

    return app


app = create_app()
