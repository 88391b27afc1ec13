"""
Clawstrate - FastAPI Application
================================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from clawstrate.api import cron
from clawstrate.api import status as pipeline_status
from clawstrate.api.deps import DbSession, UnauthorizedError
from clawstrate.core.cache import create_redis
from clawstrate.core.config import settings
from clawstrate.core.database import close_db, init_db
from clawstrate.core.pipeline import StageRegistry
from clawstrate.core.schemas import ErrorResponse, HealthResponse

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create ledger tables if missing
    - Connect the shared Redis client
    - Load stage implementations from STAGE_ENTRYPOINTS

    Shutdown:
    - Close Redis and database connections
    """
    logger.info("Starting Clawstrate", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    app.state.redis = create_redis()
    if settings.STAGE_ENTRYPOINTS:
        app.state.stages = StageRegistry.from_entrypoints(settings.STAGE_ENTRYPOINTS)
    logger.info("Stages loaded", stages=app.state.stages.names())

    yield

    logger.info("Shutting down Clawstrate")
    await app.state.redis.aclose()
    await close_db()
    logger.info("Connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app(stages: Optional[StageRegistry] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        stages: Stage implementations; defaults to an empty registry that
            STAGE_ENTRYPOINTS fills in at startup

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Clawstrate - pipeline orchestration for scheduled analysis stages",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.stages = stages or StageRegistry()

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(UnauthorizedError)
    async def unauthorized_handler(request: Request, exc: UnauthorizedError) -> JSONResponse:
        """Scheduler triggers without the shared secret."""
        logger.warning("cron_unauthorized", path=request.url.path, method=request.method)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "Unauthorized"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request, db: DbSession) -> HealthResponse:
        """Check database and Redis connectivity."""
        database = "connected"
        try:
            await db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("health_database_unavailable", error=str(e))
            database = "unavailable"

        redis_state = "connected"
        try:
            await request.app.state.redis.ping()
        except (RedisError, AttributeError) as e:
            logger.warning("health_redis_unavailable", error=str(e))
            redis_state = "unavailable"

        return HealthResponse(
            status="healthy" if database == redis_state == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            redis=redis_state,
        )

    app.include_router(cron.router)
    app.include_router(pipeline_status.router)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "cron": settings.CRON_PREFIX,
            "status": f"{settings.API_V1_PREFIX}/pipeline-status",
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "clawstrate.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
