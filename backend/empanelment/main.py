"""Main FastAPI application."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from empanelment.api.v1 import api_router
from empanelment.core.config import settings
from empanelment.core.errors import (
    APIException,
    api_exception_handler,
    database_exception_handler,
    generic_exception_handler,
    http_exception_handler,
)
from empanelment.core.metrics import MetricsMiddleware, get_metrics
from empanelment.db.session import Base, engine, get_session_factory
from empanelment.schemas.common import HealthResponse

# Import all models so they're registered with Base.metadata
from empanelment.models import audit  # noqa: F401


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    print(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    # Configure structured logging for SIEM integration
    from empanelment.core.logging_config import configure_logging
    configure_logging()
    print(f"Environment: {settings.ENVIRONMENT}")

    # IMPORTANT: Only auto-create tables in development/local environments
    # In production, use Alembic migrations: alembic upgrade head
    # (the migration also installs the immutability trigger)
    if settings.ENVIRONMENT in ("local", "development", "dev"):
        print("WARNING: Auto-creating database tables (development mode)")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("Database tables created/verified")
    else:
        print("Skipping auto-create. Use Alembic migrations.")

    if settings.AUDIT_VERIFY_SCHEDULE_ENABLED:
        from empanelment.scheduler import start_scheduler
        await start_scheduler()

    yield

    # Shutdown
    print("Shutting down...")
    # The scheduler may also have been started by POST /audit-integrity/schedule
    from empanelment.scheduler import shutdown_scheduler
    await shutdown_scheduler()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Tamper-evident audit trail for the OEM empanelment portal",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# CORS middleware - restricted methods for security
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

app.add_middleware(MetricsMiddleware)

app.add_exception_handler(APIException, api_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(SQLAlchemyError, database_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
):
    """
    Health check endpoint with real connectivity verification.

    Executes SELECT 1 against the database and returns 503 Service
    Unavailable if it fails, so load balancers can detect it.

    SECURITY: In production, error details are hidden.
    """
    is_production = settings.ENVIRONMENT == "production"
    db_status = "disconnected"
    overall_status = "healthy"

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            db_status = "connected"
    except Exception as e:
        db_status = "error" if is_production else f"error: {str(e)[:50]}"
        overall_status = "unhealthy"

    response = HealthResponse(
        status=overall_status,
        version=settings.APP_VERSION,
        database=db_status,
        timestamp=datetime.now(timezone.utc),
    )

    if overall_status == "unhealthy":
        return JSONResponse(
            status_code=503,
            content=response.model_dump(mode="json"),
        )

    return response


if settings.EXPOSE_METRICS:

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus scrape endpoint."""
        return get_metrics()


# Include API router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": f"{settings.API_V1_PREFIX}/docs",
    }
