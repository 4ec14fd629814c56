"""FastAPI application entry point for the MarkView sync server."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from markview.api.routes import sync
from markview.config import settings
from markview.db.exceptions import ConnectionError as DatabaseConnectionError
from markview.db.exceptions import DatabaseError
from markview.middleware.rate_limiter import limiter, rate_limit_exceeded_handler
from markview.middleware.request_id import RequestContextMiddleware
from markview.services.scheduler import start_scheduler, stop_scheduler
from markview.sse.connection_manager import get_connection_manager

logger = logging.getLogger(__name__)

# Configure logging format based on dev_mode
if not settings.dev_mode:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}',
    )
else:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    # Startup
    start_scheduler()  # Heartbeats, stale cleanup, tombstone retention
    yield
    # Shutdown
    stop_scheduler()
    get_connection_manager().close_all()


app = FastAPI(
    title="MarkView Sync API",
    description="Multi-device document synchronization for MarkView",
    version="0.1.0",
    docs_url="/docs" if settings.dev_mode else None,
    redoc_url="/redoc" if settings.dev_mode else None,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.state.limiter = limiter


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if not settings.dev_mode:
            response.headers["Strict-Transport-Security"] = (
                "max-age=63072000; includeSubDomains"
            )
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestContextMiddleware)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]


@app.exception_handler(DatabaseError)
async def _database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    status_code = 503 if isinstance(exc, DatabaseConnectionError) else 500
    return JSONResponse(
        status_code=status_code,
        content={
            "error": "Database unavailable" if status_code == 503 else "Database error",
            "message": str(exc) if settings.dev_mode else "Internal server error",
        },
    )


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=True)
    detail = str(exc) if settings.dev_mode else "Internal server error"
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": detail},
    )


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Device-Id", "X-Request-Id"],
)


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(sync.router, prefix="/api/sync", tags=["sync"])

# ---------------------------------------------------------------------------
# System endpoints
# ---------------------------------------------------------------------------


@app.get("/health")
async def health_check() -> dict:
    """Liveness check: verifies the API process is alive."""
    return {
        "status": "healthy",
        "realtime": get_connection_manager().stats(),
    }


@app.get("/health/ready")
async def readiness_check() -> JSONResponse:
    """Readiness check: verifies the database is reachable."""
    checks: dict[str, str] = {}

    try:
        from markview.db.database import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception:
        checks["database"] = "unavailable"

    all_ok = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ready" if all_ok else "degraded", "services": checks},
    )


@app.get("/")
async def root() -> dict:
    """Root endpoint."""
    return {"message": "MarkView Sync API", "docs": "/docs"}
