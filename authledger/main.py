"""FastAPI application for AuthLedger.

Mounts the auth and credits routers, renders every domain error as an
{"error", "detail"} envelope, and owns the store lifecycle.

Run with:
    uvicorn authledger.main:app --reload

Examples:
    >>> # Health check
    >>> curl http://localhost:8000/health

    >>> # Register
    >>> curl -X POST http://localhost:8000/auth/register \\
    ...   -H 'Content-Type: application/json' \\
    ...   -d '{"email": "a@example.com", "password": "Str0ngPass"}'

Tests:
    - tests/unit/test_main.py
    - tests/integration/test_api_auth.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from authledger import __version__
from authledger.api import router as api_router
from authledger.config import get_settings
from authledger.database import check_db_connection, close_db, init_db
from authledger.errors import AuthLedgerError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Service and store status."""

    status: str
    version: str
    database: bool


class ErrorResponse(BaseModel):
    """Envelope for every non-2xx answer."""

    error: str
    detail: str | list[str] | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, dispose the engine on shutdown."""
    logger.info(f"Starting AuthLedger v{__version__}")

    try:
        await init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        # Continue anyway - migrations may own the schema

    yield

    logger.info("Shutting down AuthLedger")
    await close_db()


settings = get_settings()

app = FastAPI(
    title="AuthLedger",
    description="Authentication, sessions and a dual-pool credit ledger",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)

# Credentialed CORS needs explicit origins; the refresh cookie rides on it
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


# Exception handlers
@app.exception_handler(AuthLedgerError)
async def domain_exception_handler(request: Request, exc: AuthLedgerError):
    """Render domain errors with their mapped status and public message."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "detail": exc.detail},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Render framework HTTP errors (bearer failures, 402 pre-checks) in the same envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "detail": None},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Last resort: log the traceback, hide the detail outside DEBUG."""
    logger.exception(f"Unexpected error: {exc}")

    detail = str(exc) if settings.DEBUG else None
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "detail": detail},
    )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Report application and database health."""
    db_healthy = await check_db_connection()
    return HealthResponse(
        status="healthy" if db_healthy else "degraded",
        version=__version__,
        database=db_healthy,
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    return {
        "name": "AuthLedger",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# Local run without the CLI
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "authledger.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
