# ============================================================================
# CaliLights - FastAPI Application Entry Point
# ============================================================================
"""
HTTP entry point. Startup ensures the schema exists and shutdown disposes of
the engine. Every failure response has the body {"error": {"kind", "message"}}.

Usage:
    Direct: python -m calilights.main
    Server: uvicorn calilights.main:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.v1 import api_router
from .config import settings
from .exceptions import MissionEngineError
from .models import ErrorResponse
from .services.database_service import database_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("calilights.main")

_HTTP_KINDS = {
    400: "validation",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation",
}

# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "CaliLights mission engine\n\n"
        "Timed group capture missions: lifecycle control, auto-start schedules, "
        "video generation tracking and cross-chain bridges."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# ============================================================================
# MIDDLEWARE CONFIGURATION
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# ============================================================================
# APPLICATION EVENT HANDLERS
# ============================================================================


@app.on_event("startup")
async def startup_event() -> None:
    """Create missing tables and report the database in use."""
    logger.info(f"Starting {settings.api_title} {settings.api_version} (debug={settings.debug})")
    await database_service.init_db()
    logger.info(f"Database ready ({database_service.dialect_name})")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Shutting down")
    await database_service.close()


# ============================================================================
# ERROR HANDLERS
# ============================================================================


@app.exception_handler(MissionEngineError)
async def mission_engine_exception_handler(request: Request, exc: MissionEngineError) -> JSONResponse:
    """Domain errors carry their own kind and status code."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse.build(exc.kind, exc.message),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Request body, path or query validation failures.

    The message lists each failing field as "location: reason".
    """
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=422,
        content=ErrorResponse.build("validation", "; ".join(parts) or "Invalid request"),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind = _HTTP_KINDS.get(exc.status_code, "http_error")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse.build(kind, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: 500 with the error text only in debug mode."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    message = str(exc) if settings.debug else "An unexpected error occurred"
    return JSONResponse(status_code=500, content=ErrorResponse.build("internal", message))


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

app.include_router(api_router, prefix="/api/v1")


@app.get("/api/health", tags=["system"])
async def health() -> JSONResponse:
    """Database connectivity and table counts; 503 when the database is unreachable."""
    db = await database_service.health_check()
    body = {
        "status": db["status"],
        "version": settings.api_version,
        "database": db,
        "timestamp": datetime.utcnow().isoformat(),
    }
    return JSONResponse(status_code=200 if db["status"] == "healthy" else 503, content=body)


# ============================================================================
# ROOT ENDPOINT
# ============================================================================


@app.get("/", tags=["root"])
async def root() -> Dict[str, Any]:
    """Root endpoint providing API information."""
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "status": "running",
        "docs_url": "/docs",
        "health_check": "/api/health",
        "timestamp": datetime.utcnow(),
    }


# ============================================================================
# DEVELOPMENT SERVER
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "calilights.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
