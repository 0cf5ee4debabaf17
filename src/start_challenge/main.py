# src/start_challenge/main.py
"""Main entry point for the F1 Start Challenge application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from start_challenge.api.v1 import (
    challenges_router,
    game_router,
    leaderboard_router,
    rate_limit_router,
    scores_router,
    system_router,
)
from start_challenge.core.settings import settings
from start_challenge.services.rate_limit import RateLimitExceededError
from start_challenge.services.storage import QuotaExceededError, StorageError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Lights-out reaction game: challenges, replays and leaderboards",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(game_router, prefix="/api/v1")
app.include_router(scores_router, prefix="/api/v1")
app.include_router(leaderboard_router, prefix="/api/v1")
app.include_router(challenges_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")
app.include_router(rate_limit_router, prefix="/api/v1")


@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(_request: Request, exc: QuotaExceededError) -> JSONResponse:
    logger.error("Rejected write: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_507_INSUFFICIENT_STORAGE,
        content={"detail": "Storage quota exceeded"},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(_request: Request, exc: StorageError) -> JSONResponse:
    """Map unavailable storage, open breakers and write conflicts to 503."""
    logger.warning("Storage failure while serving request: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage temporarily unavailable"},
    )


@app.exception_handler(RateLimitExceededError)
async def rate_limit_handler(_request: Request, exc: RateLimitExceededError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "detail": {
                "message": str(exc),
                "reset_time": exc.result.reset_time,
                "retry_after": exc.result.retry_after,
            }
        },
        headers={"Retry-After": str(exc.result.retry_after)},
    )


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Lights-out reaction game: challenges, replays and leaderboards",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("start_challenge.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
