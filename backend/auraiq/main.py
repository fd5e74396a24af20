"""
AuraIQ Backend API
FastAPI application for document-aware chat with streamed model replies.
"""

import logging
import os
import traceback
from typing import List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auraiq import config
from auraiq.errors import GatewayError
from auraiq.routers import chat, files
from auraiq.services.rate_limiter import (
    RedisRateLimiter,
    active_limiters,
    close_limiters,
    get_chat_rate_limiter,
    get_iq1_rate_limiter,
)
from auraiq.services.storage import get_object_store

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="AuraIQ API",
    description="Chat with attachments, routed to the right model and streamed back",
    version="0.1.0",
)


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins.

    Always includes http://localhost:3000 (Next.js dev server). Additional
    origins are read from CORS_ORIGINS as a comma-separated list, e.g.:
        CORS_ORIGINS=https://auraiq-app.vercel.app,https://preview.auraiq.app

    Duplicates are removed while preserving order.
    """
    origins: List[str] = ["http://localhost:3000"]

    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    if cors_env:
        for origin in (o.strip() for o in cors_env.split(",")):
            if origin and origin not in origins:
                origins.append(origin)

    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "Retry-After",
        "X-Model-Name",
        "X-Model-Provider",
    ],
)

# Include routers
app.include_router(chat.router, prefix="/api/chat", tags=["chat"])
app.include_router(files.router, prefix="/api/files", tags=["files"])


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

def _error(status_code: int, detail: str, error_code: str, headers: dict = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "error_code": error_code},
        headers=headers or None,
    )


@app.exception_handler(GatewayError)
async def handle_gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed ({exc.error_code}): {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.error_code}): {exc.message}")
    return _error(exc.status_code, exc.message, exc.error_code, exc.headers)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info(f"Validation error on {request.url.path}: {exc.errors()}")
    return _error(400, "Invalid request body", "invalid_request")


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc!r}")
    logger.error(traceback.format_exc())

    # Only include detailed error info in development
    detail = f"Internal server error: {exc}" if config.APP_ENV == "development" else "Internal server error"
    return _error(500, detail, "internal_error")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@app.on_event("startup")
async def start_rate_limiters() -> None:
    """Create both limiters up front so the in-process sweep runs from the start."""
    for limiter in (get_chat_rate_limiter(), get_iq1_rate_limiter()):
        await limiter.start()
    logger.info(
        "AuraIQ API started (rate limiting: %s)",
        ", ".join(limiter.mode for limiter in active_limiters()),
    )


@app.on_event("shutdown")
async def stop_rate_limiters() -> None:
    await close_limiters()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/")
async def root():
    return {"message": "AuraIQ API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/storage")
async def health_storage():
    """
    Test Supabase Storage access.

    Lists storage buckets and verifies the chat media bucket exists.
    Returns 503 if storage is unreachable or the bucket is missing.
    """
    store = get_object_store()
    try:
        exists = store.bucket_exists()
    except Exception as exc:
        logger.error(f"Storage health check failed: {exc}")
        raise HTTPException(status_code=503, detail=f"Storage check failed: {str(exc)}")

    if not exists:
        raise HTTPException(status_code=503, detail=f"Storage bucket '{store.bucket}' not found")

    return {"status": "ok", "storage": "reachable", "bucket": store.bucket}


@app.get("/health/ratelimit")
async def health_ratelimit():
    """
    Report which rate-limit store is in use.

    "redis" means limits are shared across instances; "in-process" means each
    worker counts on its own. Returns 503 if Redis is configured but unreachable.
    """
    limiters = {"chat": get_chat_rate_limiter(), "iq1": get_iq1_rate_limiter()}

    for name, limiter in limiters.items():
        if isinstance(limiter, RedisRateLimiter):
            try:
                await limiter.ping()
            except Exception as exc:
                logger.error(f"Rate-limit store health check failed: {exc}")
                raise HTTPException(status_code=503, detail=f"Rate-limit store unreachable: {str(exc)}")

    return {
        "status": "ok",
        "limiters": {
            name: {
                "mode": limiter.mode,
                "limit": limiter.limit,
                "window_seconds": limiter.window_seconds,
            }
            for name, limiter in limiters.items()
        },
    }
