"""
adcache/main.py – FastAPI application factory for the ad-data cache service.

Features
────────
• Structured logging via structlog
• Request-ID middleware (X-Request-ID header)
• Basic rate limiting (slowapi, per IP)
• Machine-readable error bodies for every cache error kind
• Cache store closed on shutdown
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from adcache.config import settings
from adcache.errors import CacheError
from adcache.models import ErrorKind
from adcache.routes.cache import close_store
from adcache.routes.cache import router as cache_router
from adcache.routes.health import router as health_router

# ── Logging setup ─────────────────────────────────────────────────────────────


def _configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer()
            if settings.debug
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
    )
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )


_configure_logging()
logger = structlog.get_logger(__name__)

# ── Rate limiter ──────────────────────────────────────────────────────────────

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)

# ── Error mapping ─────────────────────────────────────────────────────────────

STATUS_FOR_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_ARGUMENT: 422,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.AUTH_ERROR: 401,
    ErrorKind.CANCELLED: 499,
    ErrorKind.FETCH_FAILED: 503,
    ErrorKind.STORAGE_UNAVAILABLE: 503,
    ErrorKind.TRANSIENT: 503,
}


async def _cache_error_handler(request: Request, exc: CacheError) -> JSONResponse:
    status_code = STATUS_FOR_KIND.get(exc.kind, 500)
    logger.warning(
        "request failed",
        path=request.url.path,
        kind=exc.kind.value,
        status_code=status_code,
        error=str(exc),
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# ── Request-ID middleware ─────────────────────────────────────────────────────


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Attaches a unique request ID to each incoming request.
    Reads X-Request-ID from the client if present, otherwise generates one.
    Echoes the request ID in the response header.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 1)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = str(duration_ms)

        logger.info(
            "request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        structlog.contextvars.clear_contextvars()
        return response


# ── Lifespan ──────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "adcache starting",
        name=settings.app_name,
        version=settings.app_version,
        cache_backend=settings.cache_backend,
    )
    yield
    close_store()
    logger.info("adcache shutting down")


# ── Application factory ───────────────────────────────────────────────────────


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Read-through cache for advertising performance data.\n\n"
            "## Behaviour\n"
            "1. **Fresh** cached data is served without calling the ads API\n"
            "2. **Missing / expired** data is fetched with retry and exponential backoff\n"
            "3. **Failures** fall back to the last cached result, marked stale\n"
        ),
        openapi_tags=[
            {
                "name": "Cache",
                "description": "Cached ad data and cache maintenance.",
            },
            {
                "name": "Health",
                "description": "Liveness and readiness checks.",
            },
        ],
        license_info={"name": "Proprietary"},
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # ── Middleware (order matters – outermost first) ───────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(SlowAPIMiddleware)

    # ── Error handlers ────────────────────────────────────────────────────────
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(CacheError, _cache_error_handler)

    # ── Routers ───────────────────────────────────────────────────────────────
    app.include_router(health_router)
    app.include_router(cache_router)

    return app


app = create_app()
