"""
adcache/routes/health.py – liveness and readiness endpoints.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from adcache.config import settings
from adcache.errors import StorageUnavailable
from adcache.models import HealthResponse, ReadinessResponse
from adcache.routes.cache import get_store
from adcache.services.store import CacheStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/healthz",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Returns 200 as long as the application process is running.",
)
async def healthz() -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=settings.app_version,
        cache_backend=settings.cache_backend,
        meta_token_configured=bool(settings.meta_access_token),
    )


@router.get(
    "/readyz",
    response_model=ReadinessResponse,
    summary="Readiness check",
    description=(
        "Returns 200 when the service is ready to handle requests. "
        "Checks that the cache store answers and the Meta token is configured."
    ),
)
def readyz(store: CacheStore = Depends(get_store)) -> ReadinessResponse:
    checks: dict = {}

    try:
        store.ping()
        checks["cache_store"] = "ok"
    except StorageUnavailable as exc:
        logger.warning("Cache store not ready: %s", exc)
        checks["cache_store"] = str(exc)

    token_ok = bool(settings.meta_access_token)
    checks["meta_access_token_configured"] = token_ok

    ready = checks["cache_store"] == "ok" and token_ok

    return ReadinessResponse(ready=ready, checks=checks)
