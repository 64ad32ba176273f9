"""
adcache/routes/cache.py – cached ad-data endpoints and cache maintenance.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from adcache.config import settings
from adcache.models import (
    CacheEntrySummary,
    CacheStats,
    FetchOptions,
    FetchPolicy,
    FetchResult,
    RemovedResponse,
)
from adcache.services.coordinator import FetchCoordinator
from adcache.services.keys import normalize_range_descriptor
from adcache.services.remote import MetaInsightsSource
from adcache.services.store import CacheStore, InMemoryCacheStore, SQLiteCacheStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/cache", tags=["Cache"])


# ── Dependencies (lazy singletons) ────────────────────────────────────────────

_store_instance: Optional[CacheStore] = None
_coordinator_instance: Optional[FetchCoordinator] = None


def get_store() -> CacheStore:
    """Return the shared CacheStore (created on first call)."""
    global _store_instance
    if _store_instance is None:
        if settings.cache_backend.lower() == "memory":
            _store_instance = InMemoryCacheStore()
        else:
            _store_instance = SQLiteCacheStore(settings.cache_db_path)
    return _store_instance


def get_coordinator() -> FetchCoordinator:
    """Return the shared FetchCoordinator (created on first call)."""
    global _coordinator_instance
    if _coordinator_instance is None:
        remote = MetaInsightsSource(
            settings.meta_access_token,
            api_version=settings.meta_api_version,
            timeout=settings.meta_request_timeout,
        )
        _coordinator_instance = FetchCoordinator(
            get_store(), remote, FetchPolicy.from_settings(settings)
        )
    return _coordinator_instance


def close_store() -> None:
    global _store_instance, _coordinator_instance
    if _store_instance is not None:
        _store_instance.close()
    _store_instance = None
    _coordinator_instance = None


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


# ── Routes ────────────────────────────────────────────────────────────────────


def _fetch(
    scope: str,
    range_descriptor: str,
    kind: str,
    force_refresh: bool,
    request: Request,
    coordinator: FetchCoordinator,
) -> FetchResult:
    range_descriptor = normalize_range_descriptor(range_descriptor)
    logger.info(
        "fetch requested",
        extra={
            "request_id": _request_id(request),
            "scope": scope,
            "range": range_descriptor,
            "kind": kind,
            "force_refresh": force_refresh,
        },
    )
    return coordinator.fetch(
        scope, range_descriptor, kind, FetchOptions(force_refresh=force_refresh)
    )


@router.get(
    "/{scope}/data",
    response_model=FetchResult,
    summary="Read ad data through the cache",
    description=(
        "Serves fresh cached data when available, otherwise fetches from the ads API "
        "and caches the result. If the ads API keeps failing, a previously cached "
        "result is returned with `stale=true` and a warning."
    ),
    responses={
        401: {"description": "Ads API rejected the credentials."},
        422: {"description": "Invalid scope or range."},
        503: {"description": "Ads API unavailable and nothing cached."},
    },
)
def read_data(
    scope: str,
    request: Request,
    range_descriptor: str = Query("last_7d", alias="range"),
    kind: str = Query("insights"),
    force_refresh: bool = Query(False),
    coordinator: FetchCoordinator = Depends(get_coordinator),
) -> FetchResult:
    return _fetch(scope, range_descriptor, kind, force_refresh, request, coordinator)


@router.post(
    "/{scope}/refresh",
    response_model=FetchResult,
    summary="Force a refresh from the ads API",
)
def refresh_data(
    scope: str,
    request: Request,
    range_descriptor: str = Query("last_7d", alias="range"),
    kind: str = Query("insights"),
    coordinator: FetchCoordinator = Depends(get_coordinator),
) -> FetchResult:
    return _fetch(scope, range_descriptor, kind, True, request, coordinator)


@router.get(
    "/{scope}/entries",
    response_model=list[CacheEntrySummary],
    summary="List cache entries for a scope (without payloads)",
)
def list_entries(
    scope: str,
    include_expired: bool = Query(False),
    store: CacheStore = Depends(get_store),
) -> list[CacheEntrySummary]:
    return store.list_by_scope(scope, include_expired=include_expired)


@router.delete(
    "/{scope}",
    response_model=RemovedResponse,
    summary="Drop every cache entry of a scope",
)
def clear_scope(scope: str, store: CacheStore = Depends(get_store)) -> RemovedResponse:
    removed = store.remove_by_scope(scope)
    logger.info("scope cleared", extra={"scope": scope, "removed": removed})
    return RemovedResponse(removed=removed)


@router.get(
    "/stats",
    response_model=CacheStats,
    summary="Aggregate statistics over live entries",
)
def cache_stats(
    scope: Optional[str] = Query(None),
    store: CacheStore = Depends(get_store),
) -> CacheStats:
    return store.stats(scope)


@router.post(
    "/maintenance/reap",
    response_model=RemovedResponse,
    summary="Physically delete expired entries",
)
def reap_expired(
    scope: Optional[str] = Query(None),
    store: CacheStore = Depends(get_store),
) -> RemovedResponse:
    removed = store.remove_expired(scope)
    logger.info("expired entries reaped", extra={"scope": scope, "removed": removed})
    return RemovedResponse(removed=removed)
