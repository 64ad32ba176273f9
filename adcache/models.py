"""
adcache/models.py – Pydantic v2 schemas for cache entries, fetch results and API bodies.
"""
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field, model_validator

if TYPE_CHECKING:
    from adcache.config import Settings

PayloadT = TypeVar("PayloadT")


# ── Enumerations ──────────────────────────────────────────────────────────────


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "invalid_argument"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    TRANSIENT = "transient"
    AUTH_ERROR = "auth_error"
    VALIDATION_ERROR = "validation_error"
    CANCELLED = "cancelled"
    FETCH_FAILED = "fetch_failed"


class Freshness(str, Enum):
    MISSING = "missing"
    FRESH = "fresh"
    EXPIRED = "expired"


class FreshnessTier(str, Enum):
    REALTIME = "realtime"
    NEARTIME = "neartime"
    STABILIZING = "stabilizing"
    FINALIZED = "finalized"


class ResultSource(str, Enum):
    CACHE = "cache"
    REMOTE = "remote"
    STALE = "stale"


# ── Cache entries ─────────────────────────────────────────────────────────────


class CacheEntrySummary(BaseModel):
    """Entry bookkeeping without the payload – safe to list in bulk."""

    key: str
    scope: str
    range_descriptor: str
    created_at: int = Field(description="Epoch milliseconds.")
    updated_at: int
    last_accessed_at: int
    expires_at: int
    access_count: int = Field(ge=1)
    size_bytes: int = Field(ge=0)
    checksum: str

    @model_validator(mode="after")
    def _check_timestamps(self) -> "CacheEntrySummary":
        if self.expires_at < self.created_at:
            raise ValueError("expires_at must not precede created_at")
        if self.updated_at < self.created_at or self.last_accessed_at < self.created_at:
            raise ValueError("updated_at/last_accessed_at must not precede created_at")
        return self


class CacheEntry(CacheEntrySummary):
    payload: Any = None

    def summary(self) -> CacheEntrySummary:
        return CacheEntrySummary.model_validate(self.model_dump(exclude={"payload"}))


class CacheStats(BaseModel):
    scope: Optional[str] = None
    total_entries: int = 0
    total_size_bytes: int = 0
    avg_access_count: float = 0.0
    oldest_created_at: Optional[int] = None
    newest_created_at: Optional[int] = None


# ── Fetching ──────────────────────────────────────────────────────────────────


class FetchOptions(BaseModel):
    force_refresh: bool = False


class FetchPolicy(BaseModel):
    """Explicit fetch configuration handed to the coordinator (durations in seconds)."""

    ttl_seconds: float = Field(default=24 * 60 * 60, ge=0)
    max_retries: int = Field(default=3, ge=0)
    base_backoff: float = Field(default=1.0, ge=0)
    max_backoff: float = Field(default=10.0, ge=0)
    adaptive_ttl: bool = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> "FetchPolicy":
        return cls(
            ttl_seconds=settings.cache_ttl_hours * 60 * 60,
            max_retries=settings.fetch_max_retries,
            base_backoff=settings.fetch_base_backoff,
            max_backoff=settings.fetch_max_backoff,
            adaptive_ttl=settings.fetch_adaptive_ttl,
        )

    @property
    def attempts(self) -> int:
        return max(self.max_retries, 1)


class FetchWarning(BaseModel):
    kind: ErrorKind
    message: str


class FetchResult(BaseModel, Generic[PayloadT]):
    key: str
    payload: PayloadT
    source: ResultSource
    stale: bool = False
    warnings: list[FetchWarning] = Field(default_factory=list)
    entry: Optional[CacheEntrySummary] = None


# ── API bodies ────────────────────────────────────────────────────────────────


class ErrorBody(BaseModel):
    kind: ErrorKind
    message: str
    retryable: bool = False


class RemovedResponse(BaseModel):
    removed: int


class HealthResponse(BaseModel):
    status: str
    version: str
    cache_backend: str
    meta_token_configured: bool


class ReadinessResponse(BaseModel):
    ready: bool
    checks: dict[str, Any]
