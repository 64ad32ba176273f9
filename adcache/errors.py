"""
adcache/errors.py – error taxonomy shared by the store, the remote sources and
the fetch coordinator.

Every error carries a machine-readable ``kind`` so callers (and the HTTP layer)
can decide whether to offer a retry.
"""
from __future__ import annotations

from typing import Any, Optional

from adcache.models import ErrorKind


class CacheError(RuntimeError):
    """Base class for all adcache errors."""

    kind: ErrorKind = ErrorKind.FETCH_FAILED
    retryable: bool = False

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": str(self), "retryable": self.retryable}


class InvalidArgument(CacheError, ValueError):
    kind = ErrorKind.INVALID_ARGUMENT


class EntryNotFound(InvalidArgument):
    """Raised by maintenance operations addressing a key that does not exist."""


class StorageUnavailable(CacheError):
    kind = ErrorKind.STORAGE_UNAVAILABLE
    retryable = True


class TransientError(CacheError):
    """Retryable remote failure (network error, timeout, rate limit, 5xx)."""

    kind = ErrorKind.TRANSIENT
    retryable = True


class AuthError(CacheError):
    kind = ErrorKind.AUTH_ERROR


class ValidationError(CacheError):
    """The remote rejected the request as malformed. Never retried."""

    kind = ErrorKind.VALIDATION_ERROR


class FetchFailed(CacheError):
    """Retries exhausted and no stale entry to fall back on."""

    kind = ErrorKind.FETCH_FAILED
    retryable = True


class Cancelled(CacheError):
    """The caller cancelled the fetch; the cache was left untouched."""

    kind = ErrorKind.CANCELLED
