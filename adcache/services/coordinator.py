"""
adcache/services/coordinator.py – read-through cache in front of a rate-limited
remote ads API.

Flow for one `fetch` call
─────────────────────────
1. Derive the key from (scope, range, kind).
2. Unless force_refresh: read the entry and classify it. FRESH → touch and return.
3. Otherwise call the remote with tenacity-driven exponential backoff. Only
   transient failures are retried; AuthError / ValidationError surface after
   the first attempt.
4. Success → upsert and return. Exhausted retries → serve the previous entry
   marked stale, or raise FetchFailed.

Storage failures never fail a fetch: a failed read is a miss, a failed write
is reported as a warning on the result. Cancellation (a threading.Event set by
the caller) is honoured before each attempt, during backoff and before the
write, and always leaves the store untouched.

Concurrent fetches of the same key are not coalesced; the store resolves
racing writes last-writer-wins.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import date
from typing import Any, Callable, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from adcache.errors import Cancelled, FetchFailed, StorageUnavailable
from adcache.models import (
    CacheEntry,
    ErrorKind,
    FetchOptions,
    FetchPolicy,
    FetchResult,
    FetchWarning,
    Freshness,
    ResultSource,
)
from adcache.services.keys import derive_key
from adcache.services.remote import RemoteDataSource, is_transient
from adcache.services.staleness import classify, recommended_ttl
from adcache.services.store import CacheStore, Clock, now_ms

logger = logging.getLogger(__name__)


class FetchCoordinator:
    """The only component allowed to call the remote data source."""

    def __init__(
        self,
        store: CacheStore,
        remote: RemoteDataSource,
        policy: Optional[FetchPolicy] = None,
        *,
        clock: Clock = now_ms,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._remote = remote
        self._policy = policy or FetchPolicy()
        self._clock = clock
        self._today = today

    @property
    def policy(self) -> FetchPolicy:
        return self._policy

    # ── Public API ────────────────────────────────────────────────────────────

    def fetch(
        self,
        scope: str,
        range_descriptor: str,
        data_kind: str,
        options: Optional[FetchOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> FetchResult[Any]:
        """Return the payload for *(scope, range_descriptor, data_kind)*.

        Raises:
            InvalidArgument: empty scope.
            AuthError / ValidationError: the remote rejected the request.
            FetchFailed: retries exhausted and nothing cached to fall back on.
            Cancelled: *cancel* was set before the result was committed.
        """
        options = options or FetchOptions()
        key = derive_key(scope, range_descriptor, data_kind)
        ttl = self._ttl_for(range_descriptor)
        warnings: list[FetchWarning] = []

        cached: Optional[CacheEntry] = None
        if not options.force_refresh:
            cached = self._read(key, warnings)
            if classify(cached, self._clock(), ttl) is Freshness.FRESH:
                self._touch(key, warnings)
                logger.debug("Cache hit", extra={"key": key})
                return FetchResult(
                    key=key,
                    payload=cached.payload,
                    source=ResultSource.CACHE,
                    warnings=warnings,
                    entry=cached.summary(),
                )

        try:
            result = self._fetch_remote(scope, range_descriptor, data_kind, cancel)
        except Exception as exc:
            if not is_transient(exc):
                raise
            # Retries exhausted on a transient failure.
            fallback = self._read(key, warnings) if options.force_refresh else cached
            if fallback is None:
                logger.error("Remote fetch failed, nothing cached", extra={"key": key, "error": str(exc)})
                raise FetchFailed(
                    f"remote fetch for {key!r} failed after {self._policy.attempts} attempt(s): {exc}",
                    cause=exc,
                ) from exc
            logger.warning("Remote fetch failed, serving stale entry", extra={"key": key, "error": str(exc)})
            warnings.append(
                FetchWarning(
                    kind=ErrorKind.FETCH_FAILED,
                    message=f"remote fetch failed; serving cached data from {fallback.updated_at}: {exc}",
                )
            )
            return FetchResult(
                key=key,
                payload=fallback.payload,
                source=ResultSource.STALE,
                stale=True,
                warnings=warnings,
                entry=fallback.summary(),
            )

        if cancel is not None and cancel.is_set():
            raise Cancelled("fetch cancelled before the result was cached")

        entry = None
        try:
            entry = self._store.upsert(key, scope, range_descriptor, result, ttl).summary()
        except StorageUnavailable as exc:
            logger.warning("Cache write failed", extra={"key": key, "error": str(exc)})
            warnings.append(FetchWarning(kind=ErrorKind.STORAGE_UNAVAILABLE, message=str(exc)))

        return FetchResult(
            key=key,
            payload=result,
            source=ResultSource.REMOTE,
            warnings=warnings,
            entry=entry,
        )

    def invalidate(self, scope: str, range_descriptor: str, data_kind: str) -> bool:
        """Drop the entry for the triple; True if one existed."""
        return self._store.remove(derive_key(scope, range_descriptor, data_kind))

    # ── Internals ─────────────────────────────────────────────────────────────

    def _ttl_for(self, range_descriptor: str) -> float:
        if not self._policy.adaptive_ttl:
            return self._policy.ttl_seconds
        return recommended_ttl(range_descriptor, self._today(), self._policy.ttl_seconds)

    def _read(self, key: str, warnings: list[FetchWarning]) -> Optional[CacheEntry]:
        try:
            return self._store.get(key)
        except StorageUnavailable as exc:
            logger.warning("Cache read failed, treating as miss", extra={"key": key, "error": str(exc)})
            warnings.append(FetchWarning(kind=ErrorKind.STORAGE_UNAVAILABLE, message=str(exc)))
            return None

    def _touch(self, key: str, warnings: list[FetchWarning]) -> None:
        try:
            self._store.touch(key)
        except StorageUnavailable as exc:
            logger.warning("Cache touch failed", extra={"key": key, "error": str(exc)})
            warnings.append(FetchWarning(kind=ErrorKind.STORAGE_UNAVAILABLE, message=str(exc)))

    def _fetch_remote(
        self,
        scope: str,
        range_descriptor: str,
        data_kind: str,
        cancel: Optional[threading.Event],
    ) -> Any:
        """Executes the remote call with exponential-backoff retries."""

        def _attempt() -> Any:
            if cancel is not None and cancel.is_set():
                raise Cancelled("fetch cancelled before the remote call")
            return self._remote.fetch(scope, range_descriptor, data_kind)

        retrying = Retrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self._policy.attempts),
            wait=wait_exponential(
                multiplier=self._policy.base_backoff,
                max=self._policy.max_backoff,
            ),
            sleep=_cancellable_sleep(cancel),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(_attempt)


def _cancellable_sleep(cancel: Optional[threading.Event]) -> Callable[[float], None]:
    if cancel is None:
        return time.sleep

    def _sleep(seconds: float) -> None:
        if cancel.wait(seconds):
            raise Cancelled("fetch cancelled during backoff")

    return _sleep
