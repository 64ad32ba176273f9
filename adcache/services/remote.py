"""
adcache/services/remote.py – the remote ads-data collaborator.

The coordinator only depends on `RemoteDataSource.fetch` and on
`is_transient` to decide what to retry. `MetaInsightsSource` is the concrete
source the service runs against: a thin Graph API insights client that
follows pagination and maps HTTP failures onto the error taxonomy.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from adcache.errors import AuthError, CacheError, TransientError, ValidationError
from adcache.models import ErrorKind
from adcache.services.keys import DATE_PRESETS, parse_custom_range

logger = logging.getLogger(__name__)


class RemoteDataSource(ABC):
    @abstractmethod
    def fetch(self, scope: str, range_descriptor: str, data_kind: str) -> Any:
        """Return a JSON-serialisable result or raise.

        Raise AuthError / ValidationError for failures that must not be retried;
        anything else is treated as transient.
        """


# ── Error classification ──────────────────────────────────────────────────────


def classify_remote_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised by a remote source onto an ErrorKind.

    Only explicitly tagged errors are non-retryable; unknown failures default
    to TRANSIENT.
    """
    if isinstance(exc, CacheError) and exc.kind in {
        ErrorKind.AUTH_ERROR,
        ErrorKind.VALIDATION_ERROR,
        ErrorKind.CANCELLED,
    }:
        return exc.kind
    return ErrorKind.TRANSIENT


def is_transient(exc: BaseException) -> bool:
    """Return True for errors that are safe to retry."""
    return classify_remote_error(exc) is ErrorKind.TRANSIENT


# ── Meta Graph API insights ───────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.facebook.com"

# Graph error codes signalling throttling (app, user, account and API-level limits).
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613, 80000, 80004})
TOKEN_ERROR_CODE = 190

DATA_KIND_LEVELS: dict[str, str] = {
    "insights": "ad",
    "ad_insights": "ad",
    "adset_insights": "adset",
    "campaign_insights": "campaign",
    "account_insights": "account",
}

DEFAULT_FIELDS: tuple[str, ...] = (
    "ad_id",
    "ad_name",
    "adset_id",
    "campaign_id",
    "campaign_name",
    "impressions",
    "reach",
    "frequency",
    "clicks",
    "ctr",
    "cpm",
    "spend",
    "actions",
    "date_start",
    "date_stop",
)


class MetaInsightsSource(RemoteDataSource):
    """Daily insights for one ad account, all pages concatenated."""

    def __init__(
        self,
        access_token: str,
        *,
        api_version: str = "v23.0",
        timeout: float = 30.0,
        page_limit: int = 500,
        max_pages: int = 100,
        fields: tuple[str, ...] = DEFAULT_FIELDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = f"{GRAPH_BASE_URL}/{api_version}"
        self._timeout = timeout
        self._page_limit = page_limit
        self._max_pages = max_pages
        self._fields = fields
        self._session = session or requests.Session()

    def fetch(self, scope: str, range_descriptor: str, data_kind: str) -> list[dict[str, Any]]:
        if not self._access_token:
            raise AuthError("META_ACCESS_TOKEN is not configured.")
        level = DATA_KIND_LEVELS.get(data_kind)
        if level is None:
            raise ValidationError(
                f"unsupported data kind {data_kind!r}; expected one of {sorted(DATA_KIND_LEVELS)}"
            )

        account = scope if scope.startswith("act_") else f"act_{scope}"
        url: Optional[str] = f"{self._base_url}/{account}/insights"
        params: Optional[dict[str, Any]] = {
            "access_token": self._access_token,
            "fields": ",".join(self._fields),
            "level": level,
            "time_increment": 1,
            "limit": self._page_limit,
            **self._range_params(range_descriptor),
        }

        rows: list[dict[str, Any]] = []
        pages = 0
        while url and pages < self._max_pages:
            body = self._get(url, params)
            rows.extend(body.get("data") or [])
            pages += 1
            # `next` already carries every query parameter, token included.
            url = (body.get("paging") or {}).get("next")
            params = None

        if url:
            logger.warning(
                "Meta insights pagination truncated",
                extra={"scope": scope, "pages": pages, "rows": len(rows)},
            )
        logger.debug(
            "Meta insights fetched",
            extra={"scope": scope, "range": range_descriptor, "pages": pages, "rows": len(rows)},
        )
        return rows

    # ── Internals ─────────────────────────────────────────────────────────────

    @staticmethod
    def _range_params(range_descriptor: str) -> dict[str, str]:
        custom = parse_custom_range(range_descriptor)
        if custom is not None:
            since, until = custom
            return {"time_range": json.dumps({"since": since.isoformat(), "until": until.isoformat()})}
        if range_descriptor == "all":
            return {"date_preset": "maximum"}
        if range_descriptor in DATE_PRESETS:
            return {"date_preset": range_descriptor}
        raise ValidationError(f"unsupported range descriptor {range_descriptor!r}")

    def _get(self, url: str, params: Optional[dict[str, Any]]) -> dict[str, Any]:
        try:
            resp = self._session.get(url, params=params, timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientError(f"Meta API unreachable: {exc}", cause=exc) from exc
        _raise_for_response(resp)
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientError("Meta API returned a non-JSON body", cause=exc) from exc


def _raise_for_response(resp: requests.Response) -> None:
    status = resp.status_code
    if status < 400:
        return
    try:
        error = (resp.json() or {}).get("error") or {}
    except ValueError:
        error = {}
    code = error.get("code")
    message = f"Meta API error (HTTP {status}): {error.get('message') or resp.reason}"

    if status == 429 or status >= 500 or code in RATE_LIMIT_CODES:
        raise TransientError(message)
    if status in (401, 403) or code == TOKEN_ERROR_CODE:
        raise AuthError(message)
    raise ValidationError(message)
