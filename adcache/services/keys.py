"""
adcache/services/keys.py – deterministic cache-key derivation.

A key is a readable prefix (scope, range, kind) followed by a SHA-256 digest of
the JSON-encoded triple. Hashing the JSON array rather than a joined string means
a separator appearing inside one of the inputs cannot make two triples collide.
"""
from __future__ import annotations

import hashlib
import json
import re
from datetime import date

from adcache.errors import InvalidArgument

DIGEST_LENGTH = 16

# Date presets understood by the Meta insights endpoint and the dashboard pickers.
DATE_PRESETS: frozenset[str] = frozenset(
    {
        "today",
        "yesterday",
        "this_month",
        "last_month",
        "this_quarter",
        "last_quarter",
        "this_year",
        "last_year",
        "last_3d",
        "last_7d",
        "last_14d",
        "last_28d",
        "last_30d",
        "last_60d",
        "last_90d",
        "last_week_mon_sun",
        "last_week_sun_sat",
        "this_week_mon_today",
        "this_week_sun_today",
        "maximum",
        "all",
    }
)

_CUSTOM_RANGE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.\.(\d{4}-\d{2}-\d{2})$")


def derive_key(scope: str, range_descriptor: str, data_kind: str) -> str:
    """Return the cache key for *(scope, range_descriptor, data_kind)*.

    Raises:
        InvalidArgument: if *scope* is empty.
    """
    if not scope or not scope.strip():
        raise InvalidArgument("scope must be a non-empty string")
    raw = json.dumps([scope, range_descriptor, data_kind], ensure_ascii=False)
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]
    return f"{scope}:{range_descriptor}:{data_kind}:{digest}"


def parse_custom_range(value: str) -> tuple[date, date] | None:
    """Return ``(since, until)`` for a ``YYYY-MM-DD..YYYY-MM-DD`` range, else None."""
    m = _CUSTOM_RANGE_RE.match(value)
    if not m:
        return None
    try:
        since = date.fromisoformat(m.group(1))
        until = date.fromisoformat(m.group(2))
    except ValueError as exc:
        raise InvalidArgument(f"invalid date in range {value!r}: {exc}") from exc
    if since > until:
        raise InvalidArgument(f"range {value!r} starts after it ends")
    return since, until


def normalize_range_descriptor(value: str) -> str:
    """Canonicalise a date preset or custom range so equal ranges share a key."""
    text = (value or "").strip()
    preset = text.lower()
    if preset in DATE_PRESETS:
        return preset
    if parse_custom_range(text) is not None:
        return text
    raise InvalidArgument(
        f"unknown range descriptor {value!r}; "
        "expected a date preset (e.g. 'last_7d') or 'YYYY-MM-DD..YYYY-MM-DD'"
    )
