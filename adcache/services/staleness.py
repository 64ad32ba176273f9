"""
adcache/services/staleness.py – freshness decisions for cache entries.

`classify` is the only thing the fetch path needs. The tier helpers pick a TTL
from how settled the underlying ad data is: numbers for today keep moving,
numbers for a month that closed weeks ago do not.
"""
from __future__ import annotations

from datetime import date, timedelta
from typing import Optional

from adcache.errors import InvalidArgument
from adcache.models import CacheEntry, Freshness, FreshnessTier
from adcache.services.keys import parse_custom_range

TIER_TTL_SECONDS: dict[FreshnessTier, float] = {
    FreshnessTier.REALTIME: 3 * 60 * 60,
    FreshnessTier.NEARTIME: 6 * 60 * 60,
    FreshnessTier.STABILIZING: 24 * 60 * 60,
    FreshnessTier.FINALIZED: 7 * 24 * 60 * 60,
}

NEARTIME_MAX_AGE_DAYS = 3
STABILIZING_MAX_AGE_DAYS = 30

_OPEN_ENDED = frozenset(
    {
        "today",
        "this_month",
        "this_quarter",
        "this_year",
        "this_week_mon_today",
        "this_week_sun_today",
        "maximum",
        "all",
    }
)
_ENDS_YESTERDAY = frozenset(
    {"yesterday", "last_3d", "last_7d", "last_14d", "last_28d", "last_30d", "last_60d", "last_90d"}
)


def classify(entry: Optional[CacheEntry], now: int, ttl: Optional[float] = None) -> Freshness:
    """Classify *entry* at epoch-ms *now*.

    An entry is expired once ``now >= expires_at``. *ttl* is the caller's
    configured TTL; the write that produced the entry already folded it into
    ``expires_at``, so it does not move the deadline.
    """
    if entry is None:
        return Freshness.MISSING
    if now >= entry.expires_at:
        return Freshness.EXPIRED
    return Freshness.FRESH


# ── Freshness tiers ───────────────────────────────────────────────────────────


def range_end(range_descriptor: str, today: date) -> Optional[date]:
    """Last calendar day covered by *range_descriptor*, or None if unknown."""
    if range_descriptor in _OPEN_ENDED:
        return today
    if range_descriptor in _ENDS_YESTERDAY:
        return today - timedelta(days=1)
    if range_descriptor == "last_month":
        return today.replace(day=1) - timedelta(days=1)
    if range_descriptor == "last_quarter":
        first_month = 3 * ((today.month - 1) // 3) + 1
        return date(today.year, first_month, 1) - timedelta(days=1)
    if range_descriptor == "last_year":
        return date(today.year - 1, 12, 31)
    if range_descriptor == "last_week_mon_sun":
        return today - timedelta(days=today.weekday() + 1)
    if range_descriptor == "last_week_sun_sat":
        return today - timedelta(days=(today.weekday() + 1) % 7 + 1)
    try:
        custom = parse_custom_range(range_descriptor)
    except InvalidArgument:
        return None
    if custom is not None:
        return custom[1]
    return None


def freshness_tier(range_descriptor: str, today: date) -> Optional[FreshnessTier]:
    end = range_end(range_descriptor, today)
    if end is None:
        return None
    age = (today - end).days
    if age <= 0:
        return FreshnessTier.REALTIME
    if age <= NEARTIME_MAX_AGE_DAYS:
        return FreshnessTier.NEARTIME
    if age <= STABILIZING_MAX_AGE_DAYS:
        return FreshnessTier.STABILIZING
    return FreshnessTier.FINALIZED


def recommended_ttl(range_descriptor: str, today: date, default: float) -> float:
    """TTL in seconds for data covering *range_descriptor*; *default* if unrecognised."""
    tier = freshness_tier(range_descriptor, today)
    if tier is None:
        return default
    return TIER_TTL_SECONDS[tier]
