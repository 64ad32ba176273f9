"""
tests/test_models.py – unit tests for Pydantic v2 schemas.
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from adcache.config import Settings
from adcache.errors import AuthError, EntryNotFound, FetchFailed, InvalidArgument
from adcache.models import CacheEntry, ErrorKind, FetchPolicy, FetchResult, ResultSource


def _entry(**overrides) -> dict:
    base = {
        "key": "act_1:today:insights:0123456789abcdef",
        "scope": "act_1",
        "range_descriptor": "today",
        "payload": {"rows": []},
        "created_at": 1000,
        "updated_at": 1000,
        "last_accessed_at": 1000,
        "expires_at": 2000,
        "access_count": 1,
        "size_bytes": 11,
        "checksum": "abc",
    }
    base.update(overrides)
    return base


class TestCacheEntry:
    def test_valid(self):
        entry = CacheEntry.model_validate(_entry())
        assert entry.summary().model_dump().keys() == set(_entry()) - {"payload"}

    @pytest.mark.parametrize(
        "overrides",
        [
            {"expires_at": 999},
            {"updated_at": 999},
            {"last_accessed_at": 999},
            {"access_count": 0},
            {"size_bytes": -1},
        ],
    )
    def test_invariants_enforced(self, overrides):
        with pytest.raises(ValidationError):
            CacheEntry.model_validate(_entry(**overrides))


class TestFetchPolicy:
    def test_defaults(self):
        policy = FetchPolicy()
        assert policy.ttl_seconds == 24 * 60 * 60
        assert policy.max_retries == 3
        assert (policy.base_backoff, policy.max_backoff) == (1.0, 10.0)
        assert policy.attempts == 3

    def test_attempts_at_least_one(self):
        assert FetchPolicy(max_retries=0).attempts == 1

    def test_negative_values_rejected(self):
        with pytest.raises(ValidationError):
            FetchPolicy(max_retries=-1)
        with pytest.raises(ValidationError):
            FetchPolicy(ttl_seconds=-5)

    def test_from_settings(self):
        settings = Settings(
            cache_ttl_hours=2,
            fetch_max_retries=5,
            fetch_base_backoff=0.5,
            fetch_max_backoff=4,
            fetch_adaptive_ttl=True,
        )
        policy = FetchPolicy.from_settings(settings)
        assert policy == FetchPolicy(
            ttl_seconds=7200, max_retries=5, base_backoff=0.5, max_backoff=4, adaptive_ttl=True
        )


class TestFetchResult:
    def test_parametrised_payload(self):
        result = FetchResult[list[int]](key="k", payload=[1, 2], source=ResultSource.REMOTE)
        assert result.payload == [1, 2]
        assert result.stale is False
        assert result.model_dump(mode="json")["source"] == "remote"


class TestErrors:
    def test_to_dict(self):
        assert AuthError("token expired").to_dict() == {
            "kind": "auth_error",
            "message": "token expired",
            "retryable": False,
        }

    def test_fetch_failed_keeps_cause(self):
        cause = TimeoutError("slow")
        err = FetchFailed("gave up", cause=cause)
        assert err.__cause__ is cause
        assert err.retryable is True

    def test_invalid_argument_is_value_error(self):
        assert issubclass(EntryNotFound, InvalidArgument)
        assert issubclass(InvalidArgument, ValueError)
        assert InvalidArgument("x").kind is ErrorKind.INVALID_ARGUMENT
