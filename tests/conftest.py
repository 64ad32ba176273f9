"""
tests/conftest.py – shared pytest configuration and fakes.

Integration tests (marked with @pytest.mark.integration) are skipped by
default. Pass --integration to opt in:

    pytest --integration tests/test_integration.py -v
"""
import os
from typing import Any, Callable, Optional

import pytest

# Must be set before adcache.config is imported by any test module.
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "10000")

from adcache.services.remote import RemoteDataSource  # noqa: E402
from adcache.services.store import InMemoryCacheStore, SQLiteCacheStore  # noqa: E402


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="Run integration tests that make real Meta API calls.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if not config.getoption("--integration"):
        skip = pytest.mark.skip(reason="Pass --integration to run this test.")
        for item in items:
            if item.get_closest_marker("integration"):
                item.add_marker(skip)


# ── Fakes ─────────────────────────────────────────────────────────────────────


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class ScriptedRemote(RemoteDataSource):
    """Plays back *outcomes* in order; exceptions are raised, anything else returned.

    The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes: Any, on_call: Optional[Callable[[int], None]] = None) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, str, str]] = []
        self.on_call = on_call

    def fetch(self, scope: str, range_descriptor: str, data_kind: str) -> Any:
        self.calls.append((scope, range_descriptor, data_kind))
        if self.on_call is not None:
            self.on_call(len(self.calls))
        index = min(len(self.calls), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, clock):
    if request.param == "memory":
        s = InMemoryCacheStore(clock=clock)
    else:
        s = SQLiteCacheStore(":memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def scripted_remote() -> type[ScriptedRemote]:
    return ScriptedRemote
