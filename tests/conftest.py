from __future__ import annotations

from pathlib import Path

import pytest

from modcrawler.cache import ModCache
from tests._fixtures.github import FakeClock, FakeGitHub


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def github() -> FakeGitHub:
    """In-memory GitHub REST API used in place of a requests session."""
    return FakeGitHub()


@pytest.fixture
def cache(tmp_path: Path):
    store = ModCache(tmp_path / "cache")
    yield store
    store.close()
