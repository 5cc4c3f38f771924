"""
pytest configuration for repocache tests.

This file configures:
1. Test markers for different test types
2. Fixtures for raw GitHub search payloads
3. Mock store and client configurations
"""

import pytest
from unittest.mock import AsyncMock, Mock

from repocache.cache import FallbackCache
from repocache.domain import UpsertReport
from repocache.models import StorePage


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture
def make_github_item():
    """Factory for GitHub REST search items."""

    def _make(github_id=123456, name="test-repo", owner="test-user", **overrides):
        item = {
            "id": github_id,
            "name": name,
            "full_name": f"{owner}/{name}",
            "html_url": f"https://github.com/{owner}/{name}",
            "clone_url": f"https://github.com/{owner}/{name}.git",
            "description": "A test repository",
            "language": "Python",
            "owner": {
                "login": owner,
                "avatar_url": f"https://avatars.githubusercontent.com/{owner}",
            },
            "stargazers_count": 100,
            "forks_count": 10,
            "open_issues_count": 3,
            "watchers_count": 100,
            "size": 2048,
            "topics": ["cli", "python"],
            "private": False,
            "fork": False,
            "archived": False,
            "disabled": False,
            "created_at": "2023-01-01T00:00:00Z",
            "updated_at": "2023-12-01T10:30:00Z",
            "pushed_at": "2023-12-01T10:00:00Z",
        }
        item.update(overrides)
        return item

    return _make


@pytest.fixture
def search_payload(make_github_item):
    """Factory for /search/repositories payloads."""

    def _payload(count=2, total_count=None, start_id=1):
        items = [
            make_github_item(github_id=start_id + i, name=f"repo-{start_id + i}")
            for i in range(count)
        ]
        return {"items": items, "total_count": count if total_count is None else total_count}

    return _payload


@pytest.fixture
def mock_store():
    """Repository store with an empty cache and successful writes."""
    store = Mock()
    store.query = AsyncMock(return_value=StorePage())
    store.upsert_many = AsyncMock(return_value=UpsertReport(succeeded=1))
    store.is_stale = AsyncMock(return_value=False)
    store.distinct_languages = AsyncMock(return_value=[])
    store.cache_stats = AsyncMock(
        return_value={"repositories": 0, "users": 0, "topics": 0, "favorites": 0}
    )
    return store


@pytest.fixture
def mock_client():
    """GitHub search client that returns nothing unless told otherwise."""
    client = Mock()
    client.search_raw = AsyncMock(return_value={"items": [], "total_count": 0})
    client.get_repository = AsyncMock()
    client.list_root_contents = AsyncMock(return_value=[])
    client.list_languages = AsyncMock(return_value={})
    return client


@pytest.fixture
def memory_cache():
    return FallbackCache(primary=None)


@pytest.fixture
def github_client_token():
    """Fixture providing a test GitHub token."""
    return "test_token_12345"
