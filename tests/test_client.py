"""
Unit tests for GitHub search client implementation.

These tests verify that:
1. GitHubSearchClient initializes properly
2. Search strings, sort mapping and pagination follow GitHub's rules
3. HTTP failures map onto the domain error taxonomy
4. Gateway errors are retried before giving up
"""

import asyncio

import pytest
import aiohttp
from unittest.mock import AsyncMock, Mock, patch
from repocache.client import (
    GitHubSearchClient,
    build_search_query,
    has_more,
    is_abuse_message,
    is_gateway_error,
    map_sort,
    page_from_payload,
)
from repocache.domain import (
    AuthenticationError,
    InvalidQuery,
    TransientUpstreamError,
    UpstreamFailure,
)


def mock_get(status, json_data=None, text="", headers=None):
    """Patch ClientSession.get to return a single canned response."""
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=json_data)
    mock_response.text = AsyncMock(return_value=text)
    mock_response.headers = headers or {}
    mock_response.request_info = Mock()
    mock_response.history = ()

    mock_context = AsyncMock()
    mock_context.__aenter__ = AsyncMock(return_value=mock_response)
    mock_context.__aexit__ = AsyncMock(return_value=None)
    return patch.object(aiohttp.ClientSession, "get", return_value=mock_context)


class TestSearchQueryBuilding:
    """Test search string composition and sort mapping."""

    def test_plain_query_gets_visibility_filters(self):
        assert build_search_query("react") == "react is:public archived:false"

    def test_language_and_difficulty(self):
        query = build_search_query("cli", language="Rust", difficulty="beginner")
        assert query == "cli language:Rust topic:beginner is:public archived:false"

    def test_language_with_spaces_is_quoted(self):
        query = build_search_query(language="Jupyter Notebook")
        assert query == 'language:"Jupyter Notebook" is:public archived:false'

    def test_all_means_no_filter(self):
        assert build_search_query("x", language="all", difficulty="all") == (
            "x is:public archived:false"
        )

    def test_qualifiers(self):
        query = build_search_query(qualifiers=["created:>2024-01-01"])
        assert query == "created:>2024-01-01 is:public archived:false"

    def test_min_stars(self):
        query = build_search_query("orm", language="Go", min_stars=250)
        assert query == "orm language:Go stars:>=250 is:public archived:false"

    @pytest.mark.parametrize(
        "sort,expected",
        [
            ("popular", ("stars", "desc")),
            ("new", ("created", "desc")),
            ("old", ("created", "asc")),
            ("growing", ("updated", "desc")),
            ("bogus", ("stars", "desc")),
            (None, ("stars", "desc")),
        ],
    )
    def test_map_sort(self, sort, expected):
        assert map_sort(sort) == expected

    def test_explicit_order_wins(self):
        assert map_sort("old", "desc") == ("created", "desc")


class TestPagination:
    def test_has_more_for_small_result_set(self):
        assert has_more(1, 20, 45, 20) is True
        assert has_more(2, 20, 45, 20) is True
        assert has_more(3, 20, 45, 5) is False

    def test_has_more_respects_result_cap(self):
        assert has_more(49, 20, 50000, 20) is True
        assert has_more(50, 20, 50000, 20) is False

    def test_short_page_ends_pagination(self):
        assert has_more(1, 20, 5000, 19) is False

    def test_page_from_payload_skips_malformed_items(self, make_github_item):
        payload = {"items": [make_github_item(github_id=1), {"id": 2}], "total_count": 2}

        page = page_from_payload(payload, page=1, per_page=20)

        assert [repo.github_id for repo in page.items] == [1]
        assert page.total_count == 2
        assert page.has_more is False

    def test_abuse_message_detection(self):
        assert is_abuse_message("You have exceeded a secondary rate limit")
        assert is_abuse_message("Abuse detection mechanism triggered")
        assert not is_abuse_message("Resource not accessible by integration")


class TestGitHubSearchClientInitialization:
    """Test GitHubSearchClient initialization and setup."""

    def test_client_initialization_with_token(self, github_client_token):
        client = GitHubSearchClient(token=github_client_token)

        assert client.headers["Authorization"] == f"Bearer {github_client_token}"
        assert client.headers["Accept"] == "application/vnd.github+json"
        assert client._session is None

    def test_client_initialization_without_token(self):
        with pytest.raises(ValueError, match="GitHub token is required"):
            GitHubSearchClient(token="")

        with pytest.raises(ValueError, match="GitHub token is required"):
            GitHubSearchClient(token=None)

    @pytest.mark.asyncio
    async def test_context_manager_session_creation(self, github_client_token):
        async with GitHubSearchClient(token=github_client_token) as client:
            assert isinstance(client._session, aiohttp.ClientSession)

    @pytest.mark.asyncio
    async def test_request_outside_context_manager(self, github_client_token):
        client = GitHubSearchClient(token=github_client_token)

        with pytest.raises(RuntimeError, match="async context manager"):
            await client._get_json("/rate_limit")


class TestGitHubSearchClientErrors:
    """Test HTTP status classification."""

    @pytest.mark.asyncio
    async def test_search_success(self, github_client_token, make_github_item):
        data = {"total_count": 1, "incomplete_results": False, "items": [make_github_item()]}

        async with GitHubSearchClient(token=github_client_token) as client:
            with mock_get(200, json_data=data) as get:
                payload = await client.search_raw("react is:public", "stars", "desc", 2, 150)

        assert payload == {"items": data["items"], "total_count": 1}
        params = get.call_args.kwargs["params"]
        assert params["per_page"] == 100
        assert params["page"] == 2
        assert get.call_args.args[0] == "https://api.github.com/search/repositories"

    @pytest.mark.asyncio
    async def test_search_returns_domain_page(self, github_client_token, make_github_item):
        data = {"total_count": 1, "items": [make_github_item(github_id=77)]}

        async with GitHubSearchClient(token=github_client_token) as client:
            with mock_get(200, json_data=data):
                page = await client.search("react")

        assert page.items[0].github_id == 77
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_abuse_detection_is_transient(self, github_client_token):
        async with GitHubSearchClient(token=github_client_token) as client:
            with mock_get(
                403,
                text="You have exceeded a secondary rate limit",
                headers={"Retry-After": "30"},
            ):
                with pytest.raises(TransientUpstreamError) as exc_info:
                    await client.search_raw("react")

        assert exc_info.value.retry_after == 30
        assert "abuse detection" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_abuse_without_retry_after_uses_default(self, github_client_token):
        async with GitHubSearchClient(token=github_client_token, abuse_retry_after=60) as client:
            with mock_get(429, text="slow down"):
                with pytest.raises(TransientUpstreamError) as exc_info:
                    await client.search_raw("react")

        assert exc_info.value.retry_after == 60

    @pytest.mark.asyncio
    async def test_plain_forbidden_is_upstream_failure(self, github_client_token):
        async with GitHubSearchClient(token=github_client_token) as client:
            with mock_get(403, text="Resource not accessible"):
                with pytest.raises(UpstreamFailure) as exc_info:
                    await client.search_raw("react")

        assert exc_info.value.status == 403

    @pytest.mark.asyncio
    async def test_authentication_error(self, github_client_token):
        async with GitHubSearchClient(token=github_client_token) as client:
            with mock_get(401) as get:
                with pytest.raises(AuthenticationError):
                    await client.search_raw("react")

        # not retried
        assert get.call_count == 1

    @pytest.mark.asyncio
    async def test_unprocessable_query(self, github_client_token):
        async with GitHubSearchClient(token=github_client_token) as client:
            with mock_get(422, text="Validation Failed"):
                with pytest.raises(InvalidQuery):
                    await client.search_raw("language:")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, github_client_token):
        client = GitHubSearchClient(token=github_client_token)

        with patch.object(
            client, "_get_json", new_callable=AsyncMock, side_effect=asyncio.TimeoutError
        ):
            with pytest.raises(TransientUpstreamError) as exc_info:
                await client.search_raw("react")

        assert exc_info.value.retry_after == 5

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_gateway_errors_are_retried(self, github_client_token):
        async with GitHubSearchClient(token=github_client_token) as client:
            with mock_get(502) as get, patch(
                "asyncio.sleep", new_callable=AsyncMock
            ):
                with pytest.raises(UpstreamFailure) as exc_info:
                    await client.search_raw("react")

        assert get.call_count == 3
        assert exc_info.value.status == 502

    @pytest.mark.asyncio
    async def test_connection_errors_are_not_retried(self, github_client_token):
        async with GitHubSearchClient(token=github_client_token) as client:
            with patch.object(
                aiohttp.ClientSession, "get", side_effect=aiohttp.ClientConnectionError("reset")
            ) as get, patch("asyncio.sleep", new_callable=AsyncMock):
                with pytest.raises(UpstreamFailure):
                    await client.search_raw("react")

        assert get.call_count == 1

    def test_only_gateway_statuses_count_as_gateway_errors(self):
        def response_error(status):
            return aiohttp.ClientResponseError(Mock(), (), status=status)

        assert is_gateway_error(response_error(502))
        assert is_gateway_error(response_error(504))
        assert not is_gateway_error(response_error(500))
        assert not is_gateway_error(aiohttp.ClientConnectionError("reset"))

    @pytest.mark.asyncio
    async def test_connection_test_failure(self, github_client_token):
        client = GitHubSearchClient(token=github_client_token)

        with patch.object(
            client, "_call", new_callable=AsyncMock, side_effect=AuthenticationError("bad")
        ):
            assert await client.test_connection() is False

    @pytest.mark.asyncio
    async def test_connection_test_success(self, github_client_token):
        client = GitHubSearchClient(token=github_client_token)

        with patch.object(
            client,
            "_call",
            new_callable=AsyncMock,
            return_value={"resources": {"search": {"remaining": 30}}},
        ):
            assert await client.test_connection() is True
