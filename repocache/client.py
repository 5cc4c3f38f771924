import aiohttp
import asyncio
import logging
import time
from typing import Optional, List, Dict, Any, Iterable, Tuple
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

from .config import settings
from .domain import (
    SearchPage,
    transform_github_response,
    TransientUpstreamError,
    AuthenticationError,
    InvalidQuery,
    UpstreamFailure,
    ApiError,
)

logger = logging.getLogger(__name__)

# GitHub search never addresses more than this many results per query
SEARCH_RESULT_CAP = 1000
MAX_PER_PAGE = 100
TIMEOUT_RETRY_AFTER = 5

GATEWAY_STATUSES = frozenset({502, 503, 504})

SORT_MAP = {
    "popular": ("stars", "desc"),
    "new": ("created", "desc"),
    "old": ("created", "asc"),
    "growing": ("updated", "desc"),
}

ABUSE_MARKERS = ("abuse", "secondary rate limit", "please wait")


def build_search_query(
    q: str = "",
    language: str = "all",
    difficulty: str = "all",
    qualifiers: Iterable[str] = (),
    min_stars: Optional[int] = None,
) -> str:
    """Compose a GitHub search string; public, non-archived filters always apply."""
    parts: List[str] = []
    if q:
        parts.append(q)
    if language and language != "all":
        parts.append(f'language:"{language}"' if " " in language else f"language:{language}")
    if difficulty and difficulty != "all":
        parts.append(f"topic:{difficulty}")
    if min_stars:
        parts.append(f"stars:>={min_stars}")
    parts.extend(qualifiers)
    parts.append("is:public")
    parts.append("archived:false")
    return " ".join(parts)


def map_sort(sort: Optional[str], order: Optional[str] = None) -> Tuple[str, str]:
    """Map a caller sort name to a (field, order) pair; unknown names sort by stars."""
    field, default_order = SORT_MAP.get(sort or "", ("stars", "desc"))
    return field, order or default_order


def has_more(page: int, per_page: int, total_count: int, returned: int) -> bool:
    """Whether another page exists, given GitHub's hard cap on addressable results."""
    if returned < per_page:
        return False
    return page * per_page < min(SEARCH_RESULT_CAP, total_count)


def is_gateway_error(error: BaseException) -> bool:
    return (
        isinstance(error, aiohttp.ClientResponseError) and error.status in GATEWAY_STATUSES
    )


def is_abuse_message(message: str) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in ABUSE_MARKERS)


def page_from_payload(payload: Dict[str, Any], page: int, per_page: int) -> SearchPage:
    """Convert a raw search payload into a SearchPage, skipping malformed items."""
    raw_items = payload.get("items") or []
    total_count = payload.get("total_count") or 0

    repositories = []
    for item in raw_items:
        try:
            repositories.append(transform_github_response(item))
        except ValueError as e:
            logger.warning(f"⚠️ Skipping malformed search item: {e}")

    return SearchPage(
        items=repositories,
        total_count=total_count,
        has_more=has_more(page, per_page, total_count, len(raw_items)),
    )


class GitHubSearchClient:
    """
    GitHub REST API client for repository search.

    Translates HTTP-level failures into the domain error taxonomy: abuse and
    rate-limit responses become TransientUpstreamError with a retry hint,
    everything else becomes UpstreamFailure. Gateway errors are retried with
    tenacity before giving up.
    """

    def __init__(
        self,
        token: Optional[str] = settings.github_token,
        base_url: str = settings.github_api_url,
        timeout: float = settings.upstream_timeout_seconds,
        abuse_retry_after: int = settings.abuse_retry_after,
    ):
        if not token:
            raise ValueError("GitHub token is required and must be valid")

        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "repocache/1.0",
        }
        self.timeout = timeout
        self.abuse_retry_after = abuse_retry_after
        self._connector = None
        self._session = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._connector = aiohttp.TCPConnector(
            limit=50,
            limit_per_host=20,
            keepalive_timeout=30,
            enable_cleanup_closed=True,
        )
        self._session = aiohttp.ClientSession(
            connector=self._connector,
            headers=self.headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._session:
            await self._session.close()
        if self._connector:
            await self._connector.close()

    async def test_connection(self) -> bool:
        """Check the token against the rate limit endpoint."""
        try:
            data = await self._call("/rate_limit")
            remaining = data["resources"]["search"]["remaining"]
            logger.info("✅ GitHub API connection successful")
            logger.info(f"🚦 Search rate limit remaining: {remaining}")
            return True
        except Exception as e:
            logger.error(f"❌ GitHub API connection test failed: {e}")
            return False

    def _retry_after(self, headers, default: float) -> float:
        value = headers.get("Retry-After")
        if value:
            try:
                return float(value)
            except ValueError:
                pass
        return default

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(is_gateway_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a GitHub endpoint and decode JSON, classifying error statuses."""
        if not self._session:
            raise RuntimeError("Client must be used as async context manager")

        try:
            async with self._session.get(f"{self.base_url}{path}", params=params) as resp:
                if resp.status == 401:
                    raise AuthenticationError("GitHub API authentication failed", status=401)

                if resp.status in (403, 429):
                    message = await resp.text()
                    if resp.status == 429 or is_abuse_message(message):
                        retry_after = self._retry_after(resp.headers, self.abuse_retry_after)
                        logger.warning(
                            f"⏱️ GitHub abuse detection triggered, retry after {retry_after:.0f}s"
                        )
                        raise TransientUpstreamError(
                            "GitHub abuse detection triggered. Please wait and try again.",
                            retry_after=retry_after,
                        )
                    if resp.headers.get("X-RateLimit-Remaining") == "0" or "rate limit" in message.lower():
                        reset = float(resp.headers.get("X-RateLimit-Reset", 0) or 0)
                        retry_after = max(reset - time.time(), 1) if reset else self.abuse_retry_after
                        logger.warning(f"⏱️ GitHub rate limit hit, resets in {retry_after:.0f}s")
                        raise TransientUpstreamError(
                            "GitHub API rate limit exceeded", retry_after=retry_after
                        )
                    raise UpstreamFailure(f"GitHub API forbidden: {message[:200]}", status=403)

                if resp.status == 422:
                    message = await resp.text()
                    raise InvalidQuery(f"GitHub rejected the search query: {message[:200]}")

                # Gateway errors are worth retrying
                if resp.status in GATEWAY_STATUSES:
                    raise aiohttp.ClientResponseError(
                        resp.request_info,
                        resp.history,
                        status=resp.status,
                        message=f"Server error: {resp.status}",
                    )

                if resp.status >= 400:
                    raise UpstreamFailure(f"GitHub API error: {resp.status}", status=resp.status)

                return await resp.json()
        except aiohttp.ClientError as e:
            logger.warning(f"🔁 Network error: {e}")
            raise

    async def _call(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """_get_json with transport errors mapped onto domain exceptions."""
        try:
            return await self._get_json(path, params)
        except ApiError:
            raise
        except asyncio.TimeoutError as e:
            raise TransientUpstreamError(
                f"GitHub request to {path} timed out", retry_after=TIMEOUT_RETRY_AFTER
            ) from e
        except aiohttp.ClientError as e:
            raise UpstreamFailure(
                f"GitHub request to {path} failed: {e}", status=getattr(e, "status", None)
            ) from e

    async def search_raw(
        self,
        query: str,
        sort: str = "stars",
        order: str = "desc",
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        """Run a repository search and return the JSON-safe payload."""
        params = {
            "q": query,
            "sort": sort,
            "order": order,
            "per_page": min(per_page, MAX_PER_PAGE),
            "page": page,
        }
        data = await self._call("/search/repositories", params)

        items = data.get("items") or []
        logger.info(f"🔍 Query '{query}' page {page} returned {len(items)} repositories")
        return {"items": items, "total_count": data.get("total_count", 0)}

    async def search(
        self,
        query: str,
        sort: str = "stars",
        order: str = "desc",
        page: int = 1,
        per_page: int = 20,
    ) -> SearchPage:
        payload = await self.search_raw(query, sort, order, page, per_page)
        return page_from_payload(payload, page, min(per_page, MAX_PER_PAGE))

    async def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        return await self._call(f"/repos/{owner}/{repo}")

    async def list_root_contents(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        data = await self._call(f"/repos/{owner}/{repo}/contents/")
        return data if isinstance(data, list) else []

    async def list_languages(self, owner: str, repo: str) -> Dict[str, int]:
        return await self._call(f"/repos/{owner}/{repo}/languages")
