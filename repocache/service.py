"""
Cache orchestration for repository discovery.

``GitHubCacheService`` decides, per request, whether the Postgres store can
answer on its own or whether GitHub has to be asked. Upstream calls go
through the rate limiter, the response cache and the request coalescer, and
their results are written back to the store in the background.
"""

import asyncio
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import asyncpg

from .cache import KeyValueStore, create_cache
from .client import (
    MAX_PER_PAGE,
    GitHubSearchClient,
    build_search_query,
    map_sort,
    page_from_payload,
)
from .coalesce import RequestCoalescer
from .config import Settings, settings as default_settings
from .domain import (
    ApiError,
    InvalidQuery,
    Repository,
    SearchPage,
    UpsertReport,
    transform_github_response,
)
from .models import (
    CacheStats,
    FeaturedResult,
    RepoRecord,
    RepoSummary,
    RepositoryOverview,
    SearchRequest,
    SearchResult,
)
from .ratelimit import FixedWindowRateLimiter
from .repository import RepositoryFilters, RepositoryStore
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

# (narrow, wide) creation windows in days
TRENDING_WINDOWS = {
    "day": (1, 30),
    "week": (7, 30),
    "month": (30, 365),
    "year": (365, 730),
}
TRENDING_MIN_RESULTS = 10
TRENDING_FALLBACK_QUALIFIER = "stars:>1000"

FEATURED_SORTS = {
    "stars": lambda repo: -repo.stars,
    "forks": lambda repo: -repo.forks,
    "updated": lambda repo: (
        repo.updated_at is None,
        -repo.updated_at.timestamp() if repo.updated_at else 0,
    ),
    "name": lambda repo: repo.name.casefold(),
}

STORE_UNAVAILABLE_ERRORS = (
    asyncpg.exceptions.PostgresError,
    asyncpg.exceptions.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)

REPO_URL_PATTERN = re.compile(r"github\.com/([^/\s]+)/([^/\s#?]+)", re.IGNORECASE)


def parse_repo_url(repo_url: str) -> Tuple[str, str]:
    """Extract (owner, repo) from a GitHub URL or raise InvalidQuery."""
    match = REPO_URL_PATTERN.search(repo_url or "")
    if not match:
        raise InvalidQuery(f"Invalid GitHub URL: {repo_url!r}")
    owner, repo = match.group(1), match.group(2)
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not repo:
        raise InvalidQuery(f"Invalid GitHub URL: {repo_url!r}")
    return owner, repo


def search_cache_key(query: str, sort: str, order: str, page: int, per_page: int) -> str:
    return f"search:{query}:{sort}:{order}:{per_page}:{page}"


class GitHubCacheService:
    """
    Serve repository listings from the store when possible, from GitHub otherwise.

    A non-empty store result is always trusted, however old; GitHub is only
    asked on a store miss, on an explicit refresh, or for trending views.
    Instances own their limiter, coalescer and background task set, so one
    service should be built per process and shared by every handler.
    ``client`` may be None for store-only use (languages, stats, favorites).
    """

    def __init__(
        self,
        store: RepositoryStore,
        client: Optional[GitHubSearchClient],
        cache: Optional[KeyValueStore] = None,
        limiter: Optional[FixedWindowRateLimiter] = None,
        coalescer: Optional[RequestCoalescer] = None,
        tasks: Optional[BackgroundTasks] = None,
        config: Settings = default_settings,
        today: Optional[Callable[[], date]] = None,
    ):
        self.store = store
        self.client = client
        self.config = config
        self._owns_cache = cache is None
        self.cache = cache if cache is not None else create_cache(config)
        self.limiter = limiter or FixedWindowRateLimiter(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
        )
        self.coalescer = coalescer or RequestCoalescer()
        self.tasks = tasks or BackgroundTasks()
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    async def aclose(self) -> None:
        """Wait for background persistence, then close the cache if this service built it."""
        await self.tasks.drain()
        if self._owns_cache:
            await self.cache.close()

    # -- search -------------------------------------------------------------

    async def fetch_repositories(
        self, request: SearchRequest, client_id: str = "anonymous"
    ) -> SearchResult:
        """
        Answer a search from the store, falling through to GitHub on a miss.

        Raises RateLimitExceeded or TransientUpstreamError when the upstream
        path is blocked, so callers can tell "no results" from "try later".
        """
        sort, order = map_sort(request.sort, request.order)
        filters = RepositoryFilters(
            query=request.q,
            language=request.language,
            difficulty=request.difficulty,
            sort=sort,
            order=order,
            page=request.page,
            per_page=request.per_page,
            min_stars=request.min_stars,
        )

        try:
            stored = await self.store.query(filters)
        except STORE_UNAVAILABLE_ERRORS as e:
            logger.warning(f"⚠️ Repository store unavailable, falling back to GitHub: {e}")
        else:
            if stored.items:
                if self.config.background_refresh_on_stale and request.q:
                    self.tasks.spawn(
                        self._refresh_if_stale(request), name=f"stale-refresh:{request.q}"
                    )
                return SearchResult(
                    items=[RepoSummary.from_record(record) for record in stored.items],
                    total_count=stored.total_count,
                    served_from="store",
                    has_more=stored.has_more,
                )
            logger.info(f"📭 Store miss for '{request.q}', asking GitHub")

        self.limiter.check(client_id)
        return await self._search_upstream(request, ttl=self.config.search_cache_ttl)

    async def refresh(
        self,
        query: str,
        page: int = 1,
        per_page: int = 20,
        client_id: str = "anonymous",
    ) -> SearchResult:
        """Re-fetch a query from GitHub regardless of what the store holds."""
        if not query or not query.strip():
            raise InvalidQuery("Query is required")
        request = SearchRequest.from_params({"q": query, "page": page, "perPage": per_page})

        self.limiter.check(client_id)
        logger.info(f"🔄 Force refreshing '{request.q}' from GitHub")
        return await self._search_upstream(
            request, ttl=self.config.search_cache_ttl, read_cache=False
        )

    async def trending(
        self,
        period: str = "day",
        language: str = "all",
        page: int = 1,
        per_page: int = 20,
        client_id: str = "anonymous",
    ) -> SearchResult:
        """
        Most-starred recent repositories, widening the window until enough show up.

        Tiers run narrowest first: the narrow creation window, then the wide
        window when the narrow one has fewer than ten matches, then an
        unbounded high-star query when the wide window is empty.
        """
        if period not in TRENDING_WINDOWS:
            raise InvalidQuery(f"Unknown trending period '{period}'")
        if page < 1 or per_page < 1:
            raise InvalidQuery("page and per_page must be positive")
        self.limiter.check(client_id)
        per_page = min(per_page, MAX_PER_PAGE)

        narrow, wide = TRENDING_WINDOWS[period]
        today = self._today()
        tiers = [
            (f"created:>{(today - timedelta(days=narrow)).isoformat()}", TRENDING_MIN_RESULTS),
            (f"created:>{(today - timedelta(days=wide)).isoformat()}", 1),
            (TRENDING_FALLBACK_QUALIFIER, 0),
        ]

        for qualifier, minimum in tiers:
            query = build_search_query(language=language, qualifiers=[qualifier])
            payload, cached = await self._search_cached(
                query, "stars", "desc", page, per_page, ttl=self.config.trending_cache_ttl
            )
            result_page = page_from_payload(payload, page, per_page)
            if result_page.total_count >= minimum:
                break
            logger.info(
                f"📈 Trending tier '{qualifier}' found {result_page.total_count} "
                f"repositories, widening"
            )

        return self._upstream_result(result_page, cached)

    async def featured(self, sort: str = "stars", client_id: str = "anonymous") -> FeaturedResult:
        """
        The curated default listing, fetched in parallel and cached like trending.

        Repositories that cannot be fetched are reported in ``failed`` and the
        rest are still returned. Only when every fetch fails with a retryable
        error is that error raised.
        """
        if sort not in FEATURED_SORTS:
            raise InvalidQuery(f"Unknown featured sort '{sort}'")
        self.limiter.check(client_id)
        key = f"featured:{sort}"

        cached = await self.cache.get(key)
        if cached is not None:
            return FeaturedResult.model_validate({**cached, "cached": True})

        async def fetch_one(full_name: str) -> Repository:
            owner, _, repo = full_name.partition("/")
            return transform_github_response(await self.client.get_repository(owner, repo))

        async def fetch() -> Dict[str, Any]:
            names = list(self.config.featured_repositories)
            results = await asyncio.gather(
                *(fetch_one(name) for name in names), return_exceptions=True
            )

            repos: List[Repository] = []
            failures: Dict[str, Exception] = {}
            for name, result in zip(names, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.error(f"❌ Could not fetch featured repository {name}: {result}")
                    failures[name] = result
                else:
                    repos.append(result)

            if not repos:
                retryable = [e for e in failures.values() if isinstance(e, ApiError) and e.retryable]
                if retryable:
                    raise retryable[0]

            repos.sort(key=FEATURED_SORTS[sort])
            self._persist(repos, "featured")
            payload = FeaturedResult(
                items=[RepoSummary.from_repository(repo) for repo in repos],
                failed={name: str(e) for name, e in failures.items()},
            ).model_dump(mode="json")
            if repos:
                await self.cache.set(key, payload, self.config.trending_cache_ttl)
            return payload

        return FeaturedResult.model_validate(await self.coalescer.run(key, fetch))

    async def _search_upstream(
        self, request: SearchRequest, ttl: int, read_cache: bool = True
    ) -> SearchResult:
        sort, order = map_sort(request.sort, request.order)
        query = build_search_query(
            request.q, request.language, request.difficulty, min_stars=request.min_stars
        )
        payload, cached = await self._search_cached(
            query, sort, order, request.page, request.per_page, ttl=ttl, read_cache=read_cache
        )
        return self._upstream_result(
            page_from_payload(payload, request.page, request.per_page), cached
        )

    async def _search_cached(
        self,
        query: str,
        sort: str,
        order: str,
        page: int,
        per_page: int,
        ttl: int,
        read_cache: bool = True,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Cache-aside GitHub search. Returns (payload, served_from_cache).

        Concurrent identical searches share a single GitHub call, and that
        call alone schedules persistence of its results.
        """
        key = search_cache_key(query, sort, order, page, per_page)

        if read_cache:
            cached = await self.cache.get(key)
            if cached is not None:
                logger.debug(f"Cache hit for {key}")
                return cached, True

        async def fetch() -> Dict[str, Any]:
            payload = await self.client.search_raw(query, sort, order, page, per_page)
            self._persist(page_from_payload(payload, page, per_page).items, query)
            await self.cache.set(key, payload, ttl)
            return payload

        return await self.coalescer.run(key, fetch), False

    def _upstream_result(self, page: SearchPage, cached: bool) -> SearchResult:
        return SearchResult(
            items=[RepoSummary.from_repository(repo) for repo in page.items],
            total_count=page.total_count,
            served_from="upstream",
            has_more=page.has_more,
            cached=cached,
        )

    def _persist(self, repos: List[Repository], label: str) -> None:
        if repos:
            self.tasks.spawn(self._store_results(repos, label), name=f"persist:{label}")

    async def _store_results(self, repos: List[Repository], label: str) -> UpsertReport:
        report = await self.store.upsert_many(repos)
        if report.all_failed:
            logger.error(f"❌ Could not cache any of {report.total} repositories for '{label}'")
        return report

    async def _refresh_if_stale(self, request: SearchRequest) -> None:
        if not await self.store.is_stale():
            return
        logger.info(f"🔄 Store is stale, refreshing '{request.q}' in the background")
        await self._search_upstream(
            request, ttl=self.config.search_cache_ttl, read_cache=False
        )

    # -- single repository ----------------------------------------------------

    async def fetch_repository_overview(
        self, repo_url: str, client_id: str = "anonymous"
    ) -> RepositoryOverview:
        """Metadata, root listing and languages for one repository, cached for ten minutes."""
        self.limiter.check(client_id)
        owner, repo = parse_repo_url(repo_url)
        key = f"repo-data:{owner}/{repo}"

        cached = await self.cache.get(key)
        if cached is not None:
            return RepositoryOverview.model_validate(cached)

        async def fetch() -> Dict[str, Any]:
            repo_data = await self.client.get_repository(owner, repo)
            contents, languages = await asyncio.gather(
                self.client.list_root_contents(owner, repo),
                self.client.list_languages(owner, repo),
            )
            overview = RepositoryOverview(
                owner=owner,
                repo=repo,
                name=repo_data.get("name", repo),
                description=repo_data.get("description"),
                stars=repo_data.get("stargazers_count") or 0,
                forks=repo_data.get("forks_count") or 0,
                languages=languages or {},
                files=[{"name": f.get("name", ""), "type": f.get("type", "")} for f in contents],
                updated_at=repo_data.get("updated_at"),
                html_url=repo_data.get("html_url"),
            )
            payload = overview.model_dump(mode="json")
            await self.cache.set(key, payload, self.config.overview_cache_ttl)
            return payload

        return RepositoryOverview.model_validate(await self.coalescer.run(key, fetch))

    # -- store passthroughs ----------------------------------------------------

    async def available_languages(self) -> List[str]:
        return await self.store.distinct_languages()

    async def cache_stats(self) -> CacheStats:
        counts, needs_refresh = await asyncio.gather(
            self.store.cache_stats(), self.store.is_stale()
        )
        return CacheStats(
            **counts,
            needs_refresh=needs_refresh,
            last_checked=datetime.now(timezone.utc),
        )

    async def get_repository(self, repository_id: int) -> Optional[RepoRecord]:
        return await self.store.get_repository(repository_id)

    async def add_favorite(self, user_id: int, repository_id: int) -> bool:
        return await self.store.add_favorite(user_id, repository_id)

    async def remove_favorite(self, user_id: int, repository_id: int) -> bool:
        return await self.store.remove_favorite(user_id, repository_id)

    async def list_favorites(
        self, user_id: int, page: int = 1, per_page: int = 30
    ) -> List[RepoRecord]:
        return await self.store.list_favorites(user_id, page, per_page)
