import argparse
import asyncio
import contextlib
import json
import logging
import sys

from .client import GitHubSearchClient
from .config import settings
from .domain import ApiError
from .models import SearchRequest
from .repository import RepositoryStore
from .service import FEATURED_SORTS, TRENDING_WINDOWS, GitHubCacheService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

UPSTREAM_COMMANDS = {"search", "refresh", "trending", "featured", "overview"}


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Search and cache GitHub repositories")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the cache schema")

    search = sub.add_parser("search", help="Search, serving from the cache when possible")
    search.add_argument("q", nargs="?", default="", help="Free text query")
    search.add_argument("--language", default="all")
    search.add_argument("--difficulty", default="all")
    search.add_argument("--sort", default="popular", help="popular, new, old or growing")
    search.add_argument("--order", default=None, choices=["asc", "desc"])
    search.add_argument("--page", type=int, default=1)
    search.add_argument("--per-page", type=int, default=settings.default_per_page)
    search.add_argument("--min-stars", type=int, default=None)

    refresh = sub.add_parser("refresh", help="Re-fetch a query from GitHub")
    refresh.add_argument("query")
    refresh.add_argument("--page", type=int, default=1)
    refresh.add_argument("--per-page", type=int, default=settings.default_per_page)

    trending = sub.add_parser("trending", help="Most starred recent repositories")
    trending.add_argument("--period", default="day", choices=sorted(TRENDING_WINDOWS))
    trending.add_argument("--language", default="all")
    trending.add_argument("--page", type=int, default=1)
    trending.add_argument("--per-page", type=int, default=settings.default_per_page)

    featured = sub.add_parser("featured", help="The curated default listing")
    featured.add_argument("--sort", default="stars", choices=sorted(FEATURED_SORTS))

    sub.add_parser("languages", help="Languages present in the cache")
    sub.add_parser("stats", help="Cache row counts and freshness")

    overview = sub.add_parser("overview", help="Metadata for a single repository URL")
    overview.add_argument("repo_url")

    p.add_argument("--client-id", default="cli", help="Identity used for rate limiting")
    return p.parse_args(argv)


async def dispatch(service: GitHubCacheService, args) -> object:
    if args.command == "search":
        request = SearchRequest.from_params(
            {
                "q": args.q,
                "language": args.language,
                "difficulty": args.difficulty,
                "sort": args.sort,
                "order": args.order,
                "page": args.page,
                "perPage": args.per_page,
                "minStars": args.min_stars,
            }
        )
        return await service.fetch_repositories(request, client_id=args.client_id)
    if args.command == "refresh":
        return await service.refresh(
            args.query, page=args.page, per_page=args.per_page, client_id=args.client_id
        )
    if args.command == "trending":
        return await service.trending(
            period=args.period,
            language=args.language,
            page=args.page,
            per_page=args.per_page,
            client_id=args.client_id,
        )
    if args.command == "featured":
        return await service.featured(sort=args.sort, client_id=args.client_id)
    if args.command == "overview":
        return await service.fetch_repository_overview(args.repo_url, client_id=args.client_id)
    if args.command == "languages":
        return await service.available_languages()
    if args.command == "stats":
        return await service.cache_stats()
    raise ValueError(f"Unknown command: {args.command}")


def render(result) -> str:
    if hasattr(result, "model_dump_json"):
        return result.model_dump_json(by_alias=True, indent=2)
    return json.dumps(result, indent=2, default=str)


async def run(args) -> int:
    store = RepositoryStore()
    await store.init()

    try:
        if args.command == "init-db":
            await store.ensure_schema()
            logger.info("🎉 Database initialized")
            return 0

        if not await store.is_initialized():
            logger.error("❌ Database not initialized. Run 'init-db' first.")
            return 1

        async with contextlib.AsyncExitStack() as stack:
            client = None
            if args.command in UPSTREAM_COMMANDS:
                client = await stack.enter_async_context(GitHubSearchClient())

            service = GitHubCacheService(store, client)
            try:
                result = await dispatch(service, args)
            except ApiError as e:
                if e.retryable:
                    logger.error(f"⏱️ {e} (retry after {e.retry_after:.0f}s)")
                    return 75  # EX_TEMPFAIL
                logger.error(f"❌ {e}")
                return 1
            finally:
                await service.aclose()

        print(render(result))
        return 0
    finally:
        await store.close()


def main():
    sys.exit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
