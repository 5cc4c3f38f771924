import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import settings
from .domain import Repository, UpsertReport
from .models import RepoRecord, StorePage

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS repositories (
        id SERIAL PRIMARY KEY,
        github_id BIGINT NOT NULL UNIQUE,
        name VARCHAR(255) NOT NULL,
        full_name VARCHAR(255) NOT NULL,
        description TEXT,
        html_url TEXT NOT NULL,
        clone_url TEXT NOT NULL,
        language VARCHAR(100),
        owner_login VARCHAR(255),
        owner_avatar_url TEXT,
        stargazers_count INTEGER DEFAULT 0,
        forks_count INTEGER DEFAULT 0,
        open_issues_count INTEGER DEFAULT 0,
        watchers_count INTEGER DEFAULT 0,
        size INTEGER DEFAULT 0,
        topics JSONB DEFAULT '[]'::jsonb,
        is_private BOOLEAN DEFAULT FALSE,
        is_fork BOOLEAN DEFAULT FALSE,
        is_archived BOOLEAN DEFAULT FALSE,
        is_disabled BOOLEAN DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        pushed_at TIMESTAMPTZ,
        last_fetched TIMESTAMPTZ DEFAULT NOW(),
        difficulty VARCHAR(20) DEFAULT 'intermediate'
    )
    """,
    "CREATE INDEX IF NOT EXISTS repositories_name_idx ON repositories (name)",
    "CREATE INDEX IF NOT EXISTS repositories_language_idx ON repositories (language)",
    "CREATE INDEX IF NOT EXISTS repositories_stars_idx ON repositories (stargazers_count)",
    "CREATE INDEX IF NOT EXISTS repositories_difficulty_idx ON repositories (difficulty)",
    "CREATE INDEX IF NOT EXISTS repositories_last_fetched_idx ON repositories (last_fetched)",
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        github_id BIGINT UNIQUE,
        username VARCHAR(255) NOT NULL UNIQUE,
        avatar_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_fetched TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS topics (
        id SERIAL PRIMARY KEY,
        name VARCHAR(100) NOT NULL UNIQUE,
        description TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS repository_topics (
        id SERIAL PRIMARY KEY,
        repository_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
        topic_id INTEGER NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
        UNIQUE (repository_id, topic_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS topic_repo_idx ON repository_topics (topic_id, repository_id)",
    """
    CREATE TABLE IF NOT EXISTS favorites (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        repository_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (user_id, repository_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS favorites_repo_user_idx ON favorites (repository_id, user_id)",
]

UPSERT_REPOSITORY_SQL = """
INSERT INTO repositories (
    github_id, name, full_name, description, html_url, clone_url, language,
    owner_login, owner_avatar_url, stargazers_count, forks_count,
    open_issues_count, watchers_count, size, topics, is_private, is_fork,
    is_archived, is_disabled, created_at, updated_at, pushed_at, difficulty,
    last_fetched
)
VALUES (
    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15::jsonb,
    $16, $17, $18, $19, COALESCE($20, NOW()), COALESCE($21, NOW()), $22, $23, NOW()
)
ON CONFLICT (github_id) DO UPDATE SET
    name = EXCLUDED.name,
    full_name = EXCLUDED.full_name,
    description = EXCLUDED.description,
    html_url = EXCLUDED.html_url,
    clone_url = EXCLUDED.clone_url,
    language = EXCLUDED.language,
    owner_login = EXCLUDED.owner_login,
    owner_avatar_url = EXCLUDED.owner_avatar_url,
    stargazers_count = EXCLUDED.stargazers_count,
    forks_count = EXCLUDED.forks_count,
    open_issues_count = EXCLUDED.open_issues_count,
    watchers_count = EXCLUDED.watchers_count,
    size = EXCLUDED.size,
    topics = EXCLUDED.topics,
    is_private = EXCLUDED.is_private,
    is_fork = EXCLUDED.is_fork,
    is_archived = EXCLUDED.is_archived,
    is_disabled = EXCLUDED.is_disabled,
    updated_at = EXCLUDED.updated_at,
    pushed_at = EXCLUDED.pushed_at,
    difficulty = EXCLUDED.difficulty,
    last_fetched = NOW()
RETURNING id
"""

INSERT_TOPICS_SQL = """
INSERT INTO topics (name)
SELECT DISTINCT unnest($1::text[])
ON CONFLICT (name) DO NOTHING
"""

LINK_TOPICS_SQL = """
INSERT INTO repository_topics (repository_id, topic_id)
SELECT $1, id FROM topics WHERE name = ANY($2::text[])
ON CONFLICT (repository_id, topic_id) DO NOTHING
"""

VISIBLE_CONDITIONS = [
    "is_private = FALSE",
    "is_archived = FALSE",
    "is_disabled = FALSE",
]

STORE_SORT_COLUMNS = {
    "stars": "stargazers_count",
    "forks": "forks_count",
    "updated": "updated_at",
    "created": "created_at",
}

RETRYABLE_DB_ERRORS = (
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
)


@dataclass(frozen=True)
class RepositoryFilters:
    """Filters for reading cached repositories; ``sort`` is a store column key."""

    query: str = ""
    language: str = "all"
    difficulty: str = "all"
    sort: str = "stars"
    order: str = "desc"
    page: int = 1
    per_page: int = 30
    min_stars: Optional[int] = None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_filter_clause(filters: RepositoryFilters) -> Tuple[str, List[Any]]:
    """
    Build the WHERE clause and its positional arguments.

    Text search is a case-insensitive substring match on name, description
    or full name. Only public, live repositories are ever returned.
    """
    conditions: List[str] = []
    args: List[Any] = []

    if filters.query:
        args.append(f"%{_escape_like(filters.query)}%")
        n = len(args)
        conditions.append(
            f"(name ILIKE ${n} OR description ILIKE ${n} OR full_name ILIKE ${n})"
        )

    if filters.language and filters.language != "all":
        args.append(filters.language)
        conditions.append(f"language = ${len(args)}")

    if filters.difficulty and filters.difficulty != "all":
        args.append(filters.difficulty)
        conditions.append(f"difficulty = ${len(args)}")

    if filters.min_stars:
        args.append(filters.min_stars)
        conditions.append(f"stargazers_count >= ${len(args)}")

    conditions.extend(VISIBLE_CONDITIONS)
    return " AND ".join(conditions), args


def build_order_clause(sort: str, order: str) -> str:
    column = STORE_SORT_COLUMNS.get(sort)
    if column is None:
        return "stargazers_count DESC NULLS LAST, id ASC"
    direction = "ASC" if order == "asc" else "DESC"
    # id keeps pagination stable between equal sort values
    return f"{column} {direction} NULLS LAST, id ASC"


def _repository_args(repo: Repository) -> tuple:
    return (
        repo.github_id,
        repo.name,
        repo.full_name,
        repo.description,
        repo.html_url,
        repo.clone_url,
        repo.language,
        repo.owner_login,
        repo.owner_avatar_url,
        repo.stars,
        repo.forks,
        repo.open_issues,
        repo.watchers,
        repo.size,
        json.dumps(list(repo.topics)),
        repo.is_private,
        repo.is_fork,
        repo.is_archived,
        repo.is_disabled,
        repo.created_at,
        repo.updated_at,
        repo.pushed_at,
        repo.difficulty,
    )


db_retry = retry(
    retry=retry_if_exception_type(RETRYABLE_DB_ERRORS),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    stop=stop_after_attempt(3),
    reraise=True,
)


class RepositoryStore:
    """
    Postgres persistence for cached repositories, topics, users and favorites.

    Upserts are keyed by ``github_id`` and are safe under concurrent writers
    (last write wins). Reads never touch the GitHub API.
    """

    def __init__(
        self,
        dsn: str = settings.database_url,
        stale_after: timedelta = timedelta(seconds=settings.stale_after_seconds),
        command_timeout: float = settings.db_command_timeout,
    ):
        self.dsn = dsn
        self.stale_after = stale_after
        self.command_timeout = command_timeout
        self.pool = None

    async def init(self):
        """Initialize the database connection pool."""
        self.pool = await asyncpg.create_pool(
            self.dsn,
            min_size=2,
            max_size=10,
            command_timeout=self.command_timeout,
        )

    async def close(self):
        """Close the database connection pool."""
        if self.pool:
            await self.pool.close()

    def _require_pool(self):
        if self.pool is None:
            raise RuntimeError("RepositoryStore.init() must be awaited first")
        return self.pool

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        logger.info("✅ Database schema is in place")

    async def is_initialized(self) -> bool:
        async with self._require_pool().acquire() as conn:
            return bool(
                await conn.fetchval("SELECT to_regclass('public.repositories') IS NOT NULL")
            )

    @db_retry
    async def upsert(self, repo: Repository) -> int:
        """
        Insert or update a repository by ``github_id`` and link its topics.

        Returns the row id. Topics are created on first sight and linked at
        most once per repository.
        """
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                repository_id = await conn.fetchval(
                    UPSERT_REPOSITORY_SQL, *_repository_args(repo)
                )
                topic_names = sorted(set(repo.topics))
                if topic_names:
                    await conn.execute(INSERT_TOPICS_SQL, topic_names)
                    await conn.execute(LINK_TOPICS_SQL, repository_id, topic_names)
        return repository_id

    async def upsert_many(self, repos: List[Repository]) -> UpsertReport:
        """Upsert every repository, collecting per-item failures instead of raising."""
        report = UpsertReport()
        for repo in repos:
            try:
                await self.upsert(repo)
                report.succeeded += 1
            except Exception as e:
                logger.error(f"⚠️ Error caching repository {repo.full_name}: {e}")
                report.failed.append((repo.github_id, str(e)))

        if report.failed:
            logger.warning(
                f"⚠️ Cached {report.succeeded}/{report.total} repositories, "
                f"{len(report.failed)} failed"
            )
        else:
            logger.debug(f"Cached {report.succeeded} repositories")
        return report

    async def _fetch(self, sql: str, *args) -> List[asyncpg.Record]:
        async with self._require_pool().acquire() as conn:
            return await conn.fetch(sql, *args)

    async def _fetchval(self, sql: str, *args) -> Any:
        async with self._require_pool().acquire() as conn:
            return await conn.fetchval(sql, *args)

    async def query(self, filters: RepositoryFilters) -> StorePage:
        """Filter, sort and paginate cached repositories."""
        where, args = build_filter_clause(filters)
        order_by = build_order_clause(filters.sort, filters.order)
        offset = (filters.page - 1) * filters.per_page

        n = len(args)
        rows_sql = (
            f"SELECT * FROM repositories WHERE {where} "
            f"ORDER BY {order_by} LIMIT ${n + 1} OFFSET ${n + 2}"
        )
        count_sql = f"SELECT COUNT(*) FROM repositories WHERE {where}"

        rows, total_count = await asyncio.gather(
            self._fetch(rows_sql, *args, filters.per_page, offset),
            self._fetchval(count_sql, *args),
        )
        return StorePage(
            items=[RepoRecord.model_validate(dict(row)) for row in rows],
            total_count=total_count or 0,
            has_more=filters.page * filters.per_page < (total_count or 0),
        )

    async def distinct_languages(self) -> List[str]:
        rows = await self._fetch(
            "SELECT DISTINCT language FROM repositories WHERE "
            + " AND ".join(VISIBLE_CONDITIONS + ["language IS NOT NULL"])
            + " ORDER BY language ASC"
        )
        return [row["language"] for row in rows if row["language"]]

    async def is_stale(self, now: Optional[datetime] = None) -> bool:
        """True when nothing is cached or the newest fetch is older than ``stale_after``."""
        last_fetched = await self._fetchval("SELECT MAX(last_fetched) FROM repositories")
        if last_fetched is None:
            return True
        now = now or datetime.now(timezone.utc)
        return last_fetched < now - self.stale_after

    async def get_repository(self, repository_id: int) -> Optional[RepoRecord]:
        rows = await self._fetch("SELECT * FROM repositories WHERE id = $1", repository_id)
        return RepoRecord.model_validate(dict(rows[0])) if rows else None

    @db_retry
    async def ensure_user(
        self,
        username: str,
        github_id: Optional[int] = None,
        avatar_url: Optional[str] = None,
    ) -> int:
        return await self._fetchval(
            """
            INSERT INTO users (username, github_id, avatar_url)
            VALUES ($1, $2, $3)
            ON CONFLICT (username) DO UPDATE SET
                github_id = COALESCE(EXCLUDED.github_id, users.github_id),
                avatar_url = COALESCE(EXCLUDED.avatar_url, users.avatar_url),
                updated_at = NOW()
            RETURNING id
            """,
            username,
            github_id,
            avatar_url,
        )

    async def add_favorite(self, user_id: int, repository_id: int) -> bool:
        """Favorite a repository; False when already a favorite or either row is missing."""
        try:
            favorite_id = await self._fetchval(
                """
                INSERT INTO favorites (user_id, repository_id) VALUES ($1, $2)
                ON CONFLICT (user_id, repository_id) DO NOTHING
                RETURNING id
                """,
                user_id,
                repository_id,
            )
        except asyncpg.exceptions.ForeignKeyViolationError as e:
            logger.warning(f"⚠️ Cannot favorite repository {repository_id} for user {user_id}: {e}")
            return False
        return favorite_id is not None

    async def remove_favorite(self, user_id: int, repository_id: int) -> bool:
        async with self._require_pool().acquire() as conn:
            status = await conn.execute(
                "DELETE FROM favorites WHERE user_id = $1 AND repository_id = $2",
                user_id,
                repository_id,
            )
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return status.split()[-1] != "0"

    async def list_favorites(
        self, user_id: int, page: int = 1, per_page: int = 30
    ) -> List[RepoRecord]:
        rows = await self._fetch(
            """
            SELECT r.*, f.created_at AS favorited_at
            FROM favorites f
            JOIN repositories r ON r.id = f.repository_id
            WHERE f.user_id = $1
            ORDER BY f.created_at DESC, f.id DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            per_page,
            (page - 1) * per_page,
        )
        return [RepoRecord.model_validate(dict(row)) for row in rows]

    async def cache_stats(self) -> Dict[str, int]:
        tables = ("repositories", "users", "topics", "favorites")
        counts = await asyncio.gather(
            *(self._fetchval(f"SELECT COUNT(*) FROM {table}") for table in tables)
        )
        return {table: count or 0 for table, count in zip(tables, counts)}
