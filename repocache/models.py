"""
Data models for the repository discovery cache.

These Pydantic models define the caller-facing request and response shapes
and the rows read back from Postgres. They provide validation, serialization
(camelCase aliases for the transport layer) and type safety.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional
from urllib.parse import parse_qsl, urlsplit

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .domain import DIFFICULTIES, InvalidQuery, Repository, infer_popularity, infer_tags


class SearchRequest(BaseModel):
    """
    Caller-facing search parameters.

    ``order`` stays ``None`` unless the caller sets it, so the sort mapping
    can pick its own direction (``old`` sorts ascending by default).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    q: str = ""
    language: str = "all"
    difficulty: str = "all"
    sort: str = "popular"
    order: Optional[Literal["asc", "desc"]] = None
    page: int = Field(1, ge=1)
    per_page: int = Field(20, ge=1, le=100, alias="perPage")
    min_stars: Optional[int] = Field(None, ge=0, alias="minStars")

    @field_validator("q", mode="before")
    @classmethod
    def strip_query(cls, v):
        return (v or "").strip()

    @field_validator("language", mode="before")
    @classmethod
    def default_language(cls, v):
        v = (v or "").strip()
        return v or "all"

    @field_validator("difficulty", mode="before")
    @classmethod
    def check_difficulty(cls, v):
        v = (v or "all").strip().lower()
        if v != "all" and v not in DIFFICULTIES:
            raise ValueError(f"unknown difficulty '{v}'")
        return v

    @field_validator("order", mode="before")
    @classmethod
    def blank_order(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
        return v or None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "SearchRequest":
        """Build a request from query-string style parameters, raising InvalidQuery."""
        data = {k: v for k, v in params.items() if v is not None and v != ""}
        for name, alias in (("per_page", "perPage"), ("min_stars", "minStars")):
            if name in data and alias not in data:
                data[alias] = data.pop(name)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidQuery(f"Invalid search parameters: {e}") from e

    @classmethod
    def from_url(cls, url: str) -> "SearchRequest":
        try:
            parts = urlsplit(url)
            params = dict(parse_qsl(parts.query, strict_parsing=bool(parts.query)))
        except ValueError as e:
            raise InvalidQuery(f"Unparseable URL: {url}") from e
        return cls.from_params(params)


class RepoRecord(BaseModel):
    """
    A repository row as stored in the ``repositories`` table.

    Rows come back from asyncpg with JSONB as text and timestamps either as
    datetimes or (from cached JSON) as strings; both are normalised here.
    """

    id: int
    github_id: int
    name: str
    full_name: str
    description: Optional[str] = None
    html_url: str
    clone_url: str = ""
    language: Optional[str] = None
    owner_login: Optional[str] = None
    owner_avatar_url: Optional[str] = None
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0
    watchers_count: int = 0
    size: int = 0
    topics: List[str] = Field(default_factory=list)
    is_private: bool = False
    is_fork: bool = False
    is_archived: bool = False
    is_disabled: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    last_fetched: Optional[datetime] = None
    difficulty: str = "intermediate"
    favorited_at: Optional[datetime] = None

    @field_validator("topics", mode="before")
    @classmethod
    def parse_topics(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return json.loads(v)
        return v

    @field_validator(
        "created_at", "updated_at", "pushed_at", "last_fetched", "favorited_at", mode="before"
    )
    @classmethod
    def parse_datetime(cls, v):
        """Parse datetime strings into Python datetime objects."""
        if isinstance(v, str):
            return date_parser.parse(v)
        return v


class RepoSummary(BaseModel):
    """Caller-facing repository summary, decorated with tags and popularity."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    full_name: str = Field(..., alias="fullName")
    html_url: str = Field(..., alias="htmlUrl")
    description: Optional[str] = None
    language: Optional[str] = None
    stars: int = 0
    forks: int = 0
    topics: List[str] = Field(default_factory=list)
    owner_avatar_url: str = Field("", alias="ownerAvatarUrl")
    tags: List[str] = Field(default_factory=list)
    popularity: str = "Rising"

    @classmethod
    def from_repository(cls, repo: Repository) -> "RepoSummary":
        topics = list(repo.topics)
        return cls(
            id=repo.github_id,
            full_name=repo.full_name,
            html_url=repo.html_url,
            description=repo.description,
            language=repo.language,
            stars=repo.stars,
            forks=repo.forks,
            topics=topics,
            owner_avatar_url=repo.owner_avatar_url or "",
            tags=infer_tags(repo.language, topics, repo.description),
            popularity=infer_popularity(repo.stars),
        )

    @classmethod
    def from_record(cls, record: RepoRecord) -> "RepoSummary":
        return cls(
            id=record.github_id,
            full_name=record.full_name,
            html_url=record.html_url,
            description=record.description,
            language=record.language,
            stars=record.stargazers_count,
            forks=record.forks_count,
            topics=record.topics,
            owner_avatar_url=record.owner_avatar_url or "",
            tags=infer_tags(record.language, record.topics, record.description),
            popularity=infer_popularity(record.stargazers_count),
        )


class SearchResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[RepoSummary] = Field(default_factory=list)
    total_count: int = Field(0, alias="totalCount")
    served_from: Literal["store", "upstream"] = Field("upstream", alias="servedFrom")
    has_more: bool = Field(False, alias="hasMore")
    cached: bool = False


class FeaturedResult(BaseModel):
    """
    The curated default listing.

    ``failed`` maps each repository that could not be fetched to the error
    message, so an empty listing can be told apart from a failed one.
    """

    model_config = ConfigDict(populate_by_name=True)

    items: List[RepoSummary] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    cached: bool = False


class StorePage(BaseModel):
    """A filtered, sorted page read from the repository store."""

    items: List[RepoRecord] = Field(default_factory=list)
    total_count: int = 0
    has_more: bool = False


class RepositoryOverview(BaseModel):
    """Metadata, root listing and language breakdown for a single repository."""

    model_config = ConfigDict(populate_by_name=True)

    owner: str
    repo: str
    name: str
    description: Optional[str] = None
    stars: int = 0
    forks: int = 0
    languages: Dict[str, int] = Field(default_factory=dict)
    files: List[Dict[str, str]] = Field(default_factory=list)
    updated_at: Optional[str] = Field(None, alias="updatedAt")
    html_url: Optional[str] = None


class CacheStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repositories: int = 0
    users: int = 0
    topics: int = 0
    favorites: int = 0
    needs_refresh: bool = Field(True, alias="needsRefresh")
    last_checked: datetime = Field(..., alias="lastChecked")
