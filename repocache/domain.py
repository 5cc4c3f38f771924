"""
Domain models for the repository discovery cache.

This module isolates the caching and search logic from the shape of the
GitHub REST API, implementing an anti-corruption layer: raw search items are
converted into immutable ``Repository`` objects before anything else in the
package touches them.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

BEGINNER = "beginner"
INTERMEDIATE = "intermediate"
ADVANCED = "advanced"
DIFFICULTIES = (BEGINNER, INTERMEDIATE, ADVANCED)


@dataclass(frozen=True)
class Repository:
    """Immutable domain model representing a GitHub repository search hit."""

    github_id: int
    name: str
    full_name: str
    html_url: str
    clone_url: str = ""
    description: Optional[str] = None
    language: Optional[str] = None
    owner_login: Optional[str] = None
    owner_avatar_url: Optional[str] = None
    stars: int = 0
    forks: int = 0
    open_issues: int = 0
    watchers: int = 0
    size: int = 0
    topics: Tuple[str, ...] = ()
    is_private: bool = False
    is_fork: bool = False
    is_archived: bool = False
    is_disabled: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None

    @property
    def difficulty(self) -> str:
        return calculate_difficulty(self.stars, self.forks, self.size, self.open_issues)

    def __post_init__(self):
        """Validate repository data after initialization."""
        if self.github_id <= 0:
            raise ValueError("Repository ID must be positive")
        if not self.name or not self.full_name:
            raise ValueError("Repository name and full name are required")
        if self.stars < 0 or self.forks < 0:
            raise ValueError("Star and fork counts cannot be negative")


@dataclass(frozen=True)
class SearchPage:
    """One page of upstream search results."""

    items: List[Repository] = field(default_factory=list)
    total_count: int = 0
    has_more: bool = False


@dataclass
class UpsertReport:
    """Outcome of persisting a batch of repositories, one entry per failure."""

    succeeded: int = 0
    failed: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + len(self.failed)

    @property
    def all_failed(self) -> bool:
        return self.total > 0 and self.succeeded == 0


class ApiError(Exception):
    """Base exception for search and cache errors."""

    retryable = False

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientUpstreamError(ApiError):
    """GitHub asked us to back off (abuse detection, secondary or primary rate limit)."""

    retryable = True


class RateLimitExceeded(ApiError):
    """A client sent too many requests inside the current window."""

    retryable = True


class InvalidQuery(ApiError):
    """Caller supplied parameters that cannot be turned into a search."""

    pass


class UpstreamFailure(ApiError):
    """Any other GitHub failure: 5xx, network errors, unexpected payloads."""

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(UpstreamFailure):
    """Exception raised when GitHub API authentication fails."""

    pass


def calculate_difficulty(stars: int, forks: int, size: int, open_issues: int = 0) -> str:
    """
    Classify a repository as beginner, intermediate or advanced.

    The thresholds are fixed: stored rows are filtered on this value, so
    changing them silently re-buckets every cached repository. Open issues
    are accepted for call-site symmetry but do not influence the result.
    """
    stars = stars or 0
    forks = forks or 0
    size = size or 0

    if stars < 10 and forks < 5 and size < 1000:
        return BEGINNER
    elif stars < 100 and forks < 20 and size < 10000:
        return INTERMEDIATE
    else:
        return ADVANCED


def infer_popularity(stars: int) -> str:
    if stars >= 80000:
        return "Legendary"
    if stars >= 15000:
        return "Famous"
    return "Rising"


_DIFFICULTY_HINTS = (
    (BEGINNER, re.compile(r"(beginner|good first issue)")),
    (INTERMEDIATE, re.compile(r"(intermediate|mentored|help wanted)")),
    (ADVANCED, re.compile(r"(advanced|expert)")),
)


def infer_tags(
    language: Optional[str], topics: List[str], description: Optional[str]
) -> List[str]:
    """Language, the first six topics and any difficulty words in the description."""
    base: List[str] = []
    if language:
        base.append(language)
    base.extend((topics or [])[:6])

    text = (description or "").lower()
    for tag, pattern in _DIFFICULTY_HINTS:
        if pattern.search(text):
            base.append(tag)

    # dict.fromkeys keeps first-seen order
    return list(dict.fromkeys(base))[:8]


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # GitHub returns ISO format with Z suffix
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def transform_github_response(api_response: Dict[str, Any]) -> Repository:
    """
    Transform a GitHub REST search item into a domain Repository object.

    This function implements the anti-corruption layer by converting
    external API format into our internal domain model.
    """
    try:
        owner = api_response.get("owner") or {}
        html_url = api_response["html_url"]

        return Repository(
            github_id=api_response["id"],
            name=api_response["name"],
            full_name=api_response["full_name"],
            html_url=html_url,
            clone_url=api_response.get("clone_url") or f"{html_url}.git",
            description=api_response.get("description"),
            language=api_response.get("language"),
            owner_login=owner.get("login"),
            owner_avatar_url=owner.get("avatar_url"),
            stars=api_response.get("stargazers_count") or 0,
            forks=api_response.get("forks_count") or 0,
            open_issues=api_response.get("open_issues_count") or 0,
            watchers=api_response.get("watchers_count") or 0,
            size=api_response.get("size") or 0,
            topics=tuple(api_response.get("topics") or ()),
            is_private=bool(api_response.get("private", False)),
            is_fork=bool(api_response.get("fork", False)),
            is_archived=bool(api_response.get("archived", False)),
            is_disabled=bool(api_response.get("disabled", False)),
            created_at=_parse_timestamp(api_response.get("created_at")),
            updated_at=_parse_timestamp(api_response.get("updated_at")),
            pushed_at=_parse_timestamp(api_response.get("pushed_at")),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ValueError(f"Invalid GitHub API response format: {e}") from e
