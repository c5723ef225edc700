"""GitHub GraphQL client for creating discussions and comments."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import httpx

from forumbridge import __version__
from forumbridge.models import DiscussionResult
from forumbridge.services.retry import (
    ClassifiedError,
    ErrorKind,
    classify_by_message,
    mentions_rate_limit,
)
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"

PRIMARY_RATE_LIMIT_RESET = timedelta(hours=1)
SECONDARY_RATE_LIMIT_RESET = timedelta(minutes=10)

REPOSITORY_QUERY = """
query($owner: String!, $name: String!) {
  repository(owner: $owner, name: $name) {
    id
    hasDiscussionsEnabled
    discussionCategories(first: 100) {
      nodes { id name }
    }
  }
}
"""

CREATE_DISCUSSION_MUTATION = """
mutation($input: CreateDiscussionInput!) {
  createDiscussion(input: $input) {
    discussion { id number url }
  }
}
"""

ADD_COMMENT_MUTATION = """
mutation($input: AddDiscussionCommentInput!) {
  addDiscussionComment(input: $input) {
    comment { id }
  }
}
"""


class GitHubAPIError(Exception):
    """Raised when the GraphQL API answers with errors."""

    def __init__(self, message: str, error_type: str | None = None) -> None:
        self.message = message
        self.error_type = error_type
        super().__init__(message)


@dataclass
class DiscussionCategory:
    """A discussion category of a repository."""

    id: str
    name: str


@dataclass
class RepositoryInfo:
    """Repository facts needed before migrating into it."""

    id: str
    has_discussions_enabled: bool
    categories: list[DiscussionCategory] = field(default_factory=list)

    def has_category(self, category_id: str) -> bool:
        return any(c.id == category_id for c in self.categories)


def _reset_from_headers(response: httpx.Response) -> datetime | None:
    retry_after = response.headers.get("retry-after")
    if retry_after and retry_after.isdigit():
        return datetime.now(UTC) + timedelta(seconds=int(retry_after))
    reset = response.headers.get("x-ratelimit-reset")
    if reset and reset.isdigit():
        return datetime.fromtimestamp(int(reset), UTC)
    return None


def classify_github_error(exc: Exception) -> ClassifiedError:
    """Map a failure from the GitHub API to a retry classification."""
    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status = response.status_code
        message = f"GitHub API HTTP {status}: {response.text[:200]}"
        remaining = response.headers.get("x-ratelimit-remaining")
        is_rate_limited = (
            status == 429
            or (status == 403 and remaining == "0")
            or mentions_rate_limit(response.text)
        )
        if is_rate_limited:
            reset_at = _reset_from_headers(response)
            if reset_at is None:
                secondary = "secondary rate limit" in response.text.lower()
                reset_at = datetime.now(UTC) + (
                    SECONDARY_RATE_LIMIT_RESET if secondary else PRIMARY_RATE_LIMIT_RESET
                )
            return ClassifiedError(ErrorKind.RATE_LIMITED, message, cause=exc, reset_at=reset_at)
        if status >= 500:
            return ClassifiedError(ErrorKind.RETRYABLE, message, cause=exc)
        if 400 <= status < 500:
            return ClassifiedError(ErrorKind.PERMANENT, message, cause=exc)
    if isinstance(exc, httpx.TransportError):
        return ClassifiedError(ErrorKind.RETRYABLE, f"GitHub request error: {exc!r}", cause=exc)
    # Rate-limit wording outranks any permanent error type.
    if mentions_rate_limit(str(exc)):
        return classify_by_message(exc, rate_limit_reset=PRIMARY_RATE_LIMIT_RESET)
    if isinstance(exc, GitHubAPIError):
        if exc.error_type == "RATE_LIMITED":
            return ClassifiedError(
                ErrorKind.RATE_LIMITED,
                exc.message,
                cause=exc,
                reset_at=datetime.now(UTC) + PRIMARY_RATE_LIMIT_RESET,
            )
        if exc.error_type in ("NOT_FOUND", "FORBIDDEN", "UNPROCESSABLE", "BAD_USER_INPUT"):
            return ClassifiedError(ErrorKind.PERMANENT, exc.message, cause=exc)
    if isinstance(exc, ValueError):
        return ClassifiedError(ErrorKind.PERMANENT, str(exc), cause=exc)
    return classify_by_message(exc, rate_limit_reset=PRIMARY_RATE_LIMIT_RESET)


class GitHubClient:
    """Client for the GitHub GraphQL API, limited to Discussions."""

    def __init__(self, token: str, timeout: float = 30.0) -> None:
        if not token or not token.strip():
            raise ValueError("GitHub token cannot be empty")
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": f"forumbridge/{__version__}",
            },
            timeout=timeout,
        )
        self._repository_id: str | None = None

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def repository_id(self) -> str | None:
        return self._repository_id

    async def get_repository_info(self, repository: str) -> RepositoryInfo:
        """Look up a repository and remember its node ID for later mutations.

        Args:
            repository: Repository in ``owner/repo`` form.

        Returns:
            RepositoryInfo with its discussion categories.
        """
        owner, sep, name = repository.partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValueError("invalid repository format - expected 'owner/repo'")

        logger.info("Fetching repository info", repository=repository)
        data = await self._graphql(REPOSITORY_QUERY, {"owner": owner, "name": name})
        repo = data.get("repository")
        if repo is None:
            raise GitHubAPIError(f"repository {repository} not found", "NOT_FOUND")

        info = RepositoryInfo(
            id=repo["id"],
            has_discussions_enabled=bool(repo["hasDiscussionsEnabled"]),
            categories=[
                DiscussionCategory(id=c["id"], name=c["name"])
                for c in repo["discussionCategories"]["nodes"]
            ],
        )
        self._repository_id = info.id
        return info

    async def create_discussion(self, title: str, body: str, category_id: str) -> DiscussionResult:
        """Create a discussion in the repository looked up last.

        Raises:
            ValueError: If an argument is empty or no repository was looked up.
        """
        if not title.strip():
            raise ValueError("discussion title cannot be empty")
        if not body.strip():
            raise ValueError("discussion body cannot be empty")
        if not category_id.strip():
            raise ValueError("category_id cannot be empty")
        if not self._repository_id:
            raise ValueError("repository ID not set - call get_repository_info first")

        data = await self._graphql(
            CREATE_DISCUSSION_MUTATION,
            {
                "input": {
                    "repositoryId": self._repository_id,
                    "title": title,
                    "body": body,
                    "categoryId": category_id,
                }
            },
        )
        discussion = data["createDiscussion"]["discussion"]
        result = DiscussionResult(
            id=discussion["id"], number=int(discussion["number"]), url=discussion.get("url", "")
        )
        logger.info("Discussion created", number=result.number, url=result.url)
        return result

    async def add_comment(self, discussion_id: str, body: str) -> str:
        """Add a comment to a discussion and return the comment ID."""
        if not discussion_id.strip():
            raise ValueError("discussion_id cannot be empty")
        if not body.strip():
            raise ValueError("comment body cannot be empty")

        data = await self._graphql(
            ADD_COMMENT_MUTATION,
            {"input": {"discussionId": discussion_id, "body": body}},
        )
        return str(data["addDiscussionComment"]["comment"]["id"])

    async def _graphql(self, query: str, variables: dict) -> dict:
        response = await self._client.post(
            GITHUB_GRAPHQL_URL, json={"query": query, "variables": variables}
        )
        response.raise_for_status()
        payload = response.json()
        errors = payload.get("errors")
        if errors:
            first = errors[0]
            raise GitHubAPIError(first.get("message", "unknown GraphQL error"), first.get("type"))
        return payload.get("data") or {}
