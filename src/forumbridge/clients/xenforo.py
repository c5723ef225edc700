"""XenForo REST API client for forumbridge."""

import asyncio
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx

from forumbridge import __version__
from forumbridge.models import Post, Thread
from forumbridge.services.retry import (
    ClassifiedError,
    ErrorKind,
    classify_by_message,
    mentions_rate_limit,
)
from forumbridge.utils.cancellation import CancellationToken
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PAGE_DELAY = 1.0
DEFAULT_RATE_LIMIT_RESET = timedelta(minutes=1)
PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 405, 409, 410, 422})


@dataclass
class XenForoNode:
    """Represents a XenForo forum node (category or forum)."""

    node_id: int
    title: str
    node_type_id: str
    parent_node_id: int = 0

    @classmethod
    def from_api_response(cls, data: dict) -> "XenForoNode":
        """Create a XenForoNode from API response data."""
        return cls(
            node_id=int(data["node_id"]),
            title=data.get("title", ""),
            node_type_id=data.get("node_type_id", ""),
            parent_node_id=int(data.get("parent_node_id", 0)),
        )


def _last_page(data: dict) -> int:
    pagination = data.get("pagination") or {}
    return int(pagination.get("last_page") or pagination.get("total_pages") or 1)


def _retry_after(response: httpx.Response) -> datetime:
    value = response.headers.get("retry-after")
    if value and value.isdigit():
        return datetime.now(UTC) + timedelta(seconds=int(value))
    return datetime.now(UTC) + DEFAULT_RATE_LIMIT_RESET


def _response_text(response: httpx.Response) -> str:
    # Streamed download responses have no body loaded when they fail.
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""


def classify_xenforo_error(exc: Exception) -> ClassifiedError:
    """Map a failure from the XenForo API to a retry classification."""
    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = f"XenForo API HTTP {status}: {exc.request.method} {exc.request.url}"
        if status == 429 or mentions_rate_limit(_response_text(exc.response)):
            return ClassifiedError(
                ErrorKind.RATE_LIMITED, message, cause=exc, reset_at=_retry_after(exc.response)
            )
        if status >= 500:
            return ClassifiedError(ErrorKind.RETRYABLE, message, cause=exc)
        if status in PERMANENT_STATUS_CODES:
            return ClassifiedError(ErrorKind.PERMANENT, message, cause=exc)
    if isinstance(exc, httpx.TransportError):
        return ClassifiedError(ErrorKind.RETRYABLE, f"XenForo request error: {exc!r}", cause=exc)
    if mentions_rate_limit(str(exc)):
        return classify_by_message(exc, rate_limit_reset=DEFAULT_RATE_LIMIT_RESET)
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ClassifiedError(ErrorKind.PERMANENT, f"Malformed XenForo response: {exc}", cause=exc)
    return classify_by_message(exc, rate_limit_reset=DEFAULT_RATE_LIMIT_RESET)


class XenForoClient:
    """Client for reading threads, posts and attachments from the XenForo API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_user: str,
        timeout: float = 30.0,
        page_delay: float = DEFAULT_PAGE_DELAY,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._page_delay = page_delay
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "XF-Api-Key": api_key,
                "XF-Api-User": api_user,
                "Accept": "application/json",
                "User-Agent": f"forumbridge/{__version__}",
            },
            timeout=timeout,
            follow_redirects=True,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "XenForoClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def test_connection(self) -> None:
        """Check that the API is reachable with the configured credentials.

        Raises:
            httpx.HTTPStatusError: If the API rejects the request.
        """
        logger.info("Testing XenForo API connection", base_url=self._base_url)
        response = await self._client.get("/")
        response.raise_for_status()

    async def get_nodes(self) -> list[XenForoNode]:
        """Get all forum nodes."""
        response = await self._client.get("/nodes")
        response.raise_for_status()
        data = response.json()
        return [XenForoNode.from_api_response(n) for n in data.get("nodes", [])]

    async def list_threads(self, node_id: int, token: CancellationToken | None = None) -> list[Thread]:
        """Get every thread in a forum node, following pagination.

        Args:
            node_id: The forum node to list.
            token: Cancellation token checked between pages.

        Returns:
            Threads in the order the forum returns them.
        """
        logger.info("Fetching threads for node", node_id=node_id)
        threads: list[Thread] = []
        page = 1
        while True:
            data = await self._get_page(f"/forums/{node_id}/threads", page, token)
            threads.extend(Thread.from_api_response(t) for t in data.get("threads", []))
            if page >= _last_page(data):
                break
            page += 1
            await self._pause(token)

        logger.info("Found threads", node_id=node_id, count=len(threads))
        return threads

    async def list_posts(self, thread: Thread, token: CancellationToken | None = None) -> list[Post]:
        """Get every post of a thread, first post first."""
        posts: list[Post] = []
        page = 1
        while True:
            data = await self._get_page(f"/threads/{thread.thread_id}/posts", page, token)
            page_posts = data.get("posts", [])
            posts.extend(Post.from_api_response(p) for p in page_posts)
            if page >= _last_page(data) or not page_posts:
                break
            page += 1
            await self._pause(token)

        logger.info("Found posts", thread_id=thread.thread_id, count=len(posts))
        return posts

    async def download(self, url: str, dest_path: Path) -> None:
        """Stream an attachment to ``dest_path``.

        The body is written to a ``.part`` file that replaces ``dest_path``
        only once the download is complete.
        """
        partial = dest_path.with_name(dest_path.name + ".part")
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=65536):
                        f.write(chunk)
            os.replace(partial, dest_path)
        finally:
            if partial.exists():
                partial.unlink()

    async def _get_page(self, path: str, page: int, token: CancellationToken | None) -> dict:
        if token is not None:
            token.raise_if_cancelled()
        response = await self._client.get(path, params={"page": page})
        response.raise_for_status()
        return response.json()

    async def _pause(self, token: CancellationToken | None) -> None:
        if token is not None:
            await token.sleep(self._page_delay)
        elif self._page_delay > 0:
            await asyncio.sleep(self._page_delay)
