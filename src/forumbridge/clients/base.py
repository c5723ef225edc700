"""Contracts for the source forum and the destination publisher."""

from pathlib import Path
from typing import Protocol

from forumbridge.models import DiscussionResult, Post, Thread
from forumbridge.utils.cancellation import CancellationToken


class SourceFetcher(Protocol):
    """Read side: where threads, posts and attachment files come from."""

    async def list_threads(self, node_id: int, token: CancellationToken | None = None) -> list[Thread]: ...

    async def list_posts(self, thread: Thread, token: CancellationToken | None = None) -> list[Post]: ...

    async def download(self, url: str, dest_path: Path) -> None: ...


class DestinationPublisher(Protocol):
    """Write side: where discussions and their comments are created."""

    async def create_discussion(self, title: str, body: str, category_id: str) -> DiscussionResult: ...

    async def add_comment(self, discussion_id: str, body: str) -> str: ...
