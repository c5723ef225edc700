"""Shared data models for forumbridge."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import urlparse

from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

ALLOWED_URL_SCHEMES = frozenset({"http", "https"})


@dataclass(frozen=True)
class Attachment:
    """A file attached to a forum post.

    The filename comes straight from the forum and is never trusted for
    building filesystem paths.
    """

    attachment_id: int
    filename: str
    direct_url: str

    def __post_init__(self) -> None:
        if self.attachment_id <= 0:
            raise ValueError(f"attachment_id must be positive, got {self.attachment_id}")
        if not self.filename:
            raise ValueError("attachment filename cannot be empty")
        scheme = urlparse(self.direct_url).scheme.lower()
        if scheme not in ALLOWED_URL_SCHEMES:
            raise ValueError(f"attachment URL scheme not allowed: {scheme or '(none)'}")

    @classmethod
    def from_api_response(cls, data: dict) -> "Attachment":
        """Create an Attachment from XenForo API response data."""
        return cls(
            attachment_id=int(data["attachment_id"]),
            filename=data.get("filename", ""),
            direct_url=data.get("direct_url", ""),
        )


@dataclass(frozen=True)
class Post:
    """A single post in a forum thread, with BB-code markup."""

    post_id: int
    thread_id: int
    username: str
    post_date: int
    message: str
    attachments: tuple[Attachment, ...] = field(default=())

    @property
    def posted_at(self) -> datetime:
        return datetime.fromtimestamp(self.post_date, UTC)

    @classmethod
    def from_api_response(cls, data: dict) -> "Post":
        """Create a Post from XenForo API response data.

        Attachments that fail validation are dropped with a warning; the post
        itself is still usable.
        """
        attachments = []
        for raw in data.get("Attachments") or []:
            try:
                attachments.append(Attachment.from_api_response(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Skipping invalid attachment",
                    post_id=data.get("post_id"),
                    attachment_id=raw.get("attachment_id") if isinstance(raw, dict) else None,
                    error=str(e),
                )
        return cls(
            post_id=int(data["post_id"]),
            thread_id=int(data["thread_id"]),
            username=data.get("username", ""),
            post_date=int(data.get("post_date", 0)),
            message=data.get("message", ""),
            attachments=tuple(attachments),
        )


@dataclass(frozen=True)
class Thread:
    """A forum thread: the unit of work that is migrated and checkpointed."""

    thread_id: int
    title: str
    node_id: int
    username: str
    post_date: int
    reply_count: int
    first_post_id: int = 0

    @classmethod
    def from_api_response(cls, data: dict) -> "Thread":
        """Create a Thread from XenForo API response data."""
        return cls(
            thread_id=int(data["thread_id"]),
            title=data.get("title", ""),
            node_id=int(data.get("node_id", 0)),
            username=data.get("username", ""),
            post_date=int(data.get("post_date", 0)),
            reply_count=int(data.get("reply_count", 0)),
            first_post_id=int(data.get("first_post_id", 0)),
        )


@dataclass
class FailedThread:
    """Represents a thread that could not be migrated."""

    thread_id: int
    reason: str


@dataclass(frozen=True)
class DiscussionResult:
    """A discussion created on the destination."""

    id: str
    number: int
    url: str = ""
