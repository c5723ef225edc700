"""Attachment download and link rewriting.

Downloaded files live under ``<root>/<extension>/attachment_<id>_<name>``.
Forum filenames are untrusted: they are sanitized before use, and the final
joined path is checked against the sandbox root before any I/O.
"""

import os
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from forumbridge.clients.base import SourceFetcher
from forumbridge.models import Attachment
from forumbridge.services.retry import RetryExecutor
from forumbridge.utils.cancellation import CancellationToken
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_FILENAME = "unnamed_file"
UNKNOWN_EXTENSION = "unknown"
IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "webp"})

UNSAFE_CHARACTERS = re.compile(r'[/\\:*?"<>|\x00-\x1f]')

# [ATTACH=123], [ATTACH]123[/ATTACH], [ATTACH=full]123[/ATTACH] and
# [ATTACH type="full" alt="..."]123[/ATTACH]
ATTACHMENT_TOKEN_PATTERN = re.compile(
    r"\[ATTACH=(?P<bare>\d+)\]"
    r"|\[ATTACH(?:=[a-z]+|\s[^\]]*)?\](?P<wrapped>\d+)\[/ATTACH\]",
    re.IGNORECASE,
)
UNHANDLED_TOKEN_PATTERN = re.compile(r"\[ATTACH[^\]]*\]", re.IGNORECASE)
LINK_TEXT_SPECIALS = re.compile(r"([\[\]])")


class PathTraversalError(ValueError):
    """Raised when a path resolves outside of the attachment sandbox."""


@dataclass
class DownloadReport:
    """Counts from one batch of attachment downloads."""

    downloaded: int = 0
    skipped: int = 0
    failed: int = 0


class AttachmentLinker:
    """Sanitizes attachment filenames and rewrites attachment references."""

    def __init__(self, sandbox_root: str | Path) -> None:
        self._root = Path(sandbox_root)

    @property
    def sandbox_root(self) -> Path:
        return self._root

    @staticmethod
    def sanitize_filename(raw: str) -> str:
        """Return a filename that is safe to join onto a directory.

        Path components are discarded, leaving only the final segment, and
        characters that are illegal on common filesystems become ``_``.
        """
        if not raw or not raw.strip():
            return PLACEHOLDER_FILENAME

        name = re.split(r"[/\\]", raw)[-1]
        name = UNSAFE_CHARACTERS.sub("_", name).strip()
        if name in ("", ".", ".."):
            return PLACEHOLDER_FILENAME
        return name

    @staticmethod
    def validate_path(candidate: str | Path, sandbox_root: str | Path) -> None:
        """Check that ``candidate`` stays inside ``sandbox_root``.

        Raises:
            PathTraversalError: If the path escapes the sandbox.
        """
        abs_root = os.path.abspath(sandbox_root)
        abs_candidate = os.path.abspath(candidate)
        try:
            relative = os.path.relpath(abs_candidate, abs_root)
        except ValueError as e:
            raise PathTraversalError(f"path traversal detected: {e}") from e

        if os.path.isabs(relative):
            raise PathTraversalError("invalid relative path: path is absolute")
        if ".." in relative.split(os.sep):
            raise PathTraversalError("path traversal detected: file path escapes base directory")

    @staticmethod
    def file_extension(filename: str) -> str:
        ext = os.path.splitext(filename)[1].lower().lstrip(".")
        return ext or UNKNOWN_EXTENSION

    @classmethod
    def local_name(cls, attachment: Attachment) -> tuple[str, str]:
        """Return ``(extension, attachment_<id>_<name>)`` for an attachment."""
        safe_name = cls.sanitize_filename(attachment.filename)
        ext = cls.file_extension(safe_name)
        return ext, f"attachment_{attachment.attachment_id}_{safe_name}"

    def local_path(self, attachment: Attachment) -> Path:
        """Destination of an attachment inside the sandbox, validated."""
        ext, filename = self.local_name(attachment)
        path = self._root / ext / filename
        self.validate_path(path, self._root)
        return path

    def rewrite_references(self, text: str, attachments: Iterable[Attachment]) -> str:
        """Replace ``[ATTACH]`` tokens with Markdown image embeds or links."""
        links: dict[int, str] = {}
        for attachment in attachments:
            label = LINK_TEXT_SPECIALS.sub(r"\\\1", self.sanitize_filename(attachment.filename))
            ext, filename = self.local_name(attachment)
            relative_path = f"./{ext}/{filename}"
            if ext in IMAGE_EXTENSIONS:
                links[attachment.attachment_id] = f"![{label}]({relative_path})"
            else:
                links[attachment.attachment_id] = f"[{label}]({relative_path})"

        def replace(match: re.Match[str]) -> str:
            attachment_id = int(match.group("bare") or match.group("wrapped"))
            return links.get(attachment_id, match.group(0))

        result = ATTACHMENT_TOKEN_PATTERN.sub(replace, text)

        for token in UNHANDLED_TOKEN_PATTERN.findall(result):
            logger.warning("Unhandled attachment reference", token=token)

        return result


class AttachmentDownloader:
    """Downloads attachments into the sandbox, one file at a time."""

    def __init__(
        self,
        linker: AttachmentLinker,
        source: SourceFetcher,
        executor: RetryExecutor,
    ) -> None:
        self._linker = linker
        self._source = source
        self._executor = executor

    async def download_all(
        self, attachments: Sequence[Attachment], token: CancellationToken
    ) -> DownloadReport:
        """Download every attachment, skipping the ones that fail.

        A failed download never aborts the batch; the reference to it simply
        stays unresolved on disk.
        """
        report = DownloadReport()
        for attachment in attachments:
            token.raise_if_cancelled()
            outcome = await self._download_one(attachment, token)
            if outcome == "downloaded":
                report.downloaded += 1
            elif outcome == "skipped":
                report.skipped += 1
            else:
                report.failed += 1

        logger.info(
            "Attachment downloads finished",
            downloaded=report.downloaded,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    async def _download_one(self, attachment: Attachment, token: CancellationToken) -> str:
        try:
            path = self._linker.local_path(attachment)
        except PathTraversalError as e:
            logger.error(
                "Security violation: attachment path escapes sandbox",
                attachment_id=attachment.attachment_id,
                filename=attachment.filename,
                error=str(e),
            )
            return "failed"

        if self._executor.dry_run:
            logger.info("Dry run - would download attachment", path=str(path))
            return "skipped"

        if path.exists():
            logger.info("Attachment already downloaded", path=str(path))
            return "skipped"

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Failed to create attachment directory", path=str(path.parent), error=str(e))
            return "failed"

        result = await self._executor.execute(
            lambda: self._source.download(attachment.direct_url, path),
            token,
            description=f"download attachment {attachment.attachment_id}",
        )
        if not result.ok:
            logger.warning(
                "Failed to download attachment",
                attachment_id=attachment.attachment_id,
                filename=attachment.filename,
                error=str(result.error),
            )
            return "failed"

        logger.info("Attachment downloaded", path=str(path))
        return "downloaded"
