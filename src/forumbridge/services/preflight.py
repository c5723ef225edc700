"""Checks run before a migration touches either API."""

from pathlib import Path

from forumbridge.clients.github import GitHubClient, classify_github_error
from forumbridge.clients.xenforo import XenForoClient, classify_xenforo_error
from forumbridge.utils.cancellation import CancellationToken
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)


class PreflightError(Exception):
    """Raised when the environment is not ready for a migration."""


class PreflightChecker:
    """Verifies API access, the target category and the attachment directory."""

    def __init__(
        self,
        xenforo: XenForoClient,
        github: GitHubClient | None,
        repository: str,
        category_id: str,
        attachments_dir: str | Path,
        dry_run: bool = False,
    ) -> None:
        self._xenforo = xenforo
        self._github = github
        self._repository = repository
        self._category_id = category_id
        self._attachments_dir = Path(attachments_dir)
        self._dry_run = dry_run

    async def run(self, token: CancellationToken) -> None:
        """Run all checks.

        Raises:
            PreflightError: On the first check that fails.
        """
        logger.info("Running pre-flight checks", dry_run=self._dry_run)
        token.raise_if_cancelled()
        await self._check_xenforo()
        token.raise_if_cancelled()
        await self._check_github()
        self._check_filesystem()
        logger.info("All pre-flight checks passed")

    async def _check_xenforo(self) -> None:
        try:
            await self._xenforo.test_connection()
        except Exception as e:
            error = classify_xenforo_error(e)
            raise PreflightError(f"XenForo API check failed: {error.message}") from e
        logger.info("XenForo API access verified")

    async def _check_github(self) -> None:
        if self._github is None:
            logger.info("Skipping GitHub checks in dry-run mode")
            return

        try:
            info = await self._github.get_repository_info(self._repository)
        except Exception as e:
            error = classify_github_error(e)
            raise PreflightError(f"GitHub API check failed: {error.message}") from e

        if not info.has_discussions_enabled:
            raise PreflightError(
                f"GitHub Discussions is not enabled for repository {self._repository}"
            )
        if not info.has_category(self._category_id):
            raise PreflightError(f"invalid GitHub category ID '{self._category_id}'")
        logger.info(
            "GitHub API access verified",
            repository=self._repository,
            category_id=self._category_id,
        )

    def _check_filesystem(self) -> None:
        if self._dry_run:
            if not str(self._attachments_dir):
                raise PreflightError("attachments directory path is empty")
            logger.info("Attachments directory path validated (dry-run)")
            return
        try:
            self._attachments_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreflightError(f"failed to create attachments directory: {e}") from e
        logger.info("Attachments directory ready", path=str(self._attachments_dir))
