"""Main migration workflow orchestrator for forumbridge."""

import enum
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from forumbridge.clients.base import DestinationPublisher, SourceFetcher
from forumbridge.models import Attachment, DiscussionResult, FailedThread, Post, Thread
from forumbridge.services.attachments import AttachmentDownloader, AttachmentLinker
from forumbridge.services.converter import MessageFormatter
from forumbridge.services.progress import ProgressLedger
from forumbridge.services.retry import RetryExecutor
from forumbridge.utils.cancellation import CancellationToken, MigrationCancelled
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

DRY_RUN_DISCUSSION = DiscussionResult(id="", number=0)


class ThreadState(enum.Enum):
    """Lifecycle of a single thread within a run."""

    FETCHING = "fetching"
    CONVERTING = "converting"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    FAILED = "failed"


class ThreadFailure(Exception):
    """Raised inside a thread pass when the thread cannot be migrated."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


@dataclass
class MigrationResult:
    """Result of a migration run."""

    threads_found: int
    threads_pending: int
    completed: int = 0
    failed: int = 0
    failures: list[FailedThread] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False

    @property
    def failed_thread_ids(self) -> list[int]:
        return [f.thread_id for f in self.failures]


class MigrationOrchestrator:
    """Migrates the threads of one forum node into one discussion category.

    Threads are processed strictly one after the other: the first post of a
    thread must exist as a discussion before replies can be attached, and
    both APIs enforce global rate limits.
    """

    def __init__(
        self,
        source: SourceFetcher,
        publisher: DestinationPublisher,
        ledger: ProgressLedger,
        formatter: MessageFormatter,
        linker: AttachmentLinker,
        downloader: AttachmentDownloader,
        source_executor: RetryExecutor,
        publisher_executor: RetryExecutor,
        node_id: int,
        category_id: str,
        resume_from: int = 0,
        post_delay: float = 1.0,
        verbose: bool = False,
    ) -> None:
        self._source = source
        self._publisher = publisher
        self._ledger = ledger
        self._formatter = formatter
        self._linker = linker
        self._downloader = downloader
        self._source_executor = source_executor
        self._publisher_executor = publisher_executor
        self._node_id = node_id
        self._category_id = category_id
        self._resume_from = resume_from
        self._post_delay = post_delay
        self._verbose = verbose

    @property
    def dry_run(self) -> bool:
        return self._publisher_executor.dry_run

    async def run(self, token: CancellationToken) -> MigrationResult:
        """Run one migration pass over the configured forum node.

        Args:
            token: Cancellation token. When cancelled, the thread in flight is
                left unmarked and the result reports ``cancelled=True``.

        Returns:
            MigrationResult with statistics about the run.

        Raises:
            ClassifiedError: If the thread list cannot be fetched.
        """
        logger.info(
            "Starting migration",
            node_id=self._node_id,
            category_id=self._category_id,
            dry_run=self.dry_run,
            resume_from=self._resume_from or None,
        )

        try:
            listing = await self._source_executor.execute(
                lambda: self._source.list_threads(self._node_id, token),
                token,
                description=f"list threads of node {self._node_id}",
            )
        except MigrationCancelled:
            logger.warning("Migration cancelled before threads were listed")
            return MigrationResult(threads_found=0, threads_pending=0, cancelled=True, dry_run=self.dry_run)

        threads: list[Thread] = listing.unwrap() or []
        pending = self._ledger.filter_pending(threads)
        pending = self._apply_resume_point(pending)
        logger.info("Threads to migrate", found=len(threads), pending=len(pending))

        result = MigrationResult(
            threads_found=len(threads), threads_pending=len(pending), dry_run=self.dry_run
        )

        for index, thread in enumerate(pending, start=1):
            if token.cancelled:
                result.cancelled = True
                break
            logger.info(
                "Processing thread",
                position=index,
                total=len(pending),
                thread_id=thread.thread_id,
                title=thread.title,
            )
            try:
                state, reason = await self.process_thread(thread, token)
            except MigrationCancelled as e:
                logger.warning(
                    "Migration cancelled, thread left unmarked",
                    thread_id=thread.thread_id,
                    reason=e.reason,
                )
                result.cancelled = True
                break

            if state is ThreadState.COMPLETED:
                result.completed += 1
                self._record(self._ledger.mark_completed, thread.thread_id)
            else:
                result.failed += 1
                result.failures.append(FailedThread(thread_id=thread.thread_id, reason=reason))
                self._record(self._ledger.mark_failed, thread.thread_id)

        logger.info(
            "Migration finished",
            completed=result.completed,
            failed=result.failed,
            failed_thread_ids=result.failed_thread_ids,
            cancelled=result.cancelled,
            source_operations=self._source_executor.operation_count,
            source_rate_limit_hits=self._source_executor.rate_limit_hits,
            publisher_operations=self._publisher_executor.operation_count,
            publisher_rate_limit_hits=self._publisher_executor.rate_limit_hits,
        )
        return result

    async def process_thread(self, thread: Thread, token: CancellationToken) -> tuple[ThreadState, str]:
        """Migrate a single thread.

        Returns:
            Tuple of (final state, failure reason or empty string).

        Raises:
            MigrationCancelled: If the token is cancelled mid-thread.
        """
        with structlog.contextvars.bound_contextvars(thread_id=thread.thread_id):
            try:
                await self._migrate_thread(thread, token)
            except ThreadFailure as e:
                logger.error("Thread migration failed", reason=e.reason)
                self._transition(ThreadState.FAILED)
                return ThreadState.FAILED, e.reason
            self._transition(ThreadState.COMPLETED)
            return ThreadState.COMPLETED, ""

    async def _migrate_thread(self, thread: Thread, token: CancellationToken) -> None:
        self._transition(ThreadState.FETCHING)
        posts = await self._fetch_posts(thread, token)
        if not posts:
            raise ThreadFailure("thread has no posts")

        attachments = [a for post in posts for a in post.attachments]
        if attachments:
            logger.info("Downloading attachments", count=len(attachments))
            await self._downloader.download_all(attachments, token)

        self._transition(ThreadState.CONVERTING)
        bodies = self._render_posts(thread, posts, attachments)

        self._transition(ThreadState.SUBMITTING)
        await self._submit(thread, posts, bodies, token)

    async def _fetch_posts(self, thread: Thread, token: CancellationToken) -> list[Post]:
        result = await self._source_executor.execute(
            lambda: self._source.list_posts(thread, token),
            token,
            description=f"list posts of thread {thread.thread_id}",
        )
        if not result.ok:
            raise ThreadFailure(f"failed to fetch posts: {result.error}")
        return result.value or []

    def _render_posts(
        self, thread: Thread, posts: list[Post], attachments: list[Attachment]
    ) -> list[str | None]:
        """Format every post; a post that cannot be formatted renders as None."""
        bodies: list[str | None] = []
        for index, post in enumerate(posts):
            try:
                bodies.append(self._format_post(thread, post, attachments))
            except ValueError as e:
                if index == 0:
                    raise ThreadFailure(f"failed to format first post: {e}") from e
                logger.warning("Skipping post that cannot be formatted", post_id=post.post_id, error=str(e))
                bodies.append(None)
        return bodies

    def _format_post(self, thread: Thread, post: Post, attachments: list[Attachment]) -> str:
        markdown = self._formatter.process_content(post.message)
        markdown = self._linker.rewrite_references(markdown, attachments)
        return self._formatter.format_message(post.username, post.post_date, thread.thread_id, markdown)

    async def _submit(
        self,
        thread: Thread,
        posts: list[Post],
        bodies: list[str | None],
        token: CancellationToken,
    ) -> None:
        first_body = bodies[0]
        if first_body is None:
            raise ThreadFailure("first post has no body")
        discussion = await self._create_discussion(thread, first_body, token)

        for post, body in zip(posts[1:], bodies[1:]):
            token.raise_if_cancelled()
            if body is None:
                continue
            await self._add_comment(post, discussion, body, token)

    async def _create_discussion(
        self, thread: Thread, body: str, token: CancellationToken
    ) -> DiscussionResult:
        if self.dry_run and self._verbose:
            logger.info("Dry run - discussion preview", title=thread.title, body=body)

        result = await self._publisher_executor.execute(
            lambda: self._publisher.create_discussion(thread.title, body, self._category_id),
            token,
            description=f"create discussion for thread {thread.thread_id}",
            dry_run_result=DRY_RUN_DISCUSSION,
        )
        if not result.ok:
            raise ThreadFailure(f"failed to create discussion: {result.error}")

        discussion = result.value or DRY_RUN_DISCUSSION
        if not result.dry_run:
            logger.info("Created discussion", number=discussion.number)
        await self._pace(token)
        return discussion

    async def _add_comment(
        self, post: Post, discussion: DiscussionResult, body: str, token: CancellationToken
    ) -> None:
        if self.dry_run and self._verbose:
            logger.info("Dry run - comment preview", post_id=post.post_id, body=body)

        result = await self._publisher_executor.execute(
            lambda: self._publisher.add_comment(discussion.id, body),
            token,
            description=f"add comment for post {post.post_id}",
        )
        if not result.ok:
            logger.error(
                "Failed to add comment, continuing with remaining posts",
                post_id=post.post_id,
                error=str(result.error),
            )
            return

        if not result.dry_run:
            logger.info("Added comment", post_id=post.post_id, author=post.username)
        await self._pace(token)

    async def _pace(self, token: CancellationToken) -> None:
        if not self.dry_run and self._post_delay > 0:
            await token.sleep(self._post_delay)

    def _apply_resume_point(self, threads: list[Thread]) -> list[Thread]:
        """Skip threads listed before the resume-from thread."""
        if self._resume_from <= 0:
            return threads
        self._ledger.set_resume_from(self._resume_from)
        for index, thread in enumerate(threads):
            if thread.thread_id == self._resume_from:
                if index:
                    logger.info(
                        "Resuming migration, skipping earlier pending threads",
                        thread_id=self._resume_from,
                        skipped=[t.thread_id for t in threads[:index]],
                    )
                return threads[index:]
        logger.warning(
            "Resume thread not among pending threads, migrating all pending threads",
            thread_id=self._resume_from,
        )
        return threads

    @staticmethod
    def _record(mark: Callable[[int], None], thread_id: int) -> None:
        try:
            mark(thread_id)
        except OSError as e:
            logger.error("Failed to persist migration progress", thread_id=thread_id, error=str(e))

    @staticmethod
    def _transition(state: ThreadState) -> None:
        logger.debug("Thread state changed", state=state.value)

