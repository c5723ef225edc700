"""Unit tests for MigrationOrchestrator."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from forumbridge.models import Attachment, DiscussionResult, Post, Thread
from forumbridge.services.attachments import AttachmentDownloader, AttachmentLinker
from forumbridge.services.converter import MessageFormatter
from forumbridge.services.orchestrator import MigrationOrchestrator, ThreadState
from forumbridge.services.progress import ProgressLedger
from forumbridge.services.retry import ClassifiedError, RetryExecutor, RetryPolicy
from forumbridge.utils.cancellation import CancellationToken

CATEGORY_ID = "DIC_archive"


def _thread(thread_id: int) -> Thread:
    return Thread(
        thread_id=thread_id,
        title=f"Thread {thread_id}",
        node_id=3,
        username="alice",
        post_date=1700000000,
        reply_count=1,
    )


def _post(post_id: int, thread_id: int, message: str, username: str = "alice", attachments=()) -> Post:
    return Post(
        post_id=post_id,
        thread_id=thread_id,
        username=username,
        post_date=1700000000 + post_id,
        message=message,
        attachments=tuple(attachments),
    )


def _executor(dry_run: bool = False) -> RetryExecutor:
    return RetryExecutor(RetryPolicy(max_attempts=2, backoff_multiplier=0.0), dry_run=dry_run)


def _orchestrator(
    tmp_path: Path,
    source: MagicMock,
    publisher: MagicMock,
    *,
    dry_run: bool = False,
    resume_from: int = 0,
    ledger: ProgressLedger | None = None,
) -> MigrationOrchestrator:
    linker = AttachmentLinker(tmp_path / "attachments")
    return MigrationOrchestrator(
        source=source,
        publisher=publisher,
        ledger=ledger or ProgressLedger.load(tmp_path / "progress.json", dry_run=dry_run),
        formatter=MessageFormatter(),
        linker=linker,
        downloader=AttachmentDownloader(linker, source, _executor(dry_run)),
        source_executor=_executor(),
        publisher_executor=_executor(dry_run),
        node_id=3,
        category_id=CATEGORY_ID,
        resume_from=resume_from,
        post_delay=0,
    )


@pytest.fixture
def source() -> MagicMock:
    source = MagicMock()
    source.list_threads = AsyncMock(return_value=[_thread(1)])
    source.list_posts = AsyncMock(
        return_value=[_post(10, 1, "[b]Opening[/b] post"), _post(11, 1, "A reply", username="bob")]
    )
    source.download = AsyncMock()
    return source


@pytest.fixture
def publisher() -> MagicMock:
    publisher = MagicMock()
    publisher.create_discussion = AsyncMock(return_value=DiscussionResult(id="D_1", number=1))
    publisher.add_comment = AsyncMock(return_value="DC_1")
    return publisher


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


class TestMigrationRun:
    """Tests for a full migration pass."""

    async def test_first_post_becomes_discussion(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """The first post opens the discussion and replies become comments."""
        orchestrator = _orchestrator(tmp_path, source, publisher)

        result = await orchestrator.run(token)

        assert result.completed == 1
        assert result.failed == 0
        title, body, category = publisher.create_discussion.await_args.args
        assert title == "Thread 1"
        assert category == CATEGORY_ID
        assert "Author: **alice**" in body
        assert "Original Thread ID: 1" in body
        assert body.endswith("**Opening** post")

        discussion_id, comment = publisher.add_comment.await_args.args
        assert discussion_id == "D_1"
        assert "Author: **bob**" in comment
        assert ProgressLedger.load(tmp_path / "progress.json").is_completed(1)

    async def test_post_fetch_failure_marks_thread_failed(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """A thread whose posts cannot be fetched is failed without submitting anything."""
        source.list_posts = AsyncMock(side_effect=Exception("404 not found"))
        orchestrator = _orchestrator(tmp_path, source, publisher)

        result = await orchestrator.run(token)

        assert result.failed == 1
        assert result.failed_thread_ids == [1]
        assert "failed to fetch posts" in result.failures[0].reason
        publisher.create_discussion.assert_not_called()
        assert ProgressLedger.load(tmp_path / "progress.json").get_state().failed_threads == [1]

    async def test_discussion_failure_marks_thread_failed(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """If the discussion cannot be created the thread fails."""
        publisher.create_discussion = AsyncMock(side_effect=Exception("403 forbidden"))
        orchestrator = _orchestrator(tmp_path, source, publisher)

        result = await orchestrator.run(token)

        assert result.failed == 1
        publisher.add_comment.assert_not_called()

    async def test_comment_failure_does_not_fail_thread(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """A failed comment is skipped and later comments are still posted."""
        source.list_posts = AsyncMock(
            return_value=[_post(10, 1, "first"), _post(11, 1, "second"), _post(12, 1, "third")]
        )
        publisher.add_comment = AsyncMock(side_effect=[Exception("422 invalid body"), "DC_2"])
        orchestrator = _orchestrator(tmp_path, source, publisher)

        result = await orchestrator.run(token)

        assert result.completed == 1
        assert publisher.add_comment.await_count == 2

    async def test_unformattable_first_post_fails_thread(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """A first post that cannot be formatted fails the thread."""
        source.list_posts = AsyncMock(return_value=[_post(10, 1, "[b][/b]")])
        orchestrator = _orchestrator(tmp_path, source, publisher)

        result = await orchestrator.run(token)

        assert result.failed == 1
        assert "failed to format first post" in result.failures[0].reason
        publisher.create_discussion.assert_not_called()

    async def test_unformattable_reply_is_skipped(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """A reply that cannot be formatted is skipped."""
        source.list_posts = AsyncMock(
            return_value=[_post(10, 1, "first"), _post(11, 1, "   "), _post(12, 1, "third")]
        )
        orchestrator = _orchestrator(tmp_path, source, publisher)

        result = await orchestrator.run(token)

        assert result.completed == 1
        assert publisher.add_comment.await_count == 1

    async def test_attachments_are_downloaded_and_linked(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """Attachments are downloaded and their references rewritten."""
        attachment = Attachment(1, "test.png", "https://forum.example.com/data/1")
        source.list_posts = AsyncMock(
            return_value=[_post(10, 1, "look [ATTACH=1]", attachments=[attachment])]
        )
        orchestrator = _orchestrator(tmp_path, source, publisher)

        await orchestrator.run(token)

        source.download.assert_awaited_once()
        body = publisher.create_discussion.await_args.args[1]
        assert "![test.png](./png/attachment_1_test.png)" in body

    async def test_completed_threads_are_skipped(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """Threads already in the ledger are not migrated again."""
        source.list_threads = AsyncMock(return_value=[_thread(1), _thread(2)])
        ledger = ProgressLedger.load(tmp_path / "progress.json")
        ledger.mark_completed(1)
        orchestrator = _orchestrator(tmp_path, source, publisher, ledger=ledger)

        result = await orchestrator.run(token)

        assert result.threads_found == 2
        assert result.threads_pending == 1
        assert [c.args[0].thread_id for c in source.list_posts.await_args_list] == [2]

    async def test_resume_from_skips_earlier_threads(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """Threads listed before the resume point are skipped."""
        source.list_threads = AsyncMock(return_value=[_thread(1), _thread(2), _thread(3)])
        orchestrator = _orchestrator(tmp_path, source, publisher, resume_from=2)

        result = await orchestrator.run(token)

        assert result.threads_pending == 2
        assert [c.args[0].thread_id for c in source.list_posts.await_args_list] == [2, 3]

    async def test_resume_from_logs_skipped_thread_ids(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """Skipped threads, failed ones included, are named in the log."""
        source.list_threads = AsyncMock(return_value=[_thread(1), _thread(2), _thread(3)])
        ledger = ProgressLedger.load(tmp_path / "progress.json")
        ledger.mark_failed(1)
        orchestrator = _orchestrator(tmp_path, source, publisher, resume_from=3, ledger=ledger)

        with patch("forumbridge.services.orchestrator.logger") as mock_logger:
            await orchestrator.run(token)

        mock_logger.info.assert_any_call(
            "Resuming migration, skipping earlier pending threads", thread_id=3, skipped=[1, 2]
        )

    async def test_unknown_resume_point_keeps_all_threads(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """A resume point that is not pending migrates everything."""
        source.list_threads = AsyncMock(return_value=[_thread(1), _thread(2)])
        orchestrator = _orchestrator(tmp_path, source, publisher, resume_from=99)

        result = await orchestrator.run(token)

        assert result.threads_pending == 2

    async def test_dry_run_never_publishes(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """Dry runs read the forum but never write to GitHub or disk."""
        orchestrator = _orchestrator(tmp_path, source, publisher, dry_run=True)

        result = await orchestrator.run(token)

        assert result.dry_run
        assert result.completed == 1
        publisher.create_discussion.assert_not_called()
        publisher.add_comment.assert_not_called()
        assert not (tmp_path / "progress.json").exists()

    async def test_thread_listing_failure_raises(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """Failing to list threads aborts the run."""
        source.list_threads = AsyncMock(side_effect=Exception("401 unauthorized"))
        orchestrator = _orchestrator(tmp_path, source, publisher)

        with pytest.raises(ClassifiedError):
            await orchestrator.run(token)


class TestCancellation:
    """Tests for cancellation during a run."""

    async def test_cancelled_thread_is_left_unmarked(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """Cancelling mid-thread leaves the thread out of both ledger sets."""
        source.list_threads = AsyncMock(return_value=[_thread(1), _thread(2)])

        async def create_and_cancel(title: str, body: str, category_id: str) -> DiscussionResult:
            token.cancel("test")
            return DiscussionResult(id="D_1", number=1)

        publisher.create_discussion = AsyncMock(side_effect=create_and_cancel)
        orchestrator = _orchestrator(tmp_path, source, publisher)

        result = await orchestrator.run(token)

        assert result.cancelled
        assert result.completed == 0
        assert result.failed == 0
        publisher.add_comment.assert_not_called()
        assert source.list_posts.await_count == 1
        assert not (tmp_path / "progress.json").exists()

    async def test_cancelled_before_listing(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """A token cancelled up front ends the run immediately."""
        token.cancel()
        orchestrator = _orchestrator(tmp_path, source, publisher)

        result = await orchestrator.run(token)

        assert result.cancelled
        source.list_threads.assert_not_called()


class TestProcessThread:
    """Tests for MigrationOrchestrator.process_thread."""

    async def test_returns_final_state(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """process_thread reports COMPLETED with no reason on success."""
        orchestrator = _orchestrator(tmp_path, source, publisher)

        state, reason = await orchestrator.process_thread(_thread(1), token)

        assert state is ThreadState.COMPLETED
        assert reason == ""

    async def test_thread_without_posts_fails(
        self, tmp_path: Path, source: MagicMock, publisher: MagicMock, token: CancellationToken
    ) -> None:
        """A thread with no posts cannot be migrated."""
        source.list_posts = AsyncMock(return_value=[])
        orchestrator = _orchestrator(tmp_path, source, publisher)

        state, reason = await orchestrator.process_thread(_thread(1), token)

        assert state is ThreadState.FAILED
        assert reason == "thread has no posts"
