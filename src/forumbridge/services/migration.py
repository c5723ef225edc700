"""Builds the migration pipeline from settings and runs it."""

from forumbridge.clients.github import GitHubClient, classify_github_error
from forumbridge.clients.xenforo import XenForoClient, classify_xenforo_error
from forumbridge.config import Settings, get_secrets
from forumbridge.services.attachments import AttachmentDownloader, AttachmentLinker
from forumbridge.services.converter import BBCodeConverter, MessageFormatter
from forumbridge.services.orchestrator import MigrationOrchestrator, MigrationResult
from forumbridge.services.preflight import PreflightChecker
from forumbridge.services.progress import ProgressLedger
from forumbridge.services.retry import RetryExecutor, RetryPolicy
from forumbridge.utils.cancellation import CancellationToken
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)


def build_policies(settings: Settings) -> dict[str, RetryPolicy]:
    """Retry policies for source reads, GitHub writes and attachment downloads."""
    source = RetryPolicy(
        max_attempts=settings.xenforo_max_retries + 1,
        backoff_multiplier=settings.github_retry_backoff_multiple,
        max_backoff=settings.max_backoff,
        rate_limit_ceiling=settings.rate_limit_ceiling,
    )
    publisher = RetryPolicy(
        max_attempts=settings.github_max_retries + 1,
        backoff_multiplier=settings.github_retry_backoff_multiple,
        max_backoff=settings.max_backoff,
        base_delay=settings.github_rate_limit_delay,
        rate_limit_ceiling=settings.rate_limit_ceiling,
    )
    download = RetryPolicy(
        max_attempts=settings.xenforo_max_retries + 1,
        backoff_multiplier=settings.github_retry_backoff_multiple,
        max_backoff=settings.max_backoff,
        base_delay=settings.attachment_rate_limit_delay,
        rate_limit_ceiling=settings.rate_limit_ceiling,
    )
    return {"source": source, "publisher": publisher, "download": download}


async def run_migration(
    settings: Settings,
    token: CancellationToken,
    *,
    dry_run: bool | None = None,
    resume_from: int | None = None,
    progress_file: str | None = None,
    verbose: bool | None = None,
    skip_preflight: bool = False,
) -> tuple[MigrationResult, ProgressLedger]:
    """Run one migration with the given settings.

    Keyword arguments override the matching settings when not None.

    Returns:
        Tuple of (run result, ledger the run recorded progress in).

    Raises:
        PreflightError: If a pre-flight check fails.
        ClassifiedError: If the thread list cannot be fetched.
        MigrationCancelled: If cancelled during pre-flight checks.
    """
    dry_run = settings.dry_run if dry_run is None else dry_run
    resume_from = settings.resume_from if resume_from is None else resume_from
    verbose = settings.verbose if verbose is None else verbose
    secrets = get_secrets(settings)

    ledger = ProgressLedger.load(progress_file or settings.progress_file, dry_run=dry_run)
    policies = build_policies(settings)
    source_executor = RetryExecutor(
        policies["source"], classify_xenforo_error, name="xenforo"
    )
    publisher_executor = RetryExecutor(
        policies["publisher"], classify_github_error, name="github", dry_run=dry_run
    )
    download_executor = RetryExecutor(
        policies["download"], classify_xenforo_error, name="download", dry_run=dry_run
    )

    async with XenForoClient(
        settings.xenforo_api_url,
        secrets.xenforo_api_key,
        settings.xenforo_api_user,
        timeout=settings.request_timeout,
    ) as xenforo:
        async with GitHubClient(secrets.github_token, timeout=settings.request_timeout) as github:
            if not skip_preflight:
                checker = PreflightChecker(
                    xenforo=xenforo,
                    github=None if dry_run else github,
                    repository=settings.github_repository,
                    category_id=settings.github_category_id,
                    attachments_dir=settings.attachments_dir,
                    dry_run=dry_run,
                )
                await checker.run(token)
            if not dry_run and github.repository_id is None:
                await github.get_repository_info(settings.github_repository)

            linker = AttachmentLinker(settings.attachments_dir)
            orchestrator = MigrationOrchestrator(
                source=xenforo,
                publisher=github,
                ledger=ledger,
                formatter=MessageFormatter(BBCodeConverter(settings.max_quote_passes)),
                linker=linker,
                downloader=AttachmentDownloader(linker, xenforo, download_executor),
                source_executor=source_executor,
                publisher_executor=publisher_executor,
                node_id=settings.xenforo_node_id,
                category_id=settings.github_category_id,
                resume_from=resume_from,
                post_delay=settings.post_delay,
                verbose=verbose,
            )
            result = await orchestrator.run(token)

    logger.info(
        "Attachment downloads finished",
        operations=download_executor.operation_count,
        rate_limit_hits=download_executor.rate_limit_hits,
    )
    return result, ledger
