"""Command-line entrypoint for forumbridge."""

import argparse
import asyncio
import signal
import sys

from pydantic import ValidationError

from forumbridge.config import get_settings
from forumbridge.services.migration import run_migration
from forumbridge.services.preflight import PreflightError
from forumbridge.services.retry import ClassifiedError
from forumbridge.utils.cancellation import CancellationToken, MigrationCancelled
from forumbridge.utils.logging import get_logger, setup_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130

logger = get_logger(__name__)


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must be a non-negative thread ID")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forumbridge",
        description="Migrate XenForo forum threads into GitHub Discussions",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Read from XenForo but make no changes on GitHub or on disk",
    )
    parser.add_argument(
        "--resume-from",
        type=_non_negative_int,
        default=None,
        metavar="THREAD_ID",
        help="Skip pending threads listed before this thread ID",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log rendered discussion and comment bodies in dry-run mode",
    )
    parser.add_argument(
        "--skip-preflight",
        action="store_true",
        help="Skip connectivity and configuration checks",
    )
    parser.add_argument(
        "--progress-file",
        default=None,
        help="Path of the progress file (default: migration_progress.json)",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    token = CancellationToken()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")

    try:
        result, ledger = await run_migration(
            settings,
            token,
            dry_run=args.dry_run or None,
            resume_from=args.resume_from,
            progress_file=args.progress_file,
            verbose=args.verbose or None,
            skip_preflight=args.skip_preflight,
        )
    except MigrationCancelled as e:
        logger.warning("Migration cancelled", reason=e.reason)
        return EXIT_CANCELLED
    except PreflightError as e:
        logger.error("Pre-flight checks failed", error=str(e))
        return EXIT_FAILURE
    except ClassifiedError as e:
        logger.error("Migration aborted", error=e.message, kind=e.kind.value)
        return EXIT_FAILURE
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    for line in ledger.summary_lines():
        print(line)

    if result.cancelled:
        return EXIT_CANCELLED
    if result.failed:
        return EXIT_FAILURE
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(settings.log_level, json_output=False, stream=sys.stderr)
    try:
        return asyncio.run(_run(args))
    except ValueError as e:
        logger.error("Invalid configuration", error=str(e))
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
