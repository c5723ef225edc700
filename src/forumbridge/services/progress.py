"""Durable migration progress ledger.

The ledger records which threads were migrated or failed, and is written to
disk after every change so that an interrupted run loses at most the thread
that was in flight.
"""

import os
import tempfile
import time
from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from forumbridge.models import Thread
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)


class ProgressState(BaseModel):
    """Persisted progress record, one per migrated forum node."""

    last_thread_id: int = Field(default=0, description="Last thread marked completed or resumed from")
    completed_threads: list[int] = Field(default_factory=list)
    failed_threads: list[int] = Field(default_factory=list)
    last_updated: int = Field(default=0, description="Unix timestamp of the last write")


class ProgressLedger:
    """Tracks completed and failed threads and checkpoints them to a JSON file."""

    def __init__(self, path: str | Path, state: ProgressState | None = None, dry_run: bool = False) -> None:
        self._path = Path(path)
        self._state = state or ProgressState()
        self._dry_run = dry_run
        completed = list(dict.fromkeys(self._state.completed_threads))
        failed = [i for i in dict.fromkeys(self._state.failed_threads) if i not in completed]
        self._state.completed_threads = completed
        self._state.failed_threads = failed
        self._completed = set(completed)
        self._failed = set(failed)

    @classmethod
    def load(cls, path: str | Path, dry_run: bool = False) -> "ProgressLedger":
        """Load the ledger from ``path``.

        A missing file yields an empty ledger. A file that cannot be read or
        parsed also yields an empty ledger; it is left untouched on disk so it
        can be inspected.
        """
        path = Path(path)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            logger.info("No progress file found, starting fresh", path=str(path))
            return cls(path, dry_run=dry_run)
        except OSError as e:
            logger.warning("Failed to read progress file, starting fresh", path=str(path), error=str(e))
            return cls(path, dry_run=dry_run)

        try:
            state = ProgressState.model_validate_json(raw)
        except (ValidationError, UnicodeDecodeError) as e:
            logger.warning(
                "Progress file is corrupted, using empty progress state",
                path=str(path),
                error=str(e),
            )
            return cls(path, dry_run=dry_run)

        logger.info(
            "Progress loaded",
            path=str(path),
            completed=len(state.completed_threads),
            failed=len(state.failed_threads),
            last_thread_id=state.last_thread_id,
        )
        return cls(path, state=state, dry_run=dry_run)

    @property
    def path(self) -> Path:
        return self._path

    def get_state(self) -> ProgressState:
        """Return a copy of the current state."""
        return self._state.model_copy(deep=True)

    def is_completed(self, thread_id: int) -> bool:
        return thread_id in self._completed

    def set_resume_from(self, thread_id: int) -> None:
        """Seed the last processed thread without touching completed or failed sets."""
        self._state.last_thread_id = thread_id
        logger.info("Resume point set", thread_id=thread_id)

    def mark_completed(self, thread_id: int) -> None:
        """Record a migrated thread and persist. Re-marking is a no-op."""
        if thread_id in self._completed:
            return
        self._completed.add(thread_id)
        self._state.completed_threads.append(thread_id)
        if thread_id in self._failed:
            self._failed.discard(thread_id)
            self._state.failed_threads.remove(thread_id)
        self._state.last_thread_id = thread_id
        self._save()

    def mark_failed(self, thread_id: int) -> None:
        """Record a failed thread and persist. Re-marking is a no-op."""
        if thread_id in self._failed:
            return
        self._failed.add(thread_id)
        self._state.failed_threads.append(thread_id)
        if thread_id in self._completed:
            self._completed.discard(thread_id)
            self._state.completed_threads.remove(thread_id)
        self._save()

    def filter_pending(self, threads: Iterable[Thread]) -> list[Thread]:
        """Drop threads already completed. Failed threads stay pending."""
        return [t for t in threads if t.thread_id not in self._completed]

    def summary_lines(self) -> list[str]:
        """Render the end-of-run summary."""
        lines = [
            "=" * 50,
            "Migration Summary",
            "=" * 50,
            f"Completed threads: {len(self._completed)}",
            f"Failed threads: {len(self._failed)}",
        ]
        if self._state.failed_threads:
            lines.append("")
            lines.append("Failed thread IDs:")
            lines.extend(f"  - {thread_id}" for thread_id in self._state.failed_threads)
        if self._dry_run:
            lines.append("")
            lines.append("[DRY-RUN MODE] No actual changes were made")
        return lines

    def _save(self) -> None:
        self._state.last_updated = int(time.time())
        if self._dry_run:
            return
        _atomic_write(self._path, self._state.model_dump_json(indent=2))


def _atomic_write(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a partial file."""
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=directory,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as f:
        tmp_name = f.name
        try:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        except BaseException:
            f.close()
            os.unlink(tmp_name)
            raise
    try:
        os.replace(tmp_name, path)
    except OSError:
        os.unlink(tmp_name)
        raise

