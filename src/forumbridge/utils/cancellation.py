"""Cooperative cancellation shared by every wait in a migration run."""

import asyncio
import contextlib

from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)


class MigrationCancelled(Exception):
    """Raised when a migration run is cancelled.

    Never classified as an ordinary failure: retry logic and per-item error
    handling re-raise it unchanged.
    """

    def __init__(self, reason: str = "migration cancelled") -> None:
        self.reason = reason
        super().__init__(reason)


class CancellationToken:
    """A one-shot cancellation signal checked at every suspension point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = "migration cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "migration cancelled") -> None:
        """Signal cancellation. Subsequent calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.warning("Cancellation requested", reason=reason)

    def raise_if_cancelled(self) -> None:
        """Raise MigrationCancelled if the token has been cancelled."""
        if self._event.is_set():
            raise MigrationCancelled(self._reason)

    async def sleep(self, seconds: float) -> None:
        """Wait for ``seconds`` unless cancelled first.

        Raises:
            MigrationCancelled: If the token is (or becomes) cancelled.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        self.raise_if_cancelled()
