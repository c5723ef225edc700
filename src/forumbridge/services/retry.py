"""Classification-aware retry execution for remote API calls.

Every call to the forum or to GitHub goes through a :class:`RetryExecutor`.
Failures are turned into a :class:`ClassifiedError` by a classifier that the
collaborator module supplies, and the tag decides what happens next:

* ``PERMANENT`` errors are returned immediately.
* ``RETRYABLE`` errors are retried with linear backoff capped at
  ``max_backoff`` until ``max_attempts`` is reached.
* ``RATE_LIMITED`` errors wait for the estimated quota reset (capped at
  ``rate_limit_ceiling``) before the next attempt.

Classified failures are returned as data inside an :class:`ExecutionResult`;
only cancellation escapes as an exception.
"""

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Generic, TypeVar

from forumbridge.utils.cancellation import CancellationToken, MigrationCancelled
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RATE_LIMIT_CEILING = 2 * 60 * 60

RATE_LIMIT_PATTERNS = (
    "rate limit",
    "secondary rate limit",
    "abuse detection",
    "too many requests",
)

RETRYABLE_PATTERNS = (
    "connection reset",
    "connection refused",
    "timeout",
    "timed out",
    "temporary failure",
    "network is unreachable",
    "no such host",
    "server error",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "502",
    "503",
    "504",
    "unexpected eof",
    "broken pipe",
)

PERMANENT_PATTERNS = (
    "unauthorized",
    "forbidden",
    "not found",
    "bad request",
    "invalid",
    "401",
    "403",
    "404",
    "400",
)


class ErrorKind(enum.Enum):
    """Classification tag that drives retry behaviour."""

    PERMANENT = "permanent"
    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"


class ClassifiedError(Exception):
    """A failure tagged with the retry policy that applies to it."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        cause: BaseException | None = None,
        reset_at: datetime | None = None,
        attempts: int = 0,
    ) -> None:
        self.kind = kind
        self.message = message
        self.cause = cause
        self.reset_at = reset_at
        self.attempts = attempts
        super().__init__(message)

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMITED

    @property
    def is_permanent(self) -> bool:
        return self.kind is ErrorKind.PERMANENT

    def with_attempts(self, attempts: int, message: str | None = None) -> "ClassifiedError":
        """Return a copy of this error carrying the number of attempts made."""
        return ClassifiedError(
            self.kind,
            message or self.message,
            cause=self.cause,
            reset_at=self.reset_at,
            attempts=attempts,
        )

    def __repr__(self) -> str:
        return f"ClassifiedError({self.kind.value}, {self.message!r}, attempts={self.attempts})"


Classifier = Callable[[Exception], ClassifiedError]


def mentions_rate_limit(text: str) -> bool:
    """True if ``text`` carries a rate-limit signature."""
    text = text.lower()
    return any(pattern in text for pattern in RATE_LIMIT_PATTERNS)


def classify_by_message(
    exc: Exception,
    *,
    rate_limit_reset: timedelta = timedelta(hours=1),
) -> ClassifiedError:
    """Classify an error from the text of its message.

    Used as the fallback of every collaborator-specific classifier when the
    error carries no structured signal (status code, error type).
    """
    text = str(exc).lower()
    if mentions_rate_limit(text):
        if "secondary rate limit" in text:
            rate_limit_reset = timedelta(minutes=10)
        return ClassifiedError(
            ErrorKind.RATE_LIMITED,
            str(exc),
            cause=exc,
            reset_at=datetime.now(UTC) + rate_limit_reset,
        )
    if any(pattern in text for pattern in RETRYABLE_PATTERNS):
        return ClassifiedError(ErrorKind.RETRYABLE, str(exc), cause=exc)
    if any(pattern in text for pattern in PERMANENT_PATTERNS):
        return ClassifiedError(ErrorKind.PERMANENT, str(exc), cause=exc)
    return ClassifiedError(ErrorKind.RETRYABLE, str(exc) or type(exc).__name__, cause=exc)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry bounds. ``max_attempts`` includes the first try; delays are seconds."""

    max_attempts: int = 3
    backoff_multiplier: float = 2.0
    max_backoff: float = 300.0
    base_delay: float = 0.0
    rate_limit_ceiling: float = DEFAULT_RATE_LIMIT_CEILING

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_multiplier < 0 or self.max_backoff < 0 or self.base_delay < 0:
            raise ValueError("retry delays cannot be negative")
        if self.rate_limit_ceiling < 0:
            raise ValueError("rate_limit_ceiling cannot be negative")

    def backoff_delay(self, retry_number: int) -> float:
        """Delay before the given retry (1 for the second attempt, and so on)."""
        if retry_number <= 0:
            return 0.0
        return min(retry_number * self.backoff_multiplier, self.max_backoff)


@dataclass
class ExecutionResult(Generic[T]):
    """Outcome of :meth:`RetryExecutor.execute`."""

    value: T | None = None
    error: ClassifiedError | None = None
    attempts: int = 0
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T | None:
        """Return the value, or raise the classified error."""
        if self.error is not None:
            raise self.error
        return self.value


class RetryExecutor:
    """Runs remote operations with classification-aware retries."""

    def __init__(
        self,
        policy: RetryPolicy,
        classifier: Classifier = classify_by_message,
        *,
        name: str = "api",
        dry_run: bool = False,
    ) -> None:
        self._policy = policy
        self._classifier = classifier
        self._name = name
        self._dry_run = dry_run
        self.operation_count = 0
        self.rate_limit_hits = 0

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        token: CancellationToken,
        *,
        description: str = "operation",
        dry_run_result: T | None = None,
    ) -> ExecutionResult[T]:
        """Run ``operation`` until it succeeds or its failure is final.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt.
            token: Cancellation token checked before every attempt and wait.
            description: Human readable name of the call, used in logs.
            dry_run_result: Value returned instead of calling ``operation`` in dry-run mode.

        Returns:
            ExecutionResult holding either the value or the ClassifiedError.

        Raises:
            MigrationCancelled: If the token is cancelled.
        """
        token.raise_if_cancelled()
        self.operation_count += 1

        if self._dry_run:
            logger.info("Dry run - skipping call", api=self._name, operation=description)
            return ExecutionResult(value=dry_run_result, attempts=0, dry_run=True)

        policy = self._policy
        last_error: ClassifiedError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            token.raise_if_cancelled()
            await self._wait_before_attempt(attempt, token, description)

            try:
                value = await operation()
            except MigrationCancelled:
                raise
            except Exception as e:
                error = self._classifier(e)
            else:
                if attempt > 1:
                    logger.info(
                        "Operation succeeded after retries",
                        api=self._name,
                        operation=description,
                        attempt=attempt,
                        operation_count=self.operation_count,
                    )
                return ExecutionResult(value=value, attempts=attempt)

            last_error = error
            remaining = policy.max_attempts - attempt

            if error.kind is ErrorKind.PERMANENT:
                logger.warning(
                    "Operation failed with non-retryable error",
                    api=self._name,
                    operation=description,
                    attempt=attempt,
                    error=error.message,
                )
                return ExecutionResult(error=error.with_attempts(attempt), attempts=attempt)

            if error.kind is ErrorKind.RATE_LIMITED:
                self.rate_limit_hits += 1
                logger.warning(
                    "Rate limit detected",
                    api=self._name,
                    operation=description,
                    attempt=attempt,
                    rate_limit_hits=self.rate_limit_hits,
                    reset_at=error.reset_at.isoformat() if error.reset_at else None,
                    error=error.message,
                )
                if remaining <= 0:
                    logger.error(
                        "Maximum attempts exceeded while rate limited",
                        api=self._name,
                        operation=description,
                        attempts=attempt,
                        rate_limit_hits=self.rate_limit_hits,
                    )
                    return ExecutionResult(error=error.with_attempts(attempt), attempts=attempt)
                await self._wait_for_rate_limit_reset(error, token, description)
                continue

            logger.warning(
                "Operation failed",
                api=self._name,
                operation=description,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=error.message,
            )

        if last_error is None:
            raise RuntimeError(f"{description} finished without making an attempt")
        logger.error(
            "Maximum attempts exceeded",
            api=self._name,
            operation=description,
            attempts=policy.max_attempts,
            operation_count=self.operation_count,
        )
        wrapped = last_error.with_attempts(
            policy.max_attempts,
            f"{description} failed after {policy.max_attempts} attempts: {last_error.message}",
        )
        return ExecutionResult(error=wrapped, attempts=policy.max_attempts)

    def rate_limit_wait(self, error: ClassifiedError, now: datetime | None = None) -> float:
        """Seconds to wait for a rate limit reset, capped by the sanity ceiling."""
        if error.reset_at is None:
            return 0.0
        now = now or datetime.now(UTC)
        wait = (error.reset_at - now).total_seconds()
        if wait <= 0:
            return 0.0
        return min(wait, self._policy.rate_limit_ceiling)

    async def _wait_before_attempt(
        self, attempt: int, token: CancellationToken, description: str
    ) -> None:
        if attempt == 1:
            if self._policy.base_delay > 0:
                await token.sleep(self._policy.base_delay)
            return

        delay = self._policy.backoff_delay(attempt - 1)
        logger.info(
            "Retrying operation",
            api=self._name,
            operation=description,
            attempt=attempt,
            max_attempts=self._policy.max_attempts,
            wait=delay,
            operation_count=self.operation_count,
            rate_limit_hits=self.rate_limit_hits,
        )
        await token.sleep(delay)

    async def _wait_for_rate_limit_reset(
        self, error: ClassifiedError, token: CancellationToken, description: str
    ) -> None:
        wait = self.rate_limit_wait(error)
        if wait <= 0:
            return
        logger.warning(
            "Waiting for rate limit reset",
            api=self._name,
            operation=description,
            wait=round(wait, 1),
            rate_limit_hits=self.rate_limit_hits,
        )
        await token.sleep(wait)
