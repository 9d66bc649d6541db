"""Bounded retry driver with backoff and cancellation."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from storages.backoff import RandomSource, sleep_interval
from storages.cancellation import CancellationToken
from storages.errors import RetryExhaustedError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 16
DEFAULT_BASE_RETRY_DELAY = 0.128
DEFAULT_MAX_RETRY_DELAY = 5 * 60.0


@dataclass(frozen=True)
class RetryPolicy:
    """Retry tuning.

    Attributes:
        max_retries: Retries after the first attempt; total attempts is max_retries + 1.
        base_delay: Delay for the first retry in seconds.
        max_delay: Ceiling for any single wait in seconds.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_RETRY_DELAY
    max_delay: float = DEFAULT_MAX_RETRY_DELAY


def is_retryable(exc: BaseException) -> bool:
    """Return True when another attempt may succeed.

    Storage errors declare their own retryability; anything else that reaches
    the retrier untranslated is treated as transient.
    """

    if isinstance(exc, StorageError):
        return exc.retryable
    return True


class Retrier:
    """Run fallible operations up to a bounded number of attempts.

    A Retrier holds only immutable tuning, so one instance can serve
    concurrent calls.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        rand: RandomSource = random.random,
        retryable: Callable[[BaseException], bool] = is_retryable,
    ) -> None:
        """Initialize the retrier.

        Args:
            policy: Retry tuning; defaults apply when omitted.
            rand: Random source for jitter.
            retryable: Predicate deciding whether a failure is worth retrying.
        """

        self.policy = policy or RetryPolicy()
        self._rand = rand
        self._retryable = retryable

    def run(
        self,
        operation: Callable[[], T],
        token: Optional[CancellationToken] = None,
        *,
        description: str = "operation",
    ) -> T:
        """Run `operation` until it succeeds, fails permanently or the budget runs out.

        Args:
            operation: Zero-argument callable; its return value is passed through.
            token: Cancellation signal raced against every backoff wait.
            description: Short label used in log messages.

        Returns:
            T: Whatever the operation returned on its successful attempt.

        Raises:
            OperationCancelledError: When the token fires before success.
            RetryExhaustedError: When every attempt failed with a retryable error.
            StorageError: Any non-retryable failure, re-raised unchanged.
        """

        token = token or CancellationToken()
        max_retries = max(self.policy.max_retries, 0)
        last_error: Optional[BaseException] = None

        for attempt in range(max_retries + 1):
            token.raise_if_cancelled()
            try:
                return operation()
            except Exception as exc:
                if not self._retryable(exc):
                    raise
                last_error = exc

            if attempt == max_retries:
                break

            delay = sleep_interval(self.policy.base_delay, attempt, self.policy.max_delay, self._rand)
            logger.warning(
                "Failed to run %s (attempt %s of %s): %s; retrying in %.3fs",
                description,
                attempt + 1,
                max_retries + 1,
                last_error,
                delay,
            )
            if token.wait(delay):
                raise token.error() from last_error

        logger.error("Giving up on %s after %s attempts: %s", description, max_retries + 1, last_error)
        raise RetryExhaustedError(max_retries + 1, last_error) from last_error
