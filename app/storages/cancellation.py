"""Cancellation tokens bound to an optional deadline."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from storages.errors import OperationCancelledError


DEADLINE_EXCEEDED = "deadline exceeded"


class CancellationToken:
    """A cancellation signal that fires on `cancel()` or when its deadline passes.

    Tokens are safe to share between threads: one thread may wait while
    another cancels.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create a token.

        Args:
            timeout: Seconds until the token fires on its own. None means no deadline.
            clock: Monotonic clock, injectable for tests.
        """

        self._clock = clock
        self._deadline = None if timeout is None else clock() + timeout
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        """Return a token that fires after `seconds`."""

        return cls(timeout=seconds)

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. The first reason wins."""

        if self._reason is None:
            self._reason = reason
        self._event.set()

    def remaining(self) -> Optional[float]:
        """Return seconds left before the deadline, or None without one."""

        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel(DEADLINE_EXCEEDED)
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, seconds: float) -> bool:
        """Block for `seconds` or until the token fires, whichever comes first.

        Args:
            seconds: Interval to wait.

        Returns:
            bool: True when the token fired, False when the interval elapsed.
        """

        if self.cancelled:
            return True

        remaining = self.remaining()
        timeout = seconds if remaining is None else min(seconds, remaining)
        if self._event.wait(max(timeout, 0.0)):
            return True
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError when the token has fired."""

        if self.cancelled:
            raise self.error()

    def error(self) -> OperationCancelledError:
        """Build the error describing why this token fired."""

        return OperationCancelledError(self._reason or "cancelled")
