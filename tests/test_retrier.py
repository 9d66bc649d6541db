"""Tests for the bounded retry driver."""

from __future__ import annotations

import logging
import threading
import time
from typing import List

import pytest

from storages.cancellation import CancellationToken
from storages.errors import (
    NonRetryableClientError,
    ObjectNotFoundError,
    OperationCancelledError,
    RetryExhaustedError,
    TransientTransferError,
)
from storages.retrier import Retrier, RetryPolicy, is_retryable


class Flaky:
    """Fails the first `failures` calls, then returns `result`."""

    def __init__(self, failures: int, error: Exception, result: str = "ok") -> None:
        self.failures = failures
        self.error = error
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


def no_sleep_retrier(max_retries: int = 3) -> Retrier:
    return Retrier(RetryPolicy(max_retries=max_retries, base_delay=0.0, max_delay=0.0))


class TestIsRetryable:
    """Retryability comes from the error kind."""

    def test_storage_errors(self) -> None:
        """Storage errors declare their own flag."""
        assert is_retryable(TransientTransferError("x")) is True
        assert is_retryable(ObjectNotFoundError()) is False
        assert is_retryable(NonRetryableClientError("x")) is False

    def test_untranslated_is_transient(self) -> None:
        """Unknown exceptions are retried."""
        assert is_retryable(ConnectionResetError()) is True


class TestRun:
    """Attempt accounting."""

    def test_first_attempt_success(self) -> None:
        """The result of the operation is passed through."""
        operation = Flaky(0, TransientTransferError("x"), result="value")
        assert no_sleep_retrier().run(operation) == "value"
        assert operation.calls == 1

    def test_success_after_failures(self) -> None:
        """Transient failures are retried until success."""
        operation = Flaky(3, TransientTransferError("busy"))
        assert no_sleep_retrier(max_retries=3).run(operation) == "ok"
        assert operation.calls == 4

    def test_exhaustion(self) -> None:
        """max_retries + 1 attempts, then RetryExhaustedError."""
        last = TransientTransferError("busy")
        operation = Flaky(100, last)
        with pytest.raises(RetryExhaustedError) as excinfo:
            no_sleep_retrier(max_retries=2).run(operation)
        assert operation.calls == 3
        assert excinfo.value.attempts == 3
        assert excinfo.value.last_error is last
        assert excinfo.value.__cause__ is last

    def test_zero_retries_means_one_attempt(self) -> None:
        """max_retries=0 still runs the operation once."""
        operation = Flaky(100, TransientTransferError("busy"))
        with pytest.raises(RetryExhaustedError):
            no_sleep_retrier(max_retries=0).run(operation)
        assert operation.calls == 1

    def test_non_retryable_is_raised_immediately(self) -> None:
        """Permanent failures are not retried."""
        error = NonRetryableClientError("forbidden")
        operation = Flaky(100, error)
        with pytest.raises(NonRetryableClientError) as excinfo:
            no_sleep_retrier().run(operation)
        assert excinfo.value is error
        assert operation.calls == 1

    def test_not_found_is_not_retried(self) -> None:
        """Not-found is a definitive answer."""
        operation = Flaky(100, ObjectNotFoundError())
        with pytest.raises(ObjectNotFoundError):
            no_sleep_retrier().run(operation)
        assert operation.calls == 1

    def test_custom_predicate(self) -> None:
        """The retryable predicate can be replaced."""
        retrier = Retrier(RetryPolicy(3, 0.0, 0.0), retryable=lambda exc: False)
        operation = Flaky(100, TransientTransferError("busy"))
        with pytest.raises(TransientTransferError):
            retrier.run(operation)
        assert operation.calls == 1

    def test_logs_each_failed_attempt(self, caplog: pytest.LogCaptureFixture) -> None:
        """A warning per retried failure and an error on exhaustion."""
        operation = Flaky(100, TransientTransferError("busy"))
        with caplog.at_level(logging.WARNING, logger="storages.retrier"):
            with pytest.raises(RetryExhaustedError):
                no_sleep_retrier(max_retries=2).run(operation, description="upload of x")
        levels = [record.levelno for record in caplog.records]
        assert levels == [logging.WARNING, logging.WARNING, logging.ERROR]
        assert "upload of x" in caplog.records[0].getMessage()


class TestBackoff:
    """Sleeps between attempts follow the backoff schedule."""

    def test_waits_between_attempts(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """No wait after the final attempt; delays grow per attempt."""
        waits: List[float] = []
        monkeypatch.setattr(CancellationToken, "wait", lambda self, seconds: waits.append(seconds) or False)

        retrier = Retrier(RetryPolicy(max_retries=3, base_delay=1.0, max_delay=300.0), rand=lambda: 0.0)
        with pytest.raises(RetryExhaustedError):
            retrier.run(Flaky(100, TransientTransferError("busy")))

        assert waits == [pytest.approx(0.5), pytest.approx(1.0), pytest.approx(2.0)]

    def test_waits_are_capped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """No single wait exceeds max_delay."""
        waits: List[float] = []
        monkeypatch.setattr(CancellationToken, "wait", lambda self, seconds: waits.append(seconds) or False)

        retrier = Retrier(RetryPolicy(max_retries=6, base_delay=1.0, max_delay=3.0), rand=lambda: 0.9)
        with pytest.raises(RetryExhaustedError):
            retrier.run(Flaky(100, TransientTransferError("busy")))

        assert max(waits) == 3.0
        assert len(waits) == 6


class TestCancellation:
    """The token is raced against every wait."""

    def test_pre_cancelled_token(self) -> None:
        """A fired token stops the operation before its first attempt."""
        token = CancellationToken()
        token.cancel("shutdown")
        operation = Flaky(0, TransientTransferError("x"))
        with pytest.raises(OperationCancelledError) as excinfo:
            no_sleep_retrier().run(operation, token)
        assert operation.calls == 0
        assert excinfo.value.reason == "shutdown"

    def test_cancel_during_backoff(self) -> None:
        """Cancelling mid-wait aborts promptly with the last failure as cause."""
        token = CancellationToken()
        last = TransientTransferError("busy")
        operation = Flaky(100, last)
        retrier = Retrier(RetryPolicy(max_retries=5, base_delay=10.0, max_delay=10.0), rand=lambda: 0.0)

        timer = threading.Timer(0.05, token.cancel, args=("stopped",))
        timer.start()
        started = time.monotonic()
        try:
            with pytest.raises(OperationCancelledError) as excinfo:
                retrier.run(operation, token)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 2.0
        assert operation.calls == 1
        assert excinfo.value.reason == "stopped"
        assert excinfo.value.__cause__ is last

    def test_deadline_between_attempts(self) -> None:
        """A deadline that passes during an attempt stops further attempts."""
        now = [0.0]
        token = CancellationToken(10.0, clock=lambda: now[0])

        def operation() -> str:
            now[0] += 11.0
            raise TransientTransferError("slow")

        with pytest.raises(OperationCancelledError) as excinfo:
            no_sleep_retrier(max_retries=5).run(operation, token)
        assert excinfo.value.reason == "deadline exceeded"
