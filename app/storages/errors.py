"""Storage error types.

Every backend translates its vendor exceptions into these kinds at the
adapter boundary, so retry decisions only look at `StorageError.retryable`.
"""

from __future__ import annotations

from typing import Optional


class StorageError(Exception):
    """Base exception for remote storage operations.

    Attributes:
        message: Human-readable error message.
        backend: Backend name (e.g. "GCS", "S3", "SSH").
        path: Remote path the operation was working on.
        retryable: Whether the retry driver may attempt the operation again.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.path = path

    def __str__(self) -> str:
        text = f"{self.backend} error : {self.message}" if self.backend else self.message
        if self.path:
            text = f"{text} (path={self.path})"
        cause = self.__cause__
        if cause is not None:
            text = f"{text}: {cause}"
        return text


class ObjectNotFoundError(StorageError):
    """Raised when the named object does not exist."""

    def __init__(
        self,
        message: str = "Object not found",
        *,
        backend: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(message, backend=backend, path=path)


class TransientTransferError(StorageError):
    """A single remote call failed for a reason worth retrying.

    Network blips, throttling and 5xx-class responses end up here.
    """

    retryable = True


class NonRetryableClientError(StorageError):
    """The backend permanently rejected the request (4xx-class)."""


class LocalSourceError(StorageError):
    """The caller-supplied input stream failed to produce bytes.

    Attributes:
        chunk_index: Index of the chunk being read when the stream failed.
    """

    def __init__(
        self,
        message: str = "Unable to read a chunk of data to upload",
        *,
        backend: Optional[str] = None,
        path: Optional[str] = None,
        chunk_index: Optional[int] = None,
    ) -> None:
        super().__init__(message, backend=backend, path=path)
        self.chunk_index = chunk_index


class RetryExhaustedError(StorageError):
    """Terminal failure after the configured attempt budget.

    Attributes:
        attempts: Total number of attempts made.
        last_error: The failure raised by the final attempt.
    """

    def __init__(
        self,
        attempts: int,
        last_error: Optional[BaseException] = None,
        *,
        backend: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"retry limit has been exceeded, total attempts: {attempts}",
            backend=backend,
            path=path,
        )
        self.attempts = attempts
        self.last_error = last_error


class OperationCancelledError(StorageError):
    """The operation's cancellation signal fired before completion.

    Attributes:
        reason: Why the token fired (e.g. "deadline exceeded").
    """

    def __init__(
        self,
        reason: str = "cancelled",
        *,
        backend: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(f"operation cancelled: {reason}", backend=backend, path=path)
        self.reason = reason


class ConfigurationError(StorageError):
    """A setting is missing or cannot be parsed.

    Attributes:
        setting: Name of the offending setting, when known.
    """

    def __init__(
        self,
        message: str,
        *,
        setting: Optional[str] = None,
        backend: Optional[str] = None,
    ) -> None:
        super().__init__(message, backend=backend)
        self.setting = setting


def with_context(error: StorageError, *, backend: str, path: Optional[str]) -> StorageError:
    """Fill in backend and path on an error that does not carry them yet.

    Args:
        error: Error to annotate.
        backend: Backend name.
        path: Remote path.

    Returns:
        StorageError: The same error instance.
    """

    if error.backend is None:
        error.backend = backend
    if error.path is None:
        error.path = path
    return error
