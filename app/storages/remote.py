"""Retried, translated calls into a vendor client.

Each folder owns one `RemoteCalls` bound to its backend name, error
translator and transfer tuning. Every vendor exception passes through the
translator before the retry driver sees it.
"""

from __future__ import annotations

from functools import partial
from typing import Any, Callable, Optional, TypeVar

from storages.cancellation import CancellationToken
from storages.errors import StorageError, with_context
from storages.retrier import Retrier
from storages.settings import TransferConfig
from storages.uploader import ErrorTranslator

T = TypeVar("T")

# translate(exc, message=..., path=...) -> StorageError
BackendTranslator = Callable[..., StorageError]


class RemoteCalls:
    """Run vendor calls with translation, retries and the folder's deadline."""

    def __init__(
        self,
        backend: str,
        translate: BackendTranslator,
        transfer: TransferConfig,
        retrier: Optional[Retrier] = None,
    ) -> None:
        self.backend = backend
        self.transfer = transfer
        self.retrier = retrier or Retrier(transfer.retry_policy())
        self._translate = translate

    def new_token(self) -> CancellationToken:
        """Return a token bounded by the folder's context timeout."""

        return CancellationToken.with_timeout(self.transfer.context_timeout)

    def translator(self, *, message: str, path: Optional[str]) -> ErrorTranslator:
        """Return a one-argument translator for the uploader."""

        return partial(self._translate, message=message, path=path)

    def call(self, func: Callable[..., T], *args: Any, message: str, path: Optional[str], **kwargs: Any) -> T:
        """Run one attempt of a vendor call, translating any failure.

        Raises:
            StorageError: Translated failure with backend and path filled in.
        """

        try:
            return func(*args, **kwargs)
        except StorageError as exc:
            raise with_context(exc, backend=self.backend, path=path)
        except Exception as exc:
            error = self._translate(exc, message=message, path=path)
            raise with_context(error, backend=self.backend, path=path) from exc

    def run(
        self,
        func: Callable[..., T],
        *args: Any,
        message: str,
        path: Optional[str],
        token: Optional[CancellationToken] = None,
        **kwargs: Any,
    ) -> T:
        """Run a vendor call through the retry driver.

        Args:
            func: Vendor callable.
            *args: Positional arguments for `func`.
            message: Failure description, also used as the retry log label.
            path: Remote path the call works on.
            token: Cancellation signal; a fresh deadline token when omitted.
            **kwargs: Keyword arguments for `func`.

        Returns:
            T: The call's result.

        Raises:
            StorageError: Retry exhaustion, cancellation or a permanent failure,
                carrying backend and path.
        """

        token = token or self.new_token()
        try:
            return self.retrier.run(
                lambda: self.call(func, *args, message=message, path=path, **kwargs),
                token,
                description=f"{message} {path}",
            )
        except StorageError as exc:
            raise with_context(exc, backend=self.backend, path=path)
